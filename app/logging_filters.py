# --- Global log sanitizer: trims HTML error pages, masks credentials ------------
import logging, re

_HTML_SIG_RE = re.compile(r'(?is)<!DOCTYPE html|<html[^>]*>')
_TITLE_RE    = re.compile(r'(?is)<title[^>]*>(.*?)</title>')
_TAG_RE      = re.compile(r'(?is)<[^>]+>')
_SCRIPT_RE   = re.compile(r'(?is)<(script|style)[^>]*>.*?</\1>')

# Bearer tokens, Shopify admin tokens, OAuth form fields
_SECRET_RES = (
    re.compile(r'(?i)(bearer\s+)[A-Za-z0-9._\-+/=]{8,}'),
    re.compile(r'\bshpat_[A-Za-z0-9]+'),
    re.compile(r'(?i)((?:access_token|client_secret_sign|client_secret)["\']?\s*[:=]\s*["\']?)[^"\'&\s,}]+'),
    re.compile(r'(?i)((?:x-shopify-hmac-sha256|x-naver-signature)["\']?\s*[:=]\s*["\']?)[^"\'\s,}]+'),
)

def _strip_tags(s: str) -> str:
    s = _SCRIPT_RE.sub('', s)
    s = _TAG_RE.sub(' ', s)
    return re.sub(r'\s+', ' ', s).strip()

def _summarize_html(s: str, limit: int = 200) -> str:
    title = None
    m = _TITLE_RE.search(s)
    if m:
        title = _strip_tags(m.group(1))
    preview = title or _strip_tags(s)[:limit]
    return f"{preview} [HTML {len(s)} chars trimmed]"

def mask_secrets(s: str) -> str:
    for rx in _SECRET_RES:
        if rx.groups:
            s = rx.sub(lambda m: m.group(1) + "***", s)
        else:
            s = rx.sub("***", s)
    return s

class _HtmlTrimFilter(logging.Filter):
    """If a log message contains a large HTML blob, replace it with a short summary."""
    def filter(self, record: logging.LogRecord) -> bool:
        try:
            msg = record.getMessage()
        except (TypeError, ValueError):
            return True
        if isinstance(msg, str) and len(msg) > 200 and _HTML_SIG_RE.search(msg):
            record.msg = _summarize_html(msg)
            record.args = ()
        return True

class _SecretMaskFilter(logging.Filter):
    """Never let platform credentials reach the log output."""
    def filter(self, record: logging.LogRecord) -> bool:
        try:
            msg = record.getMessage()
        except (TypeError, ValueError):
            return True
        masked = mask_secrets(msg)
        if masked != msg:
            record.msg = masked
            record.args = ()
        return True

def install() -> None:
    # install once on common loggers (root + uvicorn family)
    for name in ("", "uvicorn", "uvicorn.error"):
        lg = logging.getLogger(name)
        if not any(isinstance(f, _HtmlTrimFilter) for f in lg.filters):
            lg.addFilter(_HtmlTrimFilter())
            lg.addFilter(_SecretMaskFilter())
# --------------------------------------------------------------------------------
