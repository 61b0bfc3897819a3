from __future__ import annotations

from typing import Any

import httpx

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class PlatformError(Exception):
    """Base for failures talking to Shopify or Naver."""

    category = "unknown"

    def __init__(self, message: str, *, platform: str, operation: str, status_code: int | None = None):
        super().__init__(message)
        self.platform = platform
        self.operation = operation
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.category == "transient"

    def detail(self) -> dict[str, Any]:
        return {
            "type": "platform_error",
            "platform": self.platform,
            "operation": self.operation,
            "category": self.category,
            "retryable": self.retryable,
            "status_code": self.status_code,
            "message": str(self),
        }


class TransientPlatformError(PlatformError):
    """Timeouts, transport failures, 429 and 5xx. Safe to retry."""

    category = "transient"


class PermanentPlatformError(PlatformError):
    """Validation failures and other 4xx. Retrying will not help."""

    category = "terminal"


def is_retryable_status(status_code: int) -> bool:
    return status_code in _RETRYABLE_STATUS_CODES or status_code >= 500


def raise_for_platform_status(resp: httpx.Response, *, platform: str, operation: str) -> None:
    if resp.is_success:
        return
    snippet = (resp.text or "")[:300]
    msg = f"{platform} {operation} failed: HTTP {resp.status_code} {snippet}"
    if is_retryable_status(resp.status_code):
        raise TransientPlatformError(msg, platform=platform, operation=operation, status_code=resp.status_code)
    raise PermanentPlatformError(msg, platform=platform, operation=operation, status_code=resp.status_code)


def wrap_transport_error(exc: httpx.HTTPError, *, platform: str, operation: str) -> TransientPlatformError:
    kind = "timeout" if isinstance(exc, httpx.TimeoutException) else "connectivity error"
    return TransientPlatformError(f"{platform} {operation} {kind}: {exc}", platform=platform, operation=operation)
