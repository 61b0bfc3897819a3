# ----------------------------------------------------------------
# Import configuration variables to be used throughout the project
# ----------------------------------------------------------------
import os
from dotenv import load_dotenv

# Load .env (allow container env to override file values)
load_dotenv(override=True)


def _rstrip_slash(s: str) -> str:
    return (s or "").rstrip("/")


def _get_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in {"1", "true", "yes", "on", "y"}


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw.strip() else default
    except ValueError:
        return default


class Settings:
    # ── Storage ──────────────────────────────────────────────────────────────
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./data/webhooks.db")
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    REDIS_SOCKET_TIMEOUT: float = _get_float("REDIS_SOCKET_TIMEOUT", 2.0)

    # ── Shopify (storefront) ─────────────────────────────────────────────────
    SHOPIFY_WEBHOOK_SECRET: str = os.getenv("SHOPIFY_WEBHOOK_SECRET", "")
    SHOPIFY_SHOP_DOMAIN: str = os.getenv("SHOPIFY_SHOP_DOMAIN", "")
    SHOPIFY_ADMIN_TOKEN: str = os.getenv("SHOPIFY_ADMIN_TOKEN", "")
    SHOPIFY_API_VERSION: str = os.getenv("SHOPIFY_API_VERSION", "2024-07")
    SHOPIFY_LOCATION_ID: str = os.getenv("SHOPIFY_LOCATION_ID", "")

    # ── Naver Commerce (marketplace) ─────────────────────────────────────────
    NAVER_API_BASE_URL: str = _rstrip_slash(os.getenv("NAVER_API_BASE_URL", "https://api.commerce.naver.com"))
    NAVER_CLIENT_ID: str = os.getenv("NAVER_CLIENT_ID", "")
    NAVER_CLIENT_SECRET: str = os.getenv("NAVER_CLIENT_SECRET", "")
    NAVER_WEBHOOK_SECRET: str = os.getenv("NAVER_WEBHOOK_SECRET", "")
    NAVER_WEBHOOK_TOLERANCE_SECONDS: int = _get_int("NAVER_WEBHOOK_TOLERANCE_SECONDS", 300)

    # Outbound request timeout for both platforms (seconds)
    PLATFORM_HTTP_TIMEOUT: float = _get_float("PLATFORM_HTTP_TIMEOUT", 5.0)

    # ── Idempotency marks (seconds) ──────────────────────────────────────────
    IDEMPOTENCY_PROCESSING_TTL: int = _get_int("IDEMPOTENCY_PROCESSING_TTL", 1800)
    IDEMPOTENCY_COMPLETED_TTL: int = _get_int("IDEMPOTENCY_COMPLETED_TTL", 86400)

    # ── Mapping cache (seconds); 0 disables negative caching ────────────────
    MAPPING_CACHE_TTL: int = _get_int("MAPPING_CACHE_TTL", 3600)
    MAPPING_NEGATIVE_CACHE_TTL: int = _get_int("MAPPING_NEGATIVE_CACHE_TTL", 60)

    # ── Queues ───────────────────────────────────────────────────────────────
    ORDER_QUEUE_ATTEMPTS: int = _get_int("ORDER_QUEUE_ATTEMPTS", 3)
    ORDER_QUEUE_BACKOFF_SECONDS: float = _get_float("ORDER_QUEUE_BACKOFF_SECONDS", 2.0)
    ORDER_QUEUE_KEEP_COMPLETED: int = _get_int("ORDER_QUEUE_KEEP_COMPLETED", 100)
    ORDER_QUEUE_KEEP_FAILED: int = _get_int("ORDER_QUEUE_KEEP_FAILED", 1000)
    ORDER_QUEUE_CONCURRENCY: int = _get_int("ORDER_QUEUE_CONCURRENCY", 2)
    ORDER_QUEUE_PRIORITY: int = _get_int("ORDER_QUEUE_PRIORITY", 10)

    INVENTORY_QUEUE_ATTEMPTS: int = _get_int("INVENTORY_QUEUE_ATTEMPTS", 5)
    INVENTORY_QUEUE_BACKOFF_SECONDS: float = _get_float("INVENTORY_QUEUE_BACKOFF_SECONDS", 1.0)
    INVENTORY_QUEUE_KEEP_COMPLETED: int = _get_int("INVENTORY_QUEUE_KEEP_COMPLETED", 50)
    INVENTORY_QUEUE_KEEP_FAILED: int = _get_int("INVENTORY_QUEUE_KEEP_FAILED", 500)
    INVENTORY_QUEUE_CONCURRENCY: int = _get_int("INVENTORY_QUEUE_CONCURRENCY", 4)
    INVENTORY_QUEUE_PRIORITY: int = _get_int("INVENTORY_QUEUE_PRIORITY", 1)

    JOB_LEASE_SECONDS: int = _get_int("JOB_LEASE_SECONDS", 120)
    WORKER_POLL_INTERVAL: float = _get_float("WORKER_POLL_INTERVAL", 1.0)
    WORKERS_ENABLED: bool = _get_bool("WORKERS_ENABLED", True)

    # ── Status endpoint ──────────────────────────────────────────────────────
    STATUS_RECENT_LIMIT: int = _get_int("STATUS_RECENT_LIMIT", 10)

    # ── Admin (HTTP Basic for retry/requeue/mapping routes) ─────────────────
    ADMIN_USER: str = os.getenv("ADMIN_USER", "admin")
    ADMIN_PASS: str = os.getenv("ADMIN_PASS", "changeme")

    # Log redacted headers + body preview for every inbound webhook
    WEBHOOK_DEBUG: bool = _get_bool("WEBHOOK_DEBUG", False)

    # ── CORS ─────────────────────────────────────────────────────────────────
    # Comma-separated list in .env, e.g. "https://example.com, https://foo.bar"
    CORS_ORIGINS: list[str] = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]


settings = Settings()
