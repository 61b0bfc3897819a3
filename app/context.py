#=================================================================
# app/context.py
# Everything the webhook routes and the worker pool share, built once.
#=================================================================
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.config import Settings
from app.db import build_sessionmaker, create_engine
from app.mapping.mapping_lookup import MappingLookup
from app.mapping.mapping_store import MappingStore
from app.platforms.marketplace import MarketplaceClient, NaverCommerceClient
from app.platforms.storefront import ShopifyAdminClient, StorefrontClient
from app.webhooks.idempotency import IdempotencyGuard
from app.webhooks.webhook_log import WebhookLog
from app.workers.queue import WorkQueue, default_queue_options

logger = logging.getLogger("uvicorn.error")


class ConfigurationError(RuntimeError):
    """A required collaborator or secret is missing at startup."""


@dataclass
class ReconciliationContext:
    settings: Settings
    sessionmaker: async_sessionmaker[AsyncSession]
    redis: Redis
    queue: WorkQueue
    idempotency: IdempotencyGuard
    webhook_log: WebhookLog
    mapping_store: MappingStore
    mapping_lookup: MappingLookup
    marketplace: MarketplaceClient
    storefront: StorefrontClient
    engine: Optional[AsyncEngine] = None

    async def aclose(self) -> None:
        try:
            await self.redis.aclose()
        except Exception as e:
            logger.warning("[CONTEXT] redis close failed: %s", e)
        if self.engine is not None:
            await self.engine.dispose()


def _require(settings: Settings, *names: str) -> None:
    missing = [n for n in names if not str(getattr(settings, n, "") or "").strip()]
    if missing:
        raise ConfigurationError(f"missing required settings: {', '.join(missing)}")


def assemble_context(
    settings: Settings,
    sessionmaker: async_sessionmaker[AsyncSession],
    redis: Redis,
    marketplace: MarketplaceClient,
    storefront: StorefrontClient,
    engine: Optional[AsyncEngine] = None,
) -> ReconciliationContext:
    """Wire the core components around already-built clients."""
    store = MappingStore(sessionmaker)
    return ReconciliationContext(
        settings=settings,
        sessionmaker=sessionmaker,
        redis=redis,
        queue=WorkQueue(sessionmaker, default_queue_options(settings)),
        idempotency=IdempotencyGuard(
            redis,
            processing_ttl=settings.IDEMPOTENCY_PROCESSING_TTL,
            completed_ttl=settings.IDEMPOTENCY_COMPLETED_TTL,
        ),
        webhook_log=WebhookLog(sessionmaker),
        mapping_store=store,
        mapping_lookup=MappingLookup(
            store,
            redis,
            ttl=settings.MAPPING_CACHE_TTL,
            negative_ttl=settings.MAPPING_NEGATIVE_CACHE_TTL,
        ),
        marketplace=marketplace,
        storefront=storefront,
        engine=engine,
    )


def build_context(settings: Settings) -> ReconciliationContext:
    """Production wiring from settings. Missing credentials fail here, not at first use."""
    _require(
        settings,
        "DATABASE_URL",
        "REDIS_URL",
        "SHOPIFY_WEBHOOK_SECRET",
        "SHOPIFY_SHOP_DOMAIN",
        "SHOPIFY_ADMIN_TOKEN",
        "SHOPIFY_LOCATION_ID",
        "NAVER_CLIENT_ID",
        "NAVER_CLIENT_SECRET",
    )
    engine = create_engine(settings.DATABASE_URL)
    redis = Redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT,
    )
    marketplace = NaverCommerceClient(
        settings.NAVER_API_BASE_URL,
        settings.NAVER_CLIENT_ID,
        settings.NAVER_CLIENT_SECRET,
        timeout=settings.PLATFORM_HTTP_TIMEOUT,
    )
    storefront = ShopifyAdminClient(
        settings.SHOPIFY_SHOP_DOMAIN,
        settings.SHOPIFY_ADMIN_TOKEN,
        settings.SHOPIFY_LOCATION_ID,
        api_version=settings.SHOPIFY_API_VERSION,
        timeout=settings.PLATFORM_HTTP_TIMEOUT,
    )
    if not settings.NAVER_WEBHOOK_SECRET:
        logger.warning("[CONTEXT] NAVER_WEBHOOK_SECRET not set; marketplace webhooks will be rejected")
    return assemble_context(settings, build_sessionmaker(engine), redis, marketplace, storefront, engine=engine)


def get_context(request: Request) -> ReconciliationContext:
    ctx = getattr(request.app.state, "context", None)
    if ctx is None:
        raise ConfigurationError("reconciliation context not initialised")
    return ctx
