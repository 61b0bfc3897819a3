# app/webhooks/idempotency.py
from __future__ import annotations

import logging
from dataclasses import dataclass

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger("uvicorn.error")

PROCESSING = "processing"
COMPLETED = "completed"


def idempotency_key(delivery_id: str) -> str:
    return f"webhook:processed:{delivery_id}"


@dataclass
class IdempotencyDecision:
    proceed: bool
    already_done: bool = False
    degraded: bool = False  # store unreachable; allowed through


class IdempotencyGuard:
    """
    Delivery-id marks in Redis. absent -> processing happens in a single SET NX,
    so two concurrent deliveries of the same webhook cannot both proceed.
    Store outages fail open: a duplicate is cheaper than a lost webhook.
    """

    def __init__(self, redis: Redis, processing_ttl: int = 1800, completed_ttl: int = 86400):
        self.redis = redis
        self.processing_ttl = processing_ttl
        self.completed_ttl = completed_ttl

    async def check_and_mark(self, delivery_id: str) -> IdempotencyDecision:
        key = idempotency_key(delivery_id)
        try:
            created = await self.redis.set(key, PROCESSING, ex=self.processing_ttl, nx=True)
            if created:
                return IdempotencyDecision(proceed=True)
            current = await self.redis.get(key)
        except (RedisError, OSError) as e:
            logger.error("[IDEMPOTENCY] store unavailable, allowing delivery=%s: %s", delivery_id, e)
            return IdempotencyDecision(proceed=True, degraded=True)

        if isinstance(current, bytes):
            current = current.decode("utf-8")
        if current is None:
            # expired between SET NX and GET; treat as in-flight rather than racing again
            current = PROCESSING
        logger.info("[IDEMPOTENCY] duplicate delivery=%s state=%s", delivery_id, current)
        return IdempotencyDecision(proceed=False, already_done=(current == COMPLETED))

    async def mark_completed(self, delivery_id: str) -> None:
        try:
            await self.redis.set(idempotency_key(delivery_id), COMPLETED, ex=self.completed_ttl)
        except (RedisError, OSError) as e:
            logger.error("[IDEMPOTENCY] could not mark delivery=%s completed: %s", delivery_id, e)

    async def clear(self, delivery_id: str) -> None:
        try:
            await self.redis.delete(idempotency_key(delivery_id))
        except (RedisError, OSError) as e:
            logger.error("[IDEMPOTENCY] could not clear delivery=%s: %s", delivery_id, e)

    async def peek(self, delivery_id: str) -> str | None:
        try:
            value = await self.redis.get(idempotency_key(delivery_id))
        except (RedisError, OSError) as e:
            logger.warning("[IDEMPOTENCY] peek failed for delivery=%s: %s", delivery_id, e)
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value
