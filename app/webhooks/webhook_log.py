# app/webhooks/webhook_log.py
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.webhook_delivery import (
    OUTCOME_DUPLICATE,
    OUTCOME_ERROR,
    OUTCOME_NO_MAPPING,
    OUTCOME_SUCCESS,
    WebhookDelivery,
)
from app.webhooks.signature import WebhookMeta, redact_headers

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")


async def _best_effort(what: str, fn: Callable[[], Awaitable[T]]) -> T | None:
    """Await a log write; failures are logged, never raised to the caller."""
    try:
        return await fn()
    except Exception:
        logger.exception("[WEBHOOK-LOG] %s failed", what)
        return None


class WebhookLog:
    """Audit trail of every inbound delivery. Rows are never deleted."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self.sessionmaker = sessionmaker

    async def _insert(self, meta: WebhookMeta, raw_body: bytes, headers: Mapping[str, str],
                      outcome: str | None) -> int:
        async with self.sessionmaker() as db:
            row = WebhookDelivery(
                delivery_id=meta.delivery_id,
                source=meta.source,
                event_topic=meta.topic,
                raw_payload=raw_body.decode("utf-8", "replace"),
                headers=redact_headers(dict(headers)),
                received_at=meta.received_at,
                processing_outcome=outcome,
                job_ids=[],
            )
            db.add(row)
            await db.commit()
            return row.id

    async def record_receipt(self, meta: WebhookMeta, raw_body: bytes, headers: Mapping[str, str]) -> int | None:
        return await _best_effort(
            f"receipt delivery={meta.delivery_id}",
            lambda: self._insert(meta, raw_body, headers, None),
        )

    async def record_duplicate(self, meta: WebhookMeta, raw_body: bytes, headers: Mapping[str, str]) -> int | None:
        return await _best_effort(
            f"duplicate delivery={meta.delivery_id}",
            lambda: self._insert(meta, raw_body, headers, OUTCOME_DUPLICATE),
        )

    async def _set_outcome(self, delivery_id: str, outcome: str, error: str | None,
                           job_ids: list[str] | None) -> bool:
        async with self.sessionmaker() as db:
            row = (await db.execute(
                select(WebhookDelivery)
                .where(WebhookDelivery.delivery_id == delivery_id)
                .where((WebhookDelivery.processing_outcome.is_(None))
                       | (WebhookDelivery.processing_outcome != OUTCOME_DUPLICATE))
                .order_by(WebhookDelivery.id.desc())
                .limit(1)
            )).scalar_one_or_none()
            if row is None:
                logger.warning("[WEBHOOK-LOG] no log row for delivery=%s (outcome=%s)", delivery_id, outcome)
                return False
            row.processing_outcome = outcome
            row.error_detail = error
            if job_ids is not None:
                row.job_ids = list(job_ids)
            await db.commit()
            return True

    async def set_outcome(self, delivery_id: str, outcome: str, error: str | None = None,
                          job_ids: list[str] | None = None) -> bool | None:
        return await _best_effort(
            f"outcome delivery={delivery_id}",
            lambda: self._set_outcome(delivery_id, outcome, error, job_ids),
        )

    # ---- read side (status / retry) ----

    async def latest(self, delivery_id: str) -> WebhookDelivery | None:
        async with self.sessionmaker() as db:
            return (await db.execute(
                select(WebhookDelivery)
                .where(WebhookDelivery.delivery_id == delivery_id)
                .where((WebhookDelivery.processing_outcome.is_(None))
                       | (WebhookDelivery.processing_outcome != OUTCOME_DUPLICATE))
                .order_by(WebhookDelivery.id.desc())
                .limit(1)
            )).scalar_one_or_none()

    async def history(self, delivery_id: str) -> list[WebhookDelivery]:
        async with self.sessionmaker() as db:
            rows = await db.execute(
                select(WebhookDelivery)
                .where(WebhookDelivery.delivery_id == delivery_id)
                .order_by(WebhookDelivery.id.asc())
            )
            return list(rows.scalars())

    async def recent(self, limit: int = 10, outcome: str | None = None) -> list[WebhookDelivery]:
        async with self.sessionmaker() as db:
            stmt = select(WebhookDelivery).order_by(WebhookDelivery.id.desc()).limit(limit)
            if outcome:
                stmt = stmt.where(WebhookDelivery.processing_outcome == outcome)
            return list((await db.execute(stmt)).scalars())

    async def outcome_totals(self) -> dict[str, Any]:
        async with self.sessionmaker() as db:
            rows = (await db.execute(
                select(WebhookDelivery.processing_outcome, func.count(WebhookDelivery.id))
                .group_by(WebhookDelivery.processing_outcome)
            )).all()
            last = (await db.execute(
                select(func.max(WebhookDelivery.updated_at))
                .where(WebhookDelivery.processing_outcome == OUTCOME_SUCCESS)
            )).scalar_one_or_none()
        counts = {outcome: n for outcome, n in rows}
        return {
            "processed": counts.get(OUTCOME_SUCCESS, 0),
            "failed": counts.get(OUTCOME_ERROR, 0),
            "duplicates": counts.get(OUTCOME_DUPLICATE, 0),
            "noMapping": counts.get(OUTCOME_NO_MAPPING, 0),
            "pending": counts.get(None, 0),
            "lastProcessed": last.isoformat() if last else None,
        }
