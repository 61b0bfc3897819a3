# ---------------------------
# app/workers/queue.py
# ---------------------------
"""
Durable job queue on the SQL store.

Two named queues (order-processing, inventory-sync) share the `sync_jobs` table.
Callers supply the job id, so enqueueing the same delivery twice is a no-op.
Claims are a conditional UPDATE on status='waiting'; only one worker can win a row.
Failed jobs retry with exponential backoff up to the queue's attempt ceiling and
then stay in the table as dead letters until someone requeues them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db import utcnow
from app.models.jobs import (
    INVENTORY_QUEUE,
    ORDER_QUEUE,
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_WAITING,
    SyncJob,
)

logger = logging.getLogger("uvicorn.error")

# how many ready rows a claim looks at before giving up for this poll
_CLAIM_SCAN_LIMIT = 200


class JobNotFound(Exception):
    pass


class JobStateError(Exception):
    pass


@dataclass
class QueueOptions:
    attempts: int = 3
    backoff_seconds: float = 1.0
    priority: int = 0
    keep_completed: int = 100
    keep_failed: int = 1000
    concurrency: int = 1


@dataclass
class EnqueueResult:
    job_id: str
    created: bool


@dataclass
class RetryDecision:
    dead_lettered: bool
    delay: Optional[float] = None


def backoff_delay(base_seconds: float, attempt: int) -> float:
    """Delay before the next run after `attempt` failed attempts (1-based)."""
    return float(base_seconds) * (2 ** max(attempt - 1, 0))


def default_queue_options(settings) -> Dict[str, QueueOptions]:
    return {
        ORDER_QUEUE: QueueOptions(
            attempts=settings.ORDER_QUEUE_ATTEMPTS,
            backoff_seconds=settings.ORDER_QUEUE_BACKOFF_SECONDS,
            priority=settings.ORDER_QUEUE_PRIORITY,
            keep_completed=settings.ORDER_QUEUE_KEEP_COMPLETED,
            keep_failed=settings.ORDER_QUEUE_KEEP_FAILED,
            concurrency=settings.ORDER_QUEUE_CONCURRENCY,
        ),
        INVENTORY_QUEUE: QueueOptions(
            attempts=settings.INVENTORY_QUEUE_ATTEMPTS,
            backoff_seconds=settings.INVENTORY_QUEUE_BACKOFF_SECONDS,
            priority=settings.INVENTORY_QUEUE_PRIORITY,
            keep_completed=settings.INVENTORY_QUEUE_KEEP_COMPLETED,
            keep_failed=settings.INVENTORY_QUEUE_KEEP_FAILED,
            concurrency=settings.INVENTORY_QUEUE_CONCURRENCY,
        ),
    }


class WorkQueue:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession], options: Dict[str, QueueOptions]):
        self.sessionmaker = sessionmaker
        self.options = options

    def _opts(self, queue_name: str) -> QueueOptions:
        try:
            return self.options[queue_name]
        except KeyError:
            raise ValueError(f"unknown queue: {queue_name}")

    # ---------------------------
    # Producer side
    # ---------------------------

    async def enqueue(
        self,
        queue_name: str,
        job_id: str,
        name: str,
        payload: Dict[str, Any],
        *,
        priority: Optional[int] = None,
        attempts: Optional[int] = None,
        backoff: Optional[float] = None,
        partition_key: Optional[str] = None,
    ) -> EnqueueResult:
        opts = self._opts(queue_name)
        async with self.sessionmaker() as db:
            existing = (await db.execute(select(SyncJob.id).where(SyncJob.job_id == job_id))).scalar_one_or_none()
            if existing is not None:
                logger.info("[QUEUE] job %s already queued; skipping", job_id)
                return EnqueueResult(job_id=job_id, created=False)
            now = utcnow()
            db.add(SyncJob(
                job_id=job_id,
                queue_name=queue_name,
                name=name,
                payload=payload,
                priority=opts.priority if priority is None else priority,
                partition_key=partition_key,
                status=STATUS_WAITING,
                attempts=0,
                max_attempts=max(int(opts.attempts if attempts is None else attempts), 1),
                backoff_seconds=opts.backoff_seconds if backoff is None else backoff,
                run_at=now,
                created_at=now,
            ))
            try:
                await db.commit()
            except IntegrityError:
                # concurrent enqueue of the same job id
                await db.rollback()
                logger.info("[QUEUE] job %s inserted concurrently; skipping", job_id)
                return EnqueueResult(job_id=job_id, created=False)
        logger.info("[QUEUE] enqueued %s on %s (%s)", job_id, queue_name, name)
        return EnqueueResult(job_id=job_id, created=True)

    # ---------------------------
    # Consumer side
    # ---------------------------

    async def claim(self, queue_name: str, lease_seconds: int = 120) -> Optional[SyncJob]:
        """
        Take the next runnable job: highest priority first, then FIFO. A job whose
        partition key has an active job, or an older waiting job, is held back so
        related events run in submission order.
        """
        self._opts(queue_name)
        now = utcnow()
        async with self.sessionmaker() as db:
            candidates = (await db.execute(
                select(SyncJob.id, SyncJob.partition_key)
                .where(SyncJob.queue_name == queue_name)
                .where(SyncJob.status == STATUS_WAITING)
                .where(SyncJob.run_at <= now)
                .order_by(SyncJob.priority.desc(), SyncJob.id.asc())
                .limit(_CLAIM_SCAN_LIMIT)
            )).all()
            if not candidates:
                return None

            keys = {k for _, k in candidates if k}
            busy: set[str] = set()
            first_waiting: Dict[str, int] = {}
            if keys:
                busy = set((await db.execute(
                    select(SyncJob.partition_key)
                    .where(SyncJob.queue_name == queue_name)
                    .where(SyncJob.status == STATUS_ACTIVE)
                    .where(SyncJob.partition_key.in_(keys))
                )).scalars())
                first_waiting = dict((await db.execute(
                    select(SyncJob.partition_key, func.min(SyncJob.id))
                    .where(SyncJob.queue_name == queue_name)
                    .where(SyncJob.status == STATUS_WAITING)
                    .where(SyncJob.partition_key.in_(keys))
                    .group_by(SyncJob.partition_key)
                )).all())

            for row_id, key in candidates:
                if key and (key in busy or first_waiting.get(key) != row_id):
                    continue
                res = await db.execute(
                    update(SyncJob)
                    .where(SyncJob.id == row_id)
                    .where(SyncJob.status == STATUS_WAITING)
                    .values(
                        status=STATUS_ACTIVE,
                        attempts=SyncJob.attempts + 1,
                        started_at=now,
                        lease_expires_at=now + timedelta(seconds=lease_seconds),
                        updated_at=now,
                    )
                )
                await db.commit()
                if res.rowcount == 1:
                    return await db.get(SyncJob, row_id, populate_existing=True)
        return None

    async def complete(self, job: SyncJob, outcome: str = "success") -> None:
        now = utcnow()
        async with self.sessionmaker() as db:
            await db.execute(
                update(SyncJob)
                .where(SyncJob.id == job.id)
                .where(SyncJob.status == STATUS_ACTIVE)
                .values(status=STATUS_COMPLETED, outcome=outcome, completed_at=now,
                        lease_expires_at=None, last_error=None, updated_at=now)
            )
            await db.commit()
        await self._trim(job.queue_name)

    async def retry_or_dead_letter(self, job: SyncJob, error: str) -> RetryDecision:
        now = utcnow()
        if job.attempts < job.max_attempts:
            delay = backoff_delay(job.backoff_seconds, job.attempts)
            values: Dict[str, Any] = dict(status=STATUS_WAITING, run_at=now + timedelta(seconds=delay),
                                          lease_expires_at=None, last_error=error, updated_at=now)
            decision = RetryDecision(dead_lettered=False, delay=delay)
            logger.warning("[QUEUE] job %s attempt %d/%d failed; retry in %.1fs: %s",
                           job.job_id, job.attempts, job.max_attempts, delay, error)
        else:
            values = dict(status=STATUS_FAILED, dead_lettered=True, outcome="retries_exhausted",
                          completed_at=now, lease_expires_at=None, last_error=error, updated_at=now)
            decision = RetryDecision(dead_lettered=True)
            logger.error("[QUEUE] job %s dead-lettered after %d attempts: %s", job.job_id, job.attempts, error)
        async with self.sessionmaker() as db:
            await db.execute(
                update(SyncJob).where(SyncJob.id == job.id).where(SyncJob.status == STATUS_ACTIVE).values(**values)
            )
            await db.commit()
        if decision.dead_lettered:
            await self._trim(job.queue_name)
        return decision

    async def fail_permanently(self, job: SyncJob, error: str) -> None:
        now = utcnow()
        async with self.sessionmaker() as db:
            await db.execute(
                update(SyncJob)
                .where(SyncJob.id == job.id)
                .where(SyncJob.status == STATUS_ACTIVE)
                .values(status=STATUS_FAILED, outcome="permanent_error", dead_lettered=False,
                        completed_at=now, lease_expires_at=None, last_error=error, updated_at=now)
            )
            await db.commit()
        logger.error("[QUEUE] job %s failed permanently: %s", job.job_id, error)
        await self._trim(job.queue_name)

    async def requeue(self, job_id: str) -> SyncJob:
        now = utcnow()
        async with self.sessionmaker() as db:
            job = (await db.execute(select(SyncJob).where(SyncJob.job_id == job_id))).scalar_one_or_none()
            if job is None:
                raise JobNotFound(job_id)
            if job.status != STATUS_FAILED:
                raise JobStateError(f"job {job_id} is {job.status}, only failed jobs can be requeued")
            job.status = STATUS_WAITING
            job.attempts = 0
            job.dead_lettered = False
            job.outcome = None
            job.run_at = now
            job.completed_at = None
            await db.commit()
            logger.info("[QUEUE] job %s requeued", job_id)
            return job

    async def recover_expired_leases(self) -> int:
        """Return jobs held by a crashed worker to the queue (or to the dead set when out of attempts)."""
        now = utcnow()
        async with self.sessionmaker() as db:
            exhausted = await db.execute(
                update(SyncJob)
                .where(SyncJob.status == STATUS_ACTIVE)
                .where(SyncJob.lease_expires_at < now)
                .where(SyncJob.attempts >= SyncJob.max_attempts)
                .values(status=STATUS_FAILED, dead_lettered=True, outcome="retries_exhausted",
                        completed_at=now, lease_expires_at=None, last_error="lease expired", updated_at=now)
            )
            released = await db.execute(
                update(SyncJob)
                .where(SyncJob.status == STATUS_ACTIVE)
                .where(SyncJob.lease_expires_at < now)
                .values(status=STATUS_WAITING, run_at=now, lease_expires_at=None,
                        last_error="lease expired", updated_at=now)
            )
            await db.commit()
        total = (exhausted.rowcount or 0) + (released.rowcount or 0)
        if total:
            logger.warning("[QUEUE] recovered %d expired lease(s) (%d dead-lettered)", total, exhausted.rowcount or 0)
        return total

    # ---------------------------
    # Introspection
    # ---------------------------

    async def get(self, job_id: str) -> Optional[SyncJob]:
        async with self.sessionmaker() as db:
            return (await db.execute(select(SyncJob).where(SyncJob.job_id == job_id))).scalar_one_or_none()

    async def jobs_for(self, job_ids: List[str]) -> List[SyncJob]:
        if not job_ids:
            return []
        async with self.sessionmaker() as db:
            rows = await db.execute(select(SyncJob).where(SyncJob.job_id.in_(job_ids)).order_by(SyncJob.id))
            return list(rows.scalars())

    async def retry_count(self, delivery_id: str) -> int:
        """Jobs already enqueued by manual retries of one delivery."""
        async with self.sessionmaker() as db:
            return (await db.execute(
                select(func.count(SyncJob.id)).where(SyncJob.job_id.like(f"{delivery_id}:%:retry%"))
            )).scalar_one()

    async def get_counts(self, queue_name: str) -> Dict[str, int]:
        self._opts(queue_name)
        now = utcnow()
        async with self.sessionmaker() as db:
            by_status = dict((await db.execute(
                select(SyncJob.status, func.count(SyncJob.id))
                .where(SyncJob.queue_name == queue_name)
                .group_by(SyncJob.status)
            )).all())
            delayed = (await db.execute(
                select(func.count(SyncJob.id))
                .where(SyncJob.queue_name == queue_name)
                .where(SyncJob.status == STATUS_WAITING)
                .where(SyncJob.run_at > now)
            )).scalar_one()
            dead = (await db.execute(
                select(func.count(SyncJob.id))
                .where(SyncJob.queue_name == queue_name)
                .where(SyncJob.status == STATUS_FAILED)
                .where(SyncJob.dead_lettered.is_(True))
            )).scalar_one()
        return {
            "waiting": by_status.get(STATUS_WAITING, 0),
            "active": by_status.get(STATUS_ACTIVE, 0),
            "completed": by_status.get(STATUS_COMPLETED, 0),
            "failed": by_status.get(STATUS_FAILED, 0),
            "delayed": delayed,
            "deadLettered": dead,
        }

    async def throughput(self, queue_name: str, window: timedelta = timedelta(hours=1)) -> int:
        since = utcnow() - window
        async with self.sessionmaker() as db:
            return (await db.execute(
                select(func.count(SyncJob.id))
                .where(SyncJob.queue_name == queue_name)
                .where(SyncJob.status == STATUS_COMPLETED)
                .where(SyncJob.completed_at >= since)
            )).scalar_one()

    async def dead_letters(self, queue_name: Optional[str] = None, limit: int = 50) -> List[SyncJob]:
        async with self.sessionmaker() as db:
            stmt = (select(SyncJob)
                    .where(SyncJob.status == STATUS_FAILED)
                    .order_by(SyncJob.id.desc())
                    .limit(limit))
            if queue_name:
                stmt = stmt.where(SyncJob.queue_name == queue_name)
            return list((await db.execute(stmt)).scalars())

    async def _trim(self, queue_name: str) -> None:
        opts = self._opts(queue_name)
        async with self.sessionmaker() as db:
            for status, keep in ((STATUS_COMPLETED, opts.keep_completed), (STATUS_FAILED, opts.keep_failed)):
                stale = list((await db.execute(
                    select(SyncJob.id)
                    .where(SyncJob.queue_name == queue_name)
                    .where(SyncJob.status == status)
                    .order_by(SyncJob.id.desc())
                    .offset(max(keep, 0))
                )).scalars())
                if not stale:
                    continue
                await db.execute(delete(SyncJob).where(SyncJob.id.in_(stale)))
                if status == STATUS_FAILED:
                    logger.warning("[QUEUE] trimmed %d failed job(s) from %s; webhook log keeps the payloads",
                                   len(stale), queue_name)
            await db.commit()
