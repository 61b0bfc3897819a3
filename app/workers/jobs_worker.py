# ---------------------------
# app/workers/jobs_worker.py
# ---------------------------
import asyncio
import logging
from typing import TYPE_CHECKING, List, Optional

from app.models.jobs import QUEUE_NAMES, SyncJob
from app.models.webhook_delivery import OUTCOME_ERROR, OUTCOME_NO_MAPPING, OUTCOME_SUCCESS
from app.platforms.errors import PermanentPlatformError
from app.workers.reconcile import OUTCOME_NO_MAPPING as JOB_NO_MAPPING
from app.workers.reconcile import Reconciler, UnknownJobError

if TYPE_CHECKING:
    from app.context import ReconciliationContext

logger = logging.getLogger("uvicorn.error")


class WorkerPool:
    """
    One consumer loop per queue, each running up to the queue's `concurrency`
    jobs at a time. Jobs live in the SQL queue, so a restart loses nothing:
    expired leases are returned to the queue on the next poll.
    """

    def __init__(self, ctx: "ReconciliationContext", queue_names: Optional[List[str]] = None):
        self.ctx = ctx
        self.reconciler = Reconciler(ctx)
        self.queue_names = list(queue_names or QUEUE_NAMES)
        self.poll_interval = ctx.settings.WORKER_POLL_INTERVAL
        self.lease_seconds = ctx.settings.JOB_LEASE_SECONDS
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._inflight: set[asyncio.Task] = set()

    def start(self) -> None:
        self._stop.clear()
        for name in self.queue_names:
            self._tasks.append(asyncio.create_task(self._consume(name), name=f"worker:{name}"))
        logger.info("[WORKER] started for queues %s", self.queue_names)

    async def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        pending = self._tasks + list(self._inflight)
        if not pending:
            return
        try:
            await asyncio.wait_for(asyncio.gather(*pending, return_exceptions=True), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("[WORKER] shutdown timed out; cancelling %d task(s)", len(pending))
            for t in pending:
                t.cancel()
        self._tasks.clear()
        logger.info("[WORKER] stopped")

    async def _consume(self, queue_name: str) -> None:
        slots = asyncio.Semaphore(max(self.ctx.queue.options[queue_name].concurrency, 1))
        while not self._stop.is_set():
            await slots.acquire()
            try:
                await self.ctx.queue.recover_expired_leases()
                job = await self.ctx.queue.claim(queue_name, self.lease_seconds)
            except Exception as e:
                logger.error("[WORKER] %s poll failed: %s", queue_name, e)
                slots.release()
                await self._sleep()
                continue
            if job is None:
                slots.release()
                await self._sleep()
                continue
            task = asyncio.create_task(self._run_slot(job, slots))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _run_slot(self, job: SyncJob, slots: asyncio.Semaphore) -> None:
        try:
            await self.process_one(job)
        finally:
            slots.release()

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def run_once(self, queue_name: str) -> Optional[SyncJob]:
        """Claim and process a single job inline. Returns the job, or None if nothing was ready."""
        job = await self.ctx.queue.claim(queue_name, self.lease_seconds)
        if job is None:
            return None
        await self.process_one(job)
        return job

    async def drain(self, queue_name: str, limit: int = 100) -> int:
        n = 0
        while n < limit and await self.run_once(queue_name) is not None:
            n += 1
        return n

    async def process_one(self, job: SyncJob) -> str:
        delivery_id = (job.payload or {}).get("delivery_id")
        logger.info("[WORKER] running %s (%s) attempt %d/%d", job.job_id, job.name, job.attempts, job.max_attempts)
        try:
            outcome = await self.reconciler.run(job)
        except (PermanentPlatformError, UnknownJobError) as e:
            await self.ctx.queue.fail_permanently(job, str(e))
            if delivery_id:
                await self.ctx.webhook_log.set_outcome(delivery_id, OUTCOME_ERROR, error=f"{job.job_id}: {e}")
                await self.ctx.idempotency.mark_completed(delivery_id)
            return "permanent_error"
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            decision = await self.ctx.queue.retry_or_dead_letter(job, error)
            if decision.dead_lettered:
                if delivery_id:
                    await self.ctx.webhook_log.set_outcome(
                        delivery_id, OUTCOME_ERROR, error=f"{job.job_id} dead-lettered: {error}")
                return "dead_lettered"
            return "retrying"

        await self.ctx.queue.complete(job, outcome)
        if delivery_id:
            log_outcome = OUTCOME_NO_MAPPING if outcome == JOB_NO_MAPPING else OUTCOME_SUCCESS
            await self.ctx.webhook_log.set_outcome(
                delivery_id, log_outcome,
                error="no active mapping at processing time" if log_outcome == OUTCOME_NO_MAPPING else None,
            )
            await self.ctx.idempotency.mark_completed(delivery_id)
        logger.info("[WORKER] %s done: %s", job.job_id, outcome)
        return outcome
