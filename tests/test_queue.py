from datetime import timedelta

import pytest
from sqlalchemy import update

from app.db import utcnow
from app.models.jobs import INVENTORY_QUEUE, ORDER_QUEUE, STATUS_ACTIVE, STATUS_FAILED, STATUS_WAITING, SyncJob
from app.workers.queue import JobNotFound, JobStateError, backoff_delay

from conftest import run


def make_due(ctx):
    async def _go():
        async with ctx.sessionmaker() as db:
            await db.execute(update(SyncJob).values(run_at=utcnow() - timedelta(seconds=1)))
            await db.commit()
    run(_go())


def test_backoff_doubles_per_attempt():
    assert [backoff_delay(2.0, n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]


def test_same_job_id_is_enqueued_once(ctx):
    first = run(ctx.queue.enqueue(ORDER_QUEUE, "d-1:order-deduct", "process-order", {"order_id": "1"}))
    second = run(ctx.queue.enqueue(ORDER_QUEUE, "d-1:order-deduct", "process-order", {"order_id": "1"}))
    assert first.created is True
    assert second.created is False
    assert run(ctx.queue.get_counts(ORDER_QUEUE))["waiting"] == 1


def test_queue_defaults_come_from_settings(ctx):
    run(ctx.queue.enqueue(ORDER_QUEUE, "o", "process-order", {}))
    run(ctx.queue.enqueue(INVENTORY_QUEUE, "i", "sync-inventory-level", {}))
    order_job = run(ctx.queue.get("o"))
    inv_job = run(ctx.queue.get("i"))
    assert (order_job.max_attempts, order_job.backoff_seconds, order_job.priority) == (3, 2.0, 10)
    assert (inv_job.max_attempts, inv_job.backoff_seconds, inv_job.priority) == (5, 1.0, 1)


def test_unknown_queue_rejected(ctx):
    with pytest.raises(ValueError):
        run(ctx.queue.enqueue("nope", "x", "process-order", {}))


def test_claim_prefers_priority_then_fifo(ctx):
    run(ctx.queue.enqueue(ORDER_QUEUE, "low-1", "process-order", {}, priority=1))
    run(ctx.queue.enqueue(ORDER_QUEUE, "high", "process-order", {}, priority=50))
    run(ctx.queue.enqueue(ORDER_QUEUE, "low-2", "process-order", {}, priority=1))
    claimed = [run(ctx.queue.claim(ORDER_QUEUE)).job_id for _ in range(3)]
    assert claimed == ["high", "low-1", "low-2"]


def test_claim_is_exclusive_and_counts_attempts(ctx):
    run(ctx.queue.enqueue(ORDER_QUEUE, "only", "process-order", {}))
    job = run(ctx.queue.claim(ORDER_QUEUE))
    assert job.status == STATUS_ACTIVE
    assert job.attempts == 1
    assert run(ctx.queue.claim(ORDER_QUEUE)) is None


def test_partition_key_holds_back_later_jobs(ctx):
    run(ctx.queue.enqueue(ORDER_QUEUE, "create", "process-order", {}, partition_key="order:1"))
    run(ctx.queue.enqueue(ORDER_QUEUE, "cancel", "restore-order", {}, partition_key="order:1"))
    run(ctx.queue.enqueue(ORDER_QUEUE, "other", "process-order", {}, partition_key="order:2"))

    first = run(ctx.queue.claim(ORDER_QUEUE))
    assert first.job_id == "create"
    # order:1 is busy, so the next claim skips ahead to order:2
    assert run(ctx.queue.claim(ORDER_QUEUE)).job_id == "other"
    assert run(ctx.queue.claim(ORDER_QUEUE)) is None

    run(ctx.queue.complete(first))
    assert run(ctx.queue.claim(ORDER_QUEUE)).job_id == "cancel"


def test_partition_waits_for_earlier_job_in_backoff(ctx):
    run(ctx.queue.enqueue(ORDER_QUEUE, "create", "process-order", {}, partition_key="order:1"))
    run(ctx.queue.enqueue(ORDER_QUEUE, "cancel", "restore-order", {}, partition_key="order:1"))
    job = run(ctx.queue.claim(ORDER_QUEUE))
    decision = run(ctx.queue.retry_or_dead_letter(job, "boom"))
    assert decision.dead_lettered is False
    # "create" is delayed; "cancel" must not overtake it
    assert run(ctx.queue.claim(ORDER_QUEUE)) is None
    make_due(ctx)
    assert run(ctx.queue.claim(ORDER_QUEUE)).job_id == "create"


def test_retry_then_dead_letter_with_growing_delays(ctx):
    run(ctx.queue.enqueue(ORDER_QUEUE, "flaky", "process-order", {}))
    delays = []
    for _ in range(3):
        make_due(ctx)
        job = run(ctx.queue.claim(ORDER_QUEUE))
        decision = run(ctx.queue.retry_or_dead_letter(job, "HTTP 503"))
        if decision.dead_lettered:
            break
        delays.append(decision.delay)

    assert decision.dead_lettered is True
    assert delays == [2.0, 4.0]
    final = run(ctx.queue.get("flaky"))
    assert final.status == STATUS_FAILED
    assert final.attempts == 3
    assert final.dead_lettered is True
    assert final.last_error == "HTTP 503"
    assert run(ctx.queue.get_counts(ORDER_QUEUE))["deadLettered"] == 1
    assert [j.job_id for j in run(ctx.queue.dead_letters(ORDER_QUEUE))] == ["flaky"]


def test_permanent_failure_skips_retries(ctx):
    run(ctx.queue.enqueue(ORDER_QUEUE, "bad", "process-order", {}))
    job = run(ctx.queue.claim(ORDER_QUEUE))
    run(ctx.queue.fail_permanently(job, "HTTP 400"))
    final = run(ctx.queue.get("bad"))
    assert final.status == STATUS_FAILED
    assert final.outcome == "permanent_error"
    assert final.attempts == 1
    assert final.dead_lettered is False


def test_requeue_failed_job(ctx):
    run(ctx.queue.enqueue(ORDER_QUEUE, "bad", "process-order", {}))
    job = run(ctx.queue.claim(ORDER_QUEUE))
    run(ctx.queue.fail_permanently(job, "HTTP 400"))
    requeued = run(ctx.queue.requeue("bad"))
    assert requeued.status == STATUS_WAITING
    assert requeued.attempts == 0
    assert run(ctx.queue.claim(ORDER_QUEUE)).job_id == "bad"


def test_requeue_rejects_unknown_and_live_jobs(ctx):
    with pytest.raises(JobNotFound):
        run(ctx.queue.requeue("missing"))
    run(ctx.queue.enqueue(ORDER_QUEUE, "live", "process-order", {}))
    with pytest.raises(JobStateError):
        run(ctx.queue.requeue("live"))


def test_expired_lease_returns_job_to_queue(ctx):
    run(ctx.queue.enqueue(ORDER_QUEUE, "crashed", "process-order", {}))
    run(ctx.queue.claim(ORDER_QUEUE, lease_seconds=-1))
    assert run(ctx.queue.recover_expired_leases()) == 1
    job = run(ctx.queue.get("crashed"))
    assert job.status == STATUS_WAITING
    assert job.last_error == "lease expired"
    assert run(ctx.queue.claim(ORDER_QUEUE)).attempts == 2


def test_completed_jobs_are_trimmed(ctx):
    ctx.queue.options[INVENTORY_QUEUE].keep_completed = 2
    for i in range(4):
        run(ctx.queue.enqueue(INVENTORY_QUEUE, f"j{i}", "sync-inventory-level", {}))
        run(ctx.queue.complete(run(ctx.queue.claim(INVENTORY_QUEUE))))
    counts = run(ctx.queue.get_counts(INVENTORY_QUEUE))
    assert counts["completed"] == 2
    assert run(ctx.queue.get("j0")) is None
    assert run(ctx.queue.get("j3")) is not None
    assert run(ctx.queue.throughput(INVENTORY_QUEUE)) == 2
