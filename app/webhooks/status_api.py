# app/webhooks/status_api.py
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from app.context import ReconciliationContext, get_context
from app.db import utcnow
from app.models.jobs import QUEUE_NAMES
from app.models.webhook_delivery import OUTCOME_SUCCESS, OUTCOMES
from app.security import verify_admin
from app.webhooks.intake import process_delivery
from app.webhooks.signature import WebhookMeta
from app.workers.queue import JobNotFound, JobStateError

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/webhooks", tags=["Webhooks Admin"])


async def _redis_state(ctx: ReconciliationContext) -> str:
    try:
        await ctx.redis.ping()
        return "ok"
    except (RedisError, OSError) as e:
        logger.warning("[STATUS] redis ping failed: %s", e)
        return "unreachable"


@router.get("/status")
async def webhook_status(ctx: ReconciliationContext = Depends(get_context)):
    """Queue depths, delivery outcome totals and the latest deliveries. Read-only."""
    queues: Dict[str, Any] = {}
    for name in QUEUE_NAMES:
        counts = await ctx.queue.get_counts(name)
        counts["completedLastHour"] = await ctx.queue.throughput(name)
        queues[name] = counts

    stats = await ctx.webhook_log.outcome_totals()
    recent = await ctx.webhook_log.recent(limit=ctx.settings.STATUS_RECENT_LIMIT)
    redis_state = await _redis_state(ctx)
    return {
        "status": "healthy" if redis_state == "ok" else "degraded",
        "queues": queues,
        "stats": stats,
        "recentLogs": [r.summary() for r in recent],
        "redis": redis_state,
        "timestamp": utcnow().isoformat(),
    }


@router.post("/retry/{delivery_id}", dependencies=[Depends(verify_admin)])
async def retry_delivery(delivery_id: str, ctx: ReconciliationContext = Depends(get_context)):
    """Re-run the handler on the stored payload of a failed or unmapped delivery."""
    row = await ctx.webhook_log.latest(delivery_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Delivery not found")
    if row.processing_outcome == OUTCOME_SUCCESS:
        raise HTTPException(status_code=400, detail="Delivery already processed successfully")

    try:
        payload = json.loads(row.raw_payload)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=f"Stored payload is not valid JSON: {e}")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=422, detail="Stored payload is not a JSON object")

    attempt = await ctx.queue.retry_count(delivery_id) + 1
    await ctx.idempotency.clear(delivery_id)
    meta = WebhookMeta(delivery_id=row.delivery_id, topic=row.event_topic, source=row.source)
    logger.info("[WEBHOOK] manual retry #%d of delivery=%s (%s %s)", attempt, delivery_id, row.source, row.event_topic)

    status_code, content = await process_delivery(ctx, meta, payload, suffix=f":retry{attempt}")
    content["retry"] = attempt
    return JSONResponse(status_code=status_code, content=content)


@router.get("/logs", dependencies=[Depends(verify_admin)])
async def list_deliveries(
    outcome: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    ctx: ReconciliationContext = Depends(get_context),
):
    if outcome and outcome not in OUTCOMES:
        raise HTTPException(status_code=400, detail=f"outcome must be one of {', '.join(OUTCOMES)}")
    rows = await ctx.webhook_log.recent(limit=limit, outcome=outcome)
    return {"count": len(rows), "items": [r.summary() for r in rows]}


@router.get("/deliveries/{delivery_id}", dependencies=[Depends(verify_admin)])
async def delivery_detail(delivery_id: str, ctx: ReconciliationContext = Depends(get_context)):
    rows = await ctx.webhook_log.history(delivery_id)
    if not rows:
        raise HTTPException(status_code=404, detail="Delivery not found")
    job_ids: list[str] = []
    for r in rows:
        for jid in r.job_ids or []:
            if jid not in job_ids:
                job_ids.append(jid)
    jobs = await ctx.queue.jobs_for(job_ids)
    return {
        "deliveryId": delivery_id,
        "idempotency": await ctx.idempotency.peek(delivery_id),
        "log": [r.summary() for r in rows],
        "jobs": [j.to_dict() for j in jobs],
    }


@router.get("/dead-letters", dependencies=[Depends(verify_admin)])
async def list_dead_letters(
    queue: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    ctx: ReconciliationContext = Depends(get_context),
):
    if queue and queue not in QUEUE_NAMES:
        raise HTTPException(status_code=400, detail=f"queue must be one of {', '.join(QUEUE_NAMES)}")
    jobs = await ctx.queue.dead_letters(queue, limit)
    return {"count": len(jobs), "items": [j.to_dict() for j in jobs]}


# four segments, so it never collides with /webhooks/{source}/{resource}/{action}
@router.post("/admin/jobs/{job_id}/requeue", dependencies=[Depends(verify_admin)])
async def requeue_job(job_id: str, ctx: ReconciliationContext = Depends(get_context)):
    try:
        job = await ctx.queue.requeue(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except JobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"ok": True, "job": job.to_dict()}
