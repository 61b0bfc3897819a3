# app/webhooks/intake.py
import json
import logging
import time
from typing import Any, Dict, Tuple

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from app.context import ReconciliationContext, get_context
from app.models.webhook_delivery import (
    OUTCOME_ERROR,
    OUTCOME_NO_MAPPING,
    OUTCOME_SUCCESS,
    SOURCE_MARKETPLACE,
    SOURCE_STOREFRONT,
)
from app.webhooks.handlers import (
    STATUS_NO_ACTION,
    STATUS_NO_MAPPING,
    STATUS_QUEUED,
    PayloadError,
    canonical_topic,
    dispatch,
)
from app.webhooks.signature import (
    SignatureError,
    WebhookMeta,
    redact_headers,
    verify_marketplace,
    verify_storefront,
)

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

# path segment -> platform role
SOURCES = {
    "shopify": SOURCE_STOREFRONT,
    "naver": SOURCE_MARKETPLACE,
}


def _verify(ctx: ReconciliationContext, platform: str, body: bytes, headers) -> WebhookMeta:
    s = ctx.settings
    if platform == SOURCE_STOREFRONT:
        return verify_storefront(body, headers, s.SHOPIFY_WEBHOOK_SECRET, s.SHOPIFY_SHOP_DOMAIN or None)
    return verify_marketplace(body, headers, s.NAVER_WEBHOOK_SECRET, s.NAVER_WEBHOOK_TOLERANCE_SECONDS)


def _parse_body(body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(body)
    except ValueError as e:
        raise PayloadError(f"invalid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise PayloadError("payload must be a JSON object")
    return payload


async def process_delivery(
    ctx: ReconciliationContext,
    meta: WebhookMeta,
    payload: Dict[str, Any],
    suffix: str = "",
) -> Tuple[int, Dict[str, Any]]:
    """
    Run the topic handler and record the outcome. Used by the intake route and by the
    admin retry route. Internal faults are logged and reported as 200/error_logged.
    """
    start = time.monotonic()
    try:
        result = await dispatch(ctx, meta, meta.topic, payload, suffix)
    except PayloadError as e:
        logger.warning("[WEBHOOK] payload validation error delivery=%s: %s", meta.delivery_id, e)
        await ctx.webhook_log.set_outcome(meta.delivery_id, OUTCOME_ERROR, error=f"invalid_payload: {e}")
        return 422, {"ok": False, "reason": "invalid_payload", "error": str(e), "deliveryId": meta.delivery_id}
    except Exception as e:
        logger.exception("[WEBHOOK] internal error handling %s delivery=%s", meta.topic, meta.delivery_id)
        await ctx.webhook_log.set_outcome(meta.delivery_id, OUTCOME_ERROR, error=f"{type(e).__name__}: {e}")
        return 200, {"status": "error_logged", "error": "Internal processing error", "deliveryId": meta.delivery_id}

    elapsed_ms = int((time.monotonic() - start) * 1000)
    body: Dict[str, Any] = {"deliveryId": meta.delivery_id, "jobIds": result.job_ids, "processingTime": elapsed_ms}
    body.update(result.detail)

    if result.status == STATUS_QUEUED:
        await ctx.webhook_log.set_outcome(meta.delivery_id, OUTCOME_SUCCESS, job_ids=result.job_ids)
        body["status"] = "queued"
    elif result.status == STATUS_NO_MAPPING:
        await ctx.webhook_log.set_outcome(meta.delivery_id, OUTCOME_NO_MAPPING, error="no active mapping")
        await ctx.idempotency.mark_completed(meta.delivery_id)
        body["status"] = "no_mapping"
    else:
        await ctx.webhook_log.set_outcome(meta.delivery_id, OUTCOME_SUCCESS, job_ids=[])
        await ctx.idempotency.mark_completed(meta.delivery_id)
        body["status"] = "queued"
        body["action"] = STATUS_NO_ACTION

    logger.info("[WEBHOOK] %s %s delivery=%s -> %s jobs=%s (%dms)",
                meta.source, meta.topic, meta.delivery_id, body["status"], result.job_ids, elapsed_ms)
    return 200, body


@router.post("/{source}/{resource}/{action}")
async def receive_webhook(
    source: str,
    resource: str,
    action: str,
    request: Request,
    ctx: ReconciliationContext = Depends(get_context),
) -> Response:
    platform = SOURCES.get(source.lower())
    if platform is None:
        return JSONResponse(status_code=404, content={"ok": False, "reason": "unknown_source"})

    # Read body ONCE; the signature covers these exact bytes
    body = await request.body()
    headers = {k: v for k, v in request.headers.items()}

    if ctx.settings.WEBHOOK_DEBUG:
        logger.info("[WEBHOOK][DEBUG] headers=%s first_256_bytes=%r", redact_headers(headers), body[:256])

    try:
        meta = _verify(ctx, platform, body, request.headers)
    except SignatureError as e:
        client_host = request.client.host if request.client else "-"
        logger.warning("[WEBHOOK] %s signature rejected (%s) path=%s ip=%s",
                       source, e.reason, request.url.path, client_host)
        return JSONResponse(status_code=401, content={"ok": False, "error": "Unauthorized", "reason": e.reason})

    topic = canonical_topic(resource, action)
    if meta.topic.lower() != topic:
        logger.debug("[WEBHOOK] header topic %s routed as %s", meta.topic, topic)
    meta.topic = topic
    request.state.webhook = meta

    decision = await ctx.idempotency.check_and_mark(meta.delivery_id)
    if not decision.proceed:
        await ctx.webhook_log.record_duplicate(meta, body, headers)
        return JSONResponse({"status": "already_processed", "deliveryId": meta.delivery_id,
                             "completed": decision.already_done})

    await ctx.webhook_log.record_receipt(meta, body, headers)

    try:
        payload = _parse_body(body)
    except PayloadError as e:
        logger.warning("[WEBHOOK] unparseable body delivery=%s: %s", meta.delivery_id, e)
        await ctx.webhook_log.set_outcome(meta.delivery_id, OUTCOME_ERROR, error=f"invalid_payload: {e}")
        return JSONResponse(status_code=422, content={"ok": False, "reason": "invalid_payload", "error": str(e)})

    status_code, content = await process_delivery(ctx, meta, payload)
    return JSONResponse(status_code=status_code, content=content)
