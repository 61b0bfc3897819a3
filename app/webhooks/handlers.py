# app/webhooks/handlers.py
"""
Intake-side event handlers: turn one verified delivery into queued jobs.

Mappings are consulted here only to decide whether there is anything to do;
the workers resolve them again when the job runs.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from app.models.jobs import INVENTORY_QUEUE, ORDER_QUEUE
from app.models.webhook_delivery import SOURCE_MARKETPLACE, SOURCE_STOREFRONT
from app.webhooks.payload_models import (
    NaverOrderEvent,
    ShopifyInventoryLevel,
    ShopifyOrder,
    ShopifyProduct,
)
from app.webhooks.signature import WebhookMeta

if TYPE_CHECKING:
    from app.context import ReconciliationContext

logger = logging.getLogger("uvicorn.error")

STATUS_QUEUED = "queued"
STATUS_NO_MAPPING = "no_mapping"
STATUS_NO_ACTION = "no_action"

JOB_PROCESS_ORDER = "process-order"
JOB_RESTORE_ORDER = "restore-order"
JOB_SYNC_PRODUCT = "sync-product"
JOB_SYNC_INVENTORY_LEVEL = "sync-inventory-level"
JOB_SYNC_STOREFRONT_STOCK = "sync-storefront-stock"

# route spellings -> canonical topic
TOPIC_ALIASES = {
    "orders/cancel": "orders/cancelled",
    "orders/update": "orders/updated",
    "inventory/update": "inventory_levels/update",
    "order/status": "orders/status",
}


class PayloadError(Exception):
    """Body does not have the shape the topic requires (maps to HTTP 422)."""


@dataclass
class HandlerResult:
    status: str
    job_ids: List[str] = field(default_factory=list)
    detail: Dict[str, Any] = field(default_factory=dict)


Handler = Callable[["ReconciliationContext", WebhookMeta, Dict[str, Any], str], Awaitable[HandlerResult]]


def canonical_topic(resource: str, action: str) -> str:
    topic = f"{resource}/{action}".strip("/").lower()
    return TOPIC_ALIASES.get(topic, topic)


def job_id_for(delivery_id: str, operation: str, suffix: str = "") -> str:
    return f"{delivery_id}:{operation}{suffix}"


def _parse(model, payload: Dict[str, Any]):
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise PayloadError(str(e)) from e


def _order_lines(order: ShopifyOrder) -> List[Dict[str, Any]]:
    """Line items with a SKU and positive quantity, merged per SKU."""
    merged: "OrderedDict[str, int]" = OrderedDict()
    for li in order.line_items:
        sku = (li.sku or "").strip()
        if not sku or li.quantity <= 0:
            continue
        merged[sku] = merged.get(sku, 0) + int(li.quantity)
    return [{"sku": sku, "quantity": qty} for sku, qty in merged.items()]


async def _split_mapped(ctx: "ReconciliationContext", lines: List[Dict[str, Any]]) -> Tuple[List[str], List[str]]:
    mapped: List[str] = []
    unmapped: List[str] = []
    for line in lines:
        if await ctx.mapping_lookup.find_active_by_sku(line["sku"]):
            mapped.append(line["sku"])
        else:
            unmapped.append(line["sku"])
    return mapped, unmapped


async def _enqueue_order_job(ctx: "ReconciliationContext", meta: WebhookMeta, order: ShopifyOrder,
                             action: str, suffix: str) -> HandlerResult:
    lines = _order_lines(order)
    if not lines:
        logger.info("[WEBHOOK] order %s has no SKU line items; nothing to do", order.id)
        return HandlerResult(STATUS_NO_ACTION, detail={"orderId": order.id})

    mapped, unmapped = await _split_mapped(ctx, lines)
    if unmapped:
        logger.warning("[WEBHOOK] order %s: no active mapping for %s", order.id, unmapped)
    if not mapped:
        return HandlerResult(STATUS_NO_MAPPING, detail={"orderId": order.id, "unmapped": unmapped})

    name = JOB_PROCESS_ORDER if action == "deduct" else JOB_RESTORE_ORDER
    job_id = job_id_for(meta.delivery_id, f"order-{action}", suffix)
    await ctx.queue.enqueue(
        ORDER_QUEUE,
        job_id,
        name,
        {
            "delivery_id": meta.delivery_id,
            "topic": meta.topic,
            "order_id": str(order.id),
            "order_number": order.order_number,
            "action": action,
            "line_items": lines,
            "cancel_reason": order.cancel_reason,
        },
        partition_key=f"order:{order.id}",
    )
    return HandlerResult(STATUS_QUEUED, job_ids=[job_id],
                         detail={"orderId": order.id, "inventoryUpdatesCount": len(mapped), "unmapped": unmapped})


# ---------------------------
# Storefront (Shopify)
# ---------------------------

async def handle_order_create(ctx, meta, payload, suffix=""):
    order = _parse(ShopifyOrder, payload)
    return await _enqueue_order_job(ctx, meta, order, "deduct", suffix)


async def handle_order_cancelled(ctx, meta, payload, suffix=""):
    order = _parse(ShopifyOrder, payload)
    return await _enqueue_order_job(ctx, meta, order, "restore", suffix)


async def handle_order_updated(ctx, meta, payload, suffix=""):
    order = _parse(ShopifyOrder, payload)
    if order.cancelled_at:
        return await _enqueue_order_job(ctx, meta, order, "restore", suffix)
    return HandlerResult(STATUS_NO_ACTION, detail={"orderId": order.id, "action": "no_action"})


async def handle_product_update(ctx, meta, payload, suffix=""):
    product = _parse(ShopifyProduct, payload)
    updates: List[Dict[str, Any]] = []
    by_variant = await ctx.mapping_lookup.find_active_by_product(product.id)
    for variant in product.variants:
        mapping = by_variant.get(str(variant.id))
        if mapping is None:
            # variant not linked to this product row yet; fall back to its own id or sku
            mapping = await ctx.mapping_lookup.find_active_by_variant(variant.id, variant.sku)
        if mapping is None:
            continue
        updates.append({
            "sku": mapping.sku,
            "variant_id": str(variant.id),
            "inventory_quantity": variant.inventory_quantity,
            # recorded for audit; prices are not pushed
            "price": variant.price,
            "compare_at_price": variant.compare_at_price,
        })
    if not updates:
        logger.info("[WEBHOOK] no active mapping for product %s", product.id)
        return HandlerResult(STATUS_NO_MAPPING, detail={"productId": product.id})

    job_id = job_id_for(meta.delivery_id, "product-sync", suffix)
    await ctx.queue.enqueue(
        INVENTORY_QUEUE,
        job_id,
        JOB_SYNC_PRODUCT,
        {"delivery_id": meta.delivery_id, "topic": meta.topic, "product_id": str(product.id),
         "title": product.title, "updates": updates},
        partition_key=f"product:{product.id}",
    )
    return HandlerResult(STATUS_QUEUED, job_ids=[job_id], detail={"productId": product.id, "updatesCount": len(updates)})


async def handle_inventory_level_update(ctx, meta, payload, suffix=""):
    level = _parse(ShopifyInventoryLevel, payload)
    if level.available is None:
        return HandlerResult(STATUS_NO_ACTION, detail={"inventoryItemId": level.inventory_item_id})
    sku = await ctx.mapping_lookup.resolve_sku_by_inventory_item_id(level.inventory_item_id)
    if not sku:
        logger.warning("[WEBHOOK] no SKU found for inventory item %s", level.inventory_item_id)
        return HandlerResult(STATUS_NO_MAPPING, detail={"inventoryItemId": level.inventory_item_id})

    job_id = job_id_for(meta.delivery_id, "inventory-level", suffix)
    await ctx.queue.enqueue(
        INVENTORY_QUEUE,
        job_id,
        JOB_SYNC_INVENTORY_LEVEL,
        {"delivery_id": meta.delivery_id, "topic": meta.topic, "sku": sku,
         "inventory_item_id": str(level.inventory_item_id),
         "location_id": str(level.location_id) if level.location_id is not None else None,
         "available": level.available},
        partition_key=f"sku:{sku}",
    )
    return HandlerResult(STATUS_QUEUED, job_ids=[job_id], detail={"sku": sku})


# ---------------------------
# Marketplace (Naver)
# ---------------------------

async def handle_marketplace_order(ctx, meta, payload, suffix=""):
    """A marketplace sale or cancel already moved Naver stock; copy it to Shopify."""
    event = _parse(NaverOrderEvent, payload)
    skus: List[str] = []
    for po in event.productOrders:
        mapping = None
        if po.sellerProductCode:
            mapping = await ctx.mapping_lookup.find_active_by_sku(po.sellerProductCode)
        if mapping is None and po.originProductNo is not None:
            mapping = await ctx.mapping_lookup.find_active_by_marketplace_product(po.originProductNo)
        if mapping is not None and mapping.sku not in skus:
            skus.append(mapping.sku)
    if not skus:
        return HandlerResult(STATUS_NO_MAPPING, detail={"orderId": event.orderId})

    job_id = job_id_for(meta.delivery_id, "storefront-stock", suffix)
    await ctx.queue.enqueue(
        INVENTORY_QUEUE,
        job_id,
        JOB_SYNC_STOREFRONT_STOCK,
        {"delivery_id": meta.delivery_id, "topic": meta.topic, "order_id": event.orderId, "skus": skus},
        partition_key=f"sku:{skus[0]}" if len(skus) == 1 else None,
    )
    return HandlerResult(STATUS_QUEUED, job_ids=[job_id], detail={"orderId": event.orderId, "skus": skus})


HANDLERS: Dict[Tuple[str, str], Handler] = {
    (SOURCE_STOREFRONT, "orders/create"): handle_order_create,
    (SOURCE_STOREFRONT, "orders/cancelled"): handle_order_cancelled,
    (SOURCE_STOREFRONT, "orders/updated"): handle_order_updated,
    (SOURCE_STOREFRONT, "products/update"): handle_product_update,
    (SOURCE_STOREFRONT, "inventory_levels/update"): handle_inventory_level_update,
    (SOURCE_MARKETPLACE, "orders/create"): handle_marketplace_order,
    (SOURCE_MARKETPLACE, "orders/cancelled"): handle_marketplace_order,
    (SOURCE_MARKETPLACE, "orders/status"): handle_marketplace_order,
}


def find_handler(source: str, topic: str) -> Optional[Handler]:
    return HANDLERS.get((source, topic))


async def dispatch(ctx: "ReconciliationContext", meta: WebhookMeta, topic: str,
                   payload: Dict[str, Any], suffix: str = "") -> HandlerResult:
    handler = find_handler(meta.source, topic)
    if handler is None:
        logger.info("[WEBHOOK] no handler for %s %s; acknowledged", meta.source, topic)
        return HandlerResult(STATUS_NO_ACTION, detail={"topic": topic})
    return await handler(ctx, meta, payload, suffix)
