import json

import pytest
from fastapi.testclient import TestClient

from app.main_app import create_app
from app.models.jobs import INVENTORY_QUEUE, ORDER_QUEUE
from app.webhooks.idempotency import COMPLETED, PROCESSING, idempotency_key
from app.workers.jobs_worker import WorkerPool

from conftest import (
    naver_headers,
    post_shopify,
    run,
    seed_mapping,
    shopify_headers,
    shopify_order,
)


@pytest.fixture
def client(ctx):
    return TestClient(create_app(ctx))


def latest_log(ctx, delivery_id):
    return run(ctx.webhook_log.latest(delivery_id))


def total_jobs(ctx):
    counts = [run(ctx.queue.get_counts(q)) for q in (ORDER_QUEUE, INVENTORY_QUEUE)]
    return sum(c["waiting"] + c["active"] + c["completed"] + c["failed"] for c in counts)


def test_order_create_then_cancel_reconciles_stock(client, ctx, marketplace, fake_redis):
    seed_mapping(ctx)
    marketplace.stock["NV-1"] = 10
    pool = WorkerPool(ctx)

    resp = post_shopify(client, "orders/create", shopify_order(), "d1")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "queued"
    assert body["jobIds"] == ["d1:order-deduct"]
    assert fake_redis.data[idempotency_key("d1")] == PROCESSING

    run(pool.drain(ORDER_QUEUE))
    assert marketplace.stock["NV-1"] == 8
    assert latest_log(ctx, "d1").processing_outcome == "success"
    assert fake_redis.data[idempotency_key("d1")] == COMPLETED

    resp = post_shopify(client, "orders/cancelled", shopify_order(cancelled=True), "d2")
    assert resp.json()["jobIds"] == ["d2:order-restore"]
    run(pool.drain(ORDER_QUEUE))
    assert marketplace.stock["NV-1"] == 10


def test_duplicate_delivery_is_acknowledged_once(client, ctx):
    seed_mapping(ctx)
    first = post_shopify(client, "orders/create", shopify_order(), "d1")
    second = post_shopify(client, "orders/create", shopify_order(), "d1")
    assert first.json()["status"] == "queued"
    assert second.status_code == 200
    assert second.json() == {"status": "already_processed", "deliveryId": "d1", "completed": False}
    assert total_jobs(ctx) == 1
    outcomes = [r.processing_outcome for r in run(ctx.webhook_log.history("d1"))]
    assert outcomes == ["success", "duplicate"]


def test_bad_signature_is_rejected_without_side_effects(client, ctx, fake_redis):
    seed_mapping(ctx)
    resp = post_shopify(client, "orders/create", shopify_order(), "d1", secret="wrong")
    assert resp.status_code == 401
    assert resp.json()["reason"] == "invalid_signature"
    assert total_jobs(ctx) == 0
    assert run(ctx.webhook_log.history("d1")) == []
    assert idempotency_key("d1") not in fake_redis.data


def test_unmapped_order_records_no_mapping(client, ctx, marketplace):
    resp = post_shopify(client, "orders/create", shopify_order(lines=(("UNKNOWN", 1),)), "d3")
    assert resp.status_code == 200
    assert resp.json()["status"] == "no_mapping"
    assert resp.json()["jobIds"] == []
    assert total_jobs(ctx) == 0
    assert marketplace.calls == []
    assert latest_log(ctx, "d3").processing_outcome == "no_mapping"


def test_malformed_payload_returns_422(client, ctx):
    resp = post_shopify(client, "orders/create", {"line_items": "nope"}, "d4")
    assert resp.status_code == 422
    assert resp.json()["reason"] == "invalid_payload"
    assert latest_log(ctx, "d4").processing_outcome == "error"


def test_non_object_json_returns_422(client, ctx):
    body = json.dumps([1, 2, 3]).encode("utf-8")
    resp = client.post("/webhooks/shopify/orders/create", content=body,
                       headers=shopify_headers(body, "d5", "orders/create"))
    assert resp.status_code == 422
    assert latest_log(ctx, "d5").processing_outcome == "error"


def test_order_update_without_cancellation_is_no_action(client, ctx, fake_redis):
    seed_mapping(ctx)
    resp = post_shopify(client, "orders/updated", shopify_order(), "d6")
    assert resp.status_code == 200
    assert resp.json()["action"] == "no_action"
    assert total_jobs(ctx) == 0
    assert fake_redis.data[idempotency_key("d6")] == COMPLETED


def test_order_update_with_cancellation_restores(client, ctx):
    seed_mapping(ctx)
    resp = post_shopify(client, "orders/updated", shopify_order(cancelled=True), "d7")
    assert resp.json()["jobIds"] == ["d7:order-restore"]


def test_route_aliases_map_to_canonical_topics(client, ctx):
    seed_mapping(ctx)
    resp = post_shopify(client, "orders/cancel", shopify_order(cancelled=True), "d8")
    assert resp.json()["jobIds"] == ["d8:order-restore"]
    assert latest_log(ctx, "d8").event_topic == "orders/cancelled"


def test_inventory_level_update_is_queued_by_sku(client, ctx):
    seed_mapping(ctx)
    resp = post_shopify(client, "inventory_levels/update",
                        {"inventory_item_id": 1001, "location_id": 1, "available": 4}, "d9")
    assert resp.json()["jobIds"] == ["d9:inventory-level"]
    job = run(ctx.queue.get("d9:inventory-level"))
    assert job.partition_key == "sku:SKU-1"
    assert job.payload["available"] == 4


def test_product_update_queues_mapped_variants_only(client, ctx):
    seed_mapping(ctx)
    payload = {"id": 3001, "title": "Tee", "variants": [
        {"id": 2001, "sku": "SKU-1", "inventory_quantity": 3, "price": "10.00"},
        {"id": 9999, "sku": "UNMAPPED", "inventory_quantity": 1},
    ]}
    resp = post_shopify(client, "products/update", payload, "d10")
    assert resp.json()["updatesCount"] == 1
    job = run(ctx.queue.get("d10:product-sync"))
    assert [u["sku"] for u in job.payload["updates"]] == ["SKU-1"]


def test_unknown_topic_is_acknowledged(client, ctx):
    resp = post_shopify(client, "customers/create", {"id": 1}, "d11")
    assert resp.status_code == 200
    assert resp.json()["jobIds"] == []
    assert latest_log(ctx, "d11").processing_outcome == "success"


def test_unknown_source_is_404(client):
    resp = client.post("/webhooks/amazon/orders/create", content=b"{}")
    assert resp.status_code == 404


def test_naver_order_event_queues_storefront_push(client, ctx, storefront, marketplace):
    seed_mapping(ctx)
    marketplace.stock["NV-1"] = 4
    body = json.dumps({"orderId": "N-1", "productOrders": [
        {"productOrderId": "PO-1", "sellerProductCode": "sku-1", "quantity": 1},
    ]}).encode("utf-8")
    resp = client.post("/webhooks/naver/orders/create", content=body,
                       headers=naver_headers(body, "n1", "ORDER_CREATED"))
    assert resp.status_code == 200
    assert resp.json()["jobIds"] == ["n1:storefront-stock"]
    run(WorkerPool(ctx).drain(INVENTORY_QUEUE))
    assert storefront.levels == {"1001": 4}


def test_naver_singular_order_status_route_is_aliased(client, ctx, storefront, marketplace):
    seed_mapping(ctx)
    marketplace.stock["NV-1"] = 2
    body = json.dumps({"orderId": "N-2", "productOrders": [
        {"productOrderId": "PO-2", "sellerProductCode": "SKU-1", "quantity": 1},
    ]}).encode("utf-8")
    resp = client.post("/webhooks/naver/order/status", content=body,
                       headers=naver_headers(body, "n2", "ORDER_STATUS_CHANGED"))
    assert resp.status_code == 200
    assert resp.json()["jobIds"] == ["n2:storefront-stock"]
    run(WorkerPool(ctx).drain(INVENTORY_QUEUE))
    assert storefront.levels == {"1001": 2}


def test_internal_fault_is_logged_not_raised(client, ctx, monkeypatch):
    seed_mapping(ctx)

    async def broken_enqueue(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(ctx.queue, "enqueue", broken_enqueue)
    resp = post_shopify(client, "orders/create", shopify_order(), "d12")
    assert resp.status_code == 200
    assert resp.json()["status"] == "error_logged"
    row = latest_log(ctx, "d12")
    assert row.processing_outcome == "error"
    assert "database is locked" in row.error_detail
