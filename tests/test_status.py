import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.main_app import create_app
from app.models.jobs import ORDER_QUEUE
from app.webhooks.idempotency import idempotency_key
from app.workers.jobs_worker import WorkerPool

from conftest import post_shopify, run, seed_mapping, shopify_order

AUTH = (settings.ADMIN_USER, settings.ADMIN_PASS)


@pytest.fixture
def client(ctx):
    return TestClient(create_app(ctx))


def test_status_reports_queues_stats_and_recent_logs(client, ctx):
    seed_mapping(ctx)
    post_shopify(client, "orders/create", shopify_order(), "d1")
    post_shopify(client, "orders/create", shopify_order(), "d1")
    post_shopify(client, "orders/create", shopify_order(lines=(("UNKNOWN", 1),)), "d3")

    resp = client.get("/webhooks/status")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["redis"] == "ok"
    assert set(data["queues"]) == {"order-processing", "inventory-sync"}
    assert data["queues"]["order-processing"]["waiting"] == 1
    assert data["stats"]["processed"] == 1
    assert data["stats"]["duplicates"] == 1
    assert data["stats"]["noMapping"] == 1
    assert len(data["recentLogs"]) == 3
    # payload bodies never leave through the status endpoint
    assert all("rawPayload" not in row for row in data["recentLogs"])


def test_status_degraded_when_redis_unreachable(client, fake_redis):
    fake_redis.broken = True
    data = client.get("/webhooks/status").json()
    assert data["status"] == "degraded"
    assert data["redis"] == "unreachable"


def test_retry_requires_admin(client):
    assert client.post("/webhooks/retry/d1").status_code == 401


def test_retry_unknown_delivery_is_404(client):
    assert client.post("/webhooks/retry/nope", auth=AUTH).status_code == 404


def test_retry_of_successful_delivery_is_400(client, ctx):
    seed_mapping(ctx)
    post_shopify(client, "orders/create", shopify_order(), "d1")
    assert client.post("/webhooks/retry/d1", auth=AUTH).status_code == 400


def test_retry_after_mapping_is_added(client, ctx, marketplace, fake_redis):
    marketplace.stock["NV-1"] = 10
    post_shopify(client, "orders/create", shopify_order(), "d3")
    assert run(ctx.webhook_log.latest("d3")).processing_outcome == "no_mapping"

    resp = client.put("/api/integration/mapping/SKU-1", auth=AUTH, json={
        "marketplace_product_id": "NV-1",
        "storefront_product_id": "3001",
        "storefront_variant_id": "2001",
        "storefront_inventory_item_id": "1001",
        "status": "ACTIVE",
    })
    assert resp.status_code == 200

    resp = client.post("/webhooks/retry/d3", auth=AUTH)
    assert resp.status_code == 200
    assert resp.json()["jobIds"] == ["d3:order-deduct:retry1"]
    assert resp.json()["retry"] == 1

    run(WorkerPool(ctx).drain(ORDER_QUEUE))
    assert marketplace.stock["NV-1"] == 8
    assert run(ctx.webhook_log.latest("d3")).processing_outcome == "success"


def test_delivery_detail_shows_jobs_and_mark(client, ctx, fake_redis):
    seed_mapping(ctx)
    post_shopify(client, "orders/create", shopify_order(), "d1")
    resp = client.get("/webhooks/deliveries/d1", auth=AUTH)
    assert resp.status_code == 200
    data = resp.json()
    assert data["idempotency"] == fake_redis.data[idempotency_key("d1")]
    assert [j["jobId"] for j in data["jobs"]] == ["d1:order-deduct"]
    assert data["jobs"][0]["status"] == "waiting"


def test_logs_filter_by_outcome(client, ctx):
    post_shopify(client, "orders/create", shopify_order(lines=(("UNKNOWN", 1),)), "d3")
    resp = client.get("/webhooks/logs", params={"outcome": "no_mapping"}, auth=AUTH)
    assert [r["deliveryId"] for r in resp.json()["items"]] == ["d3"]
    assert client.get("/webhooks/logs", params={"outcome": "bogus"}, auth=AUTH).status_code == 400


def test_dead_letters_and_requeue(client, ctx):
    run(ctx.queue.enqueue(ORDER_QUEUE, "bad", "process-order", {}))
    job = run(ctx.queue.claim(ORDER_QUEUE))
    run(ctx.queue.fail_permanently(job, "HTTP 400"))

    resp = client.get("/webhooks/dead-letters", auth=AUTH)
    assert [j["jobId"] for j in resp.json()["items"]] == ["bad"]

    resp = client.post("/webhooks/admin/jobs/bad/requeue", auth=AUTH)
    assert resp.status_code == 200
    assert resp.json()["job"]["status"] == "waiting"
    assert client.post("/webhooks/admin/jobs/bad/requeue", auth=AUTH).status_code == 409
    assert client.post("/webhooks/admin/jobs/missing/requeue", auth=AUTH).status_code == 404


def test_mapping_list_and_validation(client, ctx):
    seed_mapping(ctx)
    resp = client.get("/api/integration/mapping")
    assert [m["sku"] for m in resp.json()["items"]] == ["SKU-1"]
    resp = client.put("/api/integration/mapping/NEW", auth=AUTH, json={"marketplace_product_id": "NV-9"})
    assert resp.status_code == 422
    resp = client.put("/api/integration/mapping/SKU-1", auth=AUTH, json={"status": "BOGUS"})
    assert resp.status_code == 400
