import asyncio
import json
import time
from typing import Any, Dict, List, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.config import Settings
from app.context import assemble_context
from app.db import build_sessionmaker, create_engine, init_db
from app.webhooks.signature import b64_hmac_sha256

SHOPIFY_SECRET = "shpss_test_secret"
SHOP_DOMAIN = "test-shop.myshopify.com"
NAVER_SECRET = "naver_test_secret"


class FakeRedis:
    """In-memory stand-in for the handful of redis.asyncio calls the service makes."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, Optional[int]] = {}
        self.broken = False

    def _check(self):
        if self.broken:
            raise RedisConnectionError("redis down")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None, nx=False):
        self._check()
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        self._check()
        n = 0
        for k in keys:
            if self.data.pop(k, None) is not None:
                n += 1
            self.ttls.pop(k, None)
        return n

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        return None


class FakeMarketplace:
    def __init__(self, stock: Optional[Dict[str, int]] = None):
        self.stock: Dict[str, int] = dict(stock or {})
        self.calls: List[tuple] = []
        self.errors: List[Exception] = []
        self.lowest_seen: Optional[int] = None

    def _maybe_fail(self):
        if self.errors:
            raise self.errors.pop(0)

    async def get_stock(self, product_id: str) -> int:
        self.calls.append(("get_stock", product_id))
        self._maybe_fail()
        return self.stock.get(product_id, 0)

    async def adjust_stock(self, product_id: str, delta: int) -> None:
        self.calls.append(("adjust_stock", product_id, delta))
        self._maybe_fail()
        if delta == 0:
            return
        value = self.stock.get(product_id, 0) + delta
        self.stock[product_id] = value
        if self.lowest_seen is None or value < self.lowest_seen:
            self.lowest_seen = value


class FakeStorefront:
    def __init__(self):
        self.levels: Dict[str, int] = {}
        self.calls: List[tuple] = []

    async def get_inventory_level(self, inventory_item_id: str) -> Optional[int]:
        self.calls.append(("get_inventory_level", inventory_item_id))
        return self.levels.get(inventory_item_id)

    async def push_inventory_level(self, inventory_item_id: str, quantity: int) -> None:
        self.calls.append(("push_inventory_level", inventory_item_id, quantity))
        self.levels[inventory_item_id] = max(quantity, 0)


@pytest.fixture
def test_settings():
    s = Settings()
    s.SHOPIFY_WEBHOOK_SECRET = SHOPIFY_SECRET
    s.SHOPIFY_SHOP_DOMAIN = SHOP_DOMAIN
    s.NAVER_WEBHOOK_SECRET = NAVER_SECRET
    s.WORKERS_ENABLED = False
    s.WEBHOOK_DEBUG = False
    s.ORDER_QUEUE_ATTEMPTS = 3
    s.ORDER_QUEUE_BACKOFF_SECONDS = 2.0
    s.INVENTORY_QUEUE_ATTEMPTS = 5
    s.INVENTORY_QUEUE_BACKOFF_SECONDS = 1.0
    s.MAPPING_CACHE_TTL = 3600
    s.MAPPING_NEGATIVE_CACHE_TTL = 60
    return s


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def marketplace():
    return FakeMarketplace()


@pytest.fixture
def storefront():
    return FakeStorefront()


@pytest.fixture
def ctx(tmp_path, test_settings, fake_redis, marketplace, storefront):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", null_pool=True)
    asyncio.run(init_db(engine))
    context = assemble_context(
        test_settings,
        build_sessionmaker(engine),
        fake_redis,
        marketplace,
        storefront,
        engine=engine,
    )
    yield context
    asyncio.run(engine.dispose())


def run(coro):
    return asyncio.run(coro)


def seed_mapping(ctx, sku="SKU-1", marketplace_id="NV-1", inventory_item_id="1001",
                 variant_id="2001", product_id="3001", status="ACTIVE"):
    return run(ctx.mapping_store.upsert(sku, {
        "marketplace_product_id": marketplace_id,
        "storefront_product_id": product_id,
        "storefront_variant_id": variant_id,
        "storefront_inventory_item_id": inventory_item_id,
        "product_name": f"Product {sku}",
        "status": status,
    }))


def shopify_order(order_id=5001, lines=(("SKU-1", 2),), cancelled=False) -> Dict[str, Any]:
    order: Dict[str, Any] = {
        "id": order_id,
        "order_number": 1001,
        "line_items": [{"id": i + 1, "sku": sku, "quantity": qty} for i, (sku, qty) in enumerate(lines)],
    }
    if cancelled:
        order["cancelled_at"] = "2024-06-01T12:00:00Z"
        order["cancel_reason"] = "customer"
    return order


def shopify_headers(body: bytes, delivery_id: str, topic: str, secret: str = SHOPIFY_SECRET) -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        "X-Shopify-Hmac-Sha256": b64_hmac_sha256(secret, body),
        "X-Shopify-Topic": topic,
        "X-Shopify-Webhook-Id": delivery_id,
        "X-Shopify-Shop-Domain": SHOP_DOMAIN,
    }


def post_shopify(client, topic: str, payload: Dict[str, Any], delivery_id: str, secret: str = SHOPIFY_SECRET):
    body = json.dumps(payload).encode("utf-8")
    return client.post(f"/webhooks/shopify/{topic}", content=body,
                       headers=shopify_headers(body, delivery_id, topic, secret))


def naver_headers(body: bytes, delivery_id: str, event: str, secret: str = NAVER_SECRET,
                  ts_ms: Optional[int] = None) -> Dict[str, str]:
    ts = str(ts_ms if ts_ms is not None else int(time.time() * 1000))
    return {
        "Content-Type": "application/json",
        "X-Naver-Signature": b64_hmac_sha256(secret, ts.encode("utf-8") + b"." + body),
        "X-Naver-Timestamp": ts,
        "X-Naver-Delivery-Id": delivery_id,
        "X-Naver-Event": event,
    }
