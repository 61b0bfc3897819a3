#==========================================================================================
# app/platforms/storefront.py
# Shopify Admin REST interface (storefront side).
# Inventory levels are set absolutely so a repeated push is harmless.
#==========================================================================================
from __future__ import annotations

import logging
from typing import Protocol

import httpx

from app.platforms.errors import raise_for_platform_status, wrap_transport_error

logger = logging.getLogger("uvicorn.error")

PLATFORM = "shopify"


class StorefrontClient(Protocol):
    async def get_inventory_level(self, inventory_item_id: str) -> int | None: ...
    async def push_inventory_level(self, inventory_item_id: str, quantity: int) -> None: ...


class ShopifyAdminClient:
    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        location_id: str,
        *,
        api_version: str = "2024-07",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = f"https://{shop_domain.strip().rstrip('/')}/admin/api/{api_version}"
        self.access_token = access_token
        self.location_id = location_id
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={"X-Shopify-Access-Token": self.access_token},
        )

    async def get_inventory_level(self, inventory_item_id: str) -> int | None:
        params = {"inventory_item_ids": inventory_item_id, "location_ids": self.location_id}
        try:
            async with self._client() as client:
                resp = await client.get("/inventory_levels.json", params=params)
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, platform=PLATFORM, operation="get_inventory_level") from e
        raise_for_platform_status(resp, platform=PLATFORM, operation="get_inventory_level")
        levels = (resp.json() or {}).get("inventory_levels") or []
        if not levels:
            return None
        return levels[0].get("available")

    async def push_inventory_level(self, inventory_item_id: str, quantity: int) -> None:
        body = {
            "location_id": int(self.location_id),
            "inventory_item_id": int(inventory_item_id),
            "available": max(int(quantity), 0),
        }
        try:
            async with self._client() as client:
                resp = await client.post("/inventory_levels/set.json", json=body)
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, platform=PLATFORM, operation="push_inventory_level") from e
        raise_for_platform_status(resp, platform=PLATFORM, operation="push_inventory_level")
        logger.info("[SHOPIFY] inventory level set item=%s available=%d", inventory_item_id, body["available"])
