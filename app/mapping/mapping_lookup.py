#===========================================================================
# app/mapping/mapping_lookup.py
# Cached resolution of storefront identifiers to SKUs and usable mappings.
#===========================================================================
from __future__ import annotations

import logging
from typing import Dict, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.mapping.mapping_store import MappingStore, normalize_sku
from app.models.product_mapping import ProductMapping

logger = logging.getLogger("uvicorn.error")

# cached marker for "looked it up, nothing there"
NEGATIVE = "__none__"


def inventory_item_cache_key(inventory_item_id: str) -> str:
    return f"inventory:item:{inventory_item_id}"


class MappingLookup:
    """
    inventoryItemId -> sku goes through Redis first. Positive hits live for `ttl`
    seconds, misses for `negative_ttl` (0 = misses are not cached). Entries are never
    invalidated on mapping edits; staleness is bounded by the TTL.
    """

    def __init__(self, store: MappingStore, redis: Redis, ttl: int = 3600, negative_ttl: int = 60):
        self.store = store
        self.redis = redis
        self.ttl = ttl
        self.negative_ttl = negative_ttl

    async def _cache_get(self, key: str) -> Optional[str]:
        try:
            value = await self.redis.get(key)
        except (RedisError, OSError) as e:
            logger.warning("[MAPPING] cache read failed for %s: %s", key, e)
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def _cache_set(self, key: str, value: str, ttl: int) -> None:
        if ttl <= 0:
            return
        try:
            await self.redis.set(key, value, ex=ttl)
        except (RedisError, OSError) as e:
            logger.warning("[MAPPING] cache write failed for %s: %s", key, e)

    async def resolve_sku_by_inventory_item_id(self, inventory_item_id) -> Optional[str]:
        item_id = str(inventory_item_id)
        key = inventory_item_cache_key(item_id)
        cached = await self._cache_get(key)
        if cached == NEGATIVE:
            return None
        if cached:
            return cached

        mapping = await self.store.find_by_inventory_item_id(item_id)
        if mapping is None or not mapping.is_usable:
            logger.info("[MAPPING] no active mapping for inventory item %s", item_id)
            await self._cache_set(key, NEGATIVE, self.negative_ttl)
            return None
        await self._cache_set(key, mapping.sku, self.ttl)
        return mapping.sku

    async def find_active_by_sku(self, sku: str) -> Optional[ProductMapping]:
        if not normalize_sku(sku):
            return None
        mapping = await self.store.find_by_sku(sku)
        if mapping is None:
            return None
        if not mapping.is_usable:
            logger.info("[MAPPING] mapping for sku=%s is %s; not usable", mapping.sku, mapping.status)
            return None
        return mapping

    async def find_active_by_variant(self, variant_id, sku: Optional[str] = None) -> Optional[ProductMapping]:
        mapping = None
        if variant_id is not None:
            mapping = await self.store.find_by_variant_id(str(variant_id))
        if mapping is None and sku:
            mapping = await self.store.find_by_sku(sku)
        if mapping is None or not mapping.is_usable:
            return None
        return mapping

    async def find_active_by_product(self, product_id) -> Dict[str, ProductMapping]:
        """Usable mappings of one storefront product, keyed by variant id."""
        return {
            m.storefront_variant_id: m
            for m in await self.store.find_by_product_id(str(product_id))
            if m.is_usable and m.storefront_variant_id
        }

    async def find_active_by_marketplace_product(self, product_id) -> Optional[ProductMapping]:
        mapping = await self.store.find_by_marketplace_product_id(str(product_id))
        if mapping is None or not mapping.is_usable:
            return None
        return mapping
