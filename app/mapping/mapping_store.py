#===========================================================================
# app/mapping/mapping_store.py
# SKU <-> Naver product / Shopify product, variant and inventory item.
#===========================================================================
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db import utcnow
from app.models.product_mapping import (
    MAPPING_STATUSES,
    SYNC_ERROR,
    SYNC_SYNCED,
    ProductMapping,
)

logger = logging.getLogger("uvicorn.error")


def normalize_sku(sku: str) -> str:
    return (sku or "").strip().upper()


class MappingStore:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self.sessionmaker = sessionmaker

    async def _first(self, *criteria) -> Optional[ProductMapping]:
        async with self.sessionmaker() as db:
            return (await db.execute(
                select(ProductMapping).where(*criteria).order_by(ProductMapping.id).limit(1)
            )).scalar_one_or_none()

    async def find_by_sku(self, sku: str) -> Optional[ProductMapping]:
        return await self._first(ProductMapping.sku == normalize_sku(sku))

    async def find_by_inventory_item_id(self, inventory_item_id: str) -> Optional[ProductMapping]:
        return await self._first(ProductMapping.storefront_inventory_item_id == str(inventory_item_id))

    async def find_by_variant_id(self, variant_id: str) -> Optional[ProductMapping]:
        return await self._first(ProductMapping.storefront_variant_id == str(variant_id))

    async def find_by_product_id(self, product_id: str) -> List[ProductMapping]:
        async with self.sessionmaker() as db:
            rows = await db.execute(
                select(ProductMapping).where(ProductMapping.storefront_product_id == str(product_id))
            )
            return list(rows.scalars())

    async def find_by_marketplace_product_id(self, product_id: str) -> Optional[ProductMapping]:
        return await self._first(ProductMapping.marketplace_product_id == str(product_id))

    async def update_sync_status(self, sku: str, status: str, error: Optional[str] = None) -> None:
        """The only field this service writes back on mappings it does not own."""
        async with self.sessionmaker() as db:
            row = (await db.execute(
                select(ProductMapping).where(ProductMapping.sku == normalize_sku(sku))
            )).scalar_one_or_none()
            if row is None:
                return
            row.sync_status = status
            row.sync_error = error if status == SYNC_ERROR else None
            if status == SYNC_SYNCED:
                row.last_synced_at = utcnow()
            await db.commit()

    async def upsert(self, sku: str, fields: Dict[str, Any]) -> ProductMapping:
        status = fields.get("status")
        if status is not None and status not in MAPPING_STATUSES:
            raise ValueError(f"invalid mapping status: {status}")
        key = normalize_sku(sku)
        async with self.sessionmaker() as db:
            row = (await db.execute(select(ProductMapping).where(ProductMapping.sku == key))).scalar_one_or_none()
            if row is None:
                row = ProductMapping(sku=key)
                db.add(row)
            for name in ("marketplace_product_id", "storefront_product_id", "storefront_variant_id",
                         "storefront_inventory_item_id", "product_name", "status"):
                if fields.get(name) is not None:
                    value = fields[name]
                    setattr(row, name, value if name in ("product_name", "status") else str(value))
            await db.commit()
            logger.info("[MAPPING] upserted sku=%s status=%s", key, row.status)
            return row

    async def list(self, status: Optional[str] = None, limit: int = 100) -> List[ProductMapping]:
        async with self.sessionmaker() as db:
            stmt = select(ProductMapping).order_by(ProductMapping.sku).limit(limit)
            if status:
                stmt = stmt.where(ProductMapping.status == status)
            return list((await db.execute(stmt)).scalars())
