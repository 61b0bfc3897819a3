from __future__ import annotations
from datetime import datetime
from typing import Any
from sqlalchemy import String, Integer, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column
from app.db import Base, utcnow

STATUS_ACTIVE = "ACTIVE"
STATUS_PENDING = "PENDING"
STATUS_ERROR = "ERROR"
STATUS_INACTIVE = "INACTIVE"
MAPPING_STATUSES = (STATUS_ACTIVE, STATUS_PENDING, STATUS_ERROR, STATUS_INACTIVE)

SYNC_SYNCED = "synced"
SYNC_PENDING = "pending"
SYNC_ERROR = "error"


class ProductMapping(Base):
    __tablename__ = "product_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sku: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    marketplace_product_id: Mapped[str] = mapped_column(String(64), index=True)
    storefront_product_id: Mapped[str] = mapped_column(String(64), index=True)
    storefront_variant_id: Mapped[str] = mapped_column(String(64), index=True)
    storefront_inventory_item_id: Mapped[str] = mapped_column(String(64), index=True)
    product_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=STATUS_ACTIVE, index=True)
    sync_status: Mapped[str] = mapped_column(String(16), default=SYNC_PENDING, index=True)
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_usable(self) -> bool:
        return self.status == STATUS_ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "sku": self.sku,
            "marketplaceProductId": self.marketplace_product_id,
            "storefrontProductId": self.storefront_product_id,
            "storefrontVariantId": self.storefront_variant_id,
            "storefrontInventoryItemId": self.storefront_inventory_item_id,
            "productName": self.product_name,
            "status": self.status,
            "syncStatus": self.sync_status,
            "syncError": self.sync_error,
            "lastSyncedAt": self.last_synced_at.isoformat() if self.last_synced_at else None,
        }
