from __future__ import annotations
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from app.db import Base, utcnow

TX_SALE = "sale"
TX_RESTOCK = "restock"
TX_SYNC = "sync"

PLATFORM_MARKETPLACE = "marketplace"
PLATFORM_STOREFRONT = "storefront"


class InventoryTransaction(Base):
    """
    Stock movements applied by the workers. Order-linked rows are unique per
    (order_id, sku, transaction_type) so a sale or restock is applied at most once.
    """

    __tablename__ = "inventory_transactions"
    __table_args__ = (
        UniqueConstraint("order_id", "sku", "transaction_type", name="uq_inventory_tx_order_sku_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sku: Mapped[str] = mapped_column(String(128), index=True)
    platform: Mapped[str] = mapped_column(String(16))
    transaction_type: Mapped[str] = mapped_column(String(16), index=True)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    quantity: Mapped[int] = mapped_column(Integer, default=0)   # requested
    applied: Mapped[int] = mapped_column(Integer, default=0)    # actually moved (after clamping)
    previous_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    new_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    delivery_id: Mapped[str | None] = mapped_column(String(191), nullable=True)
    job_id: Mapped[str | None] = mapped_column(String(191), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
