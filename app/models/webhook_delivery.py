from __future__ import annotations
from datetime import datetime
from typing import Any
from sqlalchemy import String, Integer, DateTime, Text, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column
from app.db import Base, utcnow

SOURCE_STOREFRONT = "storefront"
SOURCE_MARKETPLACE = "marketplace"

OUTCOME_SUCCESS = "success"
OUTCOME_ERROR = "error"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_NO_MAPPING = "no_mapping"
OUTCOMES = (OUTCOME_SUCCESS, OUTCOME_ERROR, OUTCOME_DUPLICATE, OUTCOME_NO_MAPPING)


class WebhookDelivery(Base):
    """One row per received delivery. Only the outcome columns change after insert."""

    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        Index("ix_webhook_deliveries_outcome_received", "processing_outcome", "received_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    delivery_id: Mapped[str] = mapped_column(String(191), index=True)
    source: Mapped[str] = mapped_column(String(16), index=True)
    event_topic: Mapped[str] = mapped_column(String(64), index=True)
    raw_payload: Mapped[str] = mapped_column(Text)
    headers: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    received_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    processing_outcome: Mapped[str | None] = mapped_column(String(16), nullable=True)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    job_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def summary(self) -> dict[str, Any]:
        return {
            "deliveryId": self.delivery_id,
            "source": self.source,
            "topic": self.event_topic,
            "outcome": self.processing_outcome,
            "error": self.error_detail,
            "jobIds": list(self.job_ids or []),
            "receivedAt": self.received_at.isoformat() if self.received_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
