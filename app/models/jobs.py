from __future__ import annotations
from datetime import datetime
from typing import Any
from sqlalchemy import String, Integer, DateTime, Text, JSON, Boolean, Float, Index
from sqlalchemy.orm import Mapped, mapped_column
from app.db import Base, utcnow

ORDER_QUEUE = "order-processing"
INVENTORY_QUEUE = "inventory-sync"
QUEUE_NAMES = (ORDER_QUEUE, INVENTORY_QUEUE)

# status lifecycle: waiting -> active -> completed | failed
STATUS_WAITING = "waiting"
STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


class SyncJob(Base):
    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index("ix_sync_jobs_claim", "queue_name", "status", "priority", "id"),
        Index("ix_sync_jobs_partition", "queue_name", "partition_key", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(191), unique=True, index=True)  # derived from delivery id
    queue_name: Mapped[str] = mapped_column(String(32), index=True)
    name: Mapped[str] = mapped_column(String(64))                              # e.g. "process-order"
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    partition_key: Mapped[str | None] = mapped_column(String(191), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=STATUS_WAITING, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    backoff_seconds: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    run_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(32), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    dead_lettered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "queue": self.queue_name,
            "name": self.name,
            "status": self.status,
            "priority": self.priority,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "outcome": self.outcome,
            "deadLettered": self.dead_lettered,
            "lastError": self.last_error,
            "runAt": self.run_at.isoformat() if self.run_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }
