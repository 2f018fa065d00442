"""Batch execution model for tracking one submitted batch."""

import json

from sqlalchemy import Column, String, Integer, DateTime, Text, Boolean, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from workflow_engine.database import Base


class BatchExecution(Base):
    """One user-submitted batch of generation requests."""

    __tablename__ = "batch_executions"

    id = Column(String(36), primary_key=True)  # UUID
    owner_id = Column(String(100), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="queued")  # queued, running, completed, failed, cancelled

    # Counters. succeeded + failed + skipped + pending == total_items
    total_items = Column(Integer, nullable=False, default=0)
    succeeded_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    skipped_count = Column(Integer, nullable=False, default=0)
    pending_count = Column(Integer, nullable=False, default=0)

    # Workflow settings (model, aspect_ratio, resolution) as JSON
    config = Column(Text, nullable=True)

    cancel_requested = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)  # Set when the batch is aborted

    # Timestamps
    created_at = Column(DateTime, server_default=func.now())
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=True)

    items = relationship("BatchItem", back_populates="batch", order_by="BatchItem.item_index",
                         cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_batch_exec_status", "status"),
        Index("idx_batch_exec_created", "created_at"),
    )

    # Status constants
    STATUS_QUEUED = "queued"
    STATUS_RUNNING = "running"
    STATUS_COMPLETED = "completed"
    STATUS_FAILED = "failed"
    STATUS_CANCELLED = "cancelled"

    TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED)

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    @property
    def config_dict(self) -> dict:
        if not self.config:
            return {}
        return json.loads(self.config)
