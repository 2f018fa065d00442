"""Batch item model: one prompt turned into one external API call."""

import json

from sqlalchemy import Column, String, Integer, DateTime, Text, ForeignKey, Index, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from workflow_engine.database import Base


class BatchItem(Base):
    """A single unit of work within a batch."""

    __tablename__ = "batch_items"

    id = Column(String(36), primary_key=True)  # UUID
    batch_id = Column(String(36), ForeignKey("batch_executions.id"), nullable=False)
    item_index = Column(Integer, nullable=False)  # Position in the submitted batch

    # Payload
    prompt = Column(Text, nullable=False)
    reference_assets = Column(Text, nullable=True)  # JSON list of {data, mime_type}

    # Processing state
    status = Column(String(20), nullable=False, default="queued")  # queued, leased, succeeded, failed, skipped
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    result_ref = Column(Integer, nullable=True)  # result_assets.id
    processing_time_ms = Column(Integer, nullable=True)

    # Timestamps
    created_at = Column(DateTime, server_default=func.now())
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    batch = relationship("BatchExecution", back_populates="items")

    __table_args__ = (
        UniqueConstraint("batch_id", "item_index", name="uq_batch_item_index"),
        Index("idx_batch_item_batch", "batch_id"),
        Index("idx_batch_item_status", "status"),
    )

    # Status constants
    STATUS_QUEUED = "queued"
    STATUS_LEASED = "leased"
    STATUS_SUCCEEDED = "succeeded"
    STATUS_FAILED = "failed"
    STATUS_SKIPPED = "skipped"

    TERMINAL_STATUSES = (STATUS_SUCCEEDED, STATUS_FAILED, STATUS_SKIPPED)

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    @property
    def reference_assets_list(self) -> list:
        if not self.reference_assets:
            return []
        return json.loads(self.reference_assets)
