"""Durable job queue rows with lease metadata."""

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Index
from sqlalchemy.sql import func
from workflow_engine.database import Base


class QueueEntry(Base):
    """One enqueued batch item. Removed from the table on ack."""

    __tablename__ = "job_queue"

    item_id = Column(String(36), ForeignKey("batch_items.id"), primary_key=True)
    batch_id = Column(String(36), ForeignKey("batch_executions.id"), nullable=False)

    attempt_count = Column(Integer, nullable=False, default=0)  # Leases issued so far
    available_at = Column(DateTime, nullable=False)  # Not leasable before this (backoff)
    enqueued_at = Column(DateTime, server_default=func.now())
    position = Column(Integer, nullable=False, default=0)  # Order within one enqueue call

    # Lease (all NULL while the entry is waiting)
    lease_id = Column(String(36), nullable=True, unique=True)
    leased_by = Column(String(100), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_queue_available", "available_at"),
        Index("idx_queue_batch", "batch_id"),
        Index("idx_queue_lease_expiry", "lease_expires_at"),
    )
