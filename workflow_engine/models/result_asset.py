"""Result asset model for generated outputs."""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.sql import func
from workflow_engine.database import Base


class ResultAsset(Base):
    """Stored output of one succeeded item. Immutable once written."""

    __tablename__ = "result_assets"

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(String(36), ForeignKey("batch_items.id"), nullable=False, unique=True)
    batch_id = Column(String(36), ForeignKey("batch_executions.id"), nullable=False)
    storage_path = Column(String(500), nullable=False)
    content_type = Column(String(100), nullable=False, default="image/png")
    size = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        Index("idx_result_batch", "batch_id"),
    )
