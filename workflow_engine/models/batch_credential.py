"""Encrypted third-party API key attached to a batch for its lifetime."""

from sqlalchemy import Column, String, DateTime, LargeBinary, ForeignKey
from sqlalchemy.sql import func
from workflow_engine.database import Base


class BatchCredential(Base):
    """AES-GCM ciphertext + nonce. Never stored in plaintext, deleted at terminal state."""

    __tablename__ = "batch_credentials"

    batch_id = Column(String(36), ForeignKey("batch_executions.id"), primary_key=True)
    ciphertext = Column(LargeBinary, nullable=False)
    nonce = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
