"""Retention cleanup for finished batches."""

import logging
from datetime import datetime
from typing import List

from sqlalchemy.orm import Session

from workflow_engine.models.batch_credential import BatchCredential
from workflow_engine.models.batch_execution import BatchExecution
from workflow_engine.models.batch_item import BatchItem
from workflow_engine.models.queue_entry import QueueEntry
from workflow_engine.services.result_store import ResultStore

logger = logging.getLogger(__name__)


def find_cleanup_candidates(db: Session, before: datetime) -> List[BatchExecution]:
    """Terminal batches created before the cutoff. Running batches are never candidates."""
    return (
        db.query(BatchExecution)
        .filter(
            BatchExecution.created_at < before,
            BatchExecution.status.in_(BatchExecution.TERMINAL_STATUSES)
        )
        .order_by(BatchExecution.created_at.asc())
        .all()
    )


def delete_batch(db: Session, batch_id: str, result_store: ResultStore) -> dict:
    """Delete a terminal batch with its stored results, items and leftover rows."""
    batch = db.query(BatchExecution).filter(BatchExecution.id == batch_id).first()
    if batch is None:
        return {"batch_id": batch_id, "deleted": False, "reason": "not found"}
    if not batch.is_terminal:
        return {"batch_id": batch_id, "deleted": False, "reason": f"status is {batch.status}"}

    results_deleted = result_store.delete_for_batch(batch_id)

    db.query(QueueEntry).filter(QueueEntry.batch_id == batch_id).delete(synchronize_session=False)
    db.query(BatchCredential).filter(BatchCredential.batch_id == batch_id).delete(synchronize_session=False)
    items_deleted = db.query(BatchItem).filter(BatchItem.batch_id == batch_id).delete(synchronize_session=False)
    db.query(BatchExecution).filter(BatchExecution.id == batch_id).delete(synchronize_session=False)
    db.commit()

    logger.info(f"Deleted batch {batch_id}: {items_deleted} items, {results_deleted} results")
    return {
        "batch_id": batch_id,
        "deleted": True,
        "items_deleted": items_deleted,
        "results_deleted": results_deleted,
    }
