"""Per-batch progress counters.

All item and batch state changes made on behalf of workers go through this
service. Counter updates are single UPDATE statements with column
arithmetic, serialized in-process by a lock, so concurrent workers never
lose an increment. The terminal flip of a batch is one-way: it is guarded
by ``status NOT IN (terminal statuses)``.

Invariant maintained: succeeded + failed + skipped + pending == total.
"""

import logging
import threading
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import List, Optional

from workflow_engine.database import SessionLocal
from workflow_engine.exceptions import BatchNotFoundError
from workflow_engine.models.batch_execution import BatchExecution
from workflow_engine.models.batch_item import BatchItem
from workflow_engine.services.credential_vault import CredentialVault
from workflow_engine.utils.timezone import utcnow, seconds_between, to_utc_iso

logger = logging.getLogger(__name__)

OUTCOME_SUCCEEDED = BatchItem.STATUS_SUCCEEDED
OUTCOME_FAILED = BatchItem.STATUS_FAILED
OUTCOME_SKIPPED = BatchItem.STATUS_SKIPPED

_COUNTER_FOR_OUTCOME = {
    OUTCOME_SUCCEEDED: BatchExecution.succeeded_count,
    OUTCOME_FAILED: BatchExecution.failed_count,
    OUTCOME_SKIPPED: BatchExecution.skipped_count,
}


@dataclass(frozen=True)
class BatchSnapshot:
    """Point-in-time view of a batch for polling clients."""

    batch_id: str
    status: str
    total: int
    succeeded: int
    failed: int
    skipped: int
    pending: int
    cancel_requested: bool
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in BatchExecution.TERMINAL_STATUSES

    @property
    def progress_percent(self) -> float:
        if not self.total:
            return 0.0
        return round((self.total - self.pending) / self.total * 100, 1)

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("created_at", "started_at", "completed_at"):
            data[key] = to_utc_iso(data[key])
        data["progress_percent"] = self.progress_percent
        return data

    @classmethod
    def from_model(cls, batch: BatchExecution) -> "BatchSnapshot":
        return cls(
            batch_id=batch.id,
            status=batch.status,
            total=batch.total_items,
            succeeded=batch.succeeded_count,
            failed=batch.failed_count,
            skipped=batch.skipped_count,
            pending=batch.pending_count,
            cancel_requested=bool(batch.cancel_requested),
            error_message=batch.error_message,
            created_at=batch.created_at,
            started_at=batch.started_at,
            completed_at=batch.completed_at,
            duration_seconds=batch.duration_seconds
        )


class ProgressTracker:
    """Serialized update path for batch counters and item state."""

    def __init__(self, session_factory=SessionLocal, credential_vault: Optional[CredentialVault] = None):
        self.session_factory = session_factory
        self.credential_vault = credential_vault or CredentialVault()
        self._lock = threading.RLock()

    def snapshot(self, batch_id: str) -> BatchSnapshot:
        db = self.session_factory()
        try:
            batch = db.query(BatchExecution).filter(BatchExecution.id == batch_id).first()
            if not batch:
                raise BatchNotFoundError(f"Batch {batch_id} not found")
            return BatchSnapshot.from_model(batch)
        finally:
            db.close()

    def on_item_leased(self, batch_id: str, item_id: str, attempt_count: int):
        """Mirror a new lease onto the item and move the batch to running."""
        with self._lock:
            db = self.session_factory()
            try:
                now = utcnow()
                db.query(BatchItem).filter(
                    BatchItem.id == item_id,
                    BatchItem.status.notin_(BatchItem.TERMINAL_STATUSES)
                ).update(
                    {
                        BatchItem.status: BatchItem.STATUS_LEASED,
                        BatchItem.attempt_count: attempt_count,
                    },
                    synchronize_session=False
                )
                db.query(BatchItem).filter(
                    BatchItem.id == item_id,
                    BatchItem.started_at.is_(None)
                ).update({BatchItem.started_at: now}, synchronize_session=False)

                started = db.query(BatchExecution).filter(
                    BatchExecution.id == batch_id,
                    BatchExecution.status == BatchExecution.STATUS_QUEUED
                ).update(
                    {
                        BatchExecution.status: BatchExecution.STATUS_RUNNING,
                        BatchExecution.started_at: now,
                    },
                    synchronize_session=False
                )
                db.commit()

                if started:
                    logger.info(f"Batch {batch_id} is running")
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def record_retry(self, item_id: str, error_message: str):
        """Item goes back to queued after a transient failure."""
        self._set_queued([item_id], error_message)

    def on_items_requeued(self, item_ids: List[str]):
        """Items whose expired leases were reclaimed."""
        if item_ids:
            self._set_queued(item_ids, "[LEASE_EXPIRED] Lease expired before completion; requeued")

    def _set_queued(self, item_ids: List[str], error_message: Optional[str]):
        with self._lock:
            db = self.session_factory()
            try:
                db.query(BatchItem).filter(
                    BatchItem.id.in_(item_ids),
                    BatchItem.status.notin_(BatchItem.TERMINAL_STATUSES)
                ).update(
                    {
                        BatchItem.status: BatchItem.STATUS_QUEUED,
                        BatchItem.last_error: error_message,
                    },
                    synchronize_session=False
                )
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def on_item_terminal(
        self,
        batch_id: str,
        item_id: str,
        outcome: str,
        error: Optional[str] = None,
        result_ref: Optional[int] = None,
        attempt_count: Optional[int] = None
    ) -> bool:
        """Record the terminal outcome of one item.

        Decrements pending and increments the matching counter in one
        statement. Returns False (and changes nothing) if the item was
        already terminal, so a duplicate report can never double count.
        When pending reaches zero the batch is finalized.
        """
        if outcome not in _COUNTER_FOR_OUTCOME:
            raise ValueError(f"Unknown item outcome: {outcome}")

        with self._lock:
            db = self.session_factory()
            try:
                now = utcnow()
                item = db.query(BatchItem).filter(BatchItem.id == item_id).first()
                if item is None or item.is_terminal:
                    return False

                values = {
                    BatchItem.status: outcome,
                    BatchItem.completed_at: now,
                }
                if error is not None:
                    values[BatchItem.last_error] = error
                if result_ref is not None:
                    values[BatchItem.result_ref] = result_ref
                if attempt_count is not None:
                    values[BatchItem.attempt_count] = attempt_count
                if item.started_at:
                    values[BatchItem.processing_time_ms] = int((now - item.started_at).total_seconds() * 1000)

                transitioned = db.query(BatchItem).filter(
                    BatchItem.id == item_id,
                    BatchItem.status.notin_(BatchItem.TERMINAL_STATUSES)
                ).update(values, synchronize_session=False)
                if not transitioned:
                    db.rollback()
                    return False

                counter = _COUNTER_FOR_OUTCOME[outcome]
                db.query(BatchExecution).filter(BatchExecution.id == batch_id).update(
                    {
                        BatchExecution.pending_count: BatchExecution.pending_count - 1,
                        counter: counter + 1,
                    },
                    synchronize_session=False
                )
                db.commit()

                self._finalize_if_done(db, batch_id)
                return True
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def _finalize_if_done(self, db, batch_id: str):
        """Flip the batch to its terminal status once nothing is pending."""
        batch = db.query(BatchExecution).filter(BatchExecution.id == batch_id).first()
        if batch is None or batch.pending_count > 0 or batch.is_terminal:
            return

        if batch.error_message:
            final_status = BatchExecution.STATUS_FAILED
        elif batch.cancel_requested:
            final_status = BatchExecution.STATUS_CANCELLED
        elif batch.succeeded_count > 0:
            final_status = BatchExecution.STATUS_COMPLETED
        else:
            final_status = BatchExecution.STATUS_FAILED

        now = utcnow()
        start = batch.started_at or batch.created_at
        duration = seconds_between(start, now)

        flipped = db.query(BatchExecution).filter(
            BatchExecution.id == batch_id,
            BatchExecution.status.notin_(BatchExecution.TERMINAL_STATUSES)
        ).update(
            {
                BatchExecution.status: final_status,
                BatchExecution.completed_at: now,
                BatchExecution.duration_seconds: duration,
            },
            synchronize_session=False
        )
        if flipped:
            self.credential_vault.discard(db, batch_id)
        db.commit()

        if flipped:
            logger.info(
                f"Batch {batch_id} {final_status}: {batch.succeeded_count} succeeded, "
                f"{batch.failed_count} failed, {batch.skipped_count} skipped"
            )

    def request_cancel(self, batch_id: str) -> bool:
        """Set the cancellation flag on a non-terminal batch."""
        return self._flag_batch(batch_id, {BatchExecution.cancel_requested: True})

    def mark_aborted(self, batch_id: str, error_message: str) -> bool:
        """Record why a batch is being aborted. The first reason wins."""
        with self._lock:
            db = self.session_factory()
            try:
                updated = db.query(BatchExecution).filter(
                    BatchExecution.id == batch_id,
                    BatchExecution.error_message.is_(None),
                    BatchExecution.status.notin_(BatchExecution.TERMINAL_STATUSES)
                ).update({BatchExecution.error_message: error_message}, synchronize_session=False)
                db.commit()
                return bool(updated)
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def _flag_batch(self, batch_id: str, values: dict) -> bool:
        with self._lock:
            db = self.session_factory()
            try:
                updated = db.query(BatchExecution).filter(
                    BatchExecution.id == batch_id,
                    BatchExecution.status.notin_(BatchExecution.TERMINAL_STATUSES)
                ).update(values, synchronize_session=False)
                db.commit()
                return bool(updated)
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
