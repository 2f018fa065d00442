"""At-least-once job queue for batch items.

Two implementations share the JobQueue interface:

- InMemoryJobQueue: a lock-protected dict, used by unit tests and by
  single-process development runs where durability is not needed.
- SqlJobQueue: rows in the job_queue table. Leasing is a compare-and-set
  UPDATE guarded by ``lease_id IS NULL`` plus the availability and attempt
  checks, so two workers never hold a live lease on the same item and a
  nacked entry is not claimed before its backoff ends, even across processes.

A lease is issued with an expiry. A worker that crashes simply lets the
lease expire; reclaim_expired_leases() (run on a fixed interval by the
worker pool) puts the entry back in the queue, or reports it as exhausted
once it has used max_attempts.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import and_

from workflow_engine.database import SessionLocal
from workflow_engine.models.queue_entry import QueueEntry
from workflow_engine.utils.timezone import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lease:
    """A time-bounded claim by one worker on one item."""

    lease_id: str
    item_id: str
    batch_id: str
    worker_id: str
    attempt_count: int
    expires_at: datetime


@dataclass(frozen=True)
class ExhaustedEntry:
    """An expired lease that had no attempts left. The item must be failed."""

    item_id: str
    batch_id: str
    attempt_count: int


@dataclass
class ReclaimResult:
    requeued: List[str] = field(default_factory=list)  # item ids
    exhausted: List[ExhaustedEntry] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.requeued) + len(self.exhausted)


class JobQueue(ABC):
    """Queue contract consumed by the coordinator and the worker pool."""

    def __init__(self, max_attempts: int = 3, clock: Optional[Callable[[], datetime]] = None):
        self.max_attempts = max_attempts
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    @abstractmethod
    def enqueue(self, item_id: str, batch_id: str, delay_seconds: float = 0.0):
        """Add an item. Enqueuing an item that is already queued is a no-op."""

    def enqueue_many(self, item_ids: List[str], batch_id: str):
        """Add every item of a batch."""
        for item_id in item_ids:
            self.enqueue(item_id, batch_id)

    @abstractmethod
    def lease(self, worker_id: str, lease_duration: float) -> Optional[Lease]:
        """Claim the next available item, or return None if nothing is ready.

        Increments the entry's attempt_count. Entries that already used
        max_attempts are never leased again.
        """

    @abstractmethod
    def ack(self, lease_id: str) -> bool:
        """Remove the entry held by this lease (terminal outcome).

        Returns False if the lease is no longer held, e.g. it expired and
        was reclaimed. Callers record the terminal outcome only on True.
        """

    @abstractmethod
    def nack(self, lease_id: str, requeue_delay: float) -> bool:
        """Release the lease and make the entry available after requeue_delay."""

    @abstractmethod
    def reclaim_expired_leases(self) -> ReclaimResult:
        """Release every lease whose expiry has passed."""

    @abstractmethod
    def remove_batch(self, batch_id: str) -> List[str]:
        """Drop all un-leased entries of a batch. Returns the removed item ids."""

    @abstractmethod
    def depth(self) -> Dict[str, int]:
        """Queue depth as {"waiting": n, "leased": n}."""


@dataclass
class _MemoryEntry:
    item_id: str
    batch_id: str
    available_at: datetime
    sequence: int
    attempt_count: int = 0
    lease_id: Optional[str] = None
    leased_by: Optional[str] = None
    lease_expires_at: Optional[datetime] = None


class InMemoryJobQueue(JobQueue):
    """Thread-safe in-process queue. State is lost on restart."""

    def __init__(self, max_attempts: int = 3, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(max_attempts, clock)
        self._lock = threading.Lock()
        self._entries: Dict[str, _MemoryEntry] = {}
        self._leases: Dict[str, str] = {}  # lease_id -> item_id
        self._sequence = 0

    def enqueue(self, item_id: str, batch_id: str, delay_seconds: float = 0.0):
        with self._lock:
            if item_id in self._entries:
                return
            self._sequence += 1
            self._entries[item_id] = _MemoryEntry(
                item_id=item_id,
                batch_id=batch_id,
                available_at=self.now() + timedelta(seconds=delay_seconds),
                sequence=self._sequence
            )

    def lease(self, worker_id: str, lease_duration: float) -> Optional[Lease]:
        with self._lock:
            now = self.now()
            ready = [
                e for e in self._entries.values()
                if e.lease_id is None and e.available_at <= now and e.attempt_count < self.max_attempts
            ]
            if not ready:
                return None

            entry = min(ready, key=lambda e: (e.available_at, e.sequence))
            entry.lease_id = str(uuid.uuid4())
            entry.leased_by = worker_id
            entry.lease_expires_at = now + timedelta(seconds=lease_duration)
            entry.attempt_count += 1
            self._leases[entry.lease_id] = entry.item_id

            return Lease(
                lease_id=entry.lease_id,
                item_id=entry.item_id,
                batch_id=entry.batch_id,
                worker_id=worker_id,
                attempt_count=entry.attempt_count,
                expires_at=entry.lease_expires_at
            )

    def _held(self, lease_id: str) -> Optional[_MemoryEntry]:
        item_id = self._leases.get(lease_id)
        if item_id is None:
            return None
        entry = self._entries.get(item_id)
        if entry is None or entry.lease_id != lease_id:
            return None
        return entry

    def ack(self, lease_id: str) -> bool:
        with self._lock:
            entry = self._held(lease_id)
            self._leases.pop(lease_id, None)
            if entry is None:
                return False
            del self._entries[entry.item_id]
            return True

    def nack(self, lease_id: str, requeue_delay: float) -> bool:
        with self._lock:
            entry = self._held(lease_id)
            self._leases.pop(lease_id, None)
            if entry is None:
                return False
            entry.lease_id = None
            entry.leased_by = None
            entry.lease_expires_at = None
            entry.available_at = self.now() + timedelta(seconds=requeue_delay)
            return True

    def reclaim_expired_leases(self) -> ReclaimResult:
        result = ReclaimResult()
        with self._lock:
            now = self.now()
            for entry in list(self._entries.values()):
                if entry.lease_id is None or entry.lease_expires_at > now:
                    continue

                self._leases.pop(entry.lease_id, None)
                if entry.attempt_count >= self.max_attempts:
                    del self._entries[entry.item_id]
                    result.exhausted.append(
                        ExhaustedEntry(entry.item_id, entry.batch_id, entry.attempt_count)
                    )
                else:
                    entry.lease_id = None
                    entry.leased_by = None
                    entry.lease_expires_at = None
                    entry.available_at = now
                    result.requeued.append(entry.item_id)
        return result

    def remove_batch(self, batch_id: str) -> List[str]:
        with self._lock:
            removed = [
                e.item_id for e in self._entries.values()
                if e.batch_id == batch_id and e.lease_id is None
            ]
            for item_id in removed:
                del self._entries[item_id]
            return removed

    def depth(self) -> Dict[str, int]:
        with self._lock:
            leased = sum(1 for e in self._entries.values() if e.lease_id is not None)
            return {"waiting": len(self._entries) - leased, "leased": leased}


class SqlJobQueue(JobQueue):
    """Durable queue backed by the job_queue table."""

    # Candidates fetched per lease attempt; losing a CAS race moves on to the next one
    LEASE_CANDIDATES = 5

    def __init__(
        self,
        session_factory=SessionLocal,
        max_attempts: int = 3,
        clock: Optional[Callable[[], datetime]] = None
    ):
        super().__init__(max_attempts, clock)
        self.session_factory = session_factory

    def enqueue(self, item_id: str, batch_id: str, delay_seconds: float = 0.0):
        db = self.session_factory()
        try:
            if db.query(QueueEntry).filter(QueueEntry.item_id == item_id).first():
                return
            db.add(QueueEntry(
                item_id=item_id,
                batch_id=batch_id,
                attempt_count=0,
                available_at=self.now() + timedelta(seconds=delay_seconds),
                enqueued_at=self.now()
            ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def enqueue_many(self, item_ids: List[str], batch_id: str):
        """Insert all entries of a batch in one transaction."""
        db = self.session_factory()
        try:
            now = self.now()
            for position, item_id in enumerate(item_ids):
                db.add(QueueEntry(
                    item_id=item_id,
                    batch_id=batch_id,
                    attempt_count=0,
                    available_at=now,
                    enqueued_at=now,
                    position=position
                ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def lease(self, worker_id: str, lease_duration: float) -> Optional[Lease]:
        db = self.session_factory()
        try:
            now = self.now()
            candidates = (
                db.query(QueueEntry.item_id)
                .filter(
                    and_(
                        QueueEntry.lease_id.is_(None),
                        QueueEntry.available_at <= now,
                        QueueEntry.attempt_count < self.max_attempts
                    )
                )
                .order_by(
                    QueueEntry.available_at.asc(),
                    QueueEntry.enqueued_at.asc(),
                    QueueEntry.position.asc()
                )
                .limit(self.LEASE_CANDIDATES)
                .all()
            )

            for (item_id,) in candidates:
                lease_id = str(uuid.uuid4())
                expires_at = now + timedelta(seconds=lease_duration)
                claimed = self._claim(db, item_id, lease_id, worker_id, expires_at, now)
                db.commit()

                if claimed != 1:
                    logger.debug(f"Lost lease race for item {item_id}")
                    continue

                entry = db.query(QueueEntry).filter(QueueEntry.item_id == item_id).first()
                return Lease(
                    lease_id=lease_id,
                    item_id=item_id,
                    batch_id=entry.batch_id,
                    worker_id=worker_id,
                    attempt_count=entry.attempt_count,
                    expires_at=expires_at
                )

            return None
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _claim(self, db, item_id: str, lease_id: str, worker_id: str, expires_at: datetime, now: datetime) -> int:
        """Compare-and-set one entry against the full lease predicate, not just an empty lease."""
        return (
            db.query(QueueEntry)
            .filter(
                QueueEntry.item_id == item_id,
                QueueEntry.lease_id.is_(None),
                QueueEntry.available_at <= now,
                QueueEntry.attempt_count < self.max_attempts
            )
            .update(
                {
                    QueueEntry.lease_id: lease_id,
                    QueueEntry.leased_by: worker_id,
                    QueueEntry.lease_expires_at: expires_at,
                    QueueEntry.attempt_count: QueueEntry.attempt_count + 1,
                },
                synchronize_session=False
            )
        )

    def ack(self, lease_id: str) -> bool:
        db = self.session_factory()
        try:
            deleted = (
                db.query(QueueEntry)
                .filter(QueueEntry.lease_id == lease_id)
                .delete(synchronize_session=False)
            )
            db.commit()
            return deleted == 1
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def nack(self, lease_id: str, requeue_delay: float) -> bool:
        db = self.session_factory()
        try:
            released = (
                db.query(QueueEntry)
                .filter(QueueEntry.lease_id == lease_id)
                .update(
                    {
                        QueueEntry.lease_id: None,
                        QueueEntry.leased_by: None,
                        QueueEntry.lease_expires_at: None,
                        QueueEntry.available_at: self.now() + timedelta(seconds=requeue_delay),
                    },
                    synchronize_session=False
                )
            )
            db.commit()
            return released == 1
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def reclaim_expired_leases(self) -> ReclaimResult:
        result = ReclaimResult()
        db = self.session_factory()
        try:
            now = self.now()
            expired = (
                db.query(QueueEntry)
                .filter(QueueEntry.lease_id.isnot(None), QueueEntry.lease_expires_at <= now)
                .all()
            )

            for entry in expired:
                stale_lease = entry.lease_id
                if entry.attempt_count >= self.max_attempts:
                    removed = (
                        db.query(QueueEntry)
                        .filter(QueueEntry.item_id == entry.item_id, QueueEntry.lease_id == stale_lease)
                        .delete(synchronize_session=False)
                    )
                    if removed:
                        result.exhausted.append(
                            ExhaustedEntry(entry.item_id, entry.batch_id, entry.attempt_count)
                        )
                else:
                    released = (
                        db.query(QueueEntry)
                        .filter(QueueEntry.item_id == entry.item_id, QueueEntry.lease_id == stale_lease)
                        .update(
                            {
                                QueueEntry.lease_id: None,
                                QueueEntry.leased_by: None,
                                QueueEntry.lease_expires_at: None,
                                QueueEntry.available_at: now,
                            },
                            synchronize_session=False
                        )
                    )
                    if released:
                        result.requeued.append(entry.item_id)

            db.commit()
            return result
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def remove_batch(self, batch_id: str) -> List[str]:
        db = self.session_factory()
        try:
            rows = (
                db.query(QueueEntry.item_id)
                .filter(QueueEntry.batch_id == batch_id, QueueEntry.lease_id.is_(None))
                .all()
            )
            removed = []
            for (item_id,) in rows:
                deleted = (
                    db.query(QueueEntry)
                    .filter(QueueEntry.item_id == item_id, QueueEntry.lease_id.is_(None))
                    .delete(synchronize_session=False)
                )
                if deleted:
                    removed.append(item_id)
            db.commit()
            return removed
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def depth(self) -> Dict[str, int]:
        db = self.session_factory()
        try:
            total = db.query(QueueEntry).count()
            leased = db.query(QueueEntry).filter(QueueEntry.lease_id.isnot(None)).count()
            return {"waiting": total - leased, "leased": leased}
        finally:
            db.close()
