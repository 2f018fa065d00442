"""Tests for the at-least-once job queue."""

import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from workflow_engine.database import Base
from workflow_engine.services.job_queue import InMemoryJobQueue, SqlJobQueue


@pytest.fixture(params=["memory", "sql"])
def make_queue(request, clock):
    """Build either queue implementation on a controllable clock."""
    session_factory = request.getfixturevalue("session_factory") if request.param == "sql" else None

    def factory(max_attempts=3):
        if session_factory is None:
            return InMemoryJobQueue(max_attempts=max_attempts, clock=clock)
        return SqlJobQueue(session_factory, max_attempts=max_attempts, clock=clock)
    return factory


class TestJobQueueContract:
    """Behaviour shared by both queue implementations."""

    def test_lease_in_enqueue_order(self, make_queue):
        """Test that items are leased oldest first and increment attempt_count."""
        queue = make_queue()
        queue.enqueue_many(["item-a", "item-b"], "batch-1")

        first = queue.lease("w1", 60)
        second = queue.lease("w2", 60)

        assert first.item_id == "item-a"
        assert second.item_id == "item-b"
        assert first.attempt_count == 1
        assert first.batch_id == "batch-1"
        assert queue.lease("w3", 60) is None

    def test_leased_item_not_leased_again(self, make_queue):
        """Test that a live lease hides the item from other workers."""
        queue = make_queue()
        queue.enqueue("item-a", "batch-1")

        assert queue.lease("w1", 60) is not None
        assert queue.lease("w2", 60) is None
        assert queue.depth() == {"waiting": 0, "leased": 1}

    def test_ack_removes_entry(self, make_queue):
        """Test that ack removes the entry and a second ack fails."""
        queue = make_queue()
        queue.enqueue("item-a", "batch-1")
        lease = queue.lease("w1", 60)

        assert queue.ack(lease.lease_id) is True
        assert queue.ack(lease.lease_id) is False
        assert queue.depth() == {"waiting": 0, "leased": 0}

    def test_nack_requeues_after_delay(self, make_queue, clock):
        """Test that a nacked item becomes leasable once the delay has passed."""
        queue = make_queue()
        queue.enqueue("item-a", "batch-1")
        lease = queue.lease("w1", 60)

        assert queue.nack(lease.lease_id, 10) is True
        assert queue.lease("w1", 60) is None

        clock.advance(11)
        again = queue.lease("w2", 60)
        assert again.item_id == "item-a"
        assert again.attempt_count == 2

    def test_duplicate_enqueue_is_noop(self, make_queue):
        """Test that enqueuing an item twice keeps one entry."""
        queue = make_queue()
        queue.enqueue("item-a", "batch-1")
        queue.enqueue("item-a", "batch-1")
        assert queue.depth()["waiting"] == 1

    def test_expired_lease_is_reclaimed(self, make_queue, clock):
        """Test that a crashed worker's lease is reclaimed after expiry."""
        queue = make_queue()
        queue.enqueue("item-a", "batch-1")
        stale = queue.lease("w1", 30)

        assert queue.reclaim_expired_leases().total == 0

        clock.advance(31)
        result = queue.reclaim_expired_leases()
        assert result.requeued == ["item-a"]
        assert result.exhausted == []

        fresh = queue.lease("w2", 30)
        assert fresh.item_id == "item-a"
        assert fresh.attempt_count == 2

        # The crashed worker comes back late: its ack must not count
        assert queue.ack(stale.lease_id) is False
        assert queue.ack(fresh.lease_id) is True

    def test_expired_final_attempt_is_exhausted(self, make_queue, clock):
        """Test that an expired lease on the last attempt is reported, not requeued."""
        queue = make_queue(max_attempts=1)
        queue.enqueue("item-a", "batch-1")
        queue.lease("w1", 30)

        clock.advance(31)
        result = queue.reclaim_expired_leases()

        assert result.requeued == []
        assert len(result.exhausted) == 1
        assert result.exhausted[0].item_id == "item-a"
        assert result.exhausted[0].batch_id == "batch-1"
        assert result.exhausted[0].attempt_count == 1
        assert queue.depth() == {"waiting": 0, "leased": 0}

    def test_max_attempts_never_exceeded(self, make_queue):
        """Test that an entry is not leased beyond max_attempts."""
        queue = make_queue(max_attempts=2)
        queue.enqueue("item-a", "batch-1")

        queue.nack(queue.lease("w1", 60).lease_id, 0)
        second = queue.lease("w1", 60)
        assert second.attempt_count == 2
        queue.nack(second.lease_id, 0)

        assert queue.lease("w1", 60) is None

    def test_remove_batch_keeps_leased_entries(self, make_queue, clock):
        """Test that remove_batch drops queued entries of one batch only."""
        queue = make_queue()
        queue.enqueue_many(["a1", "a2", "a3"], "batch-a")
        clock.advance(1)
        queue.enqueue("b1", "batch-b")
        in_flight = queue.lease("w1", 60)
        assert in_flight.item_id == "a1"

        removed = queue.remove_batch("batch-a")

        assert sorted(removed) == ["a2", "a3"]
        assert queue.depth() == {"waiting": 1, "leased": 1}
        assert queue.ack(in_flight.lease_id) is True


class TestInMemoryLeaseRace:
    """Concurrency checks for the in-process queue."""

    def test_concurrent_lease_gives_single_owner(self):
        """Test that many threads racing for one item produce exactly one lease."""
        queue = InMemoryJobQueue()
        queue.enqueue("only-item", "batch-1")

        barrier = threading.Barrier(8)
        leases = []

        def worker(n):
            barrier.wait()
            lease = queue.lease(f"w{n}", 60)
            if lease is not None:
                leases.append(lease)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(leases) == 1

    def test_many_items_each_leased_once(self):
        """Test that concurrent workers draining a queue never share an item."""
        queue = InMemoryJobQueue()
        queue.enqueue_many([f"item-{i}" for i in range(50)], "batch-1")

        seen = []
        lock = threading.Lock()

        def worker(n):
            while True:
                lease = queue.lease(f"w{n}", 60)
                if lease is None:
                    return
                with lock:
                    seen.append(lease.item_id)
                queue.ack(lease.lease_id)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(seen) == sorted(f"item-{i}" for i in range(50))


class InterleavedSqlJobQueue(SqlJobQueue):
    """Runs `between` once, after the candidates are selected and before the claim."""

    def __init__(self, *args, between=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.between = between

    def _claim(self, db, *args):
        if self.between is not None:
            between, self.between = self.between, None
            between()
        return super()._claim(db, *args)


class TestSqlLeaseRace:
    """Concurrency checks for the durable queue."""

    def test_claim_honours_backoff_set_by_other_worker(self, session_factory, clock):
        """Test that an entry nacked by another worker mid-lease keeps its backoff."""
        other = SqlJobQueue(session_factory, clock=clock)

        def lease_and_nack():
            lease = other.lease("w-other", 60)
            assert other.nack(lease.lease_id, 60) is True

        queue = InterleavedSqlJobQueue(session_factory, clock=clock, between=lease_and_nack)
        queue.enqueue("item-a", "batch-1")

        assert queue.lease("w0", 60) is None
        assert queue.depth() == {"waiting": 1, "leased": 0}

        clock.advance(61)
        lease = queue.lease("w0", 60)
        assert lease.item_id == "item-a"
        assert lease.attempt_count == 2

    def test_claim_honours_attempts_used_by_other_worker(self, session_factory, clock):
        """Test that an entry whose last attempt was taken mid-lease is not leased again."""
        other = SqlJobQueue(session_factory, max_attempts=1, clock=clock)

        def lease_and_nack():
            lease = other.lease("w-other", 60)
            other.nack(lease.lease_id, 0)

        queue = InterleavedSqlJobQueue(session_factory, max_attempts=1, clock=clock, between=lease_and_nack)
        queue.enqueue("item-a", "batch-1")

        assert queue.lease("w0", 60) is None

    def test_threads_drain_file_database_without_sharing(self, tmp_path):
        """Test that threads leasing from one SQLite file never share an item."""
        file_engine = create_engine(
            f"sqlite:///{tmp_path / 'queue.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(bind=file_engine)
        factory = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)

        item_ids = [f"item-{i}" for i in range(30)]
        SqlJobQueue(factory).enqueue_many(item_ids, "batch-1")

        barrier = threading.Barrier(4)
        seen = []
        errors = []
        lock = threading.Lock()

        def worker(n):
            queue = SqlJobQueue(factory)
            barrier.wait()
            try:
                while True:
                    lease = queue.lease(f"w{n}", 60)
                    if lease is None:
                        return
                    with lock:
                        seen.append(lease.item_id)
                    queue.ack(lease.lease_id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        try:
            assert errors == []
            assert sorted(seen) == sorted(item_ids)
            assert SqlJobQueue(factory).depth() == {"waiting": 0, "leased": 0}
        finally:
            file_engine.dispose()
