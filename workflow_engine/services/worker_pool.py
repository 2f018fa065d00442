"""Bounded worker pool that drains the job queue.

Each worker loops: lease an item, unseal the batch credential, call the
image API under a timeout, store the result, then ack. Failures are routed
through RetryPolicy. A separate reaper task reclaims expired leases on a
fixed interval, which is the only crash recovery mechanism: a restarted
process just picks the requeued items up again.

Every terminal outcome is reported to ProgressTracker only after a
successful ack, so an item is counted exactly once even if its lease
expired and it was redelivered.
"""

import asyncio
import logging
import socket
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from workflow_engine.exceptions import (
    CancellationSkip,
    CredentialError,
    StorageError,
    TransientAPIError,
    format_error,
)
from workflow_engine.models.batch_execution import BatchExecution
from workflow_engine.models.batch_item import BatchItem
from workflow_engine.services.batch_coordinator import BatchCoordinator
from workflow_engine.services.config_service import EngineConfig
from workflow_engine.services.image_generation_service import GeneratedImage
from workflow_engine.services.job_queue import Lease, ReclaimResult
from workflow_engine.services.progress_tracker import (
    OUTCOME_FAILED,
    OUTCOME_SKIPPED,
    OUTCOME_SUCCEEDED,
)
from workflow_engine.services.rate_limiter import ModelRateLimiters
from workflow_engine.services.retry_policy import RetryPolicy
from workflow_engine.utils.timezone import utcnow

logger = logging.getLogger(__name__)


@dataclass
class WorkItem:
    """Everything a worker needs from the database to process one lease."""

    item_id: str
    batch_id: str
    item_index: int
    prompt: str
    reference_assets: List[Dict[str, str]]
    config: Dict[str, Any]
    cancel_requested: bool
    error_message: Optional[str]


@dataclass
class PoolStats:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    retried: int = 0
    reclaimed: int = 0
    last_reclaim_at: Optional[datetime] = None
    busy_workers: set = field(default_factory=set)


class WorkerPool:
    """Fixed-size set of async workers plus a lease reaper."""

    def __init__(
        self,
        coordinator: BatchCoordinator,
        image_service,
        engine_config: Optional[EngineConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limiters: Optional[ModelRateLimiters] = None,
        session_factory=None
    ):
        self.coordinator = coordinator
        self.job_queue = coordinator.job_queue
        self.progress_tracker = coordinator.progress_tracker
        self.result_store = coordinator.result_store
        self.credential_vault = coordinator.credential_vault
        self.image_service = image_service
        self.engine_config = engine_config or coordinator.engine_config
        self.retry_policy = retry_policy or RetryPolicy.from_engine_config(self.engine_config)
        self.rate_limiters = rate_limiters or ModelRateLimiters(
            self.engine_config.rate_limit_flash_rpm,
            self.engine_config.rate_limit_pro_rpm
        )
        self.session_factory = session_factory or coordinator.session_factory

        self.running = False
        self.stats = PoolStats()
        self._tasks: List[asyncio.Task] = []

        prefix = f"{socket.gethostname()}-{uuid.uuid4().hex[:6]}"
        self.worker_ids = [f"{prefix}-w{i}" for i in range(self.engine_config.worker_pool_size)]

    # Lifecycle

    async def start(self):
        """Spawn the workers and the reaper."""
        if self.running:
            logger.warning("Worker pool already running")
            return

        self.running = True
        self._tasks = [asyncio.create_task(self._worker_loop(worker_id)) for worker_id in self.worker_ids]
        self._tasks.append(asyncio.create_task(self._reaper_loop()))
        logger.info(f"Worker pool started with {len(self.worker_ids)} workers")

    async def stop(self):
        """Stop the workers. Items in flight keep their leases and are reclaimed after expiry."""
        self.running = False
        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped")

    async def _worker_loop(self, worker_id: str):
        while self.running:
            try:
                processed = await self.process_next(worker_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Worker {worker_id} error: {e}", exc_info=True)
                processed = False

            if not processed:
                await asyncio.sleep(self.engine_config.queue_poll_interval_seconds)

    async def _reaper_loop(self):
        while self.running:
            try:
                self.reclaim_expired()
            except Exception as e:
                logger.error(f"Lease reaper error: {e}", exc_info=True)

            await asyncio.sleep(self.engine_config.lease_reclaim_interval_seconds)

    async def run_until_empty(self):
        """Process with every worker until nothing is leasable."""
        async def drain(worker_id: str):
            while await self.process_next(worker_id):
                pass

        await asyncio.gather(*(drain(worker_id) for worker_id in self.worker_ids))

    # Lease reclamation

    def reclaim_expired(self) -> ReclaimResult:
        """Requeue expired leases; fail items whose expired lease was their last attempt."""
        result = self.job_queue.reclaim_expired_leases()
        self.stats.last_reclaim_at = utcnow()

        if result.requeued:
            logger.warning(f"Reclaimed {len(result.requeued)} expired leases")
            self.progress_tracker.on_items_requeued(result.requeued)

        for entry in result.exhausted:
            logger.warning(f"Item {entry.item_id} lease expired on attempt {entry.attempt_count}; failing")
            self.progress_tracker.on_item_terminal(
                entry.batch_id,
                entry.item_id,
                OUTCOME_FAILED,
                error="[LEASE_EXPIRED] Lease expired on the final attempt",
                attempt_count=entry.attempt_count
            )

        self.stats.reclaimed += result.total
        return result

    # Item processing

    async def process_next(self, worker_id: str) -> bool:
        """Lease and fully process one item. Returns False if the queue had nothing ready."""
        lease = self.job_queue.lease(worker_id, self.engine_config.lease_duration_seconds)
        if lease is None:
            return False

        self.stats.busy_workers.add(worker_id)
        try:
            await self._process_lease(lease)
        finally:
            self.stats.busy_workers.discard(worker_id)
            self.stats.processed += 1
        return True

    def _load_work(self, lease: Lease) -> Optional[WorkItem]:
        db = self.session_factory()
        try:
            item = db.query(BatchItem).filter(BatchItem.id == lease.item_id).first()
            batch = db.query(BatchExecution).filter(BatchExecution.id == lease.batch_id).first()
            if item is None or batch is None:
                return None
            return WorkItem(
                item_id=item.id,
                batch_id=batch.id,
                item_index=item.item_index,
                prompt=item.prompt,
                reference_assets=item.reference_assets_list,
                config=batch.config_dict,
                cancel_requested=bool(batch.cancel_requested),
                error_message=batch.error_message
            )
        finally:
            db.close()

    async def _process_lease(self, lease: Lease):
        work = self._load_work(lease)
        if work is None:
            logger.warning(f"Item {lease.item_id} no longer exists; dropping queue entry")
            self.job_queue.ack(lease.lease_id)
            return

        # These outcomes make no API call, so the delivery is not counted as an attempt
        previous_attempts = lease.attempt_count - 1

        # Redelivery after the result was stored but before the ack landed
        stored = self.result_store.get_for_item(work.item_id)
        if stored is not None:
            logger.info(f"Item {work.item_id} already has result {stored.id}; completing without a new call")
            self._finish(lease, OUTCOME_SUCCEEDED, result_ref=stored.id, attempt_count=previous_attempts)
            return

        # Batch state may have changed while the entry sat in the queue
        if work.error_message:
            self._finish(
                lease, OUTCOME_FAILED,
                error=f"Batch aborted: {work.error_message}", attempt_count=previous_attempts
            )
            return
        if work.cancel_requested:
            self._finish(
                lease, OUTCOME_SKIPPED,
                error=format_error(CancellationSkip()), attempt_count=previous_attempts
            )
            return

        self.progress_tracker.on_item_leased(lease.batch_id, lease.item_id, lease.attempt_count)

        try:
            image = await self._call_api(work)
        except Exception as e:
            await self._handle_failure(lease, work, e)
            return

        try:
            result_ref = await self._store_result(work, image)
        except StorageError as e:
            logger.error(f"Giving up storing result for item {work.item_id}: {e}")
            self._finish(lease, OUTCOME_FAILED, error=format_error(e))
            return

        self._finish(lease, OUTCOME_SUCCEEDED, result_ref=result_ref)

    async def _call_api(self, work: WorkItem) -> GeneratedImage:
        db = self.session_factory()
        try:
            credential = self.credential_vault.fetch(db, work.batch_id)
        finally:
            db.close()

        model = work.config.get("model")
        await self.rate_limiters.for_model(model).acquire()

        timeout = self.engine_config.api_call_timeout_seconds
        with self.credential_vault.unsealed(credential) as api_key:
            try:
                return await asyncio.wait_for(
                    self.image_service.generate_image(
                        api_key,
                        work.prompt,
                        model=model,
                        aspect_ratio=work.config.get("aspect_ratio"),
                        resolution=work.config.get("resolution"),
                        reference_assets=work.reference_assets,
                        timeout=timeout
                    ),
                    timeout=timeout
                )
            except asyncio.TimeoutError:
                raise TransientAPIError(f"API call exceeded {timeout}s timeout", code="TIMEOUT")

    async def _store_result(self, work: WorkItem, image: GeneratedImage) -> int:
        """Persist the result, retrying storage only. The API is never called again here."""
        max_attempts = max(self.engine_config.storage_max_attempts, 1)
        for attempt in range(1, max_attempts + 1):
            try:
                return self.result_store.save(
                    work.batch_id,
                    work.item_id,
                    work.item_index,
                    image.data,
                    image.mime_type
                )
            except StorageError as e:
                if attempt >= max_attempts:
                    raise
                delay = self.retry_policy.backoff_delay(attempt)
                logger.warning(
                    f"Storage attempt {attempt}/{max_attempts} failed for item {work.item_id}: {e}. "
                    f"Retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

    async def _handle_failure(self, lease: Lease, work: WorkItem, error: Exception):
        error_text = format_error(error)

        if isinstance(error, CredentialError):
            # Shared credential: no point trying any other item of this batch
            self.coordinator.abort_batch(work.batch_id, error)
            self._finish(lease, OUTCOME_FAILED, error=error_text)
            return

        snapshot = self.progress_tracker.snapshot(work.batch_id)
        if snapshot.error_message:
            self._finish(lease, OUTCOME_FAILED, error=error_text)
            return
        if snapshot.cancel_requested:
            self._finish(lease, OUTCOME_SKIPPED, error=f"{format_error(CancellationSkip())} after {error_text}")
            return

        decision = self.retry_policy.decide(error, lease.attempt_count)
        if decision.should_retry:
            logger.warning(
                f"Item {work.item_id} attempt {lease.attempt_count} failed ({error_text}); "
                f"retrying in {decision.delay_seconds:.1f}s"
            )
            if self.job_queue.nack(lease.lease_id, decision.delay_seconds):
                self.progress_tracker.record_retry(work.item_id, error_text)
                self.stats.retried += 1
            else:
                logger.warning(f"Lease {lease.lease_id} for item {work.item_id} was lost before nack")
            return

        logger.error(f"Item {work.item_id} failed on attempt {lease.attempt_count}: {error_text} ({decision.reason})")
        self._finish(lease, OUTCOME_FAILED, error=error_text)

    def _finish(
        self,
        lease: Lease,
        outcome: str,
        error: Optional[str] = None,
        result_ref: Optional[int] = None,
        attempt_count: Optional[int] = None
    ):
        """Ack the lease and, only if the ack succeeded, record the terminal outcome."""
        if not self.job_queue.ack(lease.lease_id):
            logger.warning(
                f"Lease {lease.lease_id} for item {lease.item_id} is no longer held; "
                f"discarding {outcome} outcome"
            )
            return

        self.progress_tracker.on_item_terminal(
            lease.batch_id,
            lease.item_id,
            outcome,
            error=error,
            result_ref=result_ref,
            attempt_count=lease.attempt_count if attempt_count is None else attempt_count
        )

        if outcome == OUTCOME_SUCCEEDED:
            self.stats.succeeded += 1
        elif outcome == OUTCOME_FAILED:
            self.stats.failed += 1
        else:
            self.stats.skipped += 1

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "status": "running" if self.running else "stopped",
            "pool_size": len(self.worker_ids),
            "busy_workers": len(self.stats.busy_workers),
            "processed": self.stats.processed,
            "succeeded": self.stats.succeeded,
            "failed": self.stats.failed,
            "skipped": self.stats.skipped,
            "retried": self.stats.retried,
            "reclaimed": self.stats.reclaimed,
            "last_reclaim_at": self.stats.last_reclaim_at.isoformat() if self.stats.last_reclaim_at else None,
            "rate_limits": self.rate_limiters.get_stats(),
        }


# Global worker pool instance
_pool_instance: Optional[WorkerPool] = None


async def start_worker_pool():
    """Start the global worker pool."""
    global _pool_instance

    from workflow_engine.services.batch_coordinator import get_batch_coordinator
    from workflow_engine.services.image_generation_factory import get_image_generation_service

    if _pool_instance is None:
        coordinator = get_batch_coordinator()
        _pool_instance = WorkerPool(coordinator, get_image_generation_service())

    await _pool_instance.start()


async def stop_worker_pool():
    """Stop the global worker pool."""
    global _pool_instance

    if _pool_instance:
        await _pool_instance.stop()

    logger.info("Worker pool task stopped")


def get_worker_pool_status() -> dict:
    """Get the status of the worker pool."""
    global _pool_instance

    if _pool_instance is None:
        return {"running": False, "status": "not_started"}

    return _pool_instance.get_status()
