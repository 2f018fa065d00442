"""Batch coordinator: submission, status, results and cancellation.

Batch state machine: queued -> running -> {completed, failed, cancelled}.
The coordinator creates batches and answers control requests; the terminal
flip itself happens in ProgressTracker when the last pending item reports.
"""

import json
import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError

from workflow_engine.config import (
    settings,
    SUPPORTED_MODELS,
    SUPPORTED_ASPECT_RATIOS,
    SUPPORTED_RESOLUTIONS,
    SUPPORTED_REFERENCE_MIME_TYPES,
    MAX_REFERENCE_IMAGES,
)
from workflow_engine.database import SessionLocal
from workflow_engine.exceptions import (
    BatchNotFoundError,
    CancellationSkip,
    InvalidStateTransitionError,
    ValidationError,
    format_error,
)
from workflow_engine.models.batch_execution import BatchExecution
from workflow_engine.models.batch_item import BatchItem
from workflow_engine.models.result_asset import ResultAsset
from workflow_engine.schemas.batch import BatchItemPayload, WorkflowConfig
from workflow_engine.services.config_service import EngineConfig
from workflow_engine.services.credential_vault import CredentialVault, EncryptedCredential
from workflow_engine.services.job_queue import JobQueue
from workflow_engine.services.progress_tracker import (
    BatchSnapshot,
    ProgressTracker,
    OUTCOME_FAILED,
    OUTCOME_SKIPPED,
)
from workflow_engine.services.result_store import ResultStore
from workflow_engine.utils.prompt_parser import validate_prompts

logger = logging.getLogger(__name__)


class BatchCoordinator:
    """Top-level orchestrator for batch executions."""

    def __init__(
        self,
        job_queue: JobQueue,
        progress_tracker: ProgressTracker,
        result_store: ResultStore,
        credential_vault: Optional[CredentialVault] = None,
        engine_config: Optional[EngineConfig] = None,
        session_factory=SessionLocal
    ):
        self.job_queue = job_queue
        self.progress_tracker = progress_tracker
        self.result_store = result_store
        self.credential_vault = credential_vault or progress_tracker.credential_vault
        self.engine_config = engine_config or EngineConfig()
        self.session_factory = session_factory

    # Submission

    def _coerce_items(self, items: Sequence[Union[BatchItemPayload, Dict[str, Any], str]]) -> List[BatchItemPayload]:
        payloads = []
        errors = []
        for index, item in enumerate(items):
            try:
                if isinstance(item, BatchItemPayload):
                    payloads.append(item)
                elif isinstance(item, str):
                    payloads.append(BatchItemPayload(prompt=item))
                else:
                    payloads.append(BatchItemPayload.model_validate(item))
            except PydanticValidationError as e:
                errors.append(f"Item at index {index} is malformed: {e.errors()[0]['msg']}")
        if errors:
            raise ValidationError("Invalid batch items", errors)
        return payloads

    def _resolve_config(self, workflow_config: Optional[Union[WorkflowConfig, Dict[str, Any]]]) -> Dict[str, str]:
        if workflow_config is None:
            workflow_config = WorkflowConfig()
        elif isinstance(workflow_config, dict):
            workflow_config = WorkflowConfig.model_validate(workflow_config)

        return {
            "model": workflow_config.model or settings.DEFAULT_IMAGE_MODEL,
            "aspect_ratio": workflow_config.aspect_ratio or settings.DEFAULT_ASPECT_RATIO,
            "resolution": workflow_config.resolution or settings.DEFAULT_RESOLUTION,
        }

    def validate_submission(self, items: List[BatchItemPayload], config: Dict[str, str]) -> List[str]:
        """Collect every problem with a submission; empty when valid."""
        cfg = self.engine_config
        errors = validate_prompts(
            [item.prompt.strip() for item in items],
            min_length=cfg.prompt_min_length,
            max_length=cfg.prompt_max_length,
            min_prompts=1,
            max_prompts=cfg.max_batch_size
        )

        for index, item in enumerate(items):
            if len(item.reference_assets) > MAX_REFERENCE_IMAGES:
                errors.append(f"Item at index {index} has more than {MAX_REFERENCE_IMAGES} reference images")
            for asset in item.reference_assets:
                if asset.mime_type not in SUPPORTED_REFERENCE_MIME_TYPES:
                    errors.append(f"Item at index {index} has unsupported reference type {asset.mime_type}")
                if not asset.data:
                    errors.append(f"Item at index {index} has an empty reference image")

        if config["model"] not in SUPPORTED_MODELS:
            errors.append(f"Unsupported model: {config['model']}")
        if config["aspect_ratio"] not in SUPPORTED_ASPECT_RATIOS:
            errors.append(f"Unsupported aspect ratio: {config['aspect_ratio']}")
        if config["resolution"] not in SUPPORTED_RESOLUTIONS:
            errors.append(f"Unsupported resolution: {config['resolution']}")

        return errors

    def submit_batch(
        self,
        owner_id: str,
        encrypted_api_key: EncryptedCredential,
        items: Sequence[Union[BatchItemPayload, Dict[str, Any], str]],
        workflow_config: Optional[Union[WorkflowConfig, Dict[str, Any]]] = None
    ) -> str:
        """Validate, persist and enqueue a batch. Returns immediately with the batch id.

        Raises ValidationError before anything is written if the submission
        is malformed.
        """
        if not owner_id:
            raise ValidationError("owner_id is required")
        if encrypted_api_key is None or not encrypted_api_key.ciphertext or not encrypted_api_key.nonce:
            raise ValidationError("An encrypted API key is required")

        payloads = self._coerce_items(list(items or []))
        config = self._resolve_config(workflow_config)
        errors = self.validate_submission(payloads, config)
        if errors:
            logger.info(f"Rejected batch from {owner_id}: {len(errors)} validation error(s)")
            raise ValidationError("Batch validation failed", errors)

        batch_id = str(uuid.uuid4())
        item_ids = []

        db = self.session_factory()
        try:
            batch = BatchExecution(
                id=batch_id,
                owner_id=owner_id,
                status=BatchExecution.STATUS_QUEUED,
                total_items=len(payloads),
                succeeded_count=0,
                failed_count=0,
                skipped_count=0,
                pending_count=len(payloads),
                config=json.dumps(config),
                cancel_requested=False
            )
            db.add(batch)

            for index, payload in enumerate(payloads):
                item_id = str(uuid.uuid4())
                item_ids.append(item_id)
                db.add(BatchItem(
                    id=item_id,
                    batch_id=batch_id,
                    item_index=index,
                    prompt=payload.prompt.strip(),
                    reference_assets=json.dumps(
                        [asset.model_dump() for asset in payload.reference_assets]
                    ) if payload.reference_assets else None,
                    status=BatchItem.STATUS_QUEUED,
                    attempt_count=0
                ))

            self.credential_vault.store(db, batch_id, encrypted_api_key)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        try:
            self.job_queue.enqueue_many(item_ids, batch_id)
        except Exception as e:
            logger.error(f"Failed to enqueue batch {batch_id}: {e}", exc_info=True)
            self.abort_batch(batch_id, e, remove_from_queue=False, item_ids=item_ids)
            raise

        logger.info(
            f"Batch {batch_id} submitted by {owner_id}: {len(payloads)} items, model {config['model']}"
        )
        return batch_id

    # Queries

    def get_batch_status(self, batch_id: str) -> BatchSnapshot:
        return self.progress_tracker.snapshot(batch_id)

    def get_batch(self, batch_id: str) -> BatchExecution:
        db = self.session_factory()
        try:
            batch = db.query(BatchExecution).filter(BatchExecution.id == batch_id).first()
            if not batch:
                raise BatchNotFoundError(f"Batch {batch_id} not found")
            db.expunge(batch)
            return batch
        finally:
            db.close()

    def get_batch_results(self, batch_id: str) -> List[ResultAsset]:
        """Result assets of succeeded items. Partial results are returned while running."""
        self.get_batch(batch_id)
        return self.result_store.list_for_batch(batch_id)

    def get_batch_items(self, batch_id: str) -> List[BatchItem]:
        db = self.session_factory()
        try:
            if not db.query(BatchExecution.id).filter(BatchExecution.id == batch_id).first():
                raise BatchNotFoundError(f"Batch {batch_id} not found")
            items = (
                db.query(BatchItem)
                .filter(BatchItem.batch_id == batch_id)
                .order_by(BatchItem.item_index.asc())
                .all()
            )
            db.expunge_all()
            return items
        finally:
            db.close()

    def list_batches(self, owner_id: Optional[str] = None, limit: int = 50) -> List[BatchExecution]:
        db = self.session_factory()
        try:
            query = db.query(BatchExecution)
            if owner_id:
                query = query.filter(BatchExecution.owner_id == owner_id)
            batches = query.order_by(BatchExecution.created_at.desc()).limit(limit).all()
            db.expunge_all()
            return batches
        finally:
            db.close()

    # Control

    def cancel_batch(self, batch_id: str) -> BatchSnapshot:
        """Request cancellation.

        Un-leased items are skipped right away; items already in flight
        finish their current call, a success is kept and a failure is
        skipped. The batch becomes cancelled once nothing is pending.
        """
        snapshot = self.progress_tracker.snapshot(batch_id)
        if snapshot.is_terminal:
            raise InvalidStateTransitionError(f"Batch {batch_id} is already {snapshot.status}")

        if not self.progress_tracker.request_cancel(batch_id):
            current = self.progress_tracker.snapshot(batch_id)
            raise InvalidStateTransitionError(f"Batch {batch_id} is already {current.status}")

        removed = self.job_queue.remove_batch(batch_id)
        skip_reason = format_error(CancellationSkip())
        for item_id in removed:
            self.progress_tracker.on_item_terminal(batch_id, item_id, OUTCOME_SKIPPED, error=skip_reason)

        logger.info(f"Batch {batch_id} cancellation requested: {len(removed)} queued items skipped")
        return self.progress_tracker.snapshot(batch_id)

    def abort_batch(
        self,
        batch_id: str,
        error: BaseException,
        remove_from_queue: bool = True,
        item_ids: Optional[List[str]] = None
    ) -> int:
        """Fail the whole batch, e.g. when its shared credential is rejected.

        Queued items are failed with the abort reason; items in flight
        report their own outcome. Returns the number of items failed here.
        """
        reason = format_error(error)
        if not self.progress_tracker.mark_aborted(batch_id, reason):
            return 0

        logger.error(f"Aborting batch {batch_id}: {reason}")

        removed = self.job_queue.remove_batch(batch_id) if remove_from_queue else list(item_ids or [])
        item_error = f"Batch aborted: {reason}"
        failed = 0
        for item_id in removed:
            if self.progress_tracker.on_item_terminal(batch_id, item_id, OUTCOME_FAILED, error=item_error):
                failed += 1
        return failed


_coordinator_instance: Optional[BatchCoordinator] = None


def build_batch_coordinator(engine_config: Optional[EngineConfig] = None) -> BatchCoordinator:
    """Wire a coordinator against the application database."""
    from workflow_engine.services.job_queue import SqlJobQueue

    engine_config = engine_config or EngineConfig()
    vault = CredentialVault()
    return BatchCoordinator(
        job_queue=SqlJobQueue(SessionLocal, max_attempts=engine_config.max_attempts),
        progress_tracker=ProgressTracker(SessionLocal, vault),
        result_store=ResultStore(SessionLocal),
        credential_vault=vault,
        engine_config=engine_config,
        session_factory=SessionLocal
    )


def set_batch_coordinator(coordinator: Optional[BatchCoordinator]):
    global _coordinator_instance
    _coordinator_instance = coordinator


def get_batch_coordinator() -> BatchCoordinator:
    """Get the global coordinator (FastAPI dependency)."""
    global _coordinator_instance

    if _coordinator_instance is None:
        _coordinator_instance = build_batch_coordinator()
    return _coordinator_instance
