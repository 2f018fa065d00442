"""Batch execution API endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status
from typing import List, Optional
import logging

from workflow_engine.config import settings
from workflow_engine.exceptions import (
    BatchNotFoundError,
    CredentialError,
    InvalidStateTransitionError,
    ValidationError,
)
from workflow_engine.schemas.batch import (
    BatchSubmitRequest,
    BatchSubmitResponse,
    BatchStatusResponse,
    BatchItemPayload,
    BatchItemResponse,
    BatchResultsResponse,
    ResultAssetResponse,
    BatchListItem,
    CostEstimate,
)
from workflow_engine.services.batch_coordinator import BatchCoordinator, get_batch_coordinator
from workflow_engine.services.credential_vault import EncryptedCredential
from workflow_engine.utils.prompt_parser import parse_prompts, estimate_cost

router = APIRouter()
logger = logging.getLogger(__name__)


def _not_found(e: BatchNotFoundError):
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)


@router.post("/", response_model=BatchSubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_batch(
    request: BatchSubmitRequest,
    coordinator: BatchCoordinator = Depends(get_batch_coordinator)
):
    """Submit a batch. Returns as soon as the items are queued."""
    if request.items is not None:
        items = request.items
    else:
        items = [BatchItemPayload(prompt=p) for p in parse_prompts(request.prompts_text)]

    try:
        if request.encrypted_api_key is not None:
            credential = EncryptedCredential.from_dict(request.encrypted_api_key.model_dump())
        else:
            credential = coordinator.credential_vault.encrypt(request.api_key.get_secret_value())

        batch_id = coordinator.submit_batch(
            owner_id=request.owner_id,
            encrypted_api_key=credential,
            items=items,
            workflow_config=request.config
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": e.message, "errors": e.errors}
        )
    except CredentialError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    return BatchSubmitResponse(
        batch_id=batch_id,
        status="queued",
        total_items=len(items),
        cost_estimate=CostEstimate(**estimate_cost(len(items), settings.PRICE_PER_IMAGE))
    )


@router.get("/", response_model=List[BatchListItem])
async def list_batches(
    owner_id: Optional[str] = None,
    limit: int = 50,
    coordinator: BatchCoordinator = Depends(get_batch_coordinator)
):
    """List recent batches, newest first."""
    batches = coordinator.list_batches(owner_id=owner_id, limit=min(limit, 200))
    return [
        BatchListItem(
            id=b.id,
            owner_id=b.owner_id,
            status=b.status,
            total_items=b.total_items,
            succeeded_count=b.succeeded_count,
            failed_count=b.failed_count,
            skipped_count=b.skipped_count,
            created_at=b.created_at,
            completed_at=b.completed_at,
            config=b.config_dict
        )
        for b in batches
    ]


@router.get("/{batch_id}", response_model=BatchStatusResponse)
async def get_batch_status(
    batch_id: str,
    coordinator: BatchCoordinator = Depends(get_batch_coordinator)
):
    """Get live progress for a batch."""
    try:
        snapshot = coordinator.get_batch_status(batch_id)
    except BatchNotFoundError as e:
        raise _not_found(e)

    return BatchStatusResponse(**snapshot.to_dict())


@router.get("/{batch_id}/items", response_model=List[BatchItemResponse])
async def get_batch_items(
    batch_id: str,
    coordinator: BatchCoordinator = Depends(get_batch_coordinator)
):
    """Get per-item state, including last_error for failed and skipped items."""
    try:
        items = coordinator.get_batch_items(batch_id)
    except BatchNotFoundError as e:
        raise _not_found(e)

    return [
        BatchItemResponse(
            id=i.id,
            item_index=i.item_index,
            prompt=i.prompt,
            status=i.status,
            attempt_count=i.attempt_count,
            last_error=i.last_error,
            result_ref=i.result_ref,
            processing_time_ms=i.processing_time_ms,
            started_at=i.started_at,
            completed_at=i.completed_at
        )
        for i in items
    ]


@router.get("/{batch_id}/results", response_model=BatchResultsResponse)
async def get_batch_results(
    batch_id: str,
    coordinator: BatchCoordinator = Depends(get_batch_coordinator)
):
    """Get stored results. Partial results are available while the batch runs."""
    try:
        snapshot = coordinator.get_batch_status(batch_id)
        assets = coordinator.get_batch_results(batch_id)
    except BatchNotFoundError as e:
        raise _not_found(e)

    return BatchResultsResponse(
        batch_id=batch_id,
        status=snapshot.status,
        results=[
            ResultAssetResponse(
                id=a.id,
                item_id=a.item_id,
                storage_path=a.storage_path,
                content_type=a.content_type,
                size=a.size,
                created_at=a.created_at
            )
            for a in assets
        ]
    )


@router.post("/{batch_id}/cancel", response_model=BatchStatusResponse)
async def cancel_batch(
    batch_id: str,
    coordinator: BatchCoordinator = Depends(get_batch_coordinator)
):
    """Cancel a batch. Queued items are skipped; items in flight finish."""
    try:
        snapshot = coordinator.cancel_batch(batch_id)
    except BatchNotFoundError as e:
        raise _not_found(e)
    except InvalidStateTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)

    logger.info(f"Batch {batch_id} cancel requested via API")
    return BatchStatusResponse(**snapshot.to_dict())
