"""Worker pool and queue status endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status

from workflow_engine.services.batch_coordinator import BatchCoordinator, get_batch_coordinator
from workflow_engine.services.worker_pool import (
    get_worker_pool_status,
    start_worker_pool,
    stop_worker_pool,
)

router = APIRouter(prefix="/api/queue", tags=["queue"])


@router.get("/status")
async def queue_status(coordinator: BatchCoordinator = Depends(get_batch_coordinator)):
    """Get worker pool state and queue depth."""
    return {
        "worker_pool": get_worker_pool_status(),
        "queue": coordinator.job_queue.depth(),
    }


@router.post("/worker-pool/start")
async def start_worker_pool_endpoint():
    """Start the worker pool."""
    try:
        await start_worker_pool()
        return {"message": "Worker pool started", "status": "running"}
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to start worker pool: {str(e)}"
        )


@router.post("/worker-pool/stop")
async def stop_worker_pool_endpoint():
    """Stop the worker pool. Leased items are reclaimed after their leases expire."""
    try:
        await stop_worker_pool()
        return {"message": "Worker pool stopped", "status": "stopped"}
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to stop worker pool: {str(e)}"
        )
