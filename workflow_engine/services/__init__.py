"""Engine services for the Batch Workflow Execution Engine."""

from workflow_engine.services.config_service import ConfigService, EngineConfig
from workflow_engine.services.credential_vault import CredentialVault, EncryptedCredential
from workflow_engine.services.job_queue import JobQueue, InMemoryJobQueue, SqlJobQueue, Lease
from workflow_engine.services.retry_policy import RetryPolicy, RetryDecision
from workflow_engine.services.progress_tracker import ProgressTracker, BatchSnapshot
from workflow_engine.services.result_store import ResultStore
from workflow_engine.services.batch_coordinator import BatchCoordinator
from workflow_engine.services.worker_pool import WorkerPool

# Note: image generation clients are not imported here. Use
# image_generation_factory instead.

__all__ = [
    "ConfigService",
    "EngineConfig",
    "CredentialVault",
    "EncryptedCredential",
    "JobQueue",
    "InMemoryJobQueue",
    "SqlJobQueue",
    "Lease",
    "RetryPolicy",
    "RetryDecision",
    "ProgressTracker",
    "BatchSnapshot",
    "ResultStore",
    "BatchCoordinator",
    "WorkerPool",
]
