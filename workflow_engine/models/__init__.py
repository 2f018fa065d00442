"""Database models for the Batch Workflow Execution Engine."""

from workflow_engine.models.batch_execution import BatchExecution
from workflow_engine.models.batch_item import BatchItem
from workflow_engine.models.batch_credential import BatchCredential
from workflow_engine.models.queue_entry import QueueEntry
from workflow_engine.models.result_asset import ResultAsset
from workflow_engine.models.system_config import SystemConfig

__all__ = [
    "BatchExecution",
    "BatchItem",
    "BatchCredential",
    "QueueEntry",
    "ResultAsset",
    "SystemConfig",
]
