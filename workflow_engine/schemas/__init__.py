"""Pydantic schemas for request/response validation."""

from workflow_engine.schemas.batch import (
    ReferenceAsset,
    BatchItemPayload,
    WorkflowConfig,
    EncryptedApiKey,
    BatchSubmitRequest,
    CostEstimate,
    BatchSubmitResponse,
    BatchStatusResponse,
    BatchItemResponse,
    ResultAssetResponse,
    BatchResultsResponse,
    BatchListItem,
)

__all__ = [
    "ReferenceAsset",
    "BatchItemPayload",
    "WorkflowConfig",
    "EncryptedApiKey",
    "BatchSubmitRequest",
    "CostEstimate",
    "BatchSubmitResponse",
    "BatchStatusResponse",
    "BatchItemResponse",
    "ResultAssetResponse",
    "BatchResultsResponse",
    "BatchListItem",
]
