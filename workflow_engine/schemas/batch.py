"""Batch schemas for request/response validation."""

from pydantic import BaseModel, Field, SecretStr, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime


class ReferenceAsset(BaseModel):
    """Reference image sent alongside a prompt."""
    data: str  # base64, no data: prefix
    mime_type: str


class BatchItemPayload(BaseModel):
    """One unit of work: a prompt plus optional reference images."""
    prompt: str
    reference_assets: List[ReferenceAsset] = []


class WorkflowConfig(BaseModel):
    """Generation settings applied to every item in a batch."""
    model: Optional[str] = None  # gemini-2.5-flash-image or gemini-3-pro-image-preview
    aspect_ratio: Optional[str] = None
    resolution: Optional[str] = None  # 1K, 2K, 4K (Pro model only)


class EncryptedApiKey(BaseModel):
    """API key already sealed by the caller (base64 ciphertext and nonce)."""
    ciphertext: str
    nonce: str


class BatchSubmitRequest(BaseModel):
    """Request to submit a batch. Items may be given directly or as blank-line separated text."""
    owner_id: str = Field(..., min_length=1, max_length=100)
    items: Optional[List[BatchItemPayload]] = None
    prompts_text: Optional[str] = None
    api_key: Optional[SecretStr] = None
    encrypted_api_key: Optional[EncryptedApiKey] = None
    config: WorkflowConfig = WorkflowConfig()

    @model_validator(mode="after")
    def check_sources(self):
        if self.items is None and self.prompts_text is None:
            raise ValueError("Either items or prompts_text is required")
        if self.api_key is None and self.encrypted_api_key is None:
            raise ValueError("Either api_key or encrypted_api_key is required")
        return self


class CostEstimate(BaseModel):
    total_cost: float
    cost_per_image: float
    image_count: int
    currency: str


class BatchSubmitResponse(BaseModel):
    """Response after a batch is accepted."""
    batch_id: str
    status: str
    total_items: int
    cost_estimate: CostEstimate


class BatchStatusResponse(BaseModel):
    """Progress snapshot for polling clients."""
    batch_id: str
    status: str
    total: int
    succeeded: int
    failed: int
    skipped: int
    pending: int
    progress_percent: float
    cancel_requested: bool
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_seconds: Optional[int] = None


class BatchItemResponse(BaseModel):
    """Item state for the batch detail view."""
    id: str
    item_index: int
    prompt: str
    status: str
    attempt_count: int
    last_error: Optional[str] = None
    result_ref: Optional[int] = None
    processing_time_ms: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ResultAssetResponse(BaseModel):
    """Stored output of one succeeded item."""
    id: int
    item_id: str
    storage_path: str
    content_type: str
    size: int
    created_at: Optional[datetime] = None


class BatchResultsResponse(BaseModel):
    batch_id: str
    status: str
    results: List[ResultAssetResponse]


class BatchListItem(BaseModel):
    id: str
    owner_id: str
    status: str
    total_items: int
    succeeded_count: int
    failed_count: int
    skipped_count: int
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    config: Dict[str, Any] = {}
