"""Request/response models for the runs API."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from docflow.schemas.stages import PipelineType, RunStatus


class ResponseMeta(BaseModel):
    timestamp: datetime
    request_id: str
    api_version: str = "v1"


class ApiResponse(BaseModel):
    """Envelope shared by every API response."""
    status: bool = True
    message: str = "Operation successful"
    data: Dict[str, Any] = Field(default_factory=dict)
    meta: ResponseMeta


class ErrorDetail(BaseModel):
    """RFC 7807 problem details."""
    title: str
    status: int
    detail: str
    instance: Optional[str] = None
    request_id: Optional[str] = None
    timestamp: datetime


class RunHandle(BaseModel):
    """What a submission hands back to the caller."""
    run_id: str = Field(..., description="Pipeline run ID")
    workflow_id: str = Field(..., description="Temporal workflow ID driving the run")
    input_key: str = Field(..., description="Idempotency key the run was submitted under")
    is_duplicate: bool = Field(False, description="True when the submission attached to an existing run")


class SignalRequest(BaseModel):
    name: str = Field(..., description="review_approved or cancel")
    payload: Optional[Dict[str, Any]] = Field(None, description="Signal payload, e.g. {'patch': {...}}")


class RunStatusResponse(BaseModel):
    run_id: str
    input_key: str
    pipeline: PipelineType
    stage: str
    status: RunStatus
    awaiting_signal: Optional[str] = None
    attempts_per_stage: Dict[str, int] = Field(default_factory=dict)
    retry_count: int = 0
    document_id: Optional[str] = None
    error_summary: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class StageResultResponse(BaseModel):
    stage_name: str
    attempt_number: int
    state: str
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_detail: Optional[Dict[str, Any]] = None
    payload: Optional[Dict[str, Any]] = None


class RunListResponse(BaseModel):
    total: int
    runs: List[RunStatusResponse]


class QueueJobCounts(BaseModel):
    queued: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0


class RunStatsResponse(BaseModel):
    counts_by_status: Dict[str, int]
    queue: QueueJobCounts
