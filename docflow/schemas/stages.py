"""Run/stage vocabularies and the per-stage payload union.

Every stage returns exactly one payload model, tagged by its ``stage``
field, so the coordinator and API can dispatch on the concrete type
instead of probing dictionaries.
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from docflow.schemas.extraction import ChunkOutcome, ChunkPlan


class RunStatus(str, Enum):
    """Coarse status of a pipeline run."""
    QUEUED = "queued"
    RUNNING = "running"
    SUSPENDED = "suspended"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class StageState(str, Enum):
    """State of a single stage attempt."""
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class PipelineType(str, Enum):
    """Which stage sequence a run follows."""
    INGEST = "ingest"
    REVIEW = "review"


QUEUED_STAGE = "queued"
COMPLETED_STAGE = "completed"
FAILED_STAGE = "failed"
CANCELLED_STAGE = "cancelled"

INGEST_STAGES = ["splitting", "processing", "aggregating", "review", "erp_sync"]
REVIEW_STAGES = ["classify", "parse", "extract", "validate", "review", "export", "deliver"]

REVIEW_APPROVED_SIGNAL = "review_approved"
CANCEL_SIGNAL = "cancel"
SUPPORTED_SIGNALS = (REVIEW_APPROVED_SIGNAL, CANCEL_SIGNAL)


def stages_for(pipeline: Union[PipelineType, str]) -> List[str]:
    """Ordered stage names for a pipeline type."""
    return list(INGEST_STAGES if PipelineType(pipeline) == PipelineType.INGEST else REVIEW_STAGES)


def stage_index(pipeline: Union[PipelineType, str], stage_name: str) -> int:
    """Position of a stage in its pipeline; queued is -1, terminal stages sort last."""
    if stage_name == QUEUED_STAGE:
        return -1
    ordered = stages_for(pipeline)
    if stage_name in ordered:
        return ordered.index(stage_name)
    return len(ordered)


class _DocumentPreparation(BaseModel):
    document_id: str
    content_hash: str
    is_new: bool
    already_processed: bool = False
    page_count: int = 0
    estimated_tokens: int = 0
    chunks: Optional[List[ChunkPlan]] = Field(
        default=None, description="None when the whole document fits one call"
    )


class SplittingPayload(_DocumentPreparation):
    stage: Literal["splitting"] = "splitting"


class ParsePayload(_DocumentPreparation):
    stage: Literal["parse"] = "parse"


class ProcessingPayload(BaseModel):
    stage: Literal["processing"] = "processing"
    was_chunked: bool = False
    outcomes: List[ChunkOutcome] = Field(default_factory=list)

    @property
    def failed_chunk_count(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.succeeded)


class _ResultSummary(BaseModel):
    result_id: str
    confidence: float = 0.0
    chunk_count: int = 1
    failed_chunk_count: int = 0
    line_item_count: int = 0
    was_chunked: bool = False
    needs_review: bool = False
    review_reasons: List[str] = Field(default_factory=list)


class AggregatingPayload(_ResultSummary):
    stage: Literal["aggregating"] = "aggregating"


class ExtractPayload(_ResultSummary):
    stage: Literal["extract"] = "extract"


class ClassifyPayload(BaseModel):
    stage: Literal["classify"] = "classify"
    document_type: str = "unknown"
    confidence: float = 0.0
    page_count: int = 0
    already_processed: bool = False


class ValidatePayload(BaseModel):
    stage: Literal["validate"] = "validate"
    result_id: str
    needs_review: bool = False
    reasons: List[str] = Field(default_factory=list)


class ReviewPayload(BaseModel):
    stage: Literal["review"] = "review"
    approved: bool = True
    patch: Optional[Dict[str, Any]] = None
    result_id: Optional[str] = Field(
        default=None, description="Result to carry forward; a new row when a patch was applied"
    )


class ExportPayload(BaseModel):
    stage: Literal["export"] = "export"
    result_id: str
    storage_path: str
    filename: str
    row_count: int = 0


class _Delivery(BaseModel):
    outbox_id: Optional[str] = None
    status: str = "pending"
    delivered: bool = False


class ErpSyncPayload(_Delivery):
    stage: Literal["erp_sync"] = "erp_sync"


class DeliverPayload(_Delivery):
    stage: Literal["deliver"] = "deliver"
    targets: List[str] = Field(default_factory=list)


StagePayload = Annotated[
    Union[
        SplittingPayload,
        ProcessingPayload,
        AggregatingPayload,
        ErpSyncPayload,
        ClassifyPayload,
        ParsePayload,
        ExtractPayload,
        ValidatePayload,
        ReviewPayload,
        ExportPayload,
        DeliverPayload,
    ],
    Field(discriminator="stage"),
]

_STAGE_PAYLOAD_ADAPTER = TypeAdapter(StagePayload)


def parse_stage_payload(data: Any) -> StagePayload:
    """Validate a raw payload dict into its stage-specific model."""
    return _STAGE_PAYLOAD_ADAPTER.validate_python(data)
