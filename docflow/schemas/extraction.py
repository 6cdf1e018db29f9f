"""Schemas for chunk planning, chunk outcomes and merged extraction results."""

from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

MATCHED = "Matched"


class ChunkPlan(BaseModel):
    """One page-range slice of an oversized document."""

    chunk_index: int = Field(..., ge=0)
    header_page_indices: List[int] = Field(default_factory=list, description="0-based pages replicated into every chunk")
    body_start: int = Field(..., ge=0, description="First body page, inclusive, 0-based")
    body_end: int = Field(..., ge=0, description="Last body page, exclusive")

    @property
    def body_page_range(self) -> Tuple[int, int]:
        return (self.body_start, self.body_end)

    @property
    def page_indices(self) -> List[int]:
        """All pages sent to the model for this chunk, headers first."""
        return list(self.header_page_indices) + list(range(self.body_start, self.body_end))


class LineItem(BaseModel):
    """An invoice line with its supporting evidence.

    Unknown keys from the model are kept so nothing is dropped on the way
    to export.
    """

    model_config = ConfigDict(extra="allow")

    line_id: Optional[Union[int, str]] = None
    description: Optional[str] = None
    match_status: Optional[str] = None
    match_reason: Optional[str] = None
    associated_documents: List[Dict[str, Any]] = Field(default_factory=list)


class ChunkExtraction(BaseModel):
    """Validated output of one extraction call."""

    header_fields: Dict[str, Any] = Field(default_factory=dict)
    line_items: List[LineItem] = Field(default_factory=list)
    unclaimed_documents: List[Dict[str, Any]] = Field(default_factory=list)
    present_fields: List[str] = Field(default_factory=list)
    missing_fields: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    raw_payload: Dict[str, Any] = Field(default_factory=dict)
    duration_ms: int = 0


class ChunkOutcome(BaseModel):
    """Either a chunk's extraction or the reason it failed."""

    chunk_index: int
    result: Optional[ChunkExtraction] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None

    @classmethod
    def success(cls, chunk_index: int, result: ChunkExtraction) -> "ChunkOutcome":
        return cls(chunk_index=chunk_index, result=result)

    @classmethod
    def failure(cls, chunk_index: int, error: str) -> "ChunkOutcome":
        return cls(chunk_index=chunk_index, error=error)


class MergedExtractionResult(BaseModel):
    """Document-level result assembled from one or many chunk extractions."""

    header_fields: Dict[str, Any] = Field(default_factory=dict)
    line_items: List[LineItem] = Field(default_factory=list)
    unassigned_evidence: List[Dict[str, Any]] = Field(default_factory=list)
    present_fields: List[str] = Field(default_factory=list)
    missing_fields: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    chunk_count: int = 0
    failed_chunk_count: int = 0
    was_chunked: bool = False


class DocumentResolution(BaseModel):
    """Outcome of resolving uploaded bytes against known documents."""

    document_id: UUID
    content_hash: str
    is_new: bool
    already_processed: bool = False
