"""Extraction activities: per-chunk model calls, merge, review and export."""

from typing import List, Optional
from uuid import UUID

from temporalio import activity

from docflow.core.config import settings
from docflow.core.database import async_session_maker
from docflow.core.exceptions import AllChunksFailedError, DocumentNotFoundError
from docflow.core.llm_client import build_gemini_client
from docflow.database.models import ExtractionResult
from docflow.repositories.result_repository import ExtractionResultRepository
from docflow.schemas.extraction import ChunkOutcome, ChunkPlan, MergedExtractionResult
from docflow.services.chunking.chunk_executor import ChunkExecutor, all_chunks_failed
from docflow.services.chunking.result_merger import ResultMerger
from docflow.services.export_service import XLSX_CONTENT_TYPE, build_extraction_workbook
from docflow.services.extraction_service import ExtractionService
from docflow.services.pdf_service import PdfService
from docflow.services.review_service import ReviewService
from docflow.services.storage_service import StorageService
from docflow.temporal.shared.activities.documents import heartbeat, load_document_bytes
from docflow.utils.logging import get_logger
from docflow.temporal.core.activity_registry import ActivityRegistry

LOGGER = get_logger(__name__)

# Raw model output stays in the extraction service logs, not in workflow history
_OUTCOME_EXCLUDE = {"result": {"raw_payload"}}


def _extraction_service() -> ExtractionService:
    return ExtractionService(build_gemini_client(settings.llm), PdfService())


async def _load_result(repo: ExtractionResultRepository, result_id: str) -> ExtractionResult:
    result = await repo.get_by_id(UUID(result_id))
    if result is None:
        raise DocumentNotFoundError(f"Extraction result {result_id} not found")
    return result


def _summary(stage_name: str, row: ExtractionResult, reasons: List[str]) -> dict:
    return {
        "stage": stage_name,
        "result_id": str(row.id),
        "confidence": row.confidence,
        "chunk_count": row.chunk_count,
        "failed_chunk_count": row.failed_chunk_count,
        "line_item_count": len(row.line_items or []),
        "was_chunked": row.was_chunked,
        "needs_review": bool(reasons),
        "review_reasons": reasons,
    }


@ActivityRegistry.register("shared", "extract_document_chunks")
@activity.defn
async def extract_document_chunks(run_id: str, document_id: str, chunks: Optional[List[dict]] = None) -> dict:
    """Run extraction over the whole document or over each planned chunk.

    Raises:
        AllChunksFailedError: If every chunk failed
    """
    async with async_session_maker() as session:
        content = await load_document_bytes(session, document_id)
    heartbeat("downloaded")

    service = _extraction_service()

    if not chunks:
        result = await service.extract_document(content)
        outcomes = [ChunkOutcome.success(0, result)]
    else:
        plans = [ChunkPlan.model_validate(chunk) for chunk in chunks]

        async def extract(plan: ChunkPlan):
            extraction = await service.extract_chunk(content, plan, len(plans))
            heartbeat(plan.chunk_index)
            return extraction

        executor = ChunkExecutor(extract, max_concurrency=settings.llm.chunk_max_concurrency)
        outcomes = await executor.execute_all(plans)
        if all_chunks_failed(outcomes):
            errors = "; ".join(f"chunk {o.chunk_index}: {o.error}" for o in outcomes)
            raise AllChunksFailedError(f"All {len(outcomes)} chunks failed: {errors}")

    activity.logger.info(
        f"Extraction finished for document {document_id}",
        extra={"run_id": run_id, "calls": len(outcomes)}
    )
    return {
        "stage": "processing",
        "was_chunked": bool(chunks),
        "outcomes": [outcome.model_dump(mode="json", exclude=_OUTCOME_EXCLUDE) for outcome in outcomes],
    }


@ActivityRegistry.register("shared", "merge_chunk_outcomes")
@activity.defn
async def merge_chunk_outcomes(
    run_id: str,
    document_id: str,
    outcomes: List[dict],
    stage_name: str = "aggregating",
) -> dict:
    """Merge chunk outcomes, persist the result and decide whether it needs review."""
    parsed = [ChunkOutcome.model_validate(outcome) for outcome in outcomes]
    merged = ResultMerger().merge(parsed)
    processing_time_ms = sum(o.result.duration_ms for o in parsed if o.succeeded)

    async with async_session_maker() as session:
        repo = ExtractionResultRepository(session)
        row = await repo.create_from_merged(
            UUID(run_id),
            UUID(document_id),
            merged,
            token_count=None,
            processing_time_ms=processing_time_ms,
        )
        await session.commit()

    reasons = ReviewService(settings.pipeline.review_confidence_threshold).review_reasons(merged)
    activity.logger.info(
        f"Stored extraction result {row.id}",
        extra={"run_id": run_id, "line_items": len(merged.line_items), "needs_review": bool(reasons)}
    )
    return _summary(stage_name, row, reasons)


@ActivityRegistry.register("shared", "validate_extraction")
@activity.defn
async def validate_extraction(run_id: str, result_id: str) -> dict:
    async with async_session_maker() as session:
        row = await _load_result(ExtractionResultRepository(session), result_id)
        merged = MergedExtractionResult.model_validate(row, from_attributes=True)

    reasons = ReviewService(settings.pipeline.review_confidence_threshold).review_reasons(merged)
    return {
        "stage": "validate",
        "result_id": result_id,
        "needs_review": bool(reasons),
        "reasons": reasons,
    }


@ActivityRegistry.register("shared", "apply_review_patch")
@activity.defn
async def apply_review_patch(run_id: str, result_id: str, patch: dict) -> dict:
    """Store the reviewer's corrections as a new result row."""
    async with async_session_maker() as session:
        repo = ExtractionResultRepository(session)
        source = await _load_result(repo, result_id)
        merged = MergedExtractionResult.model_validate(source, from_attributes=True)
        patched = ReviewService().apply_patch(merged, patch)

        row = await repo.create_from_merged(
            UUID(run_id),
            source.document_id,
            patched,
            token_count=source.token_count,
            processing_time_ms=source.processing_time_ms,
            source_result_id=source.id,
        )
        await session.commit()

    LOGGER.info(
        f"Review patch stored as result {row.id}",
        extra={"run_id": run_id, "source_result_id": result_id}
    )
    return {"result_id": str(row.id), "source_result_id": result_id}


@ActivityRegistry.register("shared", "export_extraction_workbook")
@activity.defn
async def export_extraction_workbook(run_id: str, result_id: str) -> dict:
    async with async_session_maker() as session:
        row = await _load_result(ExtractionResultRepository(session), result_id)
        merged = MergedExtractionResult.model_validate(row, from_attributes=True)

    content, row_count = build_extraction_workbook(merged)
    filename = f"{result_id}.xlsx"
    storage_path = f"runs/{run_id}/{filename}"
    await StorageService().upload_bytes(
        content,
        settings.storage.exports_bucket,
        storage_path,
        content_type=XLSX_CONTENT_TYPE,
    )
    return {
        "stage": "export",
        "result_id": result_id,
        "storage_path": storage_path,
        "filename": filename,
        "row_count": row_count,
    }
