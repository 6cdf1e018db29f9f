"""Document intake activities: download, duplicate check, page count and plan."""

import time
from typing import Optional
from uuid import UUID

from temporalio import activity

from docflow.core.config import settings
from docflow.core.database import async_session_maker
from docflow.core.exceptions import DocumentNotFoundError, ValidationError
from docflow.core.llm_client import build_gemini_client
from docflow.repositories.document_repository import DocumentRepository
from docflow.repositories.run_repository import RunRepository
from docflow.schemas.extraction import DocumentResolution
from docflow.services.chunking.chunk_planner import ChunkPlanner
from docflow.services.duplicate_detector import DuplicateDetector, compute_content_hash
from docflow.services.extraction_service import ExtractionService
from docflow.services.pdf_service import PdfService
from docflow.services.storage_service import StorageService
from docflow.utils.logging import get_logger
from docflow.temporal.core.activity_registry import ActivityRegistry

LOGGER = get_logger(__name__)


def heartbeat(*details) -> None:
    if activity.in_activity():
        activity.heartbeat(*details)


async def download_source(payload: dict) -> bytes:
    """Fetch the uploaded bytes a run payload points at."""
    storage_path = payload.get("storage_path")
    if not storage_path:
        raise ValidationError("Run payload has no storage_path")
    bucket = payload.get("bucket") or settings.storage.documents_bucket
    return await StorageService().download_file(bucket, storage_path)


async def load_document_bytes(session, document_id: str) -> bytes:
    document = await DocumentRepository(session).get_by_id(UUID(document_id))
    if document is None or not document.storage_path:
        raise DocumentNotFoundError(f"Document {document_id} not found or has no stored file")
    return await StorageService().download_file(settings.storage.documents_bucket, document.storage_path)


@ActivityRegistry.register("shared", "prepare_document")
@activity.defn
async def prepare_document(run_id: str, payload: dict, stage_name: str = "splitting") -> dict:
    """Resolve the run's upload to a document, count pages and plan chunks.

    A payload with ``force`` and ``document_id`` (a reprocess) reuses that
    document and never reports it as already processed.
    """
    start = time.time()
    content = await download_source(payload)
    heartbeat("downloaded")

    async with async_session_maker() as session:
        doc_repo = DocumentRepository(session)
        run_repo = RunRepository(session)

        if payload.get("force") and payload.get("document_id"):
            document = await doc_repo.get_by_id(UUID(payload["document_id"]))
            if document is None:
                raise DocumentNotFoundError(f"Document {payload['document_id']} not found")
            if document.content_hash != compute_content_hash(content):
                raise ValidationError(f"Stored file for document {document.id} does not match its hash")
            resolution = DocumentResolution(
                document_id=document.id,
                content_hash=document.content_hash,
                is_new=False,
                already_processed=False,
            )
        else:
            resolution = await DuplicateDetector(doc_repo).resolve(
                content,
                file_name=payload.get("file_name"),
                mime_type=payload.get("mime_type") or "application/pdf",
                storage_path=payload.get("storage_path"),
            )

        page_count = PdfService().get_page_count(content)
        await doc_repo.update_page_count(resolution.document_id, page_count)
        if not resolution.already_processed:
            await doc_repo.update_status(resolution.document_id, "processing")
        await run_repo.update_state(UUID(run_id), document_id=resolution.document_id)
        await session.commit()

    llm = settings.llm
    chunks = ChunkPlanner(llm.safety_margin).plan(
        page_count,
        llm.tokens_per_page_estimate,
        llm.model_context_budget,
        llm.header_page_count,
    )

    activity.logger.info(
        f"Prepared document {resolution.document_id}: {page_count} pages, "
        f"{len(chunks) if chunks else 1} extraction calls",
        extra={
            "run_id": run_id,
            "is_new": resolution.is_new,
            "already_processed": resolution.already_processed,
            "duration_seconds": round(time.time() - start, 2),
        }
    )
    return {
        "stage": stage_name,
        "document_id": str(resolution.document_id),
        "content_hash": resolution.content_hash,
        "is_new": resolution.is_new,
        "already_processed": resolution.already_processed,
        "page_count": page_count,
        "estimated_tokens": page_count * llm.tokens_per_page_estimate,
        "chunks": [chunk.model_dump() for chunk in chunks] if chunks is not None else None,
    }


@ActivityRegistry.register("shared", "classify_document")
@activity.defn
async def classify_document(run_id: str, payload: dict) -> dict:
    """Classify the upload from its leading pages.

    Content that an earlier run already processed is not sent to the model;
    the parse stage then short-circuits the run.
    """
    content = await download_source(payload)
    pdf_service = PdfService()
    page_count = pdf_service.get_page_count(content)

    if not payload.get("force"):
        async with async_session_maker() as session:
            existing = await DocumentRepository(session).get_by_content_hash(compute_content_hash(content))
        if existing is not None and existing.processing_status == "completed":
            activity.logger.info(
                f"Skipping classification of already processed document {existing.id}",
                extra={"run_id": run_id}
            )
            return {"stage": "classify", "page_count": page_count, "already_processed": True}

    sample_pages = list(range(min(settings.llm.header_page_count or 1, page_count)))
    sample = pdf_service.extract_pages(content, sample_pages) if sample_pages else content

    service = ExtractionService(build_gemini_client(settings.llm), pdf_service)
    classification = await service.classify(sample)
    activity.logger.info(
        f"Classified upload as {classification['document_type']}",
        extra={"run_id": run_id, "confidence": classification["confidence"]}
    )
    return {"stage": "classify", "page_count": page_count, **classification}


@ActivityRegistry.register("shared", "update_document_status")
@activity.defn
async def update_document_status(document_id: str, status: str, run_id: Optional[str] = None) -> bool:
    async with async_session_maker() as session:
        updated = await DocumentRepository(session).update_status(UUID(document_id), status)
        await session.commit()
    LOGGER.info(f"Document {document_id} status updated to: {status}", extra={"run_id": run_id})
    return updated
