"""Unit tests for the intake and extraction activities."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from docflow.core.exceptions import AllChunksFailedError, ValidationError
from docflow.services.duplicate_detector import compute_content_hash
from docflow.temporal.shared.activities import documents, extraction

CHUNKS = [
    {"chunk_index": 0, "header_page_indices": [0, 1], "body_start": 2, "body_end": 5},
    {"chunk_index": 1, "header_page_indices": [0, 1], "body_start": 5, "body_end": 8},
]


@pytest.fixture
def extraction_service():
    service = MagicMock()
    service.extract_chunk = AsyncMock()
    with patch.object(extraction, "async_session_maker", MagicMock()), \
            patch.object(extraction, "load_document_bytes", AsyncMock(return_value=b"%PDF")), \
            patch.object(extraction, "_extraction_service", return_value=service), \
            patch.object(extraction, "activity"):
        yield service


class TestExtractDocumentChunks:

    @pytest.mark.asyncio
    async def test_partial_failure_returns_every_outcome(self, extraction_service, make_extraction, run_id):
        extraction_service.extract_chunk.side_effect = [make_extraction(["L1"]), RuntimeError("timeout")]

        result = await extraction.extract_document_chunks(run_id, str(uuid4()), CHUNKS)

        assert result["was_chunked"] is True
        assert [outcome["chunk_index"] for outcome in result["outcomes"]] == [0, 1]
        assert result["outcomes"][0]["error"] is None
        assert "raw_payload" not in result["outcomes"][0]["result"]
        assert "timeout" in result["outcomes"][1]["error"]

    @pytest.mark.asyncio
    async def test_every_chunk_failing_raises(self, extraction_service, run_id):
        extraction_service.extract_chunk.side_effect = RuntimeError("model unavailable")

        with pytest.raises(AllChunksFailedError):
            await extraction.extract_document_chunks(run_id, str(uuid4()), CHUNKS)

        assert extraction_service.extract_chunk.await_count == 2


@pytest.fixture
def intake(sample_pdf_content):
    doc_repo = MagicMock()
    doc_repo.get_by_id = AsyncMock()
    doc_repo.update_page_count = AsyncMock()
    doc_repo.update_status = AsyncMock()
    doc_repo.get_by_content_hash = AsyncMock(return_value=None)
    run_repo = MagicMock()
    run_repo.update_state = AsyncMock()
    with patch.object(documents, "download_source", AsyncMock(return_value=sample_pdf_content)), \
            patch.object(documents, "async_session_maker", MagicMock()), \
            patch.object(documents, "DocumentRepository", return_value=doc_repo), \
            patch.object(documents, "RunRepository", return_value=run_repo), \
            patch.object(documents, "activity"):
        yield SimpleNamespace(doc_repo=doc_repo, run_repo=run_repo)


class TestPrepareDocument:

    @pytest.mark.asyncio
    async def test_reprocess_reuses_document(self, intake, sample_pdf_content, run_id):
        document = SimpleNamespace(id=uuid4(), content_hash=compute_content_hash(sample_pdf_content))
        intake.doc_repo.get_by_id.return_value = document

        result = await documents.prepare_document(
            run_id, {"force": True, "document_id": str(document.id), "storage_path": "uploads/a.pdf"}, "parse"
        )

        assert result["stage"] == "parse"
        assert result["document_id"] == str(document.id)
        assert result["already_processed"] is False
        assert result["page_count"] == 3
        assert result["chunks"] is None
        intake.doc_repo.update_status.assert_awaited_once_with(document.id, "processing")

    @pytest.mark.asyncio
    async def test_reprocess_rejects_changed_file(self, intake, run_id):
        document = SimpleNamespace(id=uuid4(), content_hash="0" * 64)
        intake.doc_repo.get_by_id.return_value = document

        with pytest.raises(ValidationError):
            await documents.prepare_document(
                run_id, {"force": True, "document_id": str(document.id), "storage_path": "uploads/a.pdf"}
            )

        intake.doc_repo.update_status.assert_not_awaited()


class TestClassifyDocument:

    @pytest.mark.asyncio
    async def test_processed_content_is_not_sent_to_the_model(self, intake, run_id):
        intake.doc_repo.get_by_content_hash.return_value = SimpleNamespace(
            id=uuid4(), processing_status="completed"
        )

        with patch.object(documents, "ExtractionService") as service_cls:
            result = await documents.classify_document(run_id, {"storage_path": "uploads/a.pdf"})

        service_cls.assert_not_called()
        assert result == {"stage": "classify", "page_count": 3, "already_processed": True}

    @pytest.mark.asyncio
    async def test_new_content_is_classified(self, intake, run_id):
        with patch.object(documents, "ExtractionService") as service_cls, \
                patch.object(documents, "build_gemini_client"):
            service_cls.return_value.classify = AsyncMock(
                return_value={"document_type": "logistics_invoice", "confidence": 0.8}
            )
            result = await documents.classify_document(run_id, {"storage_path": "uploads/a.pdf"})

        assert result["document_type"] == "logistics_invoice"
        assert result["page_count"] == 3
