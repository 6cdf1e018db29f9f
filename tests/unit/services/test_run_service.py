"""Unit tests for RunService input rules and signalling."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from docflow.core.exceptions import (
    DocumentNotFoundError,
    InvalidRunStateError,
    RunNotFoundError,
    ValidationError,
)
from docflow.schemas.runs import RunHandle
from docflow.services.run_service import RunService


def _run(**overrides):
    values = {
        "id": uuid4(),
        "status": "running",
        "temporal_workflow_id": "run-ingest-abc",
    }
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture
def workflow_handle():
    handle = MagicMock()
    handle.signal = AsyncMock()
    return handle


@pytest.fixture
def service(workflow_handle):
    session = MagicMock()
    session.commit = AsyncMock()
    temporal_client = MagicMock()
    temporal_client.get_workflow_handle.return_value = workflow_handle
    svc = RunService(session, temporal_client, storage_service=AsyncMock(), task_queue="pipeline-runs")
    svc.run_repo = AsyncMock()
    svc.doc_repo = AsyncMock()
    svc.dispatcher = AsyncMock()
    return svc


class TestSubmitUpload:

    @pytest.mark.asyncio
    async def test_rejects_empty_upload(self, service):
        with pytest.raises(ValidationError):
            await service.submit_upload(b"")

    @pytest.mark.asyncio
    async def test_rejects_non_pdf(self, service):
        with pytest.raises(ValidationError):
            await service.submit_upload(b"PK\x03\x04 zip archive")

    @pytest.mark.asyncio
    async def test_rejects_unknown_pipeline(self, service, sample_pdf_content):
        with pytest.raises(ValidationError):
            await service.submit_upload(sample_pdf_content, pipeline="payroll")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("priority", [0, 6])
    async def test_rejects_out_of_range_priority(self, service, sample_pdf_content, priority):
        with pytest.raises(ValidationError):
            await service.submit_upload(sample_pdf_content, priority=priority)

    @pytest.mark.asyncio
    async def test_uploads_then_dispatches_by_content_hash(self, service, sample_pdf_content):
        service.dispatcher.submit.return_value = RunHandle(
            run_id=str(uuid4()), input_key="k", workflow_id="run-k"
        )

        await service.submit_upload(sample_pdf_content, file_name="invoice.pdf", priority=1)

        upload_args = service.storage_service.upload_bytes.await_args.args
        assert upload_args[0] == sample_pdf_content
        assert upload_args[2].startswith("uploads/") and upload_args[2].endswith(".pdf")

        key, payload = service.dispatcher.submit.await_args.args
        kwargs = service.dispatcher.submit.await_args.kwargs
        assert key == f"ingest-{payload['content_hash']}"
        assert payload["file_name"] == "invoice.pdf"
        assert kwargs == {"pipeline": "ingest", "priority": 1}

    @pytest.mark.asyncio
    async def test_explicit_input_key_wins(self, service, sample_pdf_content):
        await service.submit_upload(sample_pdf_content, input_key="batch-17")

        assert service.dispatcher.submit.await_args.args[0] == "batch-17"


class TestSignal:

    @pytest.mark.asyncio
    async def test_unsupported_signal(self, service):
        with pytest.raises(ValidationError):
            await service.signal(uuid4(), "pause")

    @pytest.mark.asyncio
    async def test_unknown_run(self, service):
        service.run_repo.get_by_id.return_value = None

        with pytest.raises(RunNotFoundError):
            await service.signal(uuid4(), "cancel")

    @pytest.mark.asyncio
    async def test_terminal_run_rejects_signals(self, service):
        service.run_repo.get_by_id.return_value = _run(status="succeeded")

        with pytest.raises(InvalidRunStateError):
            await service.cancel(uuid4())

    @pytest.mark.asyncio
    async def test_review_approval_needs_suspended_run(self, service):
        service.run_repo.get_by_id.return_value = _run(status="running")

        with pytest.raises(InvalidRunStateError):
            await service.signal(uuid4(), "review_approved", {})

    @pytest.mark.asyncio
    async def test_run_without_workflow(self, service):
        service.run_repo.get_by_id.return_value = _run(status="queued", temporal_workflow_id=None)

        with pytest.raises(InvalidRunStateError):
            await service.cancel(uuid4())

    @pytest.mark.asyncio
    async def test_review_approval_forwards_patch(self, service, workflow_handle):
        run = _run(status="suspended")
        service.run_repo.get_by_id.return_value = run
        patch = {"header_fields": {"invoice_number": "INV-9"}}

        result = await service.signal(run.id, "review_approved", patch)

        workflow_handle.signal.assert_awaited_once_with("review_approved", patch)
        service.run_repo.emit_event.assert_awaited_once_with(run.id, "signal.review_approved", patch)
        service.session.commit.assert_awaited_once()
        assert result == {"run_id": str(run.id), "signal": "review_approved", "delivered": True}

    @pytest.mark.asyncio
    async def test_cancel_sends_bare_signal(self, service, workflow_handle):
        service.run_repo.get_by_id.return_value = _run(status="suspended")

        await service.cancel(uuid4())

        workflow_handle.signal.assert_awaited_once_with("cancel")


class TestExportLink:

    @pytest.mark.asyncio
    async def test_signs_latest_export(self, service):
        service.run_repo.get_by_id.return_value = _run(status="succeeded")
        service.stage_repo = AsyncMock()
        service.stage_repo.list_for_run.return_value = [
            SimpleNamespace(stage_name="validate", state="succeeded", payload={"stage": "validate"}),
            SimpleNamespace(stage_name="export", state="failed", payload=None),
            SimpleNamespace(
                stage_name="export",
                state="succeeded",
                payload={"storage_path": "runs/r/res-1.xlsx", "filename": "res-1.xlsx", "row_count": 4},
            ),
        ]
        service.storage_service.get_signed_url.return_value = {
            "signed_url": "https://storage.test/sign/exports/runs/r/res-1.xlsx?token=t",
            "storage_path": "runs/r/res-1.xlsx",
        }

        link = await service.get_export_link(uuid4(), expires_in=600)

        service.storage_service.get_signed_url.assert_awaited_once_with(
            "exports", "runs/r/res-1.xlsx", expires_in=600
        )
        assert link["filename"] == "res-1.xlsx"
        assert link["row_count"] == 4

    @pytest.mark.asyncio
    async def test_run_without_export(self, service):
        service.run_repo.get_by_id.return_value = _run()
        service.stage_repo = AsyncMock()
        service.stage_repo.list_for_run.return_value = []

        with pytest.raises(RunNotFoundError):
            await service.get_export_link(uuid4())

    @pytest.mark.asyncio
    async def test_expiry_bounds(self, service):
        with pytest.raises(ValidationError):
            await service.get_export_link(uuid4(), expires_in=10)


class TestListAndReprocess:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, 201])
    async def test_limit_bounds(self, service, limit):
        with pytest.raises(ValidationError):
            await service.list_runs(limit=limit)

    @pytest.mark.asyncio
    async def test_reprocess_unknown_document(self, service):
        service.doc_repo.get_by_id.return_value = None

        with pytest.raises(DocumentNotFoundError):
            await service.reprocess_document(uuid4())

    @pytest.mark.asyncio
    async def test_reprocess_uses_fresh_key(self, service):
        document = SimpleNamespace(
            id=uuid4(),
            content_hash="abc",
            storage_path="uploads/abc.pdf",
            file_name="invoice.pdf",
            mime_type="application/pdf",
        )
        service.doc_repo.get_by_id.return_value = document
        service.run_repo.count.return_value = 2

        await service.reprocess_document(document.id, priority=2)

        key, payload = service.dispatcher.submit.await_args.args
        assert key == "abc-reprocess-3"
        assert payload["force"] is True
        assert payload["document_id"] == str(document.id)
        assert service.dispatcher.submit.await_args.kwargs["document_id"] == document.id
