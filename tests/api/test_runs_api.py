"""API tests for the runs, documents and health endpoints."""

from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from docflow.api.v1.endpoints import health
from docflow.api.v1.endpoints.runs import get_run_service
from docflow.core.exceptions import InvalidRunStateError, RunNotFoundError, ValidationError
from docflow.main import app
from docflow.schemas.runs import QueueJobCounts, RunHandle, RunStatsResponse


@pytest.fixture
def run_service():
    service = AsyncMock()
    app.dependency_overrides[get_run_service] = lambda: service
    return service


def _handle(is_duplicate=False) -> RunHandle:
    return RunHandle(
        run_id=str(uuid4()),
        workflow_id="run-ingest-abc",
        input_key="ingest-abc",
        is_duplicate=is_duplicate,
    )


class TestSubmitRun:

    def test_submit_returns_accepted(self, test_client, run_service, sample_pdf_content):
        handle = _handle()
        run_service.submit_upload.return_value = handle

        response = test_client.post(
            "/api/v1/runs",
            files={"file": ("invoice.pdf", sample_pdf_content, "application/pdf")},
            data={"pipeline": "review", "priority": "2"},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["status"] is True
        assert body["message"] == "Run submitted"
        assert body["data"]["run_id"] == handle.run_id
        kwargs = run_service.submit_upload.await_args.kwargs
        assert kwargs["pipeline"] == "review"
        assert kwargs["priority"] == 2
        assert kwargs["file_name"] == "invoice.pdf"
        assert run_service.submit_upload.await_args.args[0] == sample_pdf_content

    def test_duplicate_submission_attaches(self, test_client, run_service, sample_pdf_content):
        run_service.submit_upload.return_value = _handle(is_duplicate=True)

        response = test_client.post(
            "/api/v1/runs", files={"file": ("invoice.pdf", sample_pdf_content, "application/pdf")}
        )

        assert response.status_code == 202
        assert response.json()["message"] == "Attached to existing run"
        assert response.json()["data"]["is_duplicate"] is True

    def test_invalid_upload_is_bad_request(self, test_client, run_service):
        run_service.submit_upload.side_effect = ValidationError("Uploaded file is not a PDF")

        response = test_client.post("/api/v1/runs", files={"file": ("notes.txt", b"hello", "text/plain")})

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["title"] == "Validation Error"
        assert detail["detail"] == "Uploaded file is not a PDF"
        assert detail["instance"] == "/api/v1/runs"


class TestRunQueries:

    def test_unknown_run_is_not_found(self, test_client, run_service):
        run_service.get_status.side_effect = RunNotFoundError("Run not found")

        response = test_client.get(f"/api/v1/runs/{uuid4()}")

        assert response.status_code == 404
        assert response.json()["detail"]["status"] == 404

    def test_live_flag_is_forwarded(self, test_client, run_service):
        run_id = uuid4()
        run_service.get_status.return_value = {"run_id": str(run_id), "status": "running", "live": None}

        response = test_client.get(f"/api/v1/runs/{run_id}", params={"live": "true"})

        assert response.status_code == 200
        run_service.get_status.assert_awaited_once_with(run_id, live=True)

    def test_list_filters_by_status(self, test_client, run_service):
        run_service.list_runs.return_value = {"total": 0, "runs": []}

        response = test_client.get("/api/v1/runs", params={"status": "failed", "limit": 10})

        assert response.status_code == 200
        run_service.list_runs.assert_awaited_once_with(
            status="failed", pipeline=None, stage=None, limit=10, offset=0
        )

    def test_stats(self, test_client, run_service):
        run_service.get_stats.return_value = RunStatsResponse(
            counts_by_status={"running": 2, "failed": 1},
            queue=QueueJobCounts(queued=3, active=2, completed=7, failed=1),
        )

        response = test_client.get("/api/v1/runs/stats")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["counts_by_status"] == {"running": 2, "failed": 1}
        assert data["queue"]["queued"] == 3

    def test_missing_result(self, test_client, run_service):
        run_service.get_result.return_value = None

        response = test_client.get(f"/api/v1/runs/{uuid4()}/result")

        assert response.status_code == 404

    def test_export_link(self, test_client, run_service):
        run_id = uuid4()
        run_service.get_export_link.return_value = {
            "signed_url": "https://storage.test/sign/x.xlsx",
            "storage_path": "runs/x.xlsx",
            "filename": "x.xlsx",
            "row_count": 1,
        }

        response = test_client.get(f"/api/v1/runs/{run_id}/export", params={"expires_in": 600})

        assert response.status_code == 200
        assert response.json()["data"]["filename"] == "x.xlsx"
        run_service.get_export_link.assert_awaited_once_with(run_id, expires_in=600)


class TestRunControl:

    def test_signal_on_finished_run_conflicts(self, test_client, run_service):
        run_service.signal.side_effect = InvalidRunStateError("Run is succeeded and no longer accepts signals")

        response = test_client.post(
            f"/api/v1/runs/{uuid4()}/signal", json={"name": "review_approved", "payload": {}}
        )

        assert response.status_code == 409
        assert response.json()["detail"]["title"] == "Invalid Run State"

    def test_review_approval(self, test_client, run_service):
        run_id = uuid4()
        patch_body = {"patch": {"header_fields": {"invoice_number": "INV-9"}}}
        run_service.signal.return_value = {"run_id": str(run_id), "signal": "review_approved", "delivered": True}

        response = test_client.post(
            f"/api/v1/runs/{run_id}/signal", json={"name": "review_approved", "payload": patch_body}
        )

        assert response.status_code == 200
        run_service.signal.assert_awaited_once_with(run_id, "review_approved", patch_body)

    def test_cancel(self, test_client, run_service):
        run_id = uuid4()
        run_service.cancel.return_value = {"run_id": str(run_id), "signal": "cancel", "delivered": True}

        response = test_client.post(f"/api/v1/runs/{run_id}/cancel")

        assert response.status_code == 200
        assert response.json()["message"] == "Cancellation requested"

    def test_retry_is_accepted(self, test_client, run_service):
        run_service.retry.return_value = _handle()

        response = test_client.post(f"/api/v1/runs/{uuid4()}/retry")

        assert response.status_code == 202

    def test_reprocess_rejects_bad_priority(self, test_client, run_service):
        response = test_client.post(f"/api/v1/documents/{uuid4()}/reprocess", params={"priority": 9})

        assert response.status_code == 422
        run_service.reprocess_document.assert_not_awaited()

    def test_reprocess(self, test_client, run_service):
        document_id = uuid4()
        run_service.reprocess_document.return_value = _handle()

        response = test_client.post(f"/api/v1/documents/{document_id}/reprocess", params={"priority": 1})

        assert response.status_code == 202
        run_service.reprocess_document.assert_awaited_once_with(document_id, priority=1)


class TestHealth:

    def test_healthy(self, test_client):
        with patch.object(health.db_client, "health_check", AsyncMock(return_value={"status": "healthy"})):
            response = test_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["database"] == "healthy"

    def test_degraded_database(self, test_client):
        with patch.object(health.db_client, "health_check", AsyncMock(return_value={"status": "unhealthy"})):
            response = test_client.get("/health")

        assert response.json()["status"] == "degraded"

    def test_root(self, test_client):
        response = test_client.get("/")

        assert response.json()["message"] == "Server is running"
