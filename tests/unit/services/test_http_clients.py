"""Unit tests for the httpx-backed storage, ERP and webhook clients."""

import json
from unittest.mock import AsyncMock
from uuid import uuid4

import httpx
import pytest

from docflow.core.exceptions import APIClientError, DocumentNotFoundError, ValidationError
from docflow.services.erp_client import ErpClient
from docflow.services.notification_service import NotificationService
from docflow.services.storage_service import StorageService


def _storage(handler) -> StorageService:
    return StorageService(
        url="https://project.supabase.test",
        service_role_key="secret",
        transport=httpx.MockTransport(handler),
    )


class TestStorageService:

    @pytest.mark.asyncio
    async def test_upload_posts_to_object_path(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["upsert"] = request.headers["x-upsert"]
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={"Key": "documents/uploads/abc.pdf"})

        result = await _storage(handler).upload_bytes(b"%PDF", "documents", "uploads/abc.pdf", "application/pdf")

        assert seen["url"] == "https://project.supabase.test/storage/v1/object/documents/uploads/abc.pdf"
        assert seen["upsert"] == "true"
        assert seen["auth"] == "Bearer secret"
        assert result["path"] == "uploads/abc.pdf"
        assert result["Key"] == "documents/uploads/abc.pdf"

    @pytest.mark.asyncio
    async def test_upload_failure_raises(self):
        service = _storage(lambda request: httpx.Response(500, text="storage down"))

        with pytest.raises(APIClientError):
            await service.upload_bytes(b"x", "documents", "a.pdf")

    @pytest.mark.asyncio
    async def test_download_returns_bytes(self):
        service = _storage(lambda request: httpx.Response(200, content=b"%PDF-1.7"))

        assert await service.download_file("documents", "a.pdf") == b"%PDF-1.7"

    @pytest.mark.asyncio
    async def test_download_missing_object(self):
        service = _storage(lambda request: httpx.Response(404, json={"error": "not_found"}))

        with pytest.raises(DocumentNotFoundError):
            await service.download_file("documents", "missing.pdf")

    @pytest.mark.asyncio
    async def test_signed_url_is_absolute(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"signedURL": "/object/sign/exports/runs/r.xlsx?token=t"})

        result = await _storage(handler).get_signed_url("exports", "runs/r.xlsx", expires_in=600)

        assert seen["url"] == "https://project.supabase.test/storage/v1/object/sign/exports/runs/r.xlsx"
        assert seen["body"] == {"expiresIn": 600}
        assert result == {
            "signed_url": "https://project.supabase.test/storage/v1/object/sign/exports/runs/r.xlsx?token=t",
            "storage_path": "runs/r.xlsx",
        }

    @pytest.mark.asyncio
    async def test_network_error_is_client_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(APIClientError):
            await _storage(handler).download_file("documents", "a.pdf")


class TestErpClient:

    @pytest.mark.asyncio
    async def test_push_sends_idempotency_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["key"] = request.headers.get("Idempotency-Key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": "erp-1"})

        client = ErpClient("https://erp.test/invoices", api_key="k", transport=httpx.MockTransport(handler))
        response = await client.push({"invoice_number": "INV-1"}, idempotency_key="outbox-1")

        assert response == {"id": "erp-1"}
        assert seen["key"] == "outbox-1"
        assert seen["body"] == {"invoice_number": "INV-1"}

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        client = ErpClient("https://erp.test", transport=httpx.MockTransport(lambda r: httpx.Response(503)))

        with pytest.raises(APIClientError):
            await client.push({})

    @pytest.mark.asyncio
    async def test_rejection_is_not_retryable(self):
        client = ErpClient("https://erp.test", transport=httpx.MockTransport(lambda r: httpx.Response(422, text="bad")))

        with pytest.raises(ValidationError):
            await client.push({})

    def test_unconfigured(self):
        assert ErpClient("").is_configured is False


class TestNotificationService:

    @pytest.mark.asyncio
    async def test_records_event_without_webhook(self):
        repository = AsyncMock()
        run_id = uuid4()

        result = await NotificationService(repository).notify(run_id, "needs_review", {"reasons": ["x"]})

        assert result == {"event": "needs_review", "webhook_status": None}
        repository.emit_event.assert_awaited_once()
        args = repository.emit_event.await_args.args
        assert args[1] == "notification.needs_review"
        assert args[2]["reasons"] == ["x"]

    @pytest.mark.asyncio
    async def test_webhook_failure_is_not_raised(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        service = NotificationService(
            AsyncMock(), webhook_url="https://hooks.test", transport=httpx.MockTransport(handler)
        )

        result = await service.notify(uuid4(), "failed")

        assert result["webhook_status"] is None

    @pytest.mark.asyncio
    async def test_unknown_event(self):
        with pytest.raises(ValidationError):
            await NotificationService(AsyncMock()).notify(uuid4(), "exploded")
