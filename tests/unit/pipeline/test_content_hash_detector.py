"""Unit tests for content-hash duplicate detection."""

from types import SimpleNamespace
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from docflow.services.duplicate_detector import DuplicateDetector, compute_content_hash


class InMemoryDocumentRepository:
    """Just enough of DocumentRepository to exercise the detector."""

    def __init__(self):
        self.rows = {}
        self.commit = AsyncMock()
        self.rollback = AsyncMock()

    async def get_by_content_hash(self, content_hash):
        return self.rows.get(content_hash)

    async def create_document(self, content_hash, byte_size, mime_type, file_name=None, storage_path=None):
        if content_hash in self.rows:
            raise IntegrityError("INSERT", {}, Exception("duplicate key"))
        row = SimpleNamespace(id=uuid4(), content_hash=content_hash, processing_status="pending")
        self.rows[content_hash] = row
        return row


class TestDuplicateDetector:

    @pytest.fixture
    def repository(self):
        return InMemoryDocumentRepository()

    def test_hash_is_sha256_hex(self):
        assert compute_content_hash(b"abc") == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )

    @pytest.mark.asyncio
    async def test_second_submission_is_not_new(self, repository):
        detector = DuplicateDetector(repository)

        first = await detector.resolve(b"%PDF-1.4 same bytes")
        second = await detector.resolve(b"%PDF-1.4 same bytes")

        assert first.is_new is True
        assert second.is_new is False
        assert first.document_id == second.document_id
        repository.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_completed_document_is_already_processed(self, repository):
        detector = DuplicateDetector(repository)
        first = await detector.resolve(b"%PDF-1.4 done")
        repository.rows[first.content_hash].processing_status = "completed"

        again = await detector.resolve(b"%PDF-1.4 done")

        assert again.already_processed is True
        assert first.already_processed is False

    @pytest.mark.asyncio
    async def test_lost_create_race_reads_winner(self):
        content = b"%PDF-1.4 raced"
        winner = SimpleNamespace(id=uuid4(), processing_status="processing")
        repository = AsyncMock()
        repository.get_by_content_hash.side_effect = [None, winner]
        repository.create_document.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))

        resolution = await DuplicateDetector(repository).resolve(content)

        assert resolution.document_id == winner.id
        assert resolution.is_new is False
        repository.rollback.assert_awaited_once()
