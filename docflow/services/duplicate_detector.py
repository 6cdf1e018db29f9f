"""Content-hash based duplicate detection for uploaded documents."""

import hashlib
from typing import Optional

from sqlalchemy.exc import IntegrityError

from docflow.core.exceptions import DocumentNotFoundError
from docflow.repositories.document_repository import DocumentRepository
from docflow.schemas.extraction import DocumentResolution
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

COMPLETED_STATUS = "completed"


def compute_content_hash(content: bytes) -> str:
    """SHA-256 hex digest of the raw bytes."""
    return hashlib.sha256(content).hexdigest()


class DuplicateDetector:
    """Resolves document bytes to a single SourceDocument row.

    The unique constraint on ``content_hash`` decides races: when two
    submissions of the same bytes both try to create, the loser rolls back
    and reads the winner's row.
    """

    def __init__(self, repository: DocumentRepository):
        self.repository = repository

    async def resolve(
        self,
        content: bytes,
        file_name: Optional[str] = None,
        mime_type: str = "application/pdf",
        storage_path: Optional[str] = None,
    ) -> DocumentResolution:
        """Find or create the document for ``content``.

        Args:
            content: Raw document bytes
            file_name: Original file name, stored only on create
            mime_type: MIME type, stored only on create
            storage_path: Blob key of the uploaded bytes, stored only on create

        Returns:
            DocumentResolution. ``is_new`` is True only when this call
            created the row; ``already_processed`` is True when the existing
            row has completed processing.
        """
        content_hash = compute_content_hash(content)

        existing = await self.repository.get_by_content_hash(content_hash)
        if existing is not None:
            LOGGER.info(
                f"Duplicate document detected: {existing.id}",
                extra={"content_hash": content_hash, "processing_status": existing.processing_status}
            )
            return self._existing(existing, content_hash)

        try:
            document = await self.repository.create_document(
                content_hash=content_hash,
                byte_size=len(content),
                mime_type=mime_type,
                file_name=file_name,
                storage_path=storage_path,
            )
            await self.repository.commit()
        except IntegrityError:
            await self.repository.rollback()
            existing = await self.repository.get_by_content_hash(content_hash)
            if existing is None:
                raise DocumentNotFoundError(
                    f"Document with hash {content_hash} vanished after a uniqueness conflict"
                )
            LOGGER.info(
                f"Lost create race for document {existing.id}, using existing row",
                extra={"content_hash": content_hash}
            )
            return self._existing(existing, content_hash)

        LOGGER.info(
            f"Registered new document {document.id}",
            extra={"content_hash": content_hash, "byte_size": len(content)}
        )
        return DocumentResolution(
            document_id=document.id,
            content_hash=content_hash,
            is_new=True,
            already_processed=False,
        )

    @staticmethod
    def _existing(document, content_hash: str) -> DocumentResolution:
        return DocumentResolution(
            document_id=document.id,
            content_hash=content_hash,
            is_new=False,
            already_processed=document.processing_status == COMPLETED_STATUS,
        )
