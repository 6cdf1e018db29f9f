from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docflow.database.models import SourceDocument
from docflow.repositories.base_repository import BaseRepository
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class DocumentRepository(BaseRepository[SourceDocument]):
    """Repository for SourceDocument records."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, SourceDocument)

    async def get_by_content_hash(self, content_hash: str) -> Optional[SourceDocument]:
        """Look up a document by its SHA-256 content hash."""
        result = await self.session.execute(
            select(SourceDocument).where(SourceDocument.content_hash == content_hash)
        )
        return result.scalar_one_or_none()

    async def create_document(
        self,
        content_hash: str,
        byte_size: int,
        mime_type: str = "application/pdf",
        file_name: Optional[str] = None,
        storage_path: Optional[str] = None,
        processing_status: str = "pending",
    ) -> SourceDocument:
        """Create a new document record.

        Raises:
            sqlalchemy.exc.IntegrityError: If the content hash already exists
        """
        return await self.create(
            content_hash=content_hash,
            byte_size=byte_size,
            mime_type=mime_type,
            file_name=file_name,
            storage_path=storage_path,
            processing_status=processing_status,
        )

    async def update_status(self, document_id: UUID, processing_status: str) -> bool:
        """Update processing status. Returns False if the document is missing."""
        return await self.update(document_id, processing_status=processing_status) is not None

    async def update_page_count(self, document_id: UUID, page_count: int) -> bool:
        return await self.update(document_id, page_count=page_count) is not None
