from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docflow.database.models import ErpOutboxItem, ExtractionResult
from docflow.repositories.base_repository import BaseRepository
from docflow.schemas.extraction import MergedExtractionResult


class ExtractionResultRepository(BaseRepository[ExtractionResult]):
    """Insert-only store of merged extraction results."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, ExtractionResult)

    async def create_from_merged(
        self,
        run_id: UUID,
        document_id: UUID,
        merged: MergedExtractionResult,
        token_count: Optional[int] = None,
        processing_time_ms: Optional[int] = None,
        source_result_id: Optional[UUID] = None,
    ) -> ExtractionResult:
        data = merged.model_dump(mode="json")
        return await self.create(
            run_id=run_id,
            document_id=document_id,
            source_result_id=source_result_id,
            header_fields=data["header_fields"],
            line_items=data["line_items"],
            unassigned_evidence=data["unassigned_evidence"],
            present_fields=data["present_fields"],
            missing_fields=data["missing_fields"],
            confidence=merged.confidence,
            was_chunked=merged.was_chunked,
            chunk_count=merged.chunk_count,
            failed_chunk_count=merged.failed_chunk_count,
            token_count=token_count,
            processing_time_ms=processing_time_ms,
        )

    async def get_latest_for_run(self, run_id: UUID) -> Optional[ExtractionResult]:
        result = await self.session.execute(
            select(ExtractionResult)
            .where(ExtractionResult.run_id == run_id)
            .order_by(ExtractionResult.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()


class ErpOutboxRepository(BaseRepository[ErpOutboxItem]):
    """Outbox rows feeding ERP delivery."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, ErpOutboxItem)

    async def get_by_result_id(self, result_id: UUID) -> Optional[ErpOutboxItem]:
        result = await self.session.execute(
            select(ErpOutboxItem).where(ErpOutboxItem.result_id == result_id)
        )
        return result.scalar_one_or_none()

    async def get_or_create(
        self,
        run_id: UUID,
        document_id: UUID,
        result_id: UUID,
        payload: Dict[str, Any],
    ) -> ErpOutboxItem:
        existing = await self.get_by_result_id(result_id)
        if existing is not None:
            return existing
        return await self.create(
            run_id=run_id,
            document_id=document_id,
            result_id=result_id,
            payload=payload,
            status="pending",
            attempts=0,
        )

    async def mark_in_progress(self, item: ErpOutboxItem) -> ErpOutboxItem:
        item.status = "in_progress"
        item.attempts = (item.attempts or 0) + 1
        await self.session.flush()
        return item

    async def mark_sent(self, item: ErpOutboxItem) -> ErpOutboxItem:
        item.status = "sent"
        item.last_error = None
        item.sent_at = datetime.now(timezone.utc)
        await self.session.flush()
        return item

    async def mark_failed(self, item: ErpOutboxItem, error: str) -> ErpOutboxItem:
        item.status = "failed"
        item.last_error = error[:2000]
        await self.session.flush()
        return item
