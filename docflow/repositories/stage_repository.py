from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from docflow.database.models import StageResult
from docflow.repositories.base_repository import BaseRepository
from docflow.schemas.stages import StageState
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class StageResultRepository(BaseRepository[StageResult]):
    """Repository for per-attempt stage outcomes."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, StageResult)

    async def get_running(self, run_id: UUID, stage_name: str) -> Optional[StageResult]:
        result = await self.session.execute(
            select(StageResult).where(
                StageResult.run_id == run_id,
                StageResult.stage_name == stage_name,
                StageResult.state == StageState.RUNNING.value,
            )
        )
        return result.scalar_one_or_none()

    async def next_attempt_number(self, run_id: UUID, stage_name: str) -> int:
        result = await self.session.execute(
            select(func.max(StageResult.attempt_number)).where(
                StageResult.run_id == run_id,
                StageResult.stage_name == stage_name,
            )
        )
        current = result.scalar_one_or_none()
        return (current or 0) + 1

    async def start_attempt(self, run_id: UUID, stage_name: str) -> StageResult:
        """Open a running attempt for (run, stage).

        If an attempt is already running (the recording activity was retried
        after it committed), that attempt is returned instead of opening a
        second one.
        """
        running = await self.get_running(run_id, stage_name)
        if running is not None:
            LOGGER.info(
                f"Reusing running attempt {running.attempt_number} for stage {stage_name}",
                extra={"run_id": str(run_id)}
            )
            return running
        attempt_number = await self.next_attempt_number(run_id, stage_name)
        return await self.create(
            run_id=run_id,
            stage_name=stage_name,
            attempt_number=attempt_number,
            state=StageState.RUNNING.value,
            started_at=datetime.now(timezone.utc),
        )

    async def finish_attempt(
        self,
        run_id: UUID,
        stage_name: str,
        attempt_number: int,
        state: str,
        payload: Optional[Dict[str, Any]] = None,
        error_detail: Optional[Dict[str, Any]] = None,
    ) -> Optional[StageResult]:
        result = await self.session.execute(
            select(StageResult).where(
                StageResult.run_id == run_id,
                StageResult.stage_name == stage_name,
                StageResult.attempt_number == attempt_number,
            )
        )
        stage_result = result.scalar_one_or_none()
        if stage_result is None:
            return None
        stage_result.state = state
        stage_result.payload = payload
        stage_result.error_detail = error_detail
        stage_result.finished_at = datetime.now(timezone.utc)
        await self.session.flush()
        return stage_result

    async def record_skipped(
        self,
        run_id: UUID,
        stage_name: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> StageResult:
        now = datetime.now(timezone.utc)
        attempt_number = await self.next_attempt_number(run_id, stage_name)
        return await self.create(
            run_id=run_id,
            stage_name=stage_name,
            attempt_number=attempt_number,
            state=StageState.SKIPPED.value,
            started_at=now,
            finished_at=now,
            payload=payload,
        )

    async def list_for_run(self, run_id: UUID) -> List[StageResult]:
        result = await self.session.execute(
            select(StageResult)
            .where(StageResult.run_id == run_id)
            .order_by(StageResult.started_at, StageResult.attempt_number)
        )
        return list(result.scalars().all())
