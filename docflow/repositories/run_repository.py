from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from docflow.database.models import PipelineRun, RunEvent
from docflow.repositories.base_repository import BaseRepository
from docflow.schemas.stages import QUEUED_STAGE, RunStatus, stage_index
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

# Distinguishes "leave as is" from an explicit None.
_UNSET: Any = object()


class RunRepository(BaseRepository[PipelineRun]):
    """Repository for PipelineRun records and their audit events."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, PipelineRun)

    @staticmethod
    def _advance_stage(run: PipelineRun, stage: str) -> None:
        """Move ``run.stage`` forward; only ``reset_for_retry`` may move it back."""
        if stage_index(run.pipeline, stage) < stage_index(run.pipeline, run.stage):
            LOGGER.warning(
                f"Ignoring backwards stage move for run {run.id}: {run.stage} -> {stage}"
            )
            return
        run.stage = stage

    async def get_by_input_key(self, input_key: str) -> Optional[PipelineRun]:
        result = await self.session.execute(
            select(PipelineRun).where(PipelineRun.input_key == input_key)
        )
        return result.scalar_one_or_none()

    async def create_run(
        self,
        input_key: str,
        pipeline: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: int = 3,
        document_id: Optional[UUID] = None,
    ) -> PipelineRun:
        """Create a queued run.

        Raises:
            sqlalchemy.exc.IntegrityError: If a run with this input key exists
        """
        return await self.create(
            input_key=input_key,
            pipeline=pipeline,
            payload=payload or {},
            priority=priority,
            document_id=document_id,
            stage=QUEUED_STAGE,
            status=RunStatus.QUEUED.value,
            attempts_per_stage={},
            retry_count=0,
        )

    async def update_state(
        self,
        run_id: UUID,
        status: Optional[str] = None,
        stage: Optional[str] = None,
        awaiting_signal: Any = _UNSET,
        error_summary: Any = _UNSET,
        document_id: Optional[UUID] = None,
    ) -> Optional[PipelineRun]:
        """Move a run to a new status/stage.

        Terminal statuses stamp ``finished_at``. ``awaiting_signal`` and
        ``error_summary`` are only touched when passed explicitly.
        """
        run = await self.get_by_id(run_id)
        if run is None:
            return None
        if status is not None:
            run.status = status
            if RunStatus(status).is_terminal:
                run.finished_at = datetime.now(timezone.utc)
        if stage is not None:
            self._advance_stage(run, stage)
        if awaiting_signal is not _UNSET:
            run.awaiting_signal = awaiting_signal
        if error_summary is not _UNSET:
            run.error_summary = error_summary
        if document_id is not None:
            run.document_id = document_id
        await self.session.flush()
        return run

    async def increment_stage_attempts(self, run_id: UUID, stage_name: str) -> Optional[PipelineRun]:
        """Bump the per-stage attempt counter and make ``stage_name`` current."""
        run = await self.get_by_id(run_id)
        if run is None:
            return None
        attempts = dict(run.attempts_per_stage or {})
        attempts[stage_name] = attempts.get(stage_name, 0) + 1
        # JSONB column: reassign so the change is tracked
        run.attempts_per_stage = attempts
        self._advance_stage(run, stage_name)
        run.status = RunStatus.RUNNING.value
        await self.session.flush()
        return run

    async def reset_for_retry(self, run: PipelineRun, workflow_id: str) -> PipelineRun:
        """Put a failed run back to queued under a fresh workflow id."""
        run.retry_count = (run.retry_count or 0) + 1
        run.status = RunStatus.QUEUED.value
        run.stage = QUEUED_STAGE
        run.awaiting_signal = None
        run.error_summary = None
        run.finished_at = None
        run.temporal_workflow_id = workflow_id
        await self.session.flush()
        return run

    async def set_workflow_id(self, run: PipelineRun, workflow_id: str) -> PipelineRun:
        run.temporal_workflow_id = workflow_id
        await self.session.flush()
        return run

    async def list_runs(
        self,
        status: Optional[str] = None,
        pipeline: Optional[str] = None,
        stage: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[PipelineRun], int]:
        """Newest-first page of runs plus the total matching count."""
        filters = {"status": status, "pipeline": pipeline, "stage": stage}
        runs = await self.get_all(
            skip=skip,
            limit=limit,
            filters=filters,
            order_by=PipelineRun.created_at.desc(),
        )
        total = await self.count(filters=filters)
        return runs, total

    async def count_by_status(self) -> Dict[str, int]:
        result = await self.session.execute(
            select(PipelineRun.status, func.count()).group_by(PipelineRun.status)
        )
        counts = {status.value: 0 for status in RunStatus}
        for status, count in result.all():
            counts[status] = count
        return counts

    async def emit_event(
        self,
        run_id: UUID,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> RunEvent:
        """Append an audit event for a run."""
        event = RunEvent(run_id=run_id, event_type=event_type, event_payload=payload)
        self.session.add(event)
        await self.session.flush()
        return event
