"""Temporal activities for run and stage bookkeeping."""

from uuid import UUID
from typing import Optional

from temporalio import activity

from docflow.core.config import settings
from docflow.core.database import async_session_maker
from docflow.core.exceptions import RunNotFoundError
from docflow.repositories.run_repository import RunRepository
from docflow.repositories.stage_repository import StageResultRepository
from docflow.schemas.stages import RunStatus
from docflow.services.notification_service import NotificationService
from docflow.utils.logging import get_logger
from docflow.temporal.core.activity_registry import ActivityRegistry

LOGGER = get_logger(__name__)


@ActivityRegistry.register("shared", "update_run_status")
@activity.defn
async def update_run_status(
    run_id: str,
    status: str,
    stage: Optional[str] = None,
    awaiting_signal: Optional[str] = None,
    error_summary: Optional[dict] = None,
    document_id: Optional[str] = None,
) -> bool:
    """Persist the run's coarse status.

    ``awaiting_signal`` is kept only while suspended and cleared on any
    other status. ``error_summary`` is written only when given.
    """
    async with async_session_maker() as session:
        run_repo = RunRepository(session)
        changes = {
            "status": status,
            "stage": stage,
            "awaiting_signal": awaiting_signal if status == RunStatus.SUSPENDED.value else None,
            "document_id": UUID(document_id) if document_id else None,
        }
        if error_summary is not None:
            changes["error_summary"] = error_summary
        run = await run_repo.update_state(UUID(run_id), **changes)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")

        await run_repo.emit_event(
            run.id,
            "run.status",
            {"status": status, "stage": run.stage, "awaiting_signal": run.awaiting_signal},
        )
        await session.commit()
        LOGGER.info(f"Run {run_id} status updated to: {status}", extra={"stage": run.stage})
        return True


@ActivityRegistry.register("shared", "record_stage_started")
@activity.defn
async def record_stage_started(run_id: str, stage_name: str) -> int:
    """Open a new stage attempt and make it the run's current stage.

    Returns:
        The attempt number
    """
    async with async_session_maker() as session:
        run_repo = RunRepository(session)
        stage_repo = StageResultRepository(session)

        stage_result = await stage_repo.start_attempt(UUID(run_id), stage_name)
        run = await run_repo.increment_stage_attempts(UUID(run_id), stage_name)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")

        await run_repo.emit_event(
            run.id,
            "stage.started",
            {"stage_name": stage_name, "attempt_number": stage_result.attempt_number},
        )
        await session.commit()
        LOGGER.info(
            f"Stage {stage_name} started (attempt {stage_result.attempt_number})",
            extra={"run_id": run_id}
        )
        return stage_result.attempt_number


@ActivityRegistry.register("shared", "record_stage_finished")
@activity.defn
async def record_stage_finished(
    run_id: str,
    stage_name: str,
    attempt_number: int,
    state: str,
    payload: Optional[dict] = None,
    error_detail: Optional[dict] = None,
) -> bool:
    """Close a stage attempt as succeeded, failed or skipped."""
    async with async_session_maker() as session:
        run_repo = RunRepository(session)
        stage_repo = StageResultRepository(session)

        result = await stage_repo.finish_attempt(
            UUID(run_id),
            stage_name,
            attempt_number,
            state,
            payload=payload,
            error_detail=error_detail,
        )
        if result is None:
            LOGGER.warning(
                f"No attempt {attempt_number} of stage {stage_name} to finish",
                extra={"run_id": run_id}
            )
            return False

        await run_repo.emit_event(
            UUID(run_id),
            f"stage.{state}",
            {"stage_name": stage_name, "attempt_number": attempt_number, "error": error_detail},
        )
        await session.commit()
        return True


@ActivityRegistry.register("shared", "record_stage_skipped")
@activity.defn
async def record_stage_skipped(run_id: str, stage_name: str, reason: str) -> bool:
    async with async_session_maker() as session:
        stage_repo = StageResultRepository(session)
        run_repo = RunRepository(session)
        await stage_repo.record_skipped(UUID(run_id), stage_name, payload={"reason": reason})
        await run_repo.emit_event(UUID(run_id), "stage.skipped", {"stage_name": stage_name, "reason": reason})
        await session.commit()
        LOGGER.info(f"Stage {stage_name} skipped: {reason}", extra={"run_id": run_id})
        return True


@ActivityRegistry.register("shared", "send_notification")
@activity.defn
async def send_notification(run_id: str, event: str, details: Optional[dict] = None) -> dict:
    """Record a notification event and forward it to the configured webhook."""
    async with async_session_maker() as session:
        notifier = NotificationService(
            RunRepository(session),
            webhook_url=settings.pipeline.notification_webhook_url,
        )
        result = await notifier.notify(UUID(run_id), event, details)
        await session.commit()
        return result
