"""Mixin for the shared stage coordination logic of pipeline workflows."""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError, ApplicationError, FailureError

from docflow.core.exceptions import NON_RETRYABLE_ERROR_TYPES, RunCancelledError, StageFailedError
from docflow.schemas.stages import (
    CANCELLED_STAGE,
    COMPLETED_STAGE,
    FAILED_STAGE,
    QUEUED_STAGE,
    REVIEW_APPROVED_SIGNAL,
    ReviewPayload,
    RunStatus,
    StageState,
    parse_stage_payload,
)
from docflow.temporal.core.constants import (
    BOOKKEEPING_START_TO_CLOSE_TIMEOUT,
    STAGE_HEARTBEAT_TIMEOUT,
    STAGE_RETRY_BACKOFF_COEFFICIENT,
    STAGE_RETRY_INITIAL_INTERVAL,
    STAGE_RETRY_MAXIMUM_ATTEMPTS,
    STAGE_RETRY_MAXIMUM_INTERVAL,
    STAGE_START_TO_CLOSE_TIMEOUT,
)

STAGE_RETRY_POLICY = RetryPolicy(
    initial_interval=STAGE_RETRY_INITIAL_INTERVAL,
    maximum_interval=STAGE_RETRY_MAXIMUM_INTERVAL,
    backoff_coefficient=STAGE_RETRY_BACKOFF_COEFFICIENT,
    maximum_attempts=STAGE_RETRY_MAXIMUM_ATTEMPTS,
    non_retryable_error_types=NON_RETRYABLE_ERROR_TYPES,
)


def failure_details(error: FailureError) -> Tuple[str, str]:
    """Error code and message for a failed activity.

    The code is the application error type, which for activities is the
    class name of the exception they raised.
    """
    cause = error.cause if isinstance(error, ActivityError) and error.cause else error
    if isinstance(cause, ApplicationError):
        return cause.type or "stage_failed", cause.message
    if isinstance(cause, FailureError):
        return type(cause).__name__, cause.message
    return type(cause).__name__, str(cause)


class StageCoordinatorMixin:
    """Runs stages with bookkeeping, review suspension and cancellation.

    Workflows call ``_init_coordinator`` from ``__init__`` and expose the
    signal and query handlers, which delegate to the helpers here.
    """

    def _init_coordinator(self) -> None:
        self._run_id: Optional[str] = None
        self._document_id: Optional[str] = None
        self._status = RunStatus.QUEUED.value
        self._current_stage = QUEUED_STAGE
        self._awaiting_signal: Optional[str] = None
        self._attempts: Dict[str, int] = {}
        self._cancel_requested = False
        self._approval: Optional[Dict[str, Any]] = None

    # Signals and queries

    def _approve_review(self, payload: Optional[Dict[str, Any]]) -> None:
        if self._awaiting_signal != REVIEW_APPROVED_SIGNAL:
            workflow.logger.warning(
                f"Run {self._run_id}: ignoring {REVIEW_APPROVED_SIGNAL} signal, run is not awaiting review"
            )
            return
        self._approval = dict(payload or {})

    def _request_cancel(self) -> None:
        self._cancel_requested = True

    def _status_snapshot(self) -> dict:
        return {
            "status": self._status,
            "current_stage": self._current_stage,
            "awaiting_signal": self._awaiting_signal,
            "attempts": dict(self._attempts),
        }

    # Activity plumbing

    async def _activity(self, name: str, *args: Any, bookkeeping: bool = False) -> Any:
        if bookkeeping:
            return await workflow.execute_activity(
                name,
                args=list(args),
                start_to_close_timeout=BOOKKEEPING_START_TO_CLOSE_TIMEOUT,
                retry_policy=STAGE_RETRY_POLICY,
            )
        return await workflow.execute_activity(
            name,
            args=list(args),
            start_to_close_timeout=STAGE_START_TO_CLOSE_TIMEOUT,
            heartbeat_timeout=STAGE_HEARTBEAT_TIMEOUT,
            retry_policy=STAGE_RETRY_POLICY,
        )

    async def _set_run_status(
        self,
        status: RunStatus,
        stage: str,
        awaiting_signal: Optional[str] = None,
        error_summary: Optional[dict] = None,
    ) -> None:
        self._status = status.value
        self._current_stage = stage
        self._awaiting_signal = awaiting_signal
        await self._activity(
            "update_run_status",
            self._run_id,
            status.value,
            stage,
            awaiting_signal,
            error_summary,
            bookkeeping=True,
        )

    async def _notify(self, event: str, details: Optional[dict] = None) -> None:
        await self._activity("send_notification", self._run_id, event, details or {}, bookkeeping=True)

    def _check_cancelled(self) -> None:
        if self._cancel_requested:
            raise RunCancelledError(f"Run {self._run_id} cancelled before stage boundary")

    # Stages

    async def _start_stage(self, stage_name: str) -> int:
        self._check_cancelled()
        self._status = RunStatus.RUNNING.value
        self._current_stage = stage_name
        attempt = await self._activity("record_stage_started", self._run_id, stage_name, bookkeeping=True)
        self._attempts[stage_name] = attempt
        return attempt

    async def _finish_stage(
        self,
        stage_name: str,
        attempt: int,
        state: StageState,
        payload: Optional[dict] = None,
        error_detail: Optional[dict] = None,
    ) -> None:
        await self._activity(
            "record_stage_finished",
            self._run_id,
            stage_name,
            attempt,
            state.value,
            payload,
            error_detail,
            bookkeeping=True,
        )

    async def _run_stage(self, stage_name: str, body: Callable[[], Awaitable[dict]]):
        """Run one stage and return its validated payload.

        Raises:
            RunCancelledError: If a cancel arrived before the stage started
            StageFailedError: If the stage body failed after retries or
                returned a payload of the wrong shape
        """
        attempt = await self._start_stage(stage_name)
        workflow.logger.info(f"Run {self._run_id}: stage {stage_name} attempt {attempt}")

        try:
            raw = await body()
            payload = parse_stage_payload(raw)
        except FailureError as e:
            code, message = failure_details(e)
            await self._finish_stage(
                stage_name, attempt, StageState.FAILED, error_detail={"code": code, "message": message}
            )
            raise StageFailedError(stage_name, message, code=code, original_error=e)
        except PydanticValidationError as e:
            message = f"Stage {stage_name} returned an invalid payload: {e.error_count()} errors"
            await self._finish_stage(
                stage_name, attempt, StageState.FAILED, error_detail={"code": "invalid_payload", "message": message}
            )
            raise StageFailedError(stage_name, message, code="invalid_payload", original_error=e)

        await self._finish_stage(stage_name, attempt, StageState.SUCCEEDED, payload=payload.model_dump(mode="json"))
        return payload

    async def _skip_stages(self, stage_names: List[str], reason: str) -> None:
        for stage_name in stage_names:
            await self._activity("record_stage_skipped", self._run_id, stage_name, reason, bookkeeping=True)

    async def _await_review(self, result_id: str, reasons: List[str]) -> ReviewPayload:
        """Suspend the run until a reviewer approves or the run is cancelled.

        An approval carrying a ``patch`` is stored as a new result, whose id
        is returned for the remaining stages.
        """
        stage_name = "review"
        attempt = await self._start_stage(stage_name)

        await self._set_run_status(RunStatus.SUSPENDED, stage_name, awaiting_signal=REVIEW_APPROVED_SIGNAL)
        await self._notify("needs_review", {"result_id": result_id, "reasons": reasons})
        workflow.logger.info(f"Run {self._run_id} suspended for review")

        await workflow.wait_condition(lambda: self._approval is not None or self._cancel_requested)

        if self._approval is None:
            await self._finish_stage(stage_name, attempt, StageState.SKIPPED, error_detail={"code": "cancelled"})
            raise RunCancelledError(f"Run {self._run_id} cancelled while awaiting review")

        await self._set_run_status(RunStatus.RUNNING, stage_name)
        patch = self._approval.get("patch")
        approved_result_id = result_id
        if patch:
            try:
                patched = await self._activity("apply_review_patch", self._run_id, result_id, patch)
            except FailureError as e:
                code, message = failure_details(e)
                await self._finish_stage(
                    stage_name, attempt, StageState.FAILED, error_detail={"code": code, "message": message}
                )
                raise StageFailedError(stage_name, message, code=code, original_error=e)
            approved_result_id = patched["result_id"]

        payload = ReviewPayload(approved=True, patch=patch, result_id=approved_result_id)
        await self._finish_stage(stage_name, attempt, StageState.SUCCEEDED, payload=payload.model_dump(mode="json"))
        return payload

    # Terminal transitions

    async def _complete_run(self, result: Dict[str, Any], notify: bool = True) -> dict:
        if self._document_id:
            await self._activity(
                "update_document_status", self._document_id, "completed", self._run_id, bookkeeping=True
            )
        if notify:
            await self._notify("delivered", result)
        await self._set_run_status(RunStatus.SUCCEEDED, COMPLETED_STAGE)
        return {"run_id": self._run_id, "status": self._status, **result}

    async def _fail_run(self, error: StageFailedError) -> None:
        """Persist the failure and fail the workflow."""
        summary = {"code": error.code, "message": error.message, "last_stage": error.stage_name}
        workflow.logger.error(f"Run {self._run_id} failed in stage {error.stage_name}: {error.message}")

        if self._document_id:
            await self._activity(
                "update_document_status", self._document_id, "failed", self._run_id, bookkeeping=True
            )
        await self._set_run_status(RunStatus.FAILED, FAILED_STAGE, error_summary=summary)
        await self._notify("failed", summary)
        raise ApplicationError(
            f"Stage {error.stage_name} failed: {error.message}",
            summary,
            type=StageFailedError.__name__,
            non_retryable=True,
        )

    async def _cancel_run(self) -> dict:
        last_stage = self._current_stage
        await self._set_run_status(RunStatus.CANCELLED, CANCELLED_STAGE)
        await self._notify("cancelled", {"last_stage": last_stage})
        workflow.logger.info(f"Run {self._run_id} cancelled after stage {last_stage}")
        return {"run_id": self._run_id, "status": self._status, "last_stage": last_stage}
