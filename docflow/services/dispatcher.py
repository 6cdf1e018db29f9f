"""Idempotent run submission onto the Temporal task queue."""

from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from temporalio.client import Client as TemporalClient
from temporalio.common import Priority, WorkflowIDReusePolicy
from temporalio.exceptions import WorkflowAlreadyStartedError

from docflow.core.exceptions import InvalidRunStateError, RunNotFoundError, ValidationError
from docflow.database.models import PipelineRun
from docflow.repositories.run_repository import RunRepository
from docflow.schemas.runs import RunHandle
from docflow.schemas.stages import FAILED_STAGE, QUEUED_STAGE, PipelineType, RunStatus
from docflow.temporal.core.constants import WORKFLOW_FOR_PIPELINE, WORKFLOW_ID_PREFIX
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


def workflow_id_for(input_key: str) -> str:
    return f"{WORKFLOW_ID_PREFIX}{input_key}"


class Dispatcher:
    """Starts one workflow per input key.

    The ``pipeline_runs.input_key`` unique constraint and Temporal's
    REJECT_DUPLICATE id policy together make re-submission a no-op that
    hands back the existing run.
    """

    def __init__(
        self,
        run_repository: RunRepository,
        temporal_client: TemporalClient,
        task_queue: str,
        default_priority: int = 3,
    ):
        self.run_repository = run_repository
        self.temporal_client = temporal_client
        self.task_queue = task_queue
        self.default_priority = default_priority

    async def submit(
        self,
        input_key: str,
        payload: Optional[Dict[str, Any]] = None,
        pipeline: str = PipelineType.INGEST.value,
        priority: Optional[int] = None,
        document_id: Optional[UUID] = None,
    ) -> RunHandle:
        """Create the run for ``input_key`` and start its workflow.

        Submitting an existing key returns the existing run with
        ``is_duplicate=True`` and does not start anything new.
        """
        if not input_key:
            raise ValidationError("input_key is required")
        if pipeline not in WORKFLOW_FOR_PIPELINE:
            raise ValidationError(f"Unknown pipeline: {pipeline}")
        priority = priority if priority is not None else self.default_priority

        run = await self.run_repository.get_by_input_key(input_key)
        if run is not None:
            LOGGER.info(
                f"Run already exists for input key {input_key}",
                extra={"run_id": str(run.id), "status": run.status}
            )
            return await self._attach(run)

        try:
            run = await self.run_repository.create_run(
                input_key=input_key,
                pipeline=pipeline,
                payload=payload,
                priority=priority,
                document_id=document_id,
            )
            await self.run_repository.commit()
        except IntegrityError:
            await self.run_repository.rollback()
            run = await self.run_repository.get_by_input_key(input_key)
            if run is None:
                raise
            LOGGER.info(f"Concurrent submission for {input_key}, attaching to run {run.id}")
            return await self._attach(run)

        workflow_id = await self._start(run, workflow_id_for(input_key))
        return RunHandle(
            run_id=str(run.id),
            workflow_id=workflow_id,
            input_key=input_key,
            is_duplicate=False,
        )

    async def retry(self, run_id: UUID) -> RunHandle:
        """Re-run a failed run under a fresh workflow id.

        Raises:
            RunNotFoundError: If the run does not exist
            InvalidRunStateError: If the run is not failed
        """
        run = await self.run_repository.get_by_id(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        if run.status != RunStatus.FAILED.value:
            raise InvalidRunStateError(
                f"Run {run_id} is {run.status}; only failed runs can be retried"
            )

        retry_key = f"{run.input_key}-retry-{(run.retry_count or 0) + 1}"
        workflow_id = workflow_id_for(retry_key)
        await self.run_repository.reset_for_retry(run, workflow_id)
        await self.run_repository.emit_event(
            run.id, "retry_requested", {"retry_count": run.retry_count, "workflow_id": workflow_id}
        )
        await self.run_repository.commit()

        LOGGER.info(
            f"Retrying run {run_id} as {workflow_id}",
            extra={"retry_count": run.retry_count}
        )
        try:
            workflow_id = await self._start(run, workflow_id)
        except Exception as e:
            # Back to failed so the run can be retried again
            LOGGER.error(f"Could not start retry workflow for run {run_id}: {e}", exc_info=True)
            await self.run_repository.update_state(
                run.id,
                status=RunStatus.FAILED.value,
                stage=FAILED_STAGE,
                error_summary={"code": "dispatch_failed", "message": str(e), "last_stage": QUEUED_STAGE},
            )
            await self.run_repository.commit()
            raise
        return RunHandle(
            run_id=str(run.id),
            workflow_id=workflow_id,
            input_key=retry_key,
            is_duplicate=False,
        )

    async def _attach(self, run: PipelineRun) -> RunHandle:
        workflow_id = run.temporal_workflow_id or workflow_id_for(run.input_key)
        # Created but never started, e.g. the process died before start_workflow
        if run.status == RunStatus.QUEUED.value and run.temporal_workflow_id is None:
            workflow_id = await self._start(run, workflow_id)
        return RunHandle(
            run_id=str(run.id),
            workflow_id=workflow_id,
            input_key=run.input_key,
            is_duplicate=True,
        )

    async def _start(self, run: PipelineRun, workflow_id: str) -> str:
        workflow_input = {
            "run_id": str(run.id),
            "input_key": run.input_key,
            "pipeline": run.pipeline,
            "payload": run.payload or {},
        }
        try:
            handle = await self.temporal_client.start_workflow(
                WORKFLOW_FOR_PIPELINE[run.pipeline],
                workflow_input,
                id=workflow_id,
                task_queue=self.task_queue,
                id_reuse_policy=WorkflowIDReusePolicy.REJECT_DUPLICATE,
                priority=Priority(priority_key=run.priority),
            )
            LOGGER.info(
                f"Started workflow {handle.id} for run {run.id}",
                extra={"pipeline": run.pipeline, "priority": run.priority}
            )
        except WorkflowAlreadyStartedError:
            LOGGER.info(f"Workflow {workflow_id} already started, attaching")
            handle = self.temporal_client.get_workflow_handle(workflow_id)

        if run.temporal_workflow_id != handle.id:
            await self.run_repository.set_workflow_id(run, handle.id)
            await self.run_repository.commit()
        return handle.id
