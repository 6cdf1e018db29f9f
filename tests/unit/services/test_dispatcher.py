"""Unit tests for Dispatcher and QueueMonitor."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError
from temporalio.common import WorkflowIDReusePolicy
from temporalio.exceptions import WorkflowAlreadyStartedError

from docflow.core.exceptions import InvalidRunStateError, RunNotFoundError
from docflow.services.dispatcher import Dispatcher, workflow_id_for
from docflow.services.queue_monitor import QueueMonitor


def _run(**overrides):
    values = {
        "id": uuid4(),
        "input_key": "ingest-abc",
        "pipeline": "ingest",
        "payload": {"storage_path": "uploads/abc.pdf"},
        "priority": 3,
        "status": "queued",
        "temporal_workflow_id": None,
        "retry_count": 0,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture
def run_repository():
    return AsyncMock()


@pytest.fixture
def temporal_client():
    client = MagicMock()

    async def start_workflow(workflow, arg, id, **kwargs):
        return SimpleNamespace(id=id)

    client.start_workflow = AsyncMock(side_effect=start_workflow)
    client.get_workflow_handle = MagicMock(side_effect=lambda workflow_id: SimpleNamespace(id=workflow_id))
    return client


@pytest.fixture
def dispatcher(run_repository, temporal_client):
    return Dispatcher(run_repository, temporal_client, "pipeline-runs")


class TestDispatcherSubmit:

    @pytest.mark.asyncio
    async def test_new_key_creates_run_and_starts_workflow(self, dispatcher, run_repository, temporal_client):
        run = _run()
        run_repository.get_by_input_key.return_value = None
        run_repository.create_run.return_value = run

        handle = await dispatcher.submit("ingest-abc", run.payload, priority=2)

        assert handle.run_id == str(run.id)
        assert handle.workflow_id == "run-ingest-abc"
        assert handle.is_duplicate is False
        run_repository.create_run.assert_awaited_once()
        assert run_repository.create_run.await_args.kwargs["priority"] == 2

        args, kwargs = temporal_client.start_workflow.await_args
        assert args[0] == "PipelineRunWorkflow"
        assert args[1]["run_id"] == str(run.id)
        assert kwargs["id"] == "run-ingest-abc"
        assert kwargs["task_queue"] == "pipeline-runs"
        assert kwargs["id_reuse_policy"] == WorkflowIDReusePolicy.REJECT_DUPLICATE
        run_repository.set_workflow_id.assert_awaited_once_with(run, "run-ingest-abc")

    @pytest.mark.asyncio
    async def test_existing_key_returns_existing_run(self, dispatcher, run_repository, temporal_client):
        run = _run(status="running", temporal_workflow_id="run-ingest-abc")
        run_repository.get_by_input_key.return_value = run

        handle = await dispatcher.submit("ingest-abc", {})

        assert handle.is_duplicate is True
        assert handle.run_id == str(run.id)
        run_repository.create_run.assert_not_awaited()
        temporal_client.start_workflow.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_create_attaches_to_winner(self, dispatcher, run_repository, temporal_client):
        winner = _run(status="running", temporal_workflow_id="run-ingest-abc")
        run_repository.get_by_input_key.side_effect = [None, winner]
        run_repository.create_run.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))

        handle = await dispatcher.submit("ingest-abc", {})

        assert handle.is_duplicate is True
        assert handle.run_id == str(winner.id)
        run_repository.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_already_started_workflow_is_attached(self, dispatcher, run_repository, temporal_client):
        run = _run()
        run_repository.get_by_input_key.return_value = None
        run_repository.create_run.return_value = run
        temporal_client.start_workflow.side_effect = WorkflowAlreadyStartedError(
            "run-ingest-abc", "PipelineRunWorkflow"
        )

        handle = await dispatcher.submit("ingest-abc", {})

        assert handle.workflow_id == "run-ingest-abc"
        temporal_client.get_workflow_handle.assert_called_once_with("run-ingest-abc")


class TestDispatcherRetry:

    @pytest.mark.asyncio
    async def test_retry_failed_run(self, dispatcher, run_repository, temporal_client):
        run = _run(status="failed", temporal_workflow_id="run-ingest-abc", retry_count=1)
        run_repository.get_by_id.return_value = run

        handle = await dispatcher.retry(run.id)

        assert handle.input_key == "ingest-abc-retry-2"
        assert handle.workflow_id == workflow_id_for("ingest-abc-retry-2")
        run_repository.reset_for_retry.assert_awaited_once_with(run, "run-ingest-abc-retry-2")
        assert temporal_client.start_workflow.await_args.kwargs["id"] == "run-ingest-abc-retry-2"

    @pytest.mark.asyncio
    async def test_failed_start_leaves_run_retryable(self, dispatcher, run_repository, temporal_client):
        run = _run(status="failed", temporal_workflow_id="run-ingest-abc", retry_count=0)
        run_repository.get_by_id.return_value = run

        async def reset_for_retry(target, workflow_id):
            target.status = "queued"
            target.retry_count += 1
            target.temporal_workflow_id = workflow_id

        async def update_state(run_id, status=None, stage=None, **kwargs):
            run.status = status

        run_repository.reset_for_retry.side_effect = reset_for_retry
        run_repository.update_state.side_effect = update_state
        start_workflow = temporal_client.start_workflow.side_effect
        temporal_client.start_workflow.side_effect = RuntimeError("temporal unavailable")

        with pytest.raises(RuntimeError):
            await dispatcher.retry(run.id)

        assert run.status == "failed"
        summary = run_repository.update_state.await_args.kwargs["error_summary"]
        assert summary["code"] == "dispatch_failed"

        temporal_client.start_workflow.side_effect = start_workflow
        handle = await dispatcher.retry(run.id)

        assert handle.input_key == "ingest-abc-retry-2"
        assert run.status == "queued"
        assert temporal_client.start_workflow.await_args.kwargs["id"] == "run-ingest-abc-retry-2"

    @pytest.mark.asyncio
    async def test_retry_rejects_non_failed_run(self, dispatcher, run_repository):
        run_repository.get_by_id.return_value = _run(status="running")

        with pytest.raises(InvalidRunStateError):
            await dispatcher.retry(uuid4())

    @pytest.mark.asyncio
    async def test_retry_unknown_run(self, dispatcher, run_repository):
        run_repository.get_by_id.return_value = None

        with pytest.raises(RunNotFoundError):
            await dispatcher.retry(uuid4())


class TestQueueMonitor:

    @pytest.mark.asyncio
    async def test_counts_combine_database_and_visibility(self):
        run_repository = AsyncMock()
        run_repository.count.return_value = 4
        temporal_client = MagicMock()
        counts = {"Running": 2, "Completed": 10, "Failed": 1}

        async def count_workflows(query):
            status = query.split("ExecutionStatus = '")[1].rstrip("'")
            return SimpleNamespace(count=counts[status])

        temporal_client.count_workflows = AsyncMock(side_effect=count_workflows)

        result = await QueueMonitor(run_repository, temporal_client, "pipeline-runs").get_job_counts()

        assert result.model_dump() == {"queued": 4, "active": 2, "completed": 10, "failed": 1}
        run_repository.count.assert_awaited_once_with(filters={"status": "queued"})
        query = temporal_client.count_workflows.await_args_list[0].args[0]
        assert "TaskQueue = 'pipeline-runs'" in query
