"""Queue-level job counts from the runs table and Temporal visibility."""

from temporalio.client import Client as TemporalClient

from docflow.repositories.run_repository import RunRepository
from docflow.schemas.runs import QueueJobCounts
from docflow.schemas.stages import RunStatus
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

_EXECUTION_STATUS = {
    "active": "Running",
    "completed": "Completed",
    "failed": "Failed",
}


class QueueMonitor:
    """Reports queued, active, completed and failed job counts.

    ``queued`` is read from the runs table: a run is queued until its
    workflow records the first stage. The rest come from Temporal's
    visibility store, scoped to the task queue.
    """

    def __init__(self, run_repository: RunRepository, temporal_client: TemporalClient, task_queue: str):
        self.run_repository = run_repository
        self.temporal_client = temporal_client
        self.task_queue = task_queue

    def _query(self, execution_status: str) -> str:
        return f"TaskQueue = '{self.task_queue}' AND ExecutionStatus = '{execution_status}'"

    async def get_job_counts(self) -> QueueJobCounts:
        counts = {"queued": await self.run_repository.count(filters={"status": RunStatus.QUEUED.value})}
        for key, execution_status in _EXECUTION_STATUS.items():
            result = await self.temporal_client.count_workflows(self._query(execution_status))
            counts[key] = result.count
        LOGGER.debug(f"Queue counts for {self.task_queue}: {counts}")
        return QueueJobCounts(**counts)
