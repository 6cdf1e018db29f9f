"""Temporal worker service for pipeline runs.

This worker:
- Connects to the Temporal server with retries
- Discovers and registers all workflows and activities
- Runs one worker per task queue with the configured concurrency limits
- Serves a small health app next to the workers
"""

import asyncio
from typing import Dict, List

import uvicorn
from fastapi import FastAPI
from temporalio.client import Client
from temporalio.worker import Worker
from temporalio.worker.workflow_sandbox import SandboxedWorkflowRunner, SandboxRestrictions

from docflow.core.config import settings
from docflow.temporal.core.activity_registry import ActivityRegistry
from docflow.temporal.core.constants import DEFAULT_TASK_QUEUE
from docflow.temporal.core.discovery import discover_all
from docflow.temporal.core.workflow_registry import WorkflowRegistry
from docflow.utils.logging import get_logger

logger = get_logger(__name__)

CONNECT_MAX_RETRIES = 5
CONNECT_RETRY_DELAY_SECONDS = 5

app = FastAPI(title="docflow worker health")


@app.get("/health")
async def health():
    return {"status": "ok", "service": "temporal-worker"}


@app.get("/")
async def root():
    return {"message": "docflow worker is running", "health": "/health"}


async def run_health_check_server():
    """Run the health check server."""
    port = settings.worker_health_port
    logger.info(f"Starting health check server on port {port}")
    config = uvicorn.Config(app, host=settings.host, port=port, log_level="info")
    server = uvicorn.Server(config)
    await server.serve()


async def connect_with_retries() -> Client:
    target = f"{settings.temporal_host}:{settings.temporal_port}"
    for attempt in range(CONNECT_MAX_RETRIES):
        try:
            logger.info(f"Connecting to Temporal server at {target} (Attempt {attempt + 1}/{CONNECT_MAX_RETRIES})")
            return await Client.connect(target_host=target, namespace=settings.temporal_namespace)
        except Exception as e:
            if attempt == CONNECT_MAX_RETRIES - 1:
                logger.error(f"Failed to connect to Temporal server after {CONNECT_MAX_RETRIES} attempts: {e}")
                raise
            logger.warning(f"Connection attempt {attempt + 1} failed: {e}. Retrying in {CONNECT_RETRY_DELAY_SECONDS}s...")
            await asyncio.sleep(CONNECT_RETRY_DELAY_SECONDS)


def group_workflows_by_queue() -> Dict[str, List[type]]:
    """Workflow classes per task queue; the default queue follows settings."""
    queues: Dict[str, List[type]] = {}
    for wf_name, metadata in WorkflowRegistry.get_all_workflows().items():
        queue = metadata.task_queue or DEFAULT_TASK_QUEUE
        if queue == DEFAULT_TASK_QUEUE:
            queue = settings.temporal_task_queue
        queues.setdefault(queue, []).append(metadata.workflow_class)
        logger.debug(f"Workflow '{wf_name}' assigned to queue '{queue}'")
    return queues


def build_workers(client: Client) -> List[Worker]:
    activities = list(ActivityRegistry.get_all_activities().values())
    queues = group_workflows_by_queue()
    logger.info(
        f"Registered {sum(len(w) for w in queues.values())} workflows and {len(activities)} activities"
    )

    return [
        Worker(
            client,
            task_queue=queue_name,
            workflows=workflows,
            activities=activities,
            max_concurrent_activities=settings.temporal.max_concurrent_activities,
            max_concurrent_workflow_tasks=settings.temporal.max_concurrent_workflow_tasks,
            workflow_runner=SandboxedWorkflowRunner(
                restrictions=SandboxRestrictions.default.with_passthrough_all_modules()
            ),
        )
        for queue_name, workflows in queues.items()
    ]


async def run_workers():
    """Connect to Temporal and run one worker per task queue."""
    discover_all()
    client = await connect_with_retries()
    workers = build_workers(client)

    logger.info(f"Workers polling queues: {[w.task_queue for w in workers]}")
    await asyncio.gather(*(worker.run() for worker in workers))


async def main():
    """Start the Temporal worker(s)."""
    await asyncio.gather(run_health_check_server(), run_workers())


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Workers stopped by user")
    except Exception as e:
        logger.error(f"Worker failed: {e}", exc_info=True)
        raise
