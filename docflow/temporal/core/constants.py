"""Shared constants for Temporal workflows."""

from datetime import timedelta

# Task Queues
DEFAULT_TASK_QUEUE = "pipeline-runs"

# Workflow type names, as registered with Temporal
PIPELINE_RUN_WORKFLOW = "PipelineRunWorkflow"
DOCUMENT_REVIEW_WORKFLOW = "DocumentReviewWorkflow"

WORKFLOW_FOR_PIPELINE = {
    "ingest": PIPELINE_RUN_WORKFLOW,
    "review": DOCUMENT_REVIEW_WORKFLOW,
}

WORKFLOW_ID_PREFIX = "run-"

# Stage activity retries
STAGE_RETRY_INITIAL_INTERVAL = timedelta(seconds=1)
STAGE_RETRY_MAXIMUM_INTERVAL = timedelta(seconds=10)
STAGE_RETRY_BACKOFF_COEFFICIENT = 2.0
STAGE_RETRY_MAXIMUM_ATTEMPTS = 3

# Timeouts
STAGE_START_TO_CLOSE_TIMEOUT = timedelta(minutes=10)
STAGE_HEARTBEAT_TIMEOUT = timedelta(seconds=30)
BOOKKEEPING_START_TO_CLOSE_TIMEOUT = timedelta(seconds=30)
