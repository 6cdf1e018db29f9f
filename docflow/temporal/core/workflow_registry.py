from typing import Dict, Type
from dataclasses import dataclass
from enum import Enum

from .constants import DEFAULT_TASK_QUEUE


class WorkflowType(str, Enum):
    """Workflow categories."""
    SHARED = "shared"
    PIPELINE = "pipeline"


@dataclass
class WorkflowMetadata:
    """Metadata for workflow discovery."""
    workflow_class: Type
    name: str
    category: WorkflowType
    task_queue: str


class WorkflowRegistry:
    """Central registry for all workflows."""

    _workflows: Dict[str, WorkflowMetadata] = {}

    @classmethod
    def register(
        cls,
        category: WorkflowType,
        task_queue: str = DEFAULT_TASK_QUEUE,
    ):
        """Decorator to register a workflow."""
        def decorator(workflow_class):
            metadata = WorkflowMetadata(
                workflow_class=workflow_class,
                name=workflow_class.__name__,
                category=category,
                task_queue=task_queue,
            )
            cls._workflows[workflow_class.__name__] = metadata
            return workflow_class
        return decorator

    @classmethod
    def get_all_workflows(cls) -> Dict[str, WorkflowMetadata]:
        return cls._workflows
