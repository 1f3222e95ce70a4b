"""Storage and repository interfaces"""

from .repository import (
    WorkflowRepository,
    ExecutionRepository,
    TaskRepository,
    InMemoryWorkflowRepository,
    InMemoryExecutionRepository,
    InMemoryTaskRepository
)

__all__ = [
    "WorkflowRepository",
    "ExecutionRepository",
    "TaskRepository",
    "InMemoryWorkflowRepository",
    "InMemoryExecutionRepository",
    "InMemoryTaskRepository"
]
