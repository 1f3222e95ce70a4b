"""Workflow, execution and scheduled task models"""

from .base import utcnow, new_id
from .workflow import (
    WorkflowDefinition, StepDefinition, TriggerDefinition, RetryConfig,
    StepType, TriggerType, StepGraph, REQUIRED_CONFIG_KEYS
)
from .execution import (
    WorkflowExecution, StepRecord, ExecutionContext,
    ExecutionStatus, StepStatus, INTERRUPTED_ERROR
)
from .task import (
    ScheduledTask, TaskRun, ScheduleConfig, CreateTaskInput,
    TaskType, TaskRunStatus
)

__all__ = [
    "utcnow",
    "new_id",
    "WorkflowDefinition",
    "StepDefinition",
    "TriggerDefinition",
    "RetryConfig",
    "StepType",
    "TriggerType",
    "StepGraph",
    "REQUIRED_CONFIG_KEYS",
    "WorkflowExecution",
    "StepRecord",
    "ExecutionContext",
    "ExecutionStatus",
    "StepStatus",
    "INTERRUPTED_ERROR",
    "ScheduledTask",
    "TaskRun",
    "ScheduleConfig",
    "CreateTaskInput",
    "TaskType",
    "TaskRunStatus"
]
