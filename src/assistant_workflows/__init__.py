"""
Assistant Workflow Runtime - 工作流引擎与任务调度器
"""

__version__ = "0.1.0"

from .core.engine import WorkflowEngine
from .core.scheduler import TaskScheduler
from .core.parser import WorkflowParser
from .models.workflow import WorkflowDefinition, StepDefinition, StepType
from .models.execution import WorkflowExecution, StepRecord, ExecutionStatus
from .models.task import ScheduledTask, ScheduleConfig, CreateTaskInput, TaskType

__all__ = [
    "WorkflowEngine",
    "TaskScheduler",
    "WorkflowParser",
    "WorkflowDefinition",
    "StepDefinition",
    "StepType",
    "WorkflowExecution",
    "StepRecord",
    "ExecutionStatus",
    "ScheduledTask",
    "ScheduleConfig",
    "CreateTaskInput",
    "TaskType"
]
