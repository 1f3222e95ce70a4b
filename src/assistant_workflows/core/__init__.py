"""Core workflow engine and scheduler components"""

from .engine import WorkflowEngine
from .scheduler import TaskScheduler, MAX_TIMER_DELAY_MS
from .parser import WorkflowParser
from .cron import CronExpression, MAX_CRON_ITERATIONS
from .handlers import StepExecutor, StepHandlerRegistry, build_default_registry
from .retry import RetryPolicy, run_with_retry

__all__ = [
    "WorkflowEngine",
    "TaskScheduler",
    "MAX_TIMER_DELAY_MS",
    "WorkflowParser",
    "CronExpression",
    "MAX_CRON_ITERATIONS",
    "StepExecutor",
    "StepHandlerRegistry",
    "build_default_registry",
    "RetryPolicy",
    "run_with_retry"
]
