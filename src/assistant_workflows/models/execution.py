"""
工作流执行模型
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .base import new_id, utcnow


class ExecutionStatus(Enum):
    """工作流执行状态"""
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class StepStatus(Enum):
    """步骤执行状态"""
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


INTERRUPTED_ERROR = "interrupted"


@dataclass
class ExecutionContext:
    """执行上下文（仅在一次执行期间存在）"""
    workflow_id: str
    execution_id: str
    trigger_id: Optional[str] = None
    trigger_payload: Optional[Dict[str, Any]] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    step_results: Dict[str, Any] = field(default_factory=dict)

    def get_variable(self, key: str, default: Any = None) -> Any:
        return self.variables.get(key, default)

    def set_step_result(self, step_id: str, result: Any):
        self.step_results[step_id] = result

    def as_lookup(self) -> Dict[str, Any]:
        """插值路径解析使用的根对象，同时提供 camelCase 与 snake_case 名称"""
        payload = self.trigger_payload or {}
        return {
            "workflowId": self.workflow_id,
            "workflow_id": self.workflow_id,
            "executionId": self.execution_id,
            "execution_id": self.execution_id,
            "triggerId": self.trigger_id,
            "trigger_id": self.trigger_id,
            "triggerPayload": payload,
            "trigger_payload": payload,
            "variables": self.variables,
            "stepResults": self.step_results,
            "step_results": self.step_results,
        }


@dataclass
class StepRecord:
    """单个步骤的执行记录"""
    id: str = field(default_factory=new_id)
    execution_id: str = ""
    step_id: str = ""
    name: str = ""
    status: StepStatus = StepStatus.RUNNING
    attempts: int = 0
    output: Any = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def complete(self, output: Any, attempts: int):
        self.status = StepStatus.COMPLETED
        self.output = output
        self.attempts = attempts
        self.completed_at = utcnow()

    def fail(self, error: str, attempts: int):
        self.status = StepStatus.FAILED
        self.error = error
        self.attempts = attempts
        self.completed_at = utcnow()

    @property
    def duration(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


@dataclass
class WorkflowExecution:
    """工作流执行实例"""
    id: str = field(default_factory=new_id)
    workflow_id: str = ""
    status: ExecutionStatus = ExecutionStatus.RUNNING
    trigger_id: Optional[str] = None
    trigger_payload: Optional[Dict[str, Any]] = None
    steps_snapshot: List[Dict[str, Any]] = field(default_factory=list)
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    step_records: List[StepRecord] = field(default_factory=list)

    def complete(self, output: Dict[str, Any]):
        self.status = ExecutionStatus.COMPLETED
        self.output = output
        self.completed_at = utcnow()

    def fail(self, error: str, output: Optional[Dict[str, Any]] = None):
        self.status = ExecutionStatus.FAILED
        self.error = error
        if output is not None:
            self.output = output
        self.completed_at = utcnow()

    def cancel(self):
        self.status = ExecutionStatus.CANCELLED
        self.completed_at = utcnow()

    def is_terminal_state(self) -> bool:
        return self.status in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )

    @property
    def duration(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def get_step_record(self, step_id: str) -> Optional[StepRecord]:
        """返回该步骤最近一次的执行记录"""
        for record in reversed(self.step_records):
            if record.step_id == step_id:
                return record
        return None
