"""
调度任务模型
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .base import new_id, utcnow


class TaskType(Enum):
    """调度任务类型"""
    ONE_TIME = "ONE_TIME"
    RECURRING = "RECURRING"
    CRON = "CRON"


class TaskRunStatus(Enum):
    """任务运行状态"""
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@dataclass
class ScheduleConfig:
    """调度配置：at（一次性）/ interval 毫秒（固定间隔）/ cron（5 段表达式）"""
    type: TaskType
    at: Optional[datetime] = None
    interval: Optional[int] = None
    cron: Optional[str] = None
    timezone: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "at": self.at.isoformat() if self.at else None,
            "interval": self.interval,
            "cron": self.cron,
            "timezone": self.timezone,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduleConfig":
        interval = data.get("interval", data.get("interval_ms"))
        return cls(
            type=TaskType(data["type"]),
            at=_parse_datetime(data.get("at")),
            interval=int(interval) if interval is not None else None,
            cron=data.get("cron"),
            timezone=data.get("timezone"),
        )


@dataclass
class ScheduledTask:
    """持久化的调度任务"""
    id: str = field(default_factory=new_id)
    name: str = ""
    description: Optional[str] = None
    type: TaskType = TaskType.ONE_TIME
    schedule: ScheduleConfig = None
    workflow_id: Optional[str] = None
    owner_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    max_retries: int = 3
    is_active: bool = True
    notify_on_complete: bool = False
    notify_on_failure: bool = False
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    run_count: int = 0
    fail_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class TaskRun:
    """任务的一次触发记录（只追加）"""
    id: str = field(default_factory=new_id)
    task_id: str = ""
    status: TaskRunStatus = TaskRunStatus.RUNNING
    output: Any = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def complete(self, output: Any):
        self.status = TaskRunStatus.COMPLETED
        self.output = output
        self.completed_at = utcnow()

    def fail(self, error: str):
        self.status = TaskRunStatus.FAILED
        self.error = error
        self.completed_at = utcnow()


@dataclass
class CreateTaskInput:
    """创建调度任务的输入"""
    name: str
    schedule: ScheduleConfig
    description: Optional[str] = None
    workflow_id: Optional[str] = None
    owner_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    max_retries: int = 3
    notify_on_complete: bool = False
    notify_on_failure: bool = False
