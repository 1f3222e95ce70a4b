"""
工作流定义模型
"""
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .base import new_id, utcnow


class StepType(Enum):
    """步骤类型（封闭集合）"""
    LLM_PROMPT = "LLM_PROMPT"
    HTTP_REQUEST = "HTTP_REQUEST"
    CODE_EXECUTION = "CODE_EXECUTION"
    TOOL_EXECUTION = "TOOL_EXECUTION"
    CONDITIONAL = "CONDITIONAL"
    DELAY = "DELAY"
    NOTIFICATION = "NOTIFICATION"
    MEMORY_OPERATION = "MEMORY_OPERATION"


class TriggerType(Enum):
    """触发器类型"""
    MANUAL = "MANUAL"
    SCHEDULE = "SCHEDULE"
    CRON = "CRON"
    WEBHOOK = "WEBHOOK"
    EVENT = "EVENT"
    KEYWORD = "KEYWORD"


# 每种步骤类型必须提供的配置项
REQUIRED_CONFIG_KEYS: Dict[StepType, List[str]] = {
    StepType.LLM_PROMPT: ["prompt"],
    StepType.HTTP_REQUEST: ["url"],
    StepType.CODE_EXECUTION: ["code"],
    StepType.TOOL_EXECUTION: ["tool"],
    StepType.CONDITIONAL: ["condition"],
    StepType.DELAY: [],
    StepType.NOTIFICATION: ["title"],
    StepType.MEMORY_OPERATION: ["operation"],
}


def pick_key(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """按顺序取第一个存在的键（兼容 snake_case 与 camelCase）"""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass
class RetryConfig:
    """步骤重试配置"""
    max_retries: int = 0
    delay_ms: int = 1000
    backoff_multiplier: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "delay_ms": self.delay_ms,
            "backoff_multiplier": self.backoff_multiplier,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryConfig":
        return cls(
            max_retries=int(pick_key(data, "max_retries", "maxRetries", default=0)),
            delay_ms=int(pick_key(data, "delay_ms", "delayMs", default=1000)),
            backoff_multiplier=float(
                pick_key(data, "backoff_multiplier", "backoffMultiplier", default=1.0)
            ),
        )


@dataclass
class StepDefinition:
    """工作流步骤"""
    id: str
    name: str
    type: StepType
    config: Dict[str, Any] = field(default_factory=dict)
    on_success: Optional[str] = None
    on_failure: Optional[str] = None
    retry_config: Optional[RetryConfig] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "config": self.config,
            "on_success": self.on_success,
            "on_failure": self.on_failure,
            "retry_config": self.retry_config.to_dict() if self.retry_config else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepDefinition":
        retry_data = pick_key(data, "retry_config", "retryConfig")
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            type=StepType(data["type"]),
            config=dict(data.get("config") or {}),
            on_success=pick_key(data, "on_success", "onSuccess"),
            on_failure=pick_key(data, "on_failure", "onFailure"),
            retry_config=RetryConfig.from_dict(retry_data) if retry_data else None,
        )


@dataclass
class TriggerDefinition:
    """触发器定义"""
    type: TriggerType
    config: Dict[str, Any] = field(default_factory=dict)
    is_enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "config": self.config, "is_enabled": self.is_enabled}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TriggerDefinition":
        return cls(
            type=TriggerType(data["type"]),
            config=dict(data.get("config") or {}),
            is_enabled=bool(pick_key(data, "is_enabled", "isEnabled", default=True)),
        )


class StepGraph:
    """步骤有向图：节点为步骤ID，边为 on_success / 顺序后继 / on_failure"""

    def __init__(self, steps: List[StepDefinition]):
        self.steps = steps
        self.index: Dict[str, StepDefinition] = {step.id: step for step in steps}
        self.order: Dict[str, int] = {step.id: i for i, step in enumerate(steps)}

    @property
    def entry(self) -> Optional[str]:
        return self.steps[0].id if self.steps else None

    def get(self, step_id: Optional[str]) -> Optional[StepDefinition]:
        if step_id is None:
            return None
        return self.index.get(step_id)

    def next_in_order(self, step_id: str) -> Optional[str]:
        position = self.order.get(step_id)
        if position is None or position + 1 >= len(self.steps):
            return None
        return self.steps[position + 1].id

    def success_target(self, step: StepDefinition) -> Optional[str]:
        return step.on_success or self.next_in_order(step.id)

    def successors(self, step_id: str) -> List[str]:
        step = self.index[step_id]
        targets = []
        success = self.success_target(step)
        if success:
            targets.append(success)
        if step.on_failure and step.on_failure not in targets:
            targets.append(step.on_failure)
        return targets

    def validate(self) -> List[str]:
        """验证图结构的合法性"""
        errors = []

        ids = [step.id for step in self.steps]
        if len(ids) != len(set(ids)):
            errors.append("Duplicate step IDs found")

        for step in self.steps:
            for label, target in (("on_success", step.on_success), ("on_failure", step.on_failure)):
                if target is not None and target not in self.index:
                    errors.append(f"Step '{step.id}' {label} references unknown step '{target}'")

        if not errors and self.has_cycle():
            errors.append("Step graph contains a cycle")

        return errors

    def has_cycle(self) -> bool:
        """拓扑排序检测环"""
        adj = defaultdict(list)
        in_degree = {step_id: 0 for step_id in self.index}

        for step_id in self.index:
            for target in self.successors(step_id):
                adj[step_id].append(target)
                in_degree[target] += 1

        queue = deque([step_id for step_id, degree in in_degree.items() if degree == 0])
        visited = 0

        while queue:
            step_id = queue.popleft()
            visited += 1
            for neighbor in adj[step_id]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        return visited != len(self.index)


@dataclass
class WorkflowDefinition:
    """工作流定义"""
    id: str = field(default_factory=new_id)
    name: str = ""
    description: Optional[str] = None
    owner_id: Optional[str] = None
    is_enabled: bool = True
    triggers: List[TriggerDefinition] = field(default_factory=list)
    steps: List[StepDefinition] = field(default_factory=list)
    variables: Dict[str, Any] = field(default_factory=dict)
    last_run_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def graph(self) -> StepGraph:
        return StepGraph(self.steps)

    def get_step(self, step_id: str) -> Optional[StepDefinition]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def validate(self) -> List[str]:
        """验证工作流定义的合法性"""
        errors = []

        if not self.name:
            errors.append("Workflow name is required")
        if not self.steps:
            errors.append("Workflow must define at least one step")

        for step in self.steps:
            config = step.config or {}
            for key in REQUIRED_CONFIG_KEYS.get(step.type, []):
                if key not in config:
                    errors.append(f"Step '{step.id}' ({step.type.value}) requires config key '{key}'")
            if step.retry_config is not None:
                if step.retry_config.max_retries < 0:
                    errors.append(f"Step '{step.id}' max_retries must be >= 0")
                if step.retry_config.delay_ms < 0:
                    errors.append(f"Step '{step.id}' delay_ms must be >= 0")

        errors.extend(self.graph().validate())
        return errors

    def steps_snapshot(self) -> List[Dict[str, Any]]:
        return [step.to_dict() for step in self.steps]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "owner_id": self.owner_id,
            "is_enabled": self.is_enabled,
            "triggers": [trigger.to_dict() for trigger in self.triggers],
            "steps": self.steps_snapshot(),
            "variables": self.variables,
        }
