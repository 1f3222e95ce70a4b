"""
API 请求和响应模型
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum

from ..models.workflow import WorkflowDefinition
from ..models.execution import WorkflowExecution, StepRecord
from ..models.task import ScheduledTask, TaskRun, ScheduleConfig, CreateTaskInput


class StepTypeEnum(str, Enum):
    """步骤类型枚举（API）"""
    LLM_PROMPT = "LLM_PROMPT"
    HTTP_REQUEST = "HTTP_REQUEST"
    CODE_EXECUTION = "CODE_EXECUTION"
    TOOL_EXECUTION = "TOOL_EXECUTION"
    CONDITIONAL = "CONDITIONAL"
    DELAY = "DELAY"
    NOTIFICATION = "NOTIFICATION"
    MEMORY_OPERATION = "MEMORY_OPERATION"


class ExecutionStatusEnum(str, Enum):
    """执行状态枚举（API）"""
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class TaskTypeEnum(str, Enum):
    """任务类型枚举（API）"""
    ONE_TIME = "ONE_TIME"
    RECURRING = "RECURRING"
    CRON = "CRON"


# 工作流相关模型

class RetryConfigModel(BaseModel):
    """步骤重试配置"""
    max_retries: int = Field(0, ge=0, description="最大重试次数")
    delay_ms: int = Field(1000, ge=0, description="首次重试前等待（毫秒）")
    backoff_multiplier: float = Field(1.0, gt=0, description="退避倍数")


class StepModel(BaseModel):
    """步骤定义"""
    id: str = Field(..., description="步骤ID")
    name: Optional[str] = Field(None, description="步骤名称")
    type: StepTypeEnum = Field(..., description="步骤类型")
    config: Dict[str, Any] = Field(default_factory=dict, description="步骤配置")
    on_success: Optional[str] = Field(None, description="成功后跳转的步骤")
    on_failure: Optional[str] = Field(None, description="失败后跳转的步骤")
    retry_config: Optional[RetryConfigModel] = Field(None, description="重试配置")


class WorkflowCreateRequest(BaseModel):
    """创建工作流请求"""
    name: str = Field(..., description="工作流名称")
    description: Optional[str] = Field(None, description="描述")
    steps: List[StepModel] = Field(..., description="步骤列表")
    triggers: List[Dict[str, Any]] = Field(default_factory=list, description="触发器配置")
    variables: Dict[str, Any] = Field(default_factory=dict, description="工作流变量")
    is_enabled: bool = Field(True, description="是否启用")

    def to_definition(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", exclude_none=True)
        for step in data["steps"]:
            step.setdefault("name", step["id"])
        return data


class WorkflowResponse(BaseModel):
    """工作流响应"""
    id: str = Field(..., description="工作流ID")
    name: str = Field(..., description="工作流名称")
    description: Optional[str] = Field(None, description="描述")
    owner_id: Optional[str] = Field(None, description="所属用户")
    is_enabled: bool = Field(True, description="是否启用")
    step_count: int = Field(..., description="步骤数量")
    last_run_at: Optional[datetime] = Field(None, description="最近运行时间")
    created_at: datetime = Field(..., description="创建时间")
    updated_at: datetime = Field(..., description="更新时间")

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_workflow(cls, workflow: WorkflowDefinition) -> "WorkflowResponse":
        return cls(
            id=workflow.id,
            name=workflow.name,
            description=workflow.description,
            owner_id=workflow.owner_id,
            is_enabled=workflow.is_enabled,
            step_count=len(workflow.steps),
            last_run_at=workflow.last_run_at,
            created_at=workflow.created_at,
            updated_at=workflow.updated_at
        )


class WorkflowDetailResponse(WorkflowResponse):
    """工作流详情响应"""
    steps: List[Dict[str, Any]] = Field(..., description="步骤列表")
    triggers: List[Dict[str, Any]] = Field(default_factory=list, description="触发器配置")
    variables: Dict[str, Any] = Field(default_factory=dict, description="工作流变量")

    @classmethod
    def from_workflow(cls, workflow: WorkflowDefinition) -> "WorkflowDetailResponse":
        base = WorkflowResponse.from_workflow(workflow).model_dump()
        return cls(
            **base,
            steps=workflow.steps_snapshot(),
            triggers=[t.to_dict() for t in workflow.triggers],
            variables=workflow.variables
        )


# 执行相关模型

class WorkflowExecuteRequest(BaseModel):
    """执行工作流请求"""
    payload: Dict[str, Any] = Field(default_factory=dict, description="触发负载")
    trigger_id: Optional[str] = Field(None, description="触发来源标识")


class StepRecordResponse(BaseModel):
    """步骤执行信息"""
    id: str = Field(..., description="记录ID")
    step_id: str = Field(..., description="步骤ID")
    name: str = Field(..., description="步骤名称")
    status: str = Field(..., description="执行状态")
    attempts: int = Field(0, description="尝试次数")
    output: Any = Field(None, description="输出")
    error: Optional[str] = Field(None, description="错误信息")
    started_at: datetime = Field(..., description="开始时间")
    completed_at: Optional[datetime] = Field(None, description="结束时间")

    @classmethod
    def from_record(cls, record: StepRecord) -> "StepRecordResponse":
        return cls(
            id=record.id,
            step_id=record.step_id,
            name=record.name,
            status=record.status.value,
            attempts=record.attempts,
            output=record.output,
            error=record.error,
            started_at=record.started_at,
            completed_at=record.completed_at
        )


class ExecutionResponse(BaseModel):
    """执行响应"""
    execution_id: str = Field(..., description="执行ID")
    workflow_id: str = Field(..., description="工作流ID")
    status: ExecutionStatusEnum = Field(..., description="执行状态")
    trigger_id: Optional[str] = Field(None, description="触发来源")
    error: Optional[str] = Field(None, description="错误信息")
    started_at: datetime = Field(..., description="开始时间")
    completed_at: Optional[datetime] = Field(None, description="结束时间")

    @classmethod
    def from_execution(cls, execution: WorkflowExecution) -> "ExecutionResponse":
        return cls(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            status=execution.status.value,
            trigger_id=execution.trigger_id,
            error=execution.error,
            started_at=execution.started_at,
            completed_at=execution.completed_at
        )


class ExecutionDetailResponse(ExecutionResponse):
    """执行详情响应"""
    trigger_payload: Optional[Dict[str, Any]] = Field(None, description="触发负载")
    output: Dict[str, Any] = Field(default_factory=dict, description="步骤输出")
    steps: List[StepRecordResponse] = Field(default_factory=list, description="步骤执行记录")

    @classmethod
    def from_execution(cls, execution: WorkflowExecution) -> "ExecutionDetailResponse":
        base = ExecutionResponse.from_execution(execution).model_dump()
        return cls(
            **base,
            trigger_payload=execution.trigger_payload,
            output=execution.output or {},
            steps=[StepRecordResponse.from_record(r) for r in execution.step_records]
        )


# 调度任务相关模型

class ScheduleModel(BaseModel):
    """调度配置"""
    type: TaskTypeEnum = Field(..., description="调度类型")
    at: Optional[datetime] = Field(None, description="一次性任务的运行时间")
    interval: Optional[int] = Field(None, gt=0, description="固定间隔（毫秒）")
    cron: Optional[str] = Field(None, description="5 段 cron 表达式")
    timezone: Optional[str] = Field(None, description="cron 使用的时区")


class TaskCreateRequest(BaseModel):
    """创建调度任务请求"""
    name: str = Field(..., description="任务名称")
    description: Optional[str] = Field(None, description="描述")
    schedule: ScheduleModel = Field(..., description="调度配置")
    workflow_id: Optional[str] = Field(None, description="要执行的工作流")
    payload: Dict[str, Any] = Field(default_factory=dict, description="触发负载")
    max_retries: int = Field(3, ge=0, description="最大重试次数")
    notify_on_complete: bool = Field(False, description="完成时通知")
    notify_on_failure: bool = Field(False, description="失败时通知")

    def to_input(self, owner_id: Optional[str]) -> CreateTaskInput:
        schedule = self.schedule.model_dump(mode="json")
        return CreateTaskInput(
            name=self.name,
            description=self.description,
            schedule=ScheduleConfig.from_dict(schedule),
            workflow_id=self.workflow_id,
            owner_id=owner_id,
            payload=self.payload,
            max_retries=self.max_retries,
            notify_on_complete=self.notify_on_complete,
            notify_on_failure=self.notify_on_failure
        )


class TaskResponse(BaseModel):
    """调度任务响应"""
    id: str = Field(..., description="任务ID")
    name: str = Field(..., description="任务名称")
    description: Optional[str] = Field(None, description="描述")
    type: TaskTypeEnum = Field(..., description="任务类型")
    schedule: Dict[str, Any] = Field(..., description="调度配置")
    workflow_id: Optional[str] = Field(None, description="工作流ID")
    owner_id: Optional[str] = Field(None, description="所属用户")
    is_active: bool = Field(..., description="是否激活")
    next_run_at: Optional[datetime] = Field(None, description="下次运行时间")
    last_run_at: Optional[datetime] = Field(None, description="最近运行时间")
    run_count: int = Field(0, description="成功次数")
    fail_count: int = Field(0, description="失败次数")
    created_at: datetime = Field(..., description="创建时间")

    @classmethod
    def from_task(cls, task: ScheduledTask) -> "TaskResponse":
        return cls(
            id=task.id,
            name=task.name,
            description=task.description,
            type=task.type.value,
            schedule=task.schedule.to_dict() if task.schedule else {"type": task.type.value},
            workflow_id=task.workflow_id,
            owner_id=task.owner_id,
            is_active=task.is_active,
            next_run_at=task.next_run_at,
            last_run_at=task.last_run_at,
            run_count=task.run_count,
            fail_count=task.fail_count,
            created_at=task.created_at
        )


class TaskRunResponse(BaseModel):
    """任务运行记录响应"""
    id: str = Field(..., description="运行ID")
    task_id: str = Field(..., description="任务ID")
    status: str = Field(..., description="运行状态")
    output: Any = Field(None, description="输出")
    error: Optional[str] = Field(None, description="错误信息")
    started_at: datetime = Field(..., description="开始时间")
    completed_at: Optional[datetime] = Field(None, description="结束时间")

    @classmethod
    def from_run(cls, run: TaskRun) -> "TaskRunResponse":
        return cls(
            id=run.id,
            task_id=run.task_id,
            status=run.status.value,
            output=run.output,
            error=run.error,
            started_at=run.started_at,
            completed_at=run.completed_at
        )


# 通用模型

class PaginatedResponse(BaseModel):
    """分页响应"""
    offset: int = Field(..., description="偏移量")
    limit: int = Field(..., description="每页数量")
    items: List[Any] = Field(..., description="数据项")


class HealthCheckResponse(BaseModel):
    """健康检查响应"""
    status: str = Field(..., description="健康状态", examples=["healthy", "unhealthy"])
    version: str = Field(..., description="版本号")
    timestamp: datetime = Field(..., description="时间戳")
    checks: Dict[str, bool] = Field(default_factory=dict, description="各组件检查结果")
