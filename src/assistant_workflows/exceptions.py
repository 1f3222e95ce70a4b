"""
工作流引擎与调度器异常定义
"""
from typing import Optional


class WorkflowEngineError(Exception):
    """工作流引擎基础异常"""
    pass


class NotFoundError(WorkflowEngineError):
    """资源不存在（工作流 / 任务 / 执行实例）"""
    def __init__(self, kind: str, resource_id: str):
        self.kind = kind
        self.resource_id = resource_id
        super().__init__(f"{kind} not found: {resource_id}")


class DisabledError(WorkflowEngineError):
    """工作流或任务未启用"""
    def __init__(self, kind: str, resource_id: str):
        self.kind = kind
        self.resource_id = resource_id
        super().__init__(f"{kind} is disabled: {resource_id}")


class InvalidStateError(WorkflowEngineError):
    """当前状态不允许该操作（例如取消已结束的执行）"""
    pass


class WorkflowParseError(WorkflowEngineError):
    """工作流解析异常"""
    pass


class WorkflowValidationError(WorkflowEngineError):
    """工作流验证异常（未知步骤类型、缺少配置项、非法 cron 表达式等）"""
    def __init__(self, message: str, errors: Optional[list] = None):
        self.errors = errors or []
        super().__init__(message)


class ExpressionError(WorkflowValidationError):
    """条件表达式语法错误"""
    pass


class StepHandlerError(WorkflowEngineError):
    """步骤处理器执行失败（单次尝试）"""
    pass


class StepExecutionError(WorkflowEngineError):
    """步骤执行异常"""
    def __init__(self, step_id: str, attempts: int, cause: Exception = None):
        self.step_id = step_id
        self.attempts = attempts
        self.cause = cause
        message = str(cause) if cause is not None else "unknown error"
        super().__init__(f"Step '{step_id}' failed after {attempts} attempt(s): {message}")


class RetryExhaustedError(StepExecutionError):
    """重试耗尽错误"""
    pass


class SchedulingError(WorkflowEngineError):
    """调度异常"""
    pass


class SchedulerArmingSkipped(SchedulingError):
    """延迟超过定时器上限，交由轮询处理（不是错误，只是记录）"""
    def __init__(self, task_id: str, delay_ms: int):
        self.task_id = task_id
        self.delay_ms = delay_ms
        super().__init__(
            f"Timer for task '{task_id}' not armed: delay {delay_ms}ms exceeds timer ceiling"
        )
