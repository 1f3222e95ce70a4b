"""
步骤执行器与注册表
"""
import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx

from ..models.workflow import StepDefinition, StepType
from ..models.execution import ExecutionContext
from ..exceptions import ExpressionError, StepHandlerError, WorkflowValidationError
from ..integrations.llm import LLMProvider
from ..integrations.tool_registry import ToolRegistry
from ..integrations.notifications import NotificationService
from ..integrations.memory import MemoryManager
from .interpolation import interpolate, interpolate_value
from .expressions import evaluate_condition


logger = logging.getLogger(__name__)


DEFAULT_HTTP_TIMEOUT = 30.0
DEFAULT_CODE_TOOL = "execute_code"


def _config(step: StepDefinition, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in step.config and step.config[key] is not None:
            return step.config[key]
    return default


def _user_id(step: StepDefinition, context: ExecutionContext) -> Optional[str]:
    user_id = _config(step, "userId", "user_id")
    if user_id:
        return interpolate(str(user_id), context)
    return context.get_variable("userId") or context.get_variable("user_id")


class StepExecutor:
    """步骤执行器基类"""

    async def execute(self, step: StepDefinition, context: ExecutionContext) -> Any:
        """执行步骤"""
        raise NotImplementedError


class CallableStepExecutor(StepExecutor):
    """将普通协程函数 (step, context) 包装为执行器"""

    def __init__(self, func: Callable[[StepDefinition, ExecutionContext], Any]):
        self.func = func

    async def execute(self, step: StepDefinition, context: ExecutionContext) -> Any:
        result = self.func(step, context)
        if inspect.isawaitable(result):
            result = await result
        return result


class LLMPromptExecutor(StepExecutor):
    """LLM 提示执行器"""

    def __init__(self, llm_provider: LLMProvider):
        self.llm_provider = llm_provider

    async def execute(self, step: StepDefinition, context: ExecutionContext) -> Dict[str, Any]:
        prompt = interpolate(str(_config(step, "prompt", default="")), context)
        system_prompt = _config(step, "systemPrompt", "system_prompt")

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": interpolate(str(system_prompt), context)})
        messages.append({"role": "user", "content": prompt})

        options = {}
        for option, keys in (
            ("model", ("model",)),
            ("temperature", ("temperature",)),
            ("max_tokens", ("maxTokens", "max_tokens")),
        ):
            value = _config(step, *keys)
            if value is not None:
                options[option] = value

        response = await self.llm_provider.complete(messages, options)
        return response.to_dict()


class HttpRequestExecutor(StepExecutor):
    """HTTP 请求执行器（带硬超时）"""

    def __init__(
        self,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.timeout = timeout
        self.transport = transport

    async def execute(self, step: StepDefinition, context: ExecutionContext) -> Dict[str, Any]:
        url = interpolate(str(step.config["url"]), context)
        method = str(_config(step, "method", default="GET")).upper()
        headers = {"Content-Type": "application/json"}
        headers.update({
            str(k): str(v) for k, v in interpolate_value(_config(step, "headers", default={}), context).items()
        })
        params = interpolate_value(_config(step, "params", "query"), context)

        body = _config(step, "body")
        content = None
        if body is not None:
            body = interpolate_value(body, context)
            content = body if isinstance(body, str) else json.dumps(body, default=str)

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.request(
                    method, url, headers=headers, params=params, content=content
                )
            except httpx.TimeoutException as e:
                raise StepHandlerError(
                    f"HTTP {method} {url} timed out after {self.timeout}s"
                ) from e
            except httpx.HTTPError as e:
                raise StepHandlerError(f"HTTP {method} {url} failed: {e}") from e

        try:
            parsed = response.json()
        except ValueError:
            parsed = response.text

        logger.debug(f"HTTP {method} {url} -> {response.status_code}")
        return {
            "status": response.status_code,
            "headers": dict(response.headers),
            "body": parsed,
        }


class ToolExecutionExecutor(StepExecutor):
    """工具执行器"""

    def __init__(self, tool_registry: ToolRegistry):
        self.tool_registry = tool_registry

    async def execute(self, step: StepDefinition, context: ExecutionContext) -> Any:
        tool_id = interpolate(str(step.config["tool"]), context)
        tool_input = interpolate_value(_config(step, "input", "params", default={}), context)

        result = await self.tool_registry.execute(tool_id, tool_input, _user_id(step, context))
        if not result.succeeded:
            raise StepHandlerError(f"Tool '{tool_id}' failed: {result.error}")
        return result.output


class CodeExecutionExecutor(StepExecutor):
    """代码执行器：委托给工具注册表中的沙箱工具，绝不在进程内执行"""

    def __init__(self, tool_registry: ToolRegistry, tool_name: str = DEFAULT_CODE_TOOL):
        self.tool_registry = tool_registry
        self.tool_name = tool_name

    async def execute(self, step: StepDefinition, context: ExecutionContext) -> Any:
        payload = {
            "code": step.config["code"],
            "language": _config(step, "language", default="python"),
            "input": interpolate_value(_config(step, "input", default={}), context),
        }

        result = await self.tool_registry.execute(self.tool_name, payload, _user_id(step, context))
        if not result.succeeded:
            raise StepHandlerError(f"Code execution failed: {result.error}")
        return result.output


class ConditionalExecutor(StepExecutor):
    """条件执行器：无法解析的条件按假处理"""

    async def execute(self, step: StepDefinition, context: ExecutionContext) -> Dict[str, Any]:
        try:
            result = evaluate_condition(step.config["condition"], context)
        except ExpressionError as e:
            logger.warning(f"Condition of step {step.id} could not be evaluated, treating as false: {e}")
            return {"result": False, "branch": "failure", "error": str(e)}
        return {"result": result, "branch": "success" if result else "failure"}


class DelayExecutor(StepExecutor):
    """延迟执行器"""

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.sleep = sleep

    async def execute(self, step: StepDefinition, context: ExecutionContext) -> Dict[str, Any]:
        delay_ms = _config(step, "delayMs", "delay_ms", default=1000)
        try:
            delay_ms = float(interpolate(str(delay_ms), context))
        except ValueError as e:
            raise StepHandlerError(f"Invalid delay: {delay_ms}") from e

        await self.sleep(max(0.0, delay_ms) / 1000.0)
        return {"delayed": delay_ms}


class NotificationExecutor(StepExecutor):
    """通知执行器"""

    def __init__(self, notification_service: NotificationService):
        self.notification_service = notification_service

    async def execute(self, step: StepDefinition, context: ExecutionContext) -> Dict[str, Any]:
        user_id = _user_id(step, context)
        if not user_id:
            raise StepHandlerError("userId required for notification")

        notification = await self.notification_service.create(
            user_id=user_id,
            title=interpolate(str(step.config["title"]), context),
            content=interpolate(str(_config(step, "content", default="")), context),
            type=_config(step, "notificationType", "notification_type", default="SYSTEM"),
            metadata={"workflow_id": context.workflow_id, "execution_id": context.execution_id}
        )
        return {"notified": True, "notification_id": notification.id}


# 操作名（兼容 camelCase 与别名）到规范名
MEMORY_OPERATIONS = {
    "save_conversation": "save_conversation",
    "saveConversation": "save_conversation",
    "save_note": "save_note",
    "saveNote": "save_note",
    "store": "save_note",
    "add_daily_log": "add_daily_log",
    "addDailyLog": "add_daily_log",
    "get_context": "get_context",
    "getContext": "get_context",
    "search": "search",
    "retrieve": "search",
    "remember": "remember",
    "forget": "forget",
}


class MemoryOperationExecutor(StepExecutor):
    """记忆操作执行器"""

    def __init__(self, memory_manager: MemoryManager):
        self.memory_manager = memory_manager

    async def execute(self, step: StepDefinition, context: ExecutionContext) -> Dict[str, Any]:
        operation = step.config["operation"]
        canonical = MEMORY_OPERATIONS.get(operation)
        if canonical is None:
            raise StepHandlerError(f"Unknown memory operation: {operation}")

        data = interpolate_value(_config(step, "data", default={}), context)
        if not isinstance(data, dict):
            raise StepHandlerError("Memory operation data must be an object")

        def get(*keys, default=None):
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return default

        manager = self.memory_manager
        user_id = get("userId", "user_id") or _user_id(step, context)

        if canonical == "save_conversation":
            item = await manager.save_conversation(
                get("conversationId", "conversation_id", default=context.execution_id),
                user_id,
                get("messages", default=[])
            )
            return {"operation": canonical, "stored": True, "id": item.id}

        if canonical == "save_note":
            content = get("content", default=data)
            item = await manager.save_note(
                title=get("title", default=step.name),
                content=content,
                tags=get("tags", default=[]),
                metadata={"user_id": user_id, "workflow_id": context.workflow_id}
            )
            return {"operation": canonical, "stored": True, "id": item.id, "data": data}

        if canonical == "add_daily_log":
            item = await manager.add_daily_log(
                get("type", "entryType", default="workflow"),
                str(get("content", default=""))
            )
            return {"operation": canonical, "stored": True, "id": item.id}

        if canonical == "get_context":
            text = await manager.get_context(
                user_id,
                get("conversationId", "conversation_id"),
                int(get("maxTokens", "max_tokens", default=4000))
            )
            return {"operation": canonical, "context": text}

        if canonical == "search":
            items = await manager.search(
                str(get("query", default="")),
                limit=int(get("limit", default=10)),
                type=get("type")
            )
            return {"operation": canonical, "results": [item.to_dict() for item in items]}

        if canonical == "remember":
            text = await manager.remember(
                str(get("query", default="")),
                type=get("type"),
                max_results=int(get("maxResults", "max_results", default=5))
            )
            return {"operation": canonical, "memories": text}

        forgotten = await manager.forget(str(get("id", "memoryId", "memory_id", default="")))
        return {"operation": canonical, "forgotten": forgotten}


HandlerLike = Union[StepExecutor, Callable[[StepDefinition, ExecutionContext], Any]]


class StepHandlerRegistry:
    """步骤类型到执行器的映射；只接受封闭集合中的类型"""

    def __init__(self):
        self._handlers: Dict[StepType, StepExecutor] = {}

    @staticmethod
    def _coerce_type(step_type: Union[StepType, str]) -> StepType:
        if isinstance(step_type, StepType):
            return step_type
        try:
            return StepType(step_type)
        except ValueError as e:
            raise WorkflowValidationError(f"Unknown step type: {step_type}") from e

    def register(self, step_type: Union[StepType, str], handler: HandlerLike):
        """注册（或替换）某个步骤类型的执行器"""
        step_type = self._coerce_type(step_type)
        if not isinstance(handler, StepExecutor):
            if not callable(handler):
                raise ValueError(f"Handler for {step_type.value} must be callable")
            handler = CallableStepExecutor(handler)

        replaced = step_type in self._handlers
        self._handlers[step_type] = handler
        logger.info(f"{'Replaced' if replaced else 'Registered'} handler for step type {step_type.value}")

    def get(self, step_type: Union[StepType, str]) -> StepExecutor:
        handler = self._handlers.get(self._coerce_type(step_type))
        if handler is None:
            raise StepHandlerError(f"No handler for step type: {step_type}")
        return handler

    def has(self, step_type: StepType) -> bool:
        return step_type in self._handlers

    def registered_types(self):
        return sorted(t.value for t in self._handlers)

    async def execute(self, step: StepDefinition, context: ExecutionContext) -> Any:
        return await self.get(step.type).execute(step, context)


def build_default_registry(
    llm_provider: LLMProvider,
    tool_registry: ToolRegistry,
    notification_service: NotificationService,
    memory_manager: MemoryManager,
    http_timeout: float = DEFAULT_HTTP_TIMEOUT,
    code_tool: str = DEFAULT_CODE_TOOL,
    http_transport: Optional[httpx.AsyncBaseTransport] = None
) -> StepHandlerRegistry:
    """注册全部默认执行器"""
    registry = StepHandlerRegistry()
    registry.register(StepType.LLM_PROMPT, LLMPromptExecutor(llm_provider))
    registry.register(StepType.HTTP_REQUEST, HttpRequestExecutor(http_timeout, http_transport))
    registry.register(StepType.CODE_EXECUTION, CodeExecutionExecutor(tool_registry, code_tool))
    registry.register(StepType.TOOL_EXECUTION, ToolExecutionExecutor(tool_registry))
    registry.register(StepType.CONDITIONAL, ConditionalExecutor())
    registry.register(StepType.DELAY, DelayExecutor())
    registry.register(StepType.NOTIFICATION, NotificationExecutor(notification_service))
    registry.register(StepType.MEMORY_OPERATION, MemoryOperationExecutor(memory_manager))
    return registry
