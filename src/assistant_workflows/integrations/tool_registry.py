"""
工具注册表集成
"""
from typing import Dict, Any, Optional, List, Callable
from dataclasses import dataclass, field
from abc import ABC, abstractmethod
import inspect
import logging
import time

from jsonschema import Draft7Validator


logger = logging.getLogger(__name__)


@dataclass
class ToolDefinition:
    """工具定义"""
    tool_id: str
    name: str
    description: str = ""
    parameters_schema: Dict[str, Any] = field(default_factory=dict)
    timeout: int = 30  # 超时时间（秒）
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    """工具执行结果"""
    status: str
    output: Any = None
    error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "output": self.output, "error": self.error}


class ToolRegistry(ABC):
    """工具注册表接口"""

    @abstractmethod
    async def register_tool(self, tool_def: ToolDefinition, handler: Callable):
        """注册工具"""
        pass

    @abstractmethod
    async def get_tool(self, tool_id: str) -> Optional[ToolDefinition]:
        """获取工具定义"""
        pass

    @abstractmethod
    async def list_tools(self) -> List[ToolDefinition]:
        """列出所有工具"""
        pass

    @abstractmethod
    async def execute(
        self,
        tool_id: str,
        input: Dict[str, Any],
        user_id: str = None
    ) -> ToolResult:
        """执行工具，失败时返回 status=error 的结果而不是抛出异常"""
        pass


class LocalToolRegistry(ToolRegistry):
    """本地工具注册表实现"""

    def __init__(self):
        self.tools: Dict[str, ToolDefinition] = {}
        self.handlers: Dict[str, Callable] = {}

    async def register_tool(self, tool_def: ToolDefinition, handler: Callable):
        """注册工具"""
        if not callable(handler):
            raise ValueError(f"Handler for tool {tool_def.tool_id} must be callable")

        self.tools[tool_def.tool_id] = tool_def
        self.handlers[tool_def.tool_id] = handler

        logger.info(f"Registered tool: {tool_def.tool_id}")

    async def get_tool(self, tool_id: str) -> Optional[ToolDefinition]:
        return self.tools.get(tool_id)

    async def list_tools(self) -> List[ToolDefinition]:
        return list(self.tools.values())

    def validate_parameters(self, tool_id: str, parameters: Dict[str, Any]) -> List[str]:
        """按工具的 JSON Schema 验证参数"""
        tool_def = self.tools.get(tool_id)
        if not tool_def:
            return [f"Tool not found: {tool_id}"]
        if not tool_def.parameters_schema:
            return []

        validator = Draft7Validator(tool_def.parameters_schema)
        errors = []
        for error in sorted(validator.iter_errors(parameters), key=lambda e: list(e.path)):
            path = ".".join(str(p) for p in error.path)
            errors.append(f"{path}: {error.message}" if path else error.message)
        return errors

    async def execute(
        self,
        tool_id: str,
        input: Dict[str, Any],
        user_id: str = None
    ) -> ToolResult:
        """执行工具"""
        handler = self.handlers.get(tool_id)
        if handler is None:
            return ToolResult(status="error", error=f"Tool not found: {tool_id}")

        errors = self.validate_parameters(tool_id, input or {})
        if errors:
            return ToolResult(
                status="error",
                error=f"Invalid parameters for tool {tool_id}: {'; '.join(errors)}"
            )

        start_time = time.time()
        context = {"user_id": user_id}

        try:
            output = handler(input or {}, context)
            if inspect.isawaitable(output):
                output = await output
        except Exception as e:
            logger.error(f"Tool {tool_id} invocation failed: {e}", exc_info=True)
            return ToolResult(
                status="error",
                error=str(e),
                duration_ms=(time.time() - start_time) * 1000
            )

        duration_ms = (time.time() - start_time) * 1000
        logger.info(f"Tool {tool_id} invoked successfully in {duration_ms:.2f}ms")
        return ToolResult(status="success", output=output, duration_ms=duration_ms)
