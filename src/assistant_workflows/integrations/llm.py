"""
LLM 提供者接口
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging


logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """LLM 补全结果"""
    content: str
    tokens_used: int = 0
    model: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "tokens_used": self.tokens_used,
            "model": self.model,
        }


class LLMProvider(ABC):
    """LLM 提供者接口"""

    @abstractmethod
    async def complete(
        self,
        messages: List[Dict[str, str]],
        options: Dict[str, Any] = None
    ) -> LLMResponse:
        """
        对消息列表进行补全

        Args:
            messages: [{"role": "system"|"user"|"assistant", "content": "..."}]
            options: model / temperature / max_tokens 等

        Returns:
            LLMResponse: 补全结果
        """
        pass


class EchoLLMProvider(LLMProvider):
    """本地回显实现：返回最后一条用户消息，用于测试与离线运行"""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self.calls: List[Dict[str, Any]] = []

    async def complete(
        self,
        messages: List[Dict[str, str]],
        options: Dict[str, Any] = None
    ) -> LLMResponse:
        self.calls.append({"messages": messages, "options": options or {}})

        user_messages = [m["content"] for m in messages if m.get("role") == "user"]
        content = self.prefix + (user_messages[-1] if user_messages else "")
        tokens = sum(len(m.get("content", "").split()) for m in messages) + len(content.split())

        logger.debug(f"Echo completion generated ({tokens} tokens)")
        return LLMResponse(
            content=content,
            tokens_used=tokens,
            model=(options or {}).get("model", "echo")
        )
