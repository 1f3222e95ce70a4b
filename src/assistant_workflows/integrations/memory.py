"""
记忆管理器接口
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import json
import logging

from ..models.base import new_id, utcnow


logger = logging.getLogger(__name__)


@dataclass
class MemoryItem:
    """一条记忆（对话、笔记或日志）"""
    type: str
    content: str
    id: str = field(default_factory=new_id)
    title: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "content": self.content,
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
        }


class MemoryManager(ABC):
    """记忆管理器接口"""

    @abstractmethod
    async def save_conversation(
        self,
        conversation_id: str,
        user_id: str,
        messages: List[Dict[str, str]]
    ) -> MemoryItem:
        pass

    @abstractmethod
    async def save_note(
        self,
        title: str,
        content: str,
        tags: List[str] = None,
        metadata: Dict[str, Any] = None
    ) -> MemoryItem:
        pass

    @abstractmethod
    async def add_daily_log(self, type: str, content: str) -> MemoryItem:
        pass

    @abstractmethod
    async def get_context(
        self,
        user_id: str,
        conversation_id: str = None,
        max_tokens: int = 4000
    ) -> str:
        """为对话组装上下文文本"""
        pass

    @abstractmethod
    async def search(
        self,
        query: str,
        limit: int = 10,
        type: str = None
    ) -> List[MemoryItem]:
        pass

    @abstractmethod
    async def remember(self, query: str, type: str = None, max_results: int = 5) -> str:
        """返回与查询最相关的记忆，每条一行"""
        pass

    @abstractmethod
    async def forget(self, memory_id: str) -> bool:
        pass


class InMemoryMemoryManager(MemoryManager):
    """基于关键词匹配的内存实现"""

    def __init__(self):
        self.items: Dict[str, MemoryItem] = {}

    def _add(self, item: MemoryItem) -> MemoryItem:
        self.items[item.id] = item
        logger.debug(f"Stored {item.type} memory {item.id}")
        return item

    async def save_conversation(
        self,
        conversation_id: str,
        user_id: str,
        messages: List[Dict[str, str]]
    ) -> MemoryItem:
        content = "\n".join(f"[{m.get('role')}] {m.get('content', '')}" for m in messages)
        return self._add(MemoryItem(
            id=conversation_id or new_id(),
            type="conversation",
            content=content,
            metadata={"conversation_id": conversation_id, "user_id": user_id,
                      "message_count": len(messages)}
        ))

    async def save_note(
        self,
        title: str,
        content: str,
        tags: List[str] = None,
        metadata: Dict[str, Any] = None
    ) -> MemoryItem:
        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False, default=str)
        return self._add(MemoryItem(
            type="note",
            title=title,
            content=content,
            tags=list(tags or []),
            metadata=dict(metadata or {})
        ))

    async def add_daily_log(self, type: str, content: str) -> MemoryItem:
        today = utcnow().date().isoformat()
        return self._add(MemoryItem(
            type="daily_log",
            content=content,
            metadata={"date": today, "entry_type": type}
        ))

    @staticmethod
    def _score(item: MemoryItem, terms: List[str]) -> int:
        haystack = " ".join([item.title or "", item.content, " ".join(item.tags)]).lower()
        return sum(haystack.count(term) for term in terms)

    async def search(
        self,
        query: str,
        limit: int = 10,
        type: str = None
    ) -> List[MemoryItem]:
        terms = [term for term in (query or "").lower().split() if term]
        if not terms:
            return []

        scored = []
        for item in self.items.values():
            if type and item.type != type:
                continue
            score = self._score(item, terms)
            if score > 0:
                scored.append((score, item.created_at, item))

        scored.sort(key=lambda entry: (entry[0], entry[1]), reverse=True)
        return [item for _, _, item in scored[:limit]]

    async def get_context(
        self,
        user_id: str,
        conversation_id: str = None,
        max_tokens: int = 4000
    ) -> str:
        parts = []

        today = utcnow().date().isoformat()
        logs = [i for i in self.items.values()
                if i.type == "daily_log" and i.metadata.get("date") == today]
        if logs:
            lines = "\n".join(
                f"[{i.created_at:%H:%M}] {i.metadata.get('entry_type')}: {i.content}"
                for i in logs[-5:]
            )
            parts.append(f"Today's activity:\n{lines}")

        notes = [i for i in self.items.values()
                 if i.type == "note" and (i.metadata.get("user_id") == user_id or user_id in i.tags)]
        if notes:
            parts.append("Relevant notes:\n" + "\n\n".join(
                f"## {n.title}\n{n.content}" for n in notes[:3]
            ))

        if conversation_id and conversation_id in self.items:
            parts.append(f"Recent context:\n{self.items[conversation_id].content[:200]}")

        context = "\n\n---\n\n".join(parts)
        # 粗略按每个词一个 token 截断
        words = context.split(" ")
        if len(words) > max_tokens:
            context = " ".join(words[:max_tokens])
        return context

    async def remember(self, query: str, type: str = None, max_results: int = 5) -> str:
        results = await self.search(query, limit=max_results, type=type)
        return "\n".join(f"- {item.content}" for item in results)

    async def forget(self, memory_id: str) -> bool:
        return self.items.pop(memory_id, None) is not None
