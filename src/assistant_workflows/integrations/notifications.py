"""
通知服务接口
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from ..models.base import new_id, utcnow


logger = logging.getLogger(__name__)


@dataclass
class Notification:
    """用户通知"""
    user_id: str
    title: str
    content: str = ""
    type: str = "SYSTEM"
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)


class NotificationService(ABC):
    """通知服务接口"""

    @abstractmethod
    async def create(
        self,
        user_id: str,
        title: str,
        content: str = "",
        type: str = "SYSTEM",
        metadata: Optional[Dict[str, Any]] = None
    ) -> Notification:
        """创建通知"""
        pass


class InMemoryNotificationService(NotificationService):
    """内存通知服务实现"""

    def __init__(self):
        self.notifications: List[Notification] = []

    async def create(
        self,
        user_id: str,
        title: str,
        content: str = "",
        type: str = "SYSTEM",
        metadata: Optional[Dict[str, Any]] = None
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            title=title,
            content=content,
            type=type,
            metadata=metadata or {}
        )
        self.notifications.append(notification)
        logger.info(f"Notification {notification.id} created for user {user_id}: {title}")
        return notification

    def for_user(self, user_id: str) -> List[Notification]:
        return [n for n in self.notifications if n.user_id == user_id]
