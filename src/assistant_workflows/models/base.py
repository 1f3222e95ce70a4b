"""
模型公共工具
"""
from datetime import datetime, timezone
from uuid import uuid4


def utcnow() -> datetime:
    """当前 UTC 时间（naive，与存储层保持一致）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())
