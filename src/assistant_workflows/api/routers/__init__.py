"""
API 路由器
"""

from . import workflows, executions, tasks, monitoring

__all__ = ["workflows", "executions", "tasks", "monitoring"]
