"""
监控 API 路由
"""
from fastapi import APIRouter, Depends
from typing import Dict, Any
import logging

from ..models import HealthCheckResponse
from ..dependencies import get_workflow_engine, get_scheduler
from ... import __version__
from ...models.base import utcnow


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    engine = Depends(get_workflow_engine),
    scheduler = Depends(get_scheduler)
) -> HealthCheckResponse:
    """健康检查"""
    checks = {}

    # 检查存储
    try:
        await engine.list_workflows(limit=1)
        checks["database"] = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = False

    checks["scheduler"] = scheduler.is_running

    return HealthCheckResponse(
        status="healthy" if checks["database"] else "unhealthy",
        version=__version__,
        timestamp=utcnow(),
        checks=checks
    )


@router.get("/scheduler")
async def scheduler_stats(scheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    """调度器状态"""
    return scheduler.get_stats()


@router.get("/engine")
async def engine_stats(engine = Depends(get_workflow_engine)) -> Dict[str, Any]:
    """正在运行的执行"""
    running = engine.running_executions()
    return {
        "running_executions": len(running),
        "execution_ids": running,
        "step_types": engine.handler_registry.registered_types(),
        "tools": [t.tool_id for t in await engine.tool_registry.list_tools()]
    }
