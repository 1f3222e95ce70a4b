"""
FastAPI 依赖注入
"""
from fastapi import HTTPException, Request, status, Header
from typing import Optional
import logging

from ..core import WorkflowEngine, TaskScheduler
from ..exceptions import (
    WorkflowEngineError, NotFoundError, DisabledError, InvalidStateError,
    WorkflowParseError, WorkflowValidationError
)


logger = logging.getLogger(__name__)


def _service_unavailable(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "error": "service_unavailable",
            "message": message
        }
    )


def get_workflow_engine(request: Request) -> WorkflowEngine:
    """获取工作流引擎实例"""
    engine = getattr(request.app.state, "engine", None)
    if not engine:
        raise _service_unavailable("Workflow engine not initialized")
    return engine


def get_scheduler(request: Request) -> TaskScheduler:
    """获取调度器实例"""
    scheduler = getattr(request.app.state, "scheduler", None)
    if not scheduler:
        raise _service_unavailable("Scheduler not initialized")
    return scheduler


def get_current_user(
    x_user_id: Optional[str] = Header(None)
) -> Optional[str]:
    """调用方用户ID（由上游网关写入 X-User-Id 请求头）"""
    return x_user_id


def to_http_exception(exc: WorkflowEngineError) -> HTTPException:
    """领域异常到 HTTP 错误的映射"""
    if isinstance(exc, NotFoundError):
        code, error = status.HTTP_404_NOT_FOUND, "not_found"
    elif isinstance(exc, DisabledError):
        code, error = status.HTTP_409_CONFLICT, "disabled"
    elif isinstance(exc, InvalidStateError):
        code, error = status.HTTP_409_CONFLICT, "invalid_state"
    elif isinstance(exc, (WorkflowValidationError, WorkflowParseError)):
        code, error = status.HTTP_400_BAD_REQUEST, "validation_error"
    else:
        logger.error(f"Unhandled engine error: {exc}", exc_info=True)
        code, error = status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error"

    detail = {"error": error, "message": str(exc)}
    if isinstance(exc, WorkflowValidationError) and exc.errors:
        detail["details"] = exc.errors
    return HTTPException(status_code=code, detail=detail)
