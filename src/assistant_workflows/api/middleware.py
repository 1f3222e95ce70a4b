"""
API 中间件
"""
import time
import uuid
import logging
from typing import Callable
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware


logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """请求日志中间件：请求ID、调用方用户与处理耗时"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # 沿用上游网关传入的请求ID与用户ID
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        user_id = request.headers.get("X-User-Id") or "-"
        request.state.request_id = request_id
        tag = f"{request.method} {request.url.path} [request_id={request_id}] [user={user_id}]"

        started = time.perf_counter()
        logger.info(f"Request started: {tag}")

        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                f"Request crashed: {tag} [duration={time.perf_counter() - started:.3f}s]",
                exc_info=True
            )
            raise

        duration = time.perf_counter() - started
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration:.6f}"

        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            f"Request completed: {tag} [status={response.status_code}] [duration={duration:.3f}s]"
        )

        return response
