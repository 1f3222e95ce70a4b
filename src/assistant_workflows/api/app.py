"""
FastAPI 应用主文件
"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from .routers import workflows, executions, tasks, monitoring
from .middleware import RequestLoggingMiddleware
from .. import __version__
from ..config import Settings
from ..core import WorkflowEngine, TaskScheduler
from ..storage.sqlalchemy_repository import (
    DatabaseManager,
    SQLAlchemyWorkflowRepository,
    SQLAlchemyExecutionRepository,
    SQLAlchemyTaskRepository
)
from ..integrations import EventBus, InMemoryNotificationService


logger = logging.getLogger(__name__)


async def build_runtime(settings: Settings):
    """按配置创建数据库、引擎与调度器"""
    db_manager = DatabaseManager(settings.database_url)
    await db_manager.initialize()

    event_bus = EventBus()
    notifications = InMemoryNotificationService()

    engine = WorkflowEngine(
        workflow_repository=SQLAlchemyWorkflowRepository(db_manager),
        execution_repository=SQLAlchemyExecutionRepository(db_manager),
        event_bus=event_bus,
        notification_service=notifications,
        max_steps_per_execution=settings.max_steps_per_execution,
        http_timeout=settings.http_step_timeout
    )
    scheduler = TaskScheduler(
        task_repository=SQLAlchemyTaskRepository(db_manager),
        engine=engine,
        notification_service=notifications,
        event_bus=event_bus,
        poll_interval=settings.scheduler_poll_interval
    )
    return db_manager, engine, scheduler


def create_app(
    settings: Settings = None,
    engine: WorkflowEngine = None,
    scheduler: TaskScheduler = None
) -> FastAPI:
    """
    创建 FastAPI 应用

    传入 engine / scheduler 时不初始化数据库（测试或嵌入式使用）。
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        logger.info("Starting Assistant Workflow API...")

        db_manager = None
        if engine is None:
            db_manager, app.state.engine, app.state.scheduler = await build_runtime(settings)
        else:
            app.state.engine = engine
            app.state.scheduler = scheduler or TaskScheduler(
                engine=engine,
                notification_service=engine.notification_service,
                poll_interval=settings.scheduler_poll_interval
            )

        # 上次进程遗留的执行标记为 interrupted
        await app.state.engine.recover_interrupted_executions()

        if settings.scheduler_enabled:
            await app.state.scheduler.start()

        logger.info("Assistant Workflow API started successfully")

        yield

        logger.info("Shutting down Assistant Workflow API...")

        await app.state.scheduler.stop()
        await app.state.engine.shutdown()
        if db_manager:
            await db_manager.close()

        logger.info("Assistant Workflow API shut down successfully")

    app = FastAPI(
        title="Assistant Workflow Runtime API",
        description="个人助理工作流引擎与任务调度器 RESTful API",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(workflows.router, prefix="/api/v1/workflows", tags=["workflows"])
    app.include_router(executions.router, prefix="/api/v1/executions", tags=["executions"])
    app.include_router(tasks.router, prefix="/api/v1/tasks", tags=["tasks"])
    app.include_router(monitoring.router, prefix="/api/v1/monitoring", tags=["monitoring"])

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """全局异常处理器"""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "request_id": getattr(request.state, "request_id", None)
            }
        )

    @app.get("/", tags=["root"])
    async def root():
        """API根路径"""
        return {
            "name": "Assistant Workflow Runtime API",
            "version": __version__,
            "status": "running",
            "docs": "/docs",
            "health": "/api/v1/monitoring/health"
        }

    return app


app = create_app()
