"""
Pytest 配置和公共 fixtures
"""
import pytest
import pytest_asyncio
from typing import AsyncGenerator

from assistant_workflows.core import WorkflowEngine, TaskScheduler
from assistant_workflows.storage import (
    InMemoryWorkflowRepository, InMemoryExecutionRepository, InMemoryTaskRepository
)
from assistant_workflows.storage.sqlalchemy_repository import DatabaseManager
from assistant_workflows.integrations import (
    EventBus, EchoLLMProvider, LocalToolRegistry,
    InMemoryNotificationService, InMemoryMemoryManager
)


@pytest.fixture
def event_bus() -> EventBus:
    """创建事件总线"""
    return EventBus()


@pytest.fixture
def notifications() -> InMemoryNotificationService:
    return InMemoryNotificationService()


@pytest.fixture
def tool_registry() -> LocalToolRegistry:
    return LocalToolRegistry()


@pytest_asyncio.fixture
async def engine(event_bus, notifications, tool_registry) -> AsyncGenerator[WorkflowEngine, None]:
    """创建使用内存存储的工作流引擎"""
    engine = WorkflowEngine(
        workflow_repository=InMemoryWorkflowRepository(),
        execution_repository=InMemoryExecutionRepository(),
        event_bus=event_bus,
        llm_provider=EchoLLMProvider(),
        tool_registry=tool_registry,
        notification_service=notifications,
        memory_manager=InMemoryMemoryManager()
    )

    yield engine

    await engine.shutdown()


@pytest_asyncio.fixture
async def scheduler(engine, notifications, event_bus) -> AsyncGenerator[TaskScheduler, None]:
    """创建调度器（未启动）"""
    scheduler = TaskScheduler(
        task_repository=InMemoryTaskRepository(),
        engine=engine,
        notification_service=notifications,
        event_bus=event_bus,
        poll_interval=0.05
    )

    yield scheduler

    await scheduler.stop()


@pytest_asyncio.fixture
async def test_database() -> AsyncGenerator[DatabaseManager, None]:
    """创建测试数据库"""
    # 使用 SQLite 内存数据库进行测试
    db_manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await db_manager.initialize()

    yield db_manager

    await db_manager.close()


@pytest.fixture
def daily_digest_workflow() -> dict:
    """示例工作流：LLM 摘要 -> 条件 -> 通知"""
    return {
        "workflow": {
            "name": "Daily Digest",
            "description": "Summarize the day and notify the user",
            "variables": {"topic": "weather", "threshold": 3},
            "triggers": [{"type": "CRON", "config": {"cron": "0 8 * * *"}}],
            "steps": [
                {
                    "id": "summarize",
                    "name": "Summarize",
                    "type": "LLM_PROMPT",
                    "config": {"prompt": "Summarize {{variables.topic}}"}
                },
                {
                    "id": "check",
                    "name": "Check count",
                    "type": "CONDITIONAL",
                    "config": {"condition": "{{variables.count}} > {{variables.threshold}}"},
                    "on_failure": "quiet"
                },
                {
                    "id": "notify",
                    "name": "Notify",
                    "type": "NOTIFICATION",
                    "config": {
                        "title": "Digest",
                        "content": "{{stepResults.summarize.content}}"
                    },
                    "on_success": "done"
                },
                {
                    "id": "quiet",
                    "name": "Quiet log",
                    "type": "MEMORY_OPERATION",
                    "config": {
                        "operation": "addDailyLog",
                        "data": {"content": "nothing to report on {{variables.topic}}"}
                    }
                },
                {
                    "id": "done",
                    "name": "Done",
                    "type": "DELAY",
                    "config": {"delayMs": 1}
                }
            ]
        }
    }
