"""
工作流引擎与调度器使用示例
"""
import asyncio
from pathlib import Path
import logging

from assistant_workflows import (
    WorkflowEngine, TaskScheduler, CreateTaskInput, ScheduleConfig, TaskType
)
from assistant_workflows.storage.repository import (
    InMemoryWorkflowRepository, InMemoryExecutionRepository, InMemoryTaskRepository
)
from assistant_workflows.integrations import (
    EventBus, STEP_EVENTS, EchoLLMProvider, LocalToolRegistry, ToolDefinition,
    InMemoryNotificationService, InMemoryMemoryManager
)


# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

EXAMPLES_DIR = Path(__file__).parent


class FlakyCalendar:
    """模拟日历服务：第一次调用失败，之后返回当天的日程"""

    def __init__(self, events):
        self.events = events
        self.calls = 0

    async def __call__(self, params, context):
        self.calls += 1
        if self.calls == 1:
            raise ConnectionError("calendar backend unavailable")
        return {
            "count": len(self.events),
            "titles": ", ".join(self.events),
            "user": params.get("user")
        }


async def setup_runtime(events):
    """设置引擎、调度器与外部协作者"""
    event_bus = EventBus()
    notifications = InMemoryNotificationService()
    tool_registry = LocalToolRegistry()

    await tool_registry.register_tool(
        ToolDefinition(
            tool_id="calendar_today",
            name="Calendar",
            parameters_schema={"type": "object", "required": ["user"]}
        ),
        FlakyCalendar(events)
    )

    engine = WorkflowEngine(
        workflow_repository=InMemoryWorkflowRepository(),
        execution_repository=InMemoryExecutionRepository(),
        event_bus=event_bus,
        llm_provider=EchoLLMProvider(prefix="Summary: "),
        tool_registry=tool_registry,
        notification_service=notifications,
        memory_manager=InMemoryMemoryManager()
    )
    scheduler = TaskScheduler(
        task_repository=InMemoryTaskRepository(),
        engine=engine,
        notification_service=notifications,
        event_bus=event_bus,
        poll_interval=1.0
    )
    return engine, scheduler


async def example_daily_digest(engine: WorkflowEngine, owner_id: str = "user123"):
    """从 YAML 文件创建并执行工作流"""
    print("\n=== 每日摘要工作流示例 ===")

    workflow_id = await engine.create_workflow(EXAMPLES_DIR / "daily_digest.yaml", owner_id=owner_id)
    print(f"创建工作流: {workflow_id}")

    execution_id = await engine.execute_workflow(workflow_id, {"source": "example"})
    print(f"启动工作流执行: {execution_id}")

    execution = await engine.wait_for_execution(execution_id, timeout=10)
    for record in execution.step_records:
        print(f"  {record.step_id}: {record.status.value} ({record.attempts} attempt(s))")
    print(f"执行状态: {execution.status.value}")

    return workflow_id, execution


async def example_scheduled_digest(engine: WorkflowEngine, scheduler: TaskScheduler, workflow_id: str):
    """按工作流的 CRON 触发器创建调度任务，并立即运行一次"""
    print("\n=== 调度任务示例 ===")

    workflow = await engine.get_workflow(workflow_id)
    trigger = workflow.triggers[0]

    task_id = await scheduler.create_task(CreateTaskInput(
        name="Weekday digest",
        schedule=ScheduleConfig(
            type=TaskType.CRON,
            cron=trigger.config["cron"],
            timezone=trigger.config.get("timezone")
        ),
        workflow_id=workflow_id,
        owner_id=workflow.owner_id,
        notify_on_failure=True
    ))
    task = await scheduler.get_task(task_id)
    print(f"创建调度任务: {task_id}, 下次运行: {task.next_run_at}")

    run = await scheduler.trigger_now(task_id)
    print(f"立即运行: {run.status.value} {run.output}")

    execution = await engine.wait_for_execution(run.output["workflow_execution_id"], timeout=10)
    return task_id, execution


async def example_error_handling(engine: WorkflowEngine):
    """错误处理示例：失败的步骤通过 on_failure 分支恢复"""
    print("\n=== 错误处理示例 ===")

    step_events = []

    async def on_step_event(event):
        step_events.append(event.payload)
        print(f"步骤事件: {event.payload['event_type']} {event.payload['step_id']}")

    await engine.event_bus.subscribe(STEP_EVENTS, on_step_event)

    workflow_id = await engine.create_workflow({
        "name": "Error handling example",
        "steps": [
            {
                "id": "will-fail",
                "type": "TOOL_EXECUTION",
                "config": {"tool": "non-existent-tool"},
                "retryConfig": {"maxRetries": 1, "delayMs": 10},
                "on_failure": "fallback"
            },
            {
                "id": "ok",
                "type": "DELAY",
                "config": {"delayMs": 1}
            },
            {
                "id": "fallback",
                "type": "MEMORY_OPERATION",
                "config": {
                    "operation": "addDailyLog",
                    "data": {"content": "tool step failed, used fallback"}
                }
            }
        ]
    })

    execution_id = await engine.execute_workflow(workflow_id)
    execution = await engine.wait_for_execution(execution_id, timeout=10)
    await engine.event_bus.unsubscribe(STEP_EVENTS, on_step_event)

    print(f"执行状态: {execution.status.value}, 捕获的步骤事件数: {len(step_events)}")
    return execution, step_events


async def main():
    """主函数"""
    engine, scheduler = await setup_runtime(["standup", "dentist", "1:1", "gym"])
    await scheduler.start()

    try:
        workflow_id, _ = await example_daily_digest(engine)
        await example_scheduled_digest(engine, scheduler, workflow_id)
        await example_error_handling(engine)
    finally:
        await scheduler.stop()
        await engine.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
