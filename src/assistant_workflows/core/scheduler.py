"""
持久化任务调度器

每个激活任务最多一个进程内定时器，外加一个周期轮询作为兜底：
进程重启会丢失所有定时器，且定时器无法表示超过 2^31-1 毫秒的延迟。
"""
import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from ..models.base import utcnow
from ..models.task import (
    ScheduledTask, TaskRun, ScheduleConfig, CreateTaskInput,
    TaskType, TaskRunStatus
)
from ..models.execution import INTERRUPTED_ERROR
from ..exceptions import (
    NotFoundError, DisabledError, InvalidStateError,
    WorkflowValidationError, SchedulingError, SchedulerArmingSkipped
)
from ..storage.repository import TaskRepository, InMemoryTaskRepository
from ..integrations.event_bus import EventBus, TASK_EVENTS
from ..integrations.notifications import NotificationService
from .cron import CronExpression, resolve_timezone


logger = logging.getLogger(__name__)


MAX_TIMER_DELAY_MS = 2 ** 31 - 1
DEFAULT_POLL_INTERVAL = 10.0
DEFAULT_CRON = "0 * * * *"


class TaskScheduler:
    """任务调度器"""

    def __init__(
        self,
        task_repository: TaskRepository = None,
        engine=None,
        notification_service: NotificationService = None,
        event_bus: EventBus = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], datetime] = utcnow
    ):
        self.task_repository = task_repository or InMemoryTaskRepository()
        self.engine = engine
        self.notification_service = notification_service
        self.event_bus = event_bus or (engine.event_bus if engine is not None else EventBus())
        self.poll_interval = poll_interval
        self.clock = clock

        self.timers: Dict[str, asyncio.TimerHandle] = {}
        self._deferred: Set[str] = set()
        self._in_flight: Set[str] = set()
        self._fire_tasks: Set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """启动调度器：对账、为所有待运行任务设置定时器、开始轮询"""
        if self._running:
            return
        self._running = True

        await self.recover_interrupted_runs()
        await self._load_pending_tasks()
        self._poll_task = asyncio.create_task(self._poll_loop())

        logger.info("Scheduler started")

    async def stop(self):
        """停止调度器"""
        if not self._running:
            return
        self._running = False

        for handle in self.timers.values():
            handle.cancel()
        self.timers.clear()
        self._deferred.clear()

        if self._poll_task:
            self._poll_task.cancel()
            await asyncio.gather(self._poll_task, return_exceptions=True)
            self._poll_task = None

        await self.wait_idle()
        logger.info("Scheduler stopped")

    async def wait_idle(self):
        """等待所有正在进行的触发完成"""
        while self._fire_tasks:
            await asyncio.gather(*list(self._fire_tasks), return_exceptions=True)

    # ---- 调度时间计算 ----

    def validate_schedule(self, schedule: ScheduleConfig):
        """在创建时校验调度配置"""
        if schedule.type == TaskType.RECURRING:
            if not schedule.interval or schedule.interval <= 0:
                raise WorkflowValidationError("RECURRING schedule requires a positive interval (ms)")
        elif schedule.type == TaskType.CRON:
            CronExpression(schedule.cron or DEFAULT_CRON)
            resolve_timezone(schedule.timezone)

    def calculate_next_run(
        self,
        schedule: ScheduleConfig,
        is_complete: bool = False,
        now: datetime = None
    ) -> Optional[datetime]:
        """
        计算下次运行时间

        Args:
            schedule: 调度配置
            is_complete: 一次性任务已运行过
            now: 基准时间（默认当前 UTC 时间）

        Returns:
            Optional[datetime]: 下次运行时间，None 表示不再运行
        """
        now = now or self.clock()

        if schedule.type == TaskType.ONE_TIME:
            if is_complete:
                return None
            return schedule.at or now

        if schedule.type == TaskType.RECURRING:
            if not schedule.interval:
                return None
            return now + timedelta(milliseconds=schedule.interval)

        if schedule.type == TaskType.CRON:
            return CronExpression(schedule.cron or DEFAULT_CRON).next_after(now, schedule.timezone)

        return None

    # ---- 任务管理 ----

    async def create_task(self, input: CreateTaskInput) -> str:
        """创建调度任务"""
        self.validate_schedule(input.schedule)

        if input.workflow_id and self.engine is not None:
            await self.engine.get_workflow(input.workflow_id)

        try:
            next_run_at = self.calculate_next_run(input.schedule)
        except SchedulingError as e:
            raise WorkflowValidationError(str(e)) from e

        task = ScheduledTask(
            name=input.name,
            description=input.description,
            type=input.schedule.type,
            schedule=input.schedule,
            workflow_id=input.workflow_id,
            owner_id=input.owner_id,
            payload=dict(input.payload or {}),
            max_retries=input.max_retries,
            notify_on_complete=input.notify_on_complete,
            notify_on_failure=input.notify_on_failure,
            next_run_at=next_run_at
        )
        await self.task_repository.save(task)

        logger.info(f"Created {task.type.value} task {task.id} ({task.name}), next run at {next_run_at}")
        await self._publish(task, "created")

        if self._running and next_run_at:
            self._arm(task.id, next_run_at)

        return task.id

    async def get_task(self, task_id: str) -> ScheduledTask:
        task = await self.task_repository.get(task_id)
        if not task:
            raise NotFoundError("Task", task_id)
        return task

    async def list_tasks(
        self,
        is_active: bool = None,
        type: TaskType = None,
        limit: int = 20,
        offset: int = 0
    ) -> List[ScheduledTask]:
        return await self.task_repository.list(is_active=is_active, type=type, offset=offset, limit=limit)

    async def get_task_runs(self, task_id: str, limit: int = 20) -> List[TaskRun]:
        await self.get_task(task_id)
        return await self.task_repository.list_runs(task_id, limit=limit)

    async def cancel_task(self, task_id: str) -> ScheduledTask:
        """取消任务（软删除）"""
        task = await self._deactivate(task_id)
        await self._publish(task, "cancelled")
        return task

    async def pause_task(self, task_id: str) -> ScheduledTask:
        """暂停任务"""
        task = await self._deactivate(task_id)
        await self._publish(task, "paused")
        return task

    async def _deactivate(self, task_id: str) -> ScheduledTask:
        task = await self.get_task(task_id)
        self._disarm(task_id)
        task.is_active = False
        task.updated_at = utcnow()
        await self.task_repository.update_fields(task_id, is_active=False, updated_at=task.updated_at)
        logger.info(f"Task {task_id} deactivated")
        return task

    async def resume_task(self, task_id: str) -> ScheduledTask:
        """恢复任务：按已存储的 next_run_at 重新设置定时器"""
        task = await self.get_task(task_id)
        task.is_active = True
        if task.next_run_at is None and task.type != TaskType.ONE_TIME:
            task.next_run_at = self.calculate_next_run(task.schedule)
        task.updated_at = utcnow()
        await self.task_repository.update_fields(
            task_id, is_active=True, next_run_at=task.next_run_at, updated_at=task.updated_at
        )

        if self._running and task.next_run_at:
            self._arm(task.id, task.next_run_at)

        logger.info(f"Task {task_id} resumed, next run at {task.next_run_at}")
        await self._publish(task, "resumed")
        return task

    async def trigger_now(self, task_id: str) -> TaskRun:
        """立即运行一次，不改变已存储的 next_run_at"""
        task = await self.get_task(task_id)
        if not task.is_active:
            raise DisabledError("Task", task_id)
        if task_id in self._in_flight:
            raise InvalidStateError(f"Task {task_id} already has a run in flight")

        self._in_flight.add(task_id)
        try:
            return await self._run_task(task, reschedule=False)
        finally:
            self._in_flight.discard(task_id)

    # ---- 定时器 ----

    def _arm(self, task_id: str, run_at: datetime) -> bool:
        """为任务设置定时器；超过上限时交给轮询"""
        self._disarm(task_id)

        delay_ms = max(0.0, (run_at - self.clock()).total_seconds() * 1000)
        if delay_ms > MAX_TIMER_DELAY_MS:
            self._deferred.add(task_id)
            skipped = SchedulerArmingSkipped(task_id, int(delay_ms))
            logger.info(str(skipped))
            self._schedule_publish(task_id, "deferred", {"delay_ms": int(delay_ms)})
            return False

        loop = asyncio.get_running_loop()
        self.timers[task_id] = loop.call_later(delay_ms / 1000.0, self._on_timer, task_id)
        logger.debug(f"Armed task {task_id} in {delay_ms:.0f}ms")
        return True

    def _disarm(self, task_id: str):
        handle = self.timers.pop(task_id, None)
        if handle:
            handle.cancel()
        self._deferred.discard(task_id)

    def is_armed(self, task_id: str) -> bool:
        return task_id in self.timers

    def is_deferred(self, task_id: str) -> bool:
        return task_id in self._deferred

    def _on_timer(self, task_id: str):
        self.timers.pop(task_id, None)
        self._spawn(task_id)

    def _spawn(self, task_id: str) -> bool:
        """在后台触发任务；同一任务同时只允许一次触发"""
        if task_id in self._in_flight:
            logger.debug(f"Task {task_id} already in flight, skipping")
            return False
        self._in_flight.add(task_id)
        fire = asyncio.create_task(self._fire(task_id))
        self._fire_tasks.add(fire)
        fire.add_done_callback(self._fire_tasks.discard)
        return True

    async def _fire(self, task_id: str):
        try:
            task = await self.task_repository.get(task_id)
            if not task or not task.is_active:
                logger.info(f"Task {task_id} no longer active, skipping")
                return
            await self._run_task(task, reschedule=True)
        except Exception:
            logger.error(f"Firing task {task_id} failed", exc_info=True)
        finally:
            self._in_flight.discard(task_id)

    # ---- 运行 ----

    async def _run_task(self, task: ScheduledTask, reschedule: bool) -> TaskRun:
        """运行任务：记录 TaskRun、调用引擎、更新计数并重新计算下次运行时间"""
        run = TaskRun(task_id=task.id)
        await self.task_repository.save_run(run)
        await self._publish(task, "fired", {"run_id": run.id})

        try:
            if task.workflow_id:
                if self.engine is None:
                    raise SchedulingError("No workflow engine configured")
                execution_id = await self.engine.execute_workflow(
                    task.workflow_id, dict(task.payload or {}), trigger_id=task.id
                )
                output = {"workflow_execution_id": execution_id}
            else:
                output = {"executed": True, "payload": task.payload}
            run.complete(output)
        except Exception as e:
            logger.error(f"Task {task.id} run {run.id} failed: {e}", exc_info=True)
            run.fail(str(e))

        await self.task_repository.update_run(run)

        now = utcnow()
        changes = {"last_run_at": now, "updated_at": now}
        if reschedule:
            try:
                changes["next_run_at"] = self.calculate_next_run(
                    task.schedule,
                    is_complete=task.type == TaskType.ONE_TIME
                )
            except SchedulingError as e:
                logger.error(f"Cannot compute next run for task {task.id}: {e}")
                changes["next_run_at"] = None

        # 只写计数与运行时间，运行期间的暂停 / 取消不会被覆盖
        current = await self.task_repository.record_run(
            task.id, run.status == TaskRunStatus.COMPLETED, **changes
        )
        if current is None:
            logger.warning(f"Task {task.id} disappeared during run {run.id}")
            return run

        event = "completed" if run.status == TaskRunStatus.COMPLETED else "failed"
        await self._publish(current, event, {"run_id": run.id, "error": run.error})
        await self._notify(current, run)

        if reschedule:
            if self._running and current.is_active and current.next_run_at:
                self._arm(current.id, current.next_run_at)
            else:
                self._disarm(current.id)

        return run

    async def _notify(self, task: ScheduledTask, run: TaskRun):
        if self.notification_service is None or not task.owner_id:
            return

        if run.status == TaskRunStatus.COMPLETED and task.notify_on_complete:
            title = f"Task '{task.name}' completed"
            content = json.dumps(run.output, indent=2, default=str)
        elif run.status == TaskRunStatus.FAILED and task.notify_on_failure:
            title = f"Task '{task.name}' failed"
            content = run.error or ""
        else:
            return

        try:
            await self.notification_service.create(
                user_id=task.owner_id,
                title=title,
                content=content,
                type="TASK",
                metadata={"task_id": task.id, "run_id": run.id}
            )
        except Exception:
            logger.error(f"Failed to send notification for task {task.id}", exc_info=True)

    # ---- 轮询 ----

    async def _load_pending_tasks(self):
        tasks = await self.task_repository.list_armable()
        for task in tasks:
            self._arm(task.id, task.next_run_at)
        logger.info(f"Loaded {len(tasks)} pending tasks")

    async def _poll_loop(self):
        while self._running:
            try:
                await self.poll_once()
            except Exception:
                logger.error("Scheduler polling error", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    async def poll_once(self) -> int:
        """触发所有已到期且未设置定时器的任务，并尝试为延后的任务设置定时器"""
        fired = 0
        due = await self.task_repository.list_due(self.clock())
        for task in due:
            if task.id in self.timers or task.id in self._in_flight:
                continue
            self._deferred.discard(task.id)
            if self._spawn(task.id):
                fired += 1

        if self._running:
            for task_id in list(self._deferred):
                task = await self.task_repository.get(task_id)
                if not (task and task.is_active and task.next_run_at):
                    self._deferred.discard(task_id)
                    continue
                remaining_ms = (task.next_run_at - self.clock()).total_seconds() * 1000
                if remaining_ms <= MAX_TIMER_DELAY_MS:
                    self._arm(task_id, task.next_run_at)

        if fired:
            logger.info(f"Poll fired {fired} due tasks")
        return fired

    async def recover_interrupted_runs(self) -> int:
        """把上次进程遗留的 RUNNING 任务运行记录标记为 FAILED"""
        recovered = 0
        for run in await self.task_repository.list_runs_by_status(TaskRunStatus.RUNNING):
            if run.task_id in self._in_flight:
                continue
            run.fail(INTERRUPTED_ERROR)
            await self.task_repository.update_run(run)
            recovered += 1
        if recovered:
            logger.warning(f"Marked {recovered} interrupted task runs as FAILED")
        return recovered

    def get_stats(self) -> Dict[str, Any]:
        """调度器状态"""
        return {
            "running": self._running,
            "armed_timers": len(self.timers),
            "deferred_tasks": len(self._deferred),
            "in_flight": len(self._in_flight),
            "poll_interval": self.poll_interval,
        }

    # ---- 事件 ----

    async def _publish(self, task: ScheduledTask, event_type: str, data: Dict[str, Any] = None):
        await self.event_bus.publish(TASK_EVENTS, {
            "event_type": event_type,
            "task_id": task.id,
            "task_type": task.type.value,
            "data": data or {}
        })

    def _schedule_publish(self, task_id: str, event_type: str, data: Dict[str, Any]):
        """在同步上下文中发布事件"""
        publish = asyncio.create_task(self.event_bus.publish(TASK_EVENTS, {
            "event_type": event_type,
            "task_id": task_id,
            "data": data
        }))
        self._fire_tasks.add(publish)
        publish.add_done_callback(self._fire_tasks.discard)
