"""
工作流执行引擎
"""
import asyncio
import logging
from typing import Dict, Any, Optional, List, Union

from ..models.base import utcnow
from ..models.workflow import WorkflowDefinition, StepDefinition, StepGraph, StepType
from ..models.execution import (
    WorkflowExecution, StepRecord, ExecutionContext,
    ExecutionStatus, StepStatus, INTERRUPTED_ERROR
)
from ..exceptions import (
    WorkflowEngineError, NotFoundError, DisabledError, InvalidStateError,
    WorkflowValidationError, StepExecutionError
)
from ..storage.repository import (
    WorkflowRepository, ExecutionRepository,
    InMemoryWorkflowRepository, InMemoryExecutionRepository
)
from ..integrations.event_bus import EventBus, WORKFLOW_CREATED, EXECUTION_EVENTS, STEP_EVENTS
from ..integrations.llm import LLMProvider, EchoLLMProvider
from ..integrations.tool_registry import ToolRegistry, LocalToolRegistry
from ..integrations.notifications import NotificationService, InMemoryNotificationService
from ..integrations.memory import MemoryManager, InMemoryMemoryManager
from .handlers import StepHandlerRegistry, HandlerLike, build_default_registry, DEFAULT_HTTP_TIMEOUT
from .parser import WorkflowParser
from .retry import RetryPolicy, run_with_retry


logger = logging.getLogger(__name__)


DEFAULT_MAX_STEPS = 1000
RECOVERY_PAGE_SIZE = 500


class WorkflowEngine:
    """工作流执行引擎"""

    def __init__(
        self,
        workflow_repository: WorkflowRepository = None,
        execution_repository: ExecutionRepository = None,
        handler_registry: StepHandlerRegistry = None,
        event_bus: EventBus = None,
        llm_provider: LLMProvider = None,
        tool_registry: ToolRegistry = None,
        notification_service: NotificationService = None,
        memory_manager: MemoryManager = None,
        max_steps_per_execution: int = DEFAULT_MAX_STEPS,
        http_timeout: float = DEFAULT_HTTP_TIMEOUT
    ):
        self.workflow_repository = workflow_repository or InMemoryWorkflowRepository()
        self.execution_repository = execution_repository or InMemoryExecutionRepository()
        self.event_bus = event_bus or EventBus()
        self.llm_provider = llm_provider or EchoLLMProvider()
        self.tool_registry = tool_registry or LocalToolRegistry()
        self.notification_service = notification_service or InMemoryNotificationService()
        self.memory_manager = memory_manager or InMemoryMemoryManager()
        self.max_steps_per_execution = max_steps_per_execution

        # 注册步骤执行器
        self.handler_registry = handler_registry or build_default_registry(
            self.llm_provider,
            self.tool_registry,
            self.notification_service,
            self.memory_manager,
            http_timeout=http_timeout
        )

        # 工作流解析器
        self.parser = WorkflowParser()

        # 正在运行的步骤遍历任务（保持强引用）
        self._running: Dict[str, asyncio.Task] = {}
        self._cancelled: set = set()

    def register_handler(self, step_type: Union[StepType, str], handler: HandlerLike):
        """替换某个步骤类型的执行器（仅在启动时调用）"""
        self.handler_registry.register(step_type, handler)

    async def create_workflow(
        self,
        definition: Union[WorkflowDefinition, Dict[str, Any], str],
        owner_id: str = None
    ) -> str:
        """创建工作流"""
        if isinstance(definition, WorkflowDefinition):
            workflow = definition
        else:
            workflow = self.parser.parse(definition)

        errors = workflow.validate()
        if errors:
            raise WorkflowValidationError(f"Workflow validation failed: {errors}", errors)

        if owner_id is not None:
            workflow.owner_id = owner_id

        await self.workflow_repository.save(workflow)
        logger.info(f"Created workflow {workflow.id} ({workflow.name}) with {len(workflow.steps)} steps")

        await self.event_bus.publish(
            WORKFLOW_CREATED,
            {"workflow_id": workflow.id, "name": workflow.name, "owner_id": workflow.owner_id}
        )

        return workflow.id

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        workflow = await self.workflow_repository.get(workflow_id)
        if not workflow:
            raise NotFoundError("Workflow", workflow_id)
        return workflow

    async def list_workflows(
        self,
        owner_id: str = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowDefinition]:
        return await self.workflow_repository.list(owner_id=owner_id, offset=offset, limit=limit)

    async def set_workflow_enabled(self, workflow_id: str, enabled: bool) -> WorkflowDefinition:
        """启用或禁用工作流"""
        workflow = await self.get_workflow(workflow_id)
        workflow.is_enabled = enabled
        workflow.updated_at = utcnow()
        await self.workflow_repository.update_fields(
            workflow_id, is_enabled=enabled, updated_at=workflow.updated_at
        )
        logger.info(f"Workflow {workflow_id} {'enabled' if enabled else 'disabled'}")
        return workflow

    async def execute_workflow(
        self,
        workflow_id: str,
        trigger_payload: Dict[str, Any] = None,
        trigger_id: str = None
    ) -> str:
        """
        执行工作流

        同步创建 RUNNING 状态的执行记录，在后台任务中遍历步骤后立即返回。

        Raises:
            NotFoundError: 工作流不存在
            DisabledError: 工作流已禁用
        """
        workflow = await self.workflow_repository.get(workflow_id)
        if not workflow:
            raise NotFoundError("Workflow", workflow_id)

        if not workflow.is_enabled:
            raise DisabledError("Workflow", workflow_id)

        execution = WorkflowExecution(
            workflow_id=workflow_id,
            trigger_id=trigger_id,
            trigger_payload=trigger_payload,
            steps_snapshot=workflow.steps_snapshot()
        )
        await self.execution_repository.save(execution)

        context = ExecutionContext(
            workflow_id=workflow_id,
            execution_id=execution.id,
            trigger_id=trigger_id,
            trigger_payload=trigger_payload,
            variables=self._seed_variables(workflow, trigger_payload)
        )

        await self._publish_execution_event(execution, "started")

        task = asyncio.create_task(self._supervise(execution, context))
        self._running[execution.id] = task
        task.add_done_callback(lambda _: self._running.pop(execution.id, None))

        logger.info(f"Started execution {execution.id} of workflow {workflow_id}")
        return execution.id

    def _seed_variables(
        self,
        workflow: WorkflowDefinition,
        trigger_payload: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """工作流变量 + 触发负载 + 所属用户"""
        variables = dict(workflow.variables or {})
        if isinstance(trigger_payload, dict):
            variables.update(trigger_payload)
        if workflow.owner_id:
            variables.setdefault("userId", workflow.owner_id)
        return variables

    async def _supervise(self, execution: WorkflowExecution, context: ExecutionContext):
        """监督步骤遍历：任何致命错误或任务取消都会把执行记录为 FAILED"""
        try:
            await self._run_steps(execution, context)
        except asyncio.CancelledError:
            logger.warning(f"Execution {execution.id} task cancelled")
            await self._record_fatal(execution, context, "Execution task cancelled")
            raise
        except Exception as e:
            logger.error(f"Workflow execution failed: {execution.id}", exc_info=True)
            await self._record_fatal(execution, context, str(e) or e.__class__.__name__)

    async def _record_fatal(
        self,
        execution: WorkflowExecution,
        context: ExecutionContext,
        error: str
    ):
        try:
            await self._finish(execution, context, error=error)
        except Exception:
            # 启动时的对账清理会把它标记为 interrupted
            logger.error(f"Could not record failure of execution {execution.id}", exc_info=True)

    async def _run_steps(self, execution: WorkflowExecution, context: ExecutionContext):
        """按 on_success / 声明顺序 / on_failure 遍历步骤快照"""
        graph = StepGraph([StepDefinition.from_dict(s) for s in execution.steps_snapshot])
        current = graph.entry
        executed = 0

        while current:
            step = graph.get(current)
            if step is None:
                break

            # 协作式取消检查点
            if await self._is_cancelled(execution.id):
                logger.info(f"Execution {execution.id} cancelled before step {step.id}")
                return

            executed += 1
            if executed > self.max_steps_per_execution:
                raise WorkflowEngineError(
                    f"Execution exceeded {self.max_steps_per_execution} steps"
                )

            record = StepRecord(execution_id=execution.id, step_id=step.id, name=step.name)
            await self.execution_repository.save_step(record)
            await self._publish_step_event(record, "started")

            try:
                result, attempts = await self._execute_step(step, context, record)
            except StepExecutionError as e:
                cause = e.cause if e.cause is not None else e
                record.fail(str(cause) or cause.__class__.__name__, e.attempts)
                await self.execution_repository.update_step(record)
                await self._publish_step_event(record, "failed", {"error": record.error})

                if step.on_failure:
                    logger.info(f"Step {step.id} failed, branching to {step.on_failure}")
                    current = step.on_failure
                    continue

                await self._finish(execution, context, error=str(e))
                return

            context.set_step_result(step.id, result)
            record.complete(result, attempts)
            await self.execution_repository.update_step(record)
            await self._publish_step_event(record, "completed")

            current = self._next_step(graph, step, result)

        await self._finish(execution, context)

    async def _execute_step(
        self,
        step: StepDefinition,
        context: ExecutionContext,
        record: StepRecord
    ):
        """通过重试包装执行单个步骤"""
        async def attempt():
            return await self.handler_registry.execute(step, context)

        async def on_retry(attempt_number: int, error: Exception, delay: float):
            record.attempts = attempt_number
            await self._publish_step_event(
                record, "retrying", {"error": str(error), "delay_seconds": delay}
            )

        return await run_with_retry(
            attempt,
            RetryPolicy.from_config(step.retry_config),
            step.id,
            on_retry=on_retry
        )

    def _next_step(self, graph: StepGraph, step: StepDefinition, result: Any) -> Optional[str]:
        # 条件为假时走 on_failure（若已设置）
        if step.type == StepType.CONDITIONAL and isinstance(result, dict) \
                and result.get("result") is False and step.on_failure:
            return step.on_failure
        return graph.success_target(step)

    async def _is_cancelled(self, execution_id: str) -> bool:
        if execution_id in self._cancelled:
            return True
        stored = await self.execution_repository.get(execution_id)
        return stored is not None and stored.status == ExecutionStatus.CANCELLED

    async def _finish(
        self,
        execution: WorkflowExecution,
        context: ExecutionContext,
        error: str = None
    ):
        """写入最终状态（仅当记录仍为 RUNNING 时）"""
        output = dict(context.step_results)
        if error is None:
            execution.complete(output)
        else:
            execution.fail(error, output)

        updated = await self.execution_repository.update(
            execution, expected_status=ExecutionStatus.RUNNING
        )
        if not updated:
            logger.info(f"Execution {execution.id} already finalized, final status not written")
            return

        if error is None:
            logger.info(f"Execution {execution.id} completed")
            await self._publish_execution_event(execution, "completed")
        else:
            logger.warning(f"Execution {execution.id} failed: {error}")
            await self._publish_execution_event(execution, "failed", {"error": error})

        await self.workflow_repository.update_fields(execution.workflow_id, last_run_at=utcnow())

    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        """获取执行实例（包含步骤记录）"""
        execution = await self.execution_repository.get(execution_id)
        if not execution:
            raise NotFoundError("Execution", execution_id)
        return execution

    async def list_executions(
        self,
        workflow_id: str,
        limit: int = 20,
        offset: int = 0,
        status: ExecutionStatus = None
    ) -> List[WorkflowExecution]:
        """列出工作流的执行实例（最新的在前）"""
        return await self.execution_repository.list_by_workflow(
            workflow_id, status=status, offset=offset, limit=limit
        )

    async def cancel_execution(self, execution_id: str) -> WorkflowExecution:
        """
        取消执行

        只标记 CANCELLED；正在运行的步骤不会被中断，遍历在下一个步骤前停止。
        """
        execution = await self.get_execution(execution_id)
        if execution.is_terminal_state():
            raise InvalidStateError(
                f"Cannot cancel execution in state: {execution.status.value}"
            )

        execution.cancel()
        updated = await self.execution_repository.update(
            execution, expected_status=ExecutionStatus.RUNNING
        )
        if not updated:
            current = await self.get_execution(execution_id)
            raise InvalidStateError(
                f"Cannot cancel execution in state: {current.status.value}"
            )

        self._cancelled.add(execution_id)
        logger.info(f"Execution {execution_id} cancelled")
        await self._publish_execution_event(execution, "cancelled")
        return execution

    async def wait_for_execution(
        self,
        execution_id: str,
        timeout: float = None,
        poll_interval: float = 0.05
    ) -> WorkflowExecution:
        """等待执行进入终止状态"""
        task = self._running.get(execution_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
            return await self.get_execution(execution_id)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        while True:
            execution = await self.get_execution(execution_id)
            if execution.is_terminal_state():
                return execution
            if deadline is not None and loop.time() >= deadline:
                return execution
            await asyncio.sleep(poll_interval)

    async def recover_interrupted_executions(self) -> int:
        """
        启动对账：把上次进程遗留的 RUNNING 执行与步骤记录标记为 FAILED

        Returns:
            int: 被标记的执行数量
        """
        orphaned: List[WorkflowExecution] = []
        offset = 0
        while True:
            batch = await self.execution_repository.list_by_status(
                ExecutionStatus.RUNNING, offset=offset, limit=RECOVERY_PAGE_SIZE
            )
            orphaned.extend(e for e in batch if e.id not in self._running)
            if len(batch) < RECOVERY_PAGE_SIZE:
                break
            offset += RECOVERY_PAGE_SIZE

        recovered = 0
        for execution in orphaned:
            execution.fail(INTERRUPTED_ERROR)
            if await self.execution_repository.update(
                execution, expected_status=ExecutionStatus.RUNNING
            ):
                recovered += 1
                await self._publish_execution_event(execution, "failed", {"error": INTERRUPTED_ERROR})

        for record in await self.execution_repository.list_steps_by_status(StepStatus.RUNNING):
            if record.execution_id in self._running:
                continue
            record.fail(INTERRUPTED_ERROR, record.attempts)
            await self.execution_repository.update_step(record)

        if recovered:
            logger.warning(f"Marked {recovered} interrupted executions as FAILED")
        return recovered

    def running_executions(self) -> List[str]:
        return list(self._running)

    async def shutdown(self):
        """取消所有正在运行的遍历任务"""
        tasks = list(self._running.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Workflow engine shut down ({len(tasks)} executions interrupted)")

    async def _publish_execution_event(
        self,
        execution: WorkflowExecution,
        event_type: str,
        data: Dict[str, Any] = None
    ):
        """发布执行事件"""
        await self.event_bus.publish(EXECUTION_EVENTS, {
            "event_type": event_type,
            "execution_id": execution.id,
            "workflow_id": execution.workflow_id,
            "status": execution.status.value,
            "data": data or {}
        })

    async def _publish_step_event(
        self,
        record: StepRecord,
        event_type: str,
        data: Dict[str, Any] = None
    ):
        """发布步骤事件"""
        await self.event_bus.publish(STEP_EVENTS, {
            "event_type": event_type,
            "execution_id": record.execution_id,
            "step_id": record.step_id,
            "status": record.status.value,
            "attempts": record.attempts,
            "data": data or {}
        })
