"""
SQLAlchemy 仓库实现
"""
import json
from typing import Optional, List, Any
from datetime import datetime
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import (
    AsyncSession, AsyncEngine, async_sessionmaker, create_async_engine
)
from sqlalchemy.pool import StaticPool
from sqlalchemy import select, update, delete

from ..models.workflow import (
    WorkflowDefinition, StepDefinition, TriggerDefinition, TriggerType
)
from ..models.execution import WorkflowExecution, StepRecord, ExecutionStatus, StepStatus
from ..models.task import ScheduledTask, TaskRun, ScheduleConfig, TaskType, TaskRunStatus
from .repository import WorkflowRepository, ExecutionRepository, TaskRepository
from .sqlalchemy_models import (
    WorkflowDefinitionRecord,
    WorkflowTriggerRecord,
    WorkflowExecutionRecord,
    WorkflowStepRecord,
    ScheduledTaskRecord,
    TaskRunRecord,
    Base
)


def _jsonable(value: Any) -> Any:
    """保证写入 JSON 列的值可以被序列化"""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker: Optional[async_sessionmaker] = None

    async def initialize(self):
        """初始化数据库连接并创建表"""
        options = {"echo": self.echo}
        if self.database_url.startswith("sqlite"):
            if ":memory:" in self.database_url:
                # 内存数据库必须共享同一个连接
                options.update(
                    poolclass=StaticPool,
                    connect_args={"check_same_thread": False}
                )
        else:
            options.update(pool_size=20, max_overflow=10, pool_pre_ping=True)

        self.engine = create_async_engine(self.database_url, **options)
        self.async_session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """关闭数据库连接"""
        if self.engine:
            await self.engine.dispose()
            self.engine = None

    @asynccontextmanager
    async def get_session(self):
        """获取数据库会话"""
        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


class SQLAlchemyWorkflowRepository(WorkflowRepository):
    """SQLAlchemy 工作流仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, workflow: WorkflowDefinition) -> str:
        """保存工作流（连同触发器）"""
        async with self.db.get_session() as session:
            record = WorkflowDefinitionRecord(
                id=workflow.id,
                name=workflow.name,
                description=workflow.description,
                owner_id=workflow.owner_id,
                is_enabled=workflow.is_enabled,
                steps=_jsonable(workflow.steps_snapshot()),
                variables=_jsonable(workflow.variables),
                last_run_at=workflow.last_run_at,
                created_at=workflow.created_at,
                updated_at=workflow.updated_at,
                triggers=self._trigger_records(workflow)
            )
            session.add(record)
            await session.flush()
            return workflow.id

    async def get(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowDefinitionRecord).where(WorkflowDefinitionRecord.id == workflow_id)
            )
            record = result.scalar_one_or_none()
            return self._to_workflow(record) if record else None

    async def list(
        self,
        owner_id: str = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowDefinition]:
        async with self.db.get_session() as session:
            query = select(WorkflowDefinitionRecord)
            if owner_id is not None:
                query = query.where(WorkflowDefinitionRecord.owner_id == owner_id)
            query = query.order_by(WorkflowDefinitionRecord.created_at.desc())
            query = query.offset(offset).limit(limit)

            result = await session.execute(query)
            return [self._to_workflow(r) for r in result.scalars().all()]

    async def update(self, workflow: WorkflowDefinition) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowDefinitionRecord)
                .where(WorkflowDefinitionRecord.id == workflow.id)
                .values(
                    name=workflow.name,
                    description=workflow.description,
                    owner_id=workflow.owner_id,
                    is_enabled=workflow.is_enabled,
                    steps=_jsonable(workflow.steps_snapshot()),
                    variables=_jsonable(workflow.variables),
                    last_run_at=workflow.last_run_at,
                    updated_at=workflow.updated_at
                )
            )
            if result.rowcount == 0:
                return False

            # 触发器：删除后重建
            await session.execute(
                delete(WorkflowTriggerRecord).where(WorkflowTriggerRecord.workflow_id == workflow.id)
            )
            for trigger in self._trigger_records(workflow):
                trigger.workflow_id = workflow.id
                session.add(trigger)
            return True

    async def update_fields(self, workflow_id: str, **values) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowDefinitionRecord)
                .where(WorkflowDefinitionRecord.id == workflow_id)
                .values(**values)
            )
            return result.rowcount > 0

    async def delete(self, workflow_id: str) -> bool:
        async with self.db.get_session() as session:
            await session.execute(
                delete(WorkflowTriggerRecord).where(WorkflowTriggerRecord.workflow_id == workflow_id)
            )
            result = await session.execute(
                delete(WorkflowDefinitionRecord).where(WorkflowDefinitionRecord.id == workflow_id)
            )
            return result.rowcount > 0

    @staticmethod
    def _trigger_records(workflow: WorkflowDefinition) -> List[WorkflowTriggerRecord]:
        return [
            WorkflowTriggerRecord(
                position=i,
                type=trigger.type.value,
                config=_jsonable(trigger.config),
                is_enabled=trigger.is_enabled
            )
            for i, trigger in enumerate(workflow.triggers)
        ]

    @staticmethod
    def _to_workflow(record: WorkflowDefinitionRecord) -> WorkflowDefinition:
        return WorkflowDefinition(
            id=record.id,
            name=record.name,
            description=record.description,
            owner_id=record.owner_id,
            is_enabled=record.is_enabled,
            triggers=[
                TriggerDefinition(
                    type=TriggerType(t.type),
                    config=t.config or {},
                    is_enabled=t.is_enabled
                )
                for t in record.triggers
            ],
            steps=[StepDefinition.from_dict(s) for s in record.steps or []],
            variables=record.variables or {},
            last_run_at=record.last_run_at,
            created_at=record.created_at,
            updated_at=record.updated_at
        )


class SQLAlchemyExecutionRepository(ExecutionRepository):
    """SQLAlchemy 执行仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, execution: WorkflowExecution) -> str:
        async with self.db.get_session() as session:
            session.add(WorkflowExecutionRecord(
                id=execution.id,
                workflow_id=execution.workflow_id,
                status=execution.status.value,
                trigger_id=execution.trigger_id,
                trigger_payload=_jsonable(execution.trigger_payload),
                steps_snapshot=_jsonable(execution.steps_snapshot),
                output=_jsonable(execution.output),
                error=execution.error,
                started_at=execution.started_at,
                completed_at=execution.completed_at
            ))
            await session.flush()
            return execution.id

    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowExecutionRecord).where(WorkflowExecutionRecord.id == execution_id)
            )
            record = result.scalar_one_or_none()
            if not record:
                return None

            steps = await session.execute(
                select(WorkflowStepRecord)
                .where(WorkflowStepRecord.execution_id == execution_id)
                .order_by(WorkflowStepRecord.started_at.asc())
            )
            execution = self._to_execution(record)
            execution.step_records = [self._to_step(s) for s in steps.scalars().all()]
            return execution

    async def update(
        self,
        execution: WorkflowExecution,
        expected_status: ExecutionStatus = None
    ) -> bool:
        async with self.db.get_session() as session:
            query = update(WorkflowExecutionRecord).where(WorkflowExecutionRecord.id == execution.id)
            if expected_status is not None:
                query = query.where(WorkflowExecutionRecord.status == expected_status.value)

            result = await session.execute(query.values(
                status=execution.status.value,
                output=_jsonable(execution.output),
                error=execution.error,
                completed_at=execution.completed_at
            ))
            return result.rowcount > 0

    async def list_by_workflow(
        self,
        workflow_id: str,
        status: ExecutionStatus = None,
        offset: int = 0,
        limit: int = 20
    ) -> List[WorkflowExecution]:
        async with self.db.get_session() as session:
            query = select(WorkflowExecutionRecord).where(
                WorkflowExecutionRecord.workflow_id == workflow_id
            )
            if status:
                query = query.where(WorkflowExecutionRecord.status == status.value)

            query = query.order_by(WorkflowExecutionRecord.started_at.desc())
            query = query.offset(offset).limit(limit)

            result = await session.execute(query)
            return [self._to_execution(r) for r in result.scalars().all()]

    async def list_by_status(
        self,
        status: ExecutionStatus,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        async with self.db.get_session() as session:
            query = (
                select(WorkflowExecutionRecord)
                .where(WorkflowExecutionRecord.status == status.value)
                .order_by(WorkflowExecutionRecord.started_at.desc())
                .offset(offset)
                .limit(limit)
            )
            result = await session.execute(query)
            return [self._to_execution(r) for r in result.scalars().all()]

    async def save_step(self, record: StepRecord) -> str:
        async with self.db.get_session() as session:
            session.add(WorkflowStepRecord(
                id=record.id,
                execution_id=record.execution_id,
                step_id=record.step_id,
                name=record.name,
                status=record.status.value,
                attempts=record.attempts,
                output=_jsonable(record.output),
                error=record.error,
                started_at=record.started_at,
                completed_at=record.completed_at
            ))
            await session.flush()
            return record.id

    async def update_step(self, record: StepRecord) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowStepRecord)
                .where(WorkflowStepRecord.id == record.id)
                .values(
                    status=record.status.value,
                    attempts=record.attempts,
                    output=_jsonable(record.output),
                    error=record.error,
                    completed_at=record.completed_at
                )
            )
            return result.rowcount > 0

    async def list_steps(self, execution_id: str) -> List[StepRecord]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowStepRecord)
                .where(WorkflowStepRecord.execution_id == execution_id)
                .order_by(WorkflowStepRecord.started_at.asc())
            )
            return [self._to_step(s) for s in result.scalars().all()]

    async def list_steps_by_status(self, status: StepStatus) -> List[StepRecord]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowStepRecord).where(WorkflowStepRecord.status == status.value)
            )
            return [self._to_step(s) for s in result.scalars().all()]

    @staticmethod
    def _to_execution(record: WorkflowExecutionRecord) -> WorkflowExecution:
        return WorkflowExecution(
            id=record.id,
            workflow_id=record.workflow_id,
            status=ExecutionStatus(record.status),
            trigger_id=record.trigger_id,
            trigger_payload=record.trigger_payload,
            steps_snapshot=record.steps_snapshot or [],
            output=record.output or {},
            error=record.error,
            started_at=record.started_at,
            completed_at=record.completed_at
        )

    @staticmethod
    def _to_step(record: WorkflowStepRecord) -> StepRecord:
        return StepRecord(
            id=record.id,
            execution_id=record.execution_id,
            step_id=record.step_id,
            name=record.name or record.step_id,
            status=StepStatus(record.status),
            attempts=record.attempts,
            output=record.output,
            error=record.error,
            started_at=record.started_at,
            completed_at=record.completed_at
        )


class SQLAlchemyTaskRepository(TaskRepository):
    """SQLAlchemy 调度任务仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, task: ScheduledTask) -> str:
        async with self.db.get_session() as session:
            session.add(ScheduledTaskRecord(id=task.id, **self._task_values(task)))
            await session.flush()
            return task.id

    async def get(self, task_id: str) -> Optional[ScheduledTask]:
        async with self.db.get_session() as session:
            record = await session.get(ScheduledTaskRecord, task_id)
            return self._to_task(record) if record else None

    async def update(self, task: ScheduledTask) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(ScheduledTaskRecord)
                .where(ScheduledTaskRecord.id == task.id)
                .values(**self._task_values(task))
            )
            return result.rowcount > 0

    async def update_fields(self, task_id: str, **values) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(ScheduledTaskRecord)
                .where(ScheduledTaskRecord.id == task_id)
                .values(**values)
            )
            return result.rowcount > 0

    async def record_run(self, task_id: str, succeeded: bool, **values) -> Optional[ScheduledTask]:
        if succeeded:
            values["run_count"] = ScheduledTaskRecord.run_count + 1
        else:
            values["fail_count"] = ScheduledTaskRecord.fail_count + 1

        async with self.db.get_session() as session:
            result = await session.execute(
                update(ScheduledTaskRecord)
                .where(ScheduledTaskRecord.id == task_id)
                .values(**values)
            )
            if result.rowcount == 0:
                return None
            record = await session.get(ScheduledTaskRecord, task_id, populate_existing=True)
            return self._to_task(record)

    async def list(
        self,
        is_active: bool = None,
        type: TaskType = None,
        offset: int = 0,
        limit: int = 20
    ) -> List[ScheduledTask]:
        async with self.db.get_session() as session:
            query = select(ScheduledTaskRecord)
            if is_active is not None:
                query = query.where(ScheduledTaskRecord.is_active == is_active)
            if type is not None:
                query = query.where(ScheduledTaskRecord.type == type.value)

            query = query.order_by(
                ScheduledTaskRecord.next_run_at.is_(None),
                ScheduledTaskRecord.next_run_at.asc()
            ).offset(offset).limit(limit)

            result = await session.execute(query)
            return [self._to_task(r) for r in result.scalars().all()]

    async def list_armable(self) -> List[ScheduledTask]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ScheduledTaskRecord).where(
                    ScheduledTaskRecord.is_active.is_(True),
                    ScheduledTaskRecord.next_run_at.is_not(None)
                )
            )
            return [self._to_task(r) for r in result.scalars().all()]

    async def list_due(self, now: datetime) -> List[ScheduledTask]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ScheduledTaskRecord).where(
                    ScheduledTaskRecord.is_active.is_(True),
                    ScheduledTaskRecord.next_run_at.is_not(None),
                    ScheduledTaskRecord.next_run_at <= now
                )
            )
            return [self._to_task(r) for r in result.scalars().all()]

    async def save_run(self, run: TaskRun) -> str:
        async with self.db.get_session() as session:
            session.add(TaskRunRecord(
                id=run.id,
                task_id=run.task_id,
                status=run.status.value,
                output=_jsonable(run.output),
                error=run.error,
                started_at=run.started_at,
                completed_at=run.completed_at
            ))
            await session.flush()
            return run.id

    async def update_run(self, run: TaskRun) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(TaskRunRecord)
                .where(TaskRunRecord.id == run.id)
                .values(
                    status=run.status.value,
                    output=_jsonable(run.output),
                    error=run.error,
                    completed_at=run.completed_at
                )
            )
            return result.rowcount > 0

    async def list_runs(self, task_id: str, limit: int = 20) -> List[TaskRun]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(TaskRunRecord)
                .where(TaskRunRecord.task_id == task_id)
                .order_by(TaskRunRecord.started_at.desc())
                .limit(limit)
            )
            return [self._to_run(r) for r in result.scalars().all()]

    async def list_runs_by_status(self, status: TaskRunStatus) -> List[TaskRun]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(TaskRunRecord).where(TaskRunRecord.status == status.value)
            )
            return [self._to_run(r) for r in result.scalars().all()]

    @staticmethod
    def _task_values(task: ScheduledTask) -> dict:
        return {
            "name": task.name,
            "description": task.description,
            "type": task.type.value,
            "schedule": _jsonable(task.schedule.to_dict()) if task.schedule else {"type": task.type.value},
            "workflow_id": task.workflow_id,
            "owner_id": task.owner_id,
            "payload": _jsonable(task.payload),
            "max_retries": task.max_retries,
            "is_active": task.is_active,
            "notify_on_complete": task.notify_on_complete,
            "notify_on_failure": task.notify_on_failure,
            "next_run_at": task.next_run_at,
            "last_run_at": task.last_run_at,
            "run_count": task.run_count,
            "fail_count": task.fail_count,
            "created_at": task.created_at,
            "updated_at": task.updated_at,
        }

    @staticmethod
    def _to_task(record: ScheduledTaskRecord) -> ScheduledTask:
        return ScheduledTask(
            id=record.id,
            name=record.name,
            description=record.description,
            type=TaskType(record.type),
            schedule=ScheduleConfig.from_dict(record.schedule),
            workflow_id=record.workflow_id,
            owner_id=record.owner_id,
            payload=record.payload or {},
            max_retries=record.max_retries,
            is_active=record.is_active,
            notify_on_complete=record.notify_on_complete,
            notify_on_failure=record.notify_on_failure,
            next_run_at=record.next_run_at,
            last_run_at=record.last_run_at,
            run_count=record.run_count,
            fail_count=record.fail_count,
            created_at=record.created_at,
            updated_at=record.updated_at
        )

    @staticmethod
    def _to_run(record: TaskRunRecord) -> TaskRun:
        return TaskRun(
            id=record.id,
            task_id=record.task_id,
            status=TaskRunStatus(record.status),
            output=record.output,
            error=record.error,
            started_at=record.started_at,
            completed_at=record.completed_at
        )
