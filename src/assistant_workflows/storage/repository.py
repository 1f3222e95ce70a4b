"""
存储仓库接口定义
"""
import copy
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from ..models.workflow import WorkflowDefinition
from ..models.execution import WorkflowExecution, StepRecord, ExecutionStatus, StepStatus
from ..models.task import ScheduledTask, TaskRun, TaskType, TaskRunStatus


class WorkflowRepository(ABC):
    """工作流存储仓库接口"""

    @abstractmethod
    async def save(self, workflow: WorkflowDefinition) -> str:
        """保存工作流（连同触发器）"""
        pass

    @abstractmethod
    async def get(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        """获取工作流"""
        pass

    @abstractmethod
    async def list(
        self,
        owner_id: str = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowDefinition]:
        """列出工作流"""
        pass

    @abstractmethod
    async def update(self, workflow: WorkflowDefinition) -> bool:
        """更新工作流"""
        pass

    @abstractmethod
    async def update_fields(self, workflow_id: str, **values) -> bool:
        """仅更新给定字段（如 is_enabled、last_run_at），不覆盖其他列"""
        pass

    @abstractmethod
    async def delete(self, workflow_id: str) -> bool:
        """删除工作流"""
        pass


class ExecutionRepository(ABC):
    """执行实例与步骤记录存储仓库接口"""

    @abstractmethod
    async def save(self, execution: WorkflowExecution) -> str:
        """保存执行实例"""
        pass

    @abstractmethod
    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        """获取执行实例（包含步骤记录）"""
        pass

    @abstractmethod
    async def update(
        self,
        execution: WorkflowExecution,
        expected_status: ExecutionStatus = None
    ) -> bool:
        """
        更新执行实例

        Args:
            execution: 执行实例
            expected_status: 若提供，仅当存储中的状态等于该值时才更新

        Returns:
            bool: 是否更新成功
        """
        pass

    @abstractmethod
    async def list_by_workflow(
        self,
        workflow_id: str,
        status: ExecutionStatus = None,
        offset: int = 0,
        limit: int = 20
    ) -> List[WorkflowExecution]:
        """根据工作流ID列出执行实例（按开始时间倒序）"""
        pass

    @abstractmethod
    async def list_by_status(
        self,
        status: ExecutionStatus,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        """根据状态列出执行实例"""
        pass

    @abstractmethod
    async def save_step(self, record: StepRecord) -> str:
        """保存步骤记录"""
        pass

    @abstractmethod
    async def update_step(self, record: StepRecord) -> bool:
        """更新步骤记录"""
        pass

    @abstractmethod
    async def list_steps(self, execution_id: str) -> List[StepRecord]:
        """列出执行实例的步骤记录（按开始时间正序）"""
        pass

    @abstractmethod
    async def list_steps_by_status(self, status: StepStatus) -> List[StepRecord]:
        """根据状态列出步骤记录"""
        pass


class TaskRepository(ABC):
    """调度任务与运行记录存储仓库接口"""

    @abstractmethod
    async def save(self, task: ScheduledTask) -> str:
        pass

    @abstractmethod
    async def get(self, task_id: str) -> Optional[ScheduledTask]:
        pass

    @abstractmethod
    async def update(self, task: ScheduledTask) -> bool:
        pass

    @abstractmethod
    async def update_fields(self, task_id: str, **values) -> bool:
        """仅更新给定字段（如 is_active、next_run_at）"""
        pass

    @abstractmethod
    async def record_run(self, task_id: str, succeeded: bool, **values) -> Optional[ScheduledTask]:
        """
        原子地累加 run_count 或 fail_count 并更新给定字段

        Returns:
            更新后的任务，任务不存在时返回 None
        """
        pass

    @abstractmethod
    async def list(
        self,
        is_active: bool = None,
        type: TaskType = None,
        offset: int = 0,
        limit: int = 20
    ) -> List[ScheduledTask]:
        """列出任务（按下次运行时间正序）"""
        pass

    @abstractmethod
    async def list_armable(self) -> List[ScheduledTask]:
        """列出处于激活状态且有下次运行时间的任务"""
        pass

    @abstractmethod
    async def list_due(self, now: datetime) -> List[ScheduledTask]:
        """列出已到期（next_run_at <= now）的激活任务"""
        pass

    @abstractmethod
    async def save_run(self, run: TaskRun) -> str:
        pass

    @abstractmethod
    async def update_run(self, run: TaskRun) -> bool:
        pass

    @abstractmethod
    async def list_runs(self, task_id: str, limit: int = 20) -> List[TaskRun]:
        """列出任务运行记录（按开始时间倒序）"""
        pass

    @abstractmethod
    async def list_runs_by_status(self, status: TaskRunStatus) -> List[TaskRun]:
        pass


# 内存实现（用于测试与命令行），读写均复制对象以模拟持久化语义
class InMemoryWorkflowRepository(WorkflowRepository):
    """内存工作流仓库实现"""

    def __init__(self):
        self.workflows: Dict[str, WorkflowDefinition] = {}

    async def save(self, workflow: WorkflowDefinition) -> str:
        self.workflows[workflow.id] = copy.deepcopy(workflow)
        return workflow.id

    async def get(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        workflow = self.workflows.get(workflow_id)
        return copy.deepcopy(workflow) if workflow else None

    async def list(
        self,
        owner_id: str = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowDefinition]:
        workflows = [
            w for w in self.workflows.values()
            if owner_id is None or w.owner_id == owner_id
        ]
        workflows.sort(key=lambda w: w.created_at, reverse=True)
        return [copy.deepcopy(w) for w in workflows[offset:offset + limit]]

    async def update(self, workflow: WorkflowDefinition) -> bool:
        if workflow.id not in self.workflows:
            return False
        self.workflows[workflow.id] = copy.deepcopy(workflow)
        return True

    async def update_fields(self, workflow_id: str, **values) -> bool:
        workflow = self.workflows.get(workflow_id)
        if workflow is None:
            return False
        for key, value in values.items():
            setattr(workflow, key, copy.deepcopy(value))
        return True

    async def delete(self, workflow_id: str) -> bool:
        return self.workflows.pop(workflow_id, None) is not None


class InMemoryExecutionRepository(ExecutionRepository):
    """内存执行仓库实现"""

    def __init__(self):
        self.executions: Dict[str, WorkflowExecution] = {}
        self.steps: Dict[str, StepRecord] = {}

    async def save(self, execution: WorkflowExecution) -> str:
        stored = copy.deepcopy(execution)
        stored.step_records = []
        self.executions[execution.id] = stored
        return execution.id

    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        execution = self.executions.get(execution_id)
        if not execution:
            return None
        result = copy.deepcopy(execution)
        result.step_records = await self.list_steps(execution_id)
        return result

    async def update(
        self,
        execution: WorkflowExecution,
        expected_status: ExecutionStatus = None
    ) -> bool:
        stored = self.executions.get(execution.id)
        if stored is None:
            return False
        if expected_status is not None and stored.status != expected_status:
            return False
        updated = copy.deepcopy(execution)
        updated.step_records = []
        self.executions[execution.id] = updated
        return True

    async def list_by_workflow(
        self,
        workflow_id: str,
        status: ExecutionStatus = None,
        offset: int = 0,
        limit: int = 20
    ) -> List[WorkflowExecution]:
        results = [
            e for e in self.executions.values()
            if e.workflow_id == workflow_id and (status is None or e.status == status)
        ]
        results.sort(key=lambda e: e.started_at, reverse=True)
        return [copy.deepcopy(e) for e in results[offset:offset + limit]]

    async def list_by_status(
        self,
        status: ExecutionStatus,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        results = [e for e in self.executions.values() if e.status == status]
        results.sort(key=lambda e: e.started_at, reverse=True)
        return [copy.deepcopy(e) for e in results[offset:offset + limit]]

    async def save_step(self, record: StepRecord) -> str:
        self.steps[record.id] = copy.deepcopy(record)
        return record.id

    async def update_step(self, record: StepRecord) -> bool:
        if record.id not in self.steps:
            return False
        self.steps[record.id] = copy.deepcopy(record)
        return True

    async def list_steps(self, execution_id: str) -> List[StepRecord]:
        records = [r for r in self.steps.values() if r.execution_id == execution_id]
        records.sort(key=lambda r: r.started_at)
        return [copy.deepcopy(r) for r in records]

    async def list_steps_by_status(self, status: StepStatus) -> List[StepRecord]:
        return [copy.deepcopy(r) for r in self.steps.values() if r.status == status]


class InMemoryTaskRepository(TaskRepository):
    """内存调度任务仓库实现"""

    def __init__(self):
        self.tasks: Dict[str, ScheduledTask] = {}
        self.runs: Dict[str, TaskRun] = {}

    async def save(self, task: ScheduledTask) -> str:
        self.tasks[task.id] = copy.deepcopy(task)
        return task.id

    async def get(self, task_id: str) -> Optional[ScheduledTask]:
        task = self.tasks.get(task_id)
        return copy.deepcopy(task) if task else None

    async def update(self, task: ScheduledTask) -> bool:
        if task.id not in self.tasks:
            return False
        self.tasks[task.id] = copy.deepcopy(task)
        return True

    async def update_fields(self, task_id: str, **values) -> bool:
        task = self.tasks.get(task_id)
        if task is None:
            return False
        for key, value in values.items():
            setattr(task, key, copy.deepcopy(value))
        return True

    async def record_run(self, task_id: str, succeeded: bool, **values) -> Optional[ScheduledTask]:
        task = self.tasks.get(task_id)
        if task is None:
            return None
        if succeeded:
            task.run_count += 1
        else:
            task.fail_count += 1
        for key, value in values.items():
            setattr(task, key, copy.deepcopy(value))
        return copy.deepcopy(task)

    async def list(
        self,
        is_active: bool = None,
        type: TaskType = None,
        offset: int = 0,
        limit: int = 20
    ) -> List[ScheduledTask]:
        tasks = [
            t for t in self.tasks.values()
            if (is_active is None or t.is_active == is_active)
            and (type is None or t.type == type)
        ]
        tasks.sort(key=lambda t: (t.next_run_at is None, t.next_run_at or datetime.max))
        return [copy.deepcopy(t) for t in tasks[offset:offset + limit]]

    async def list_armable(self) -> List[ScheduledTask]:
        return [
            copy.deepcopy(t) for t in self.tasks.values()
            if t.is_active and t.next_run_at is not None
        ]

    async def list_due(self, now: datetime) -> List[ScheduledTask]:
        return [
            copy.deepcopy(t) for t in self.tasks.values()
            if t.is_active and t.next_run_at is not None and t.next_run_at <= now
        ]

    async def save_run(self, run: TaskRun) -> str:
        self.runs[run.id] = copy.deepcopy(run)
        return run.id

    async def update_run(self, run: TaskRun) -> bool:
        if run.id not in self.runs:
            return False
        self.runs[run.id] = copy.deepcopy(run)
        return True

    async def list_runs(self, task_id: str, limit: int = 20) -> List[TaskRun]:
        runs = [r for r in self.runs.values() if r.task_id == task_id]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return [copy.deepcopy(r) for r in runs[:limit]]

    async def list_runs_by_status(self, status: TaskRunStatus) -> List[TaskRun]:
        return [copy.deepcopy(r) for r in self.runs.values() if r.status == status]
