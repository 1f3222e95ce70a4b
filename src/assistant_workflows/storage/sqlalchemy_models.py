"""
SQLAlchemy 数据库模型定义
"""
from sqlalchemy import (
    Column, String, Text, Boolean, Integer, DateTime, ForeignKey,
    CheckConstraint, Index, JSON
)
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


class WorkflowDefinitionRecord(Base):
    """工作流定义模型"""
    __tablename__ = 'workflow_definitions'

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    owner_id = Column(String(255))
    is_enabled = Column(Boolean, default=True, nullable=False)
    steps = Column(JSON, nullable=False)
    variables = Column(JSON, default=dict)
    last_run_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    # 关系
    triggers = relationship(
        "WorkflowTriggerRecord",
        back_populates="workflow",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="WorkflowTriggerRecord.position"
    )

    # 约束
    __table_args__ = (
        Index('idx_workflow_definitions_owner', 'owner_id'),
        Index('idx_workflow_definitions_created_at', 'created_at'),
    )


class WorkflowTriggerRecord(Base):
    """工作流触发器模型"""
    __tablename__ = 'workflow_triggers'

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id = Column(
        String(36), ForeignKey('workflow_definitions.id', ondelete='CASCADE'), nullable=False
    )
    position = Column(Integer, nullable=False, default=0)
    type = Column(String(50), nullable=False)
    config = Column(JSON, default=dict)
    is_enabled = Column(Boolean, default=True, nullable=False)

    workflow = relationship("WorkflowDefinitionRecord", back_populates="triggers")

    __table_args__ = (
        Index('idx_workflow_triggers_workflow_id', 'workflow_id'),
    )


class WorkflowExecutionRecord(Base):
    """工作流执行实例模型"""
    __tablename__ = 'workflow_executions'

    id = Column(String(36), primary_key=True)
    workflow_id = Column(String(36), ForeignKey('workflow_definitions.id'), nullable=False)
    status = Column(String(20), nullable=False)
    trigger_id = Column(String(255))
    trigger_payload = Column(JSON)
    steps_snapshot = Column(JSON, default=list)
    output = Column(JSON, default=dict)
    error = Column(Text)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint(
            "status IN ('RUNNING', 'COMPLETED', 'FAILED', 'CANCELLED')",
            name='check_execution_status'
        ),
        Index('idx_workflow_executions_workflow_id', 'workflow_id'),
        Index('idx_workflow_executions_status', 'status'),
        Index('idx_workflow_executions_started_at', 'started_at'),
    )


class WorkflowStepRecord(Base):
    """步骤执行记录模型"""
    __tablename__ = 'workflow_steps'

    id = Column(String(36), primary_key=True)
    execution_id = Column(
        String(36), ForeignKey('workflow_executions.id', ondelete='CASCADE'), nullable=False
    )
    step_id = Column(String(255), nullable=False)
    name = Column(String(255))
    status = Column(String(20), nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    output = Column(JSON)
    error = Column(Text)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint(
            "status IN ('RUNNING', 'COMPLETED', 'FAILED')",
            name='check_step_status'
        ),
        Index('idx_workflow_steps_execution_id', 'execution_id'),
        Index('idx_workflow_steps_status', 'status'),
    )


class ScheduledTaskRecord(Base):
    """调度任务模型"""
    __tablename__ = 'scheduled_tasks'

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    type = Column(String(20), nullable=False)
    schedule = Column(JSON, nullable=False)
    workflow_id = Column(String(36), ForeignKey('workflow_definitions.id'))
    owner_id = Column(String(255))
    payload = Column(JSON, default=dict)
    max_retries = Column(Integer, default=3, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    notify_on_complete = Column(Boolean, default=False, nullable=False)
    notify_on_failure = Column(Boolean, default=False, nullable=False)
    next_run_at = Column(DateTime)
    last_run_at = Column(DateTime)
    run_count = Column(Integer, default=0, nullable=False)
    fail_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint("type IN ('ONE_TIME', 'RECURRING', 'CRON')", name='check_task_type'),
        Index('idx_scheduled_tasks_active', 'is_active'),
        Index('idx_scheduled_tasks_next_run', 'next_run_at'),
    )


class TaskRunRecord(Base):
    """任务运行记录模型"""
    __tablename__ = 'task_runs'

    id = Column(String(36), primary_key=True)
    task_id = Column(String(36), ForeignKey('scheduled_tasks.id', ondelete='CASCADE'), nullable=False)
    status = Column(String(20), nullable=False)
    output = Column(JSON)
    error = Column(Text)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint(
            "status IN ('RUNNING', 'COMPLETED', 'FAILED')",
            name='check_task_run_status'
        ),
        Index('idx_task_runs_task_id', 'task_id'),
        Index('idx_task_runs_status', 'status'),
    )
