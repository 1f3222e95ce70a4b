"""
调度任务 API 路由
"""
from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional
import logging

from ..models import (
    TaskCreateRequest, TaskResponse, TaskRunResponse, TaskTypeEnum, PaginatedResponse
)
from ..dependencies import get_scheduler, get_current_user, to_http_exception
from ...exceptions import WorkflowEngineError
from ...models.task import TaskType


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(
    task: TaskCreateRequest,
    scheduler = Depends(get_scheduler),
    current_user: Optional[str] = Depends(get_current_user)
) -> TaskResponse:
    """创建调度任务"""
    try:
        task_id = await scheduler.create_task(task.to_input(current_user))
        created = await scheduler.get_task(task_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    return TaskResponse.from_task(created)


@router.get("/", response_model=PaginatedResponse)
async def list_tasks(
    is_active: Optional[bool] = Query(None, description="是否激活"),
    type: Optional[TaskTypeEnum] = Query(None, description="任务类型"),
    offset: int = Query(0, ge=0, description="偏移量"),
    limit: int = Query(20, ge=1, le=100, description="每页数量"),
    scheduler = Depends(get_scheduler)
) -> PaginatedResponse:
    """列出调度任务（按下次运行时间排序）"""
    tasks = await scheduler.list_tasks(
        is_active=is_active,
        type=TaskType(type.value) if type else None,
        limit=limit,
        offset=offset
    )
    return PaginatedResponse(
        offset=offset,
        limit=limit,
        items=[TaskResponse.from_task(t) for t in tasks]
    )


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str, scheduler = Depends(get_scheduler)) -> TaskResponse:
    try:
        task = await scheduler.get_task(task_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    return TaskResponse.from_task(task)


@router.get("/{task_id}/runs", response_model=List[TaskRunResponse])
async def get_task_runs(
    task_id: str,
    limit: int = Query(20, ge=1, le=100, description="返回数量"),
    scheduler = Depends(get_scheduler)
) -> List[TaskRunResponse]:
    """任务运行历史（最新的在前）"""
    try:
        runs = await scheduler.get_task_runs(task_id, limit=limit)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    return [TaskRunResponse.from_run(r) for r in runs]


@router.post("/{task_id}/pause", response_model=TaskResponse)
async def pause_task(task_id: str, scheduler = Depends(get_scheduler)) -> TaskResponse:
    try:
        task = await scheduler.pause_task(task_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    return TaskResponse.from_task(task)


@router.post("/{task_id}/resume", response_model=TaskResponse)
async def resume_task(task_id: str, scheduler = Depends(get_scheduler)) -> TaskResponse:
    try:
        task = await scheduler.resume_task(task_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    return TaskResponse.from_task(task)


@router.delete("/{task_id}", response_model=TaskResponse)
async def cancel_task(task_id: str, scheduler = Depends(get_scheduler)) -> TaskResponse:
    """取消任务（软删除，保留运行历史）"""
    try:
        task = await scheduler.cancel_task(task_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    return TaskResponse.from_task(task)


@router.post("/{task_id}/trigger", response_model=TaskRunResponse)
async def trigger_task(task_id: str, scheduler = Depends(get_scheduler)) -> TaskRunResponse:
    """立即运行一次，不影响已计划的下次运行时间"""
    try:
        run = await scheduler.trigger_now(task_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    return TaskRunResponse.from_run(run)
