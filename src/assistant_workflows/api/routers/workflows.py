"""
工作流管理 API 路由
"""
from fastapi import APIRouter, HTTPException, Depends, Query, status
from typing import List, Optional
import logging

from ..models import (
    WorkflowCreateRequest, WorkflowResponse, WorkflowDetailResponse,
    WorkflowExecuteRequest, ExecutionResponse, ExecutionStatusEnum, PaginatedResponse
)
from ..dependencies import get_workflow_engine, get_current_user, to_http_exception
from ...exceptions import WorkflowEngineError
from ...models.execution import ExecutionStatus


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=WorkflowDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    workflow: WorkflowCreateRequest,
    engine = Depends(get_workflow_engine),
    current_user: Optional[str] = Depends(get_current_user)
) -> WorkflowDetailResponse:
    """创建新的工作流"""
    try:
        workflow_id = await engine.create_workflow(workflow.to_definition(), owner_id=current_user)
        created = await engine.get_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)

    return WorkflowDetailResponse.from_workflow(created)


@router.get("/", response_model=PaginatedResponse)
async def list_workflows(
    offset: int = Query(0, ge=0, description="偏移量"),
    limit: int = Query(20, ge=1, le=100, description="每页数量"),
    engine = Depends(get_workflow_engine),
    current_user: Optional[str] = Depends(get_current_user)
) -> PaginatedResponse:
    """列出工作流（提供 X-User-Id 时只返回该用户的工作流）"""
    workflows = await engine.list_workflows(owner_id=current_user, offset=offset, limit=limit)
    return PaginatedResponse(
        offset=offset,
        limit=limit,
        items=[WorkflowResponse.from_workflow(w) for w in workflows]
    )


@router.get("/{workflow_id}", response_model=WorkflowDetailResponse)
async def get_workflow(
    workflow_id: str,
    engine = Depends(get_workflow_engine)
) -> WorkflowDetailResponse:
    """获取工作流详情"""
    try:
        workflow = await engine.get_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    return WorkflowDetailResponse.from_workflow(workflow)


@router.post("/{workflow_id}/enable", response_model=WorkflowResponse)
async def enable_workflow(
    workflow_id: str,
    engine = Depends(get_workflow_engine)
) -> WorkflowResponse:
    """启用工作流"""
    try:
        workflow = await engine.set_workflow_enabled(workflow_id, True)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    return WorkflowResponse.from_workflow(workflow)


@router.post("/{workflow_id}/disable", response_model=WorkflowResponse)
async def disable_workflow(
    workflow_id: str,
    engine = Depends(get_workflow_engine)
) -> WorkflowResponse:
    """禁用工作流"""
    try:
        workflow = await engine.set_workflow_enabled(workflow_id, False)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    return WorkflowResponse.from_workflow(workflow)


@router.post(
    "/{workflow_id}/execute",
    response_model=ExecutionResponse,
    status_code=status.HTTP_202_ACCEPTED
)
async def execute_workflow(
    workflow_id: str,
    request: WorkflowExecuteRequest,
    engine = Depends(get_workflow_engine)
) -> ExecutionResponse:
    """执行工作流（立即返回，步骤在后台运行）"""
    try:
        execution_id = await engine.execute_workflow(
            workflow_id,
            trigger_payload=request.payload,
            trigger_id=request.trigger_id or "api"
        )
        execution = await engine.get_execution(execution_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)

    return ExecutionResponse.from_execution(execution)


@router.get("/{workflow_id}/executions", response_model=List[ExecutionResponse])
async def list_workflow_executions(
    workflow_id: str,
    status_filter: Optional[ExecutionStatusEnum] = Query(None, alias="status", description="执行状态"),
    offset: int = Query(0, ge=0, description="偏移量"),
    limit: int = Query(20, ge=1, le=100, description="每页数量"),
    engine = Depends(get_workflow_engine)
) -> List[ExecutionResponse]:
    """列出工作流的执行历史（最新的在前）"""
    try:
        await engine.get_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)

    executions = await engine.list_executions(
        workflow_id,
        limit=limit,
        offset=offset,
        status=ExecutionStatus(status_filter.value) if status_filter else None
    )
    return [ExecutionResponse.from_execution(e) for e in executions]
