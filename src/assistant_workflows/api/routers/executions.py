"""
工作流执行 API 路由
"""
from fastapi import APIRouter, Depends
import logging

from ..models import ExecutionResponse, ExecutionDetailResponse
from ..dependencies import get_workflow_engine, to_http_exception
from ...exceptions import WorkflowEngineError


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/{execution_id}", response_model=ExecutionDetailResponse)
async def get_execution(
    execution_id: str,
    engine = Depends(get_workflow_engine)
) -> ExecutionDetailResponse:
    """获取执行详情（包含步骤记录）"""
    try:
        execution = await engine.get_execution(execution_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    return ExecutionDetailResponse.from_execution(execution)


@router.post("/{execution_id}/cancel", response_model=ExecutionResponse)
async def cancel_execution(
    execution_id: str,
    engine = Depends(get_workflow_engine)
) -> ExecutionResponse:
    """取消执行；正在运行的步骤会继续完成，之后不再执行新步骤"""
    try:
        execution = await engine.cancel_execution(execution_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)

    logger.info(f"Execution {execution_id} cancelled via API")
    return ExecutionResponse.from_execution(execution)
