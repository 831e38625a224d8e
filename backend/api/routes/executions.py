"""Execution query and management endpoints — status, approvals, cancel, retry."""

from fastapi import APIRouter, Depends, Query
from typing import Optional
import logging

from api.schemas.common import PaginationParams
from api.schemas.execution import (
    ApprovalRequest,
    ExecutionListResponse,
    ExecutionResponse,
)
from app.dependencies import get_execution_service
from core.utils import calculate_offset
from services.execution_service import ExecutionService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["executions"])


@router.get("", response_model=ExecutionListResponse)
async def list_executions(
    pagination: PaginationParams = Depends(),
    workflow_id: Optional[str] = Query(None, description="Filter by workflow version ID"),
    rule_id: Optional[str] = Query(None, description="Filter by rule ID"),
    exec_status: Optional[str] = Query(None, alias="status", description="Filter by execution status"),
    svc: ExecutionService = Depends(get_execution_service),
) -> ExecutionListResponse:
    """
    List executions, newest first (paginated, filterable).
    """
    executions, total = await svc.list(
        workflow_id=workflow_id,
        rule_id=rule_id,
        status=exec_status,
        limit=pagination.per_page,
        offset=calculate_offset(pagination.page, pagination.per_page),
    )
    return ExecutionListResponse(
        executions=[ExecutionResponse.model_validate(ex) for ex in executions],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )


@router.get("/{execution_id}", response_model=ExecutionResponse)
async def get_execution(
    execution_id: str,
    svc: ExecutionService = Depends(get_execution_service),
) -> ExecutionResponse:
    """
    Execution status, step log, result and retry state.
    """
    return ExecutionResponse.model_validate(await svc.get(execution_id))


@router.post("/{execution_id}/approve", response_model=ExecutionResponse)
async def approve_execution(
    execution_id: str,
    request: ApprovalRequest,
    svc: ExecutionService = Depends(get_execution_service),
) -> ExecutionResponse:
    """
    Approve the pending approval node. The actor must be one of its approvers.
    """
    state = await svc.approve(execution_id, request.actor_id, request.comment)
    return ExecutionResponse.model_validate(state)


@router.post("/{execution_id}/reject", response_model=ExecutionResponse)
async def reject_execution(
    execution_id: str,
    request: ApprovalRequest,
    svc: ExecutionService = Depends(get_execution_service),
) -> ExecutionResponse:
    """
    Reject the pending approval node. Follows the rejected branch, or fails
    the execution when the node has none.
    """
    state = await svc.reject(execution_id, request.actor_id, request.comment)
    return ExecutionResponse.model_validate(state)


@router.post("/{execution_id}/cancel", response_model=ExecutionResponse)
async def cancel_execution(
    execution_id: str,
    svc: ExecutionService = Depends(get_execution_service),
) -> ExecutionResponse:
    state = await svc.cancel(execution_id)
    logger.info(f"Execution {execution_id} cancel requested via API")
    return ExecutionResponse.model_validate(state)


@router.post("/{execution_id}/retry", response_model=ExecutionResponse)
async def retry_execution(
    execution_id: str,
    svc: ExecutionService = Depends(get_execution_service),
) -> ExecutionResponse:
    """
    Retry a failed execution from the node where it failed.
    """
    return ExecutionResponse.model_validate(await svc.retry(execution_id))
