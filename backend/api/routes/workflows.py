"""Workflow definition endpoints — drafts, validation, publish, archive, versions, simulate, trigger."""

from fastapi import APIRouter, Depends, status
import logging

from api.schemas.execution import TriggerRequest, TriggerResponse
from api.schemas.workflow import (
    GraphValidateRequest,
    SimulateRequest,
    SimulateResponse,
    ValidationResponse,
    WorkflowCreate,
    WorkflowResponse,
    WorkflowUpdate,
    WorkflowVersionsResponse,
)
from app.dependencies import get_execution_service, get_workflow_service
from core.constants import TriggerType
from services.execution_service import ExecutionService
from services.workflow_service import WorkflowService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["workflows"])


@router.post("", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    request: WorkflowCreate,
    svc: WorkflowService = Depends(get_workflow_service),
) -> WorkflowResponse:
    """
    Create a new workflow draft (version 1 of a new lineage).
    """
    wf = await svc.create_draft(
        project_id=request.project_id,
        name=request.name,
        description=request.description or "",
        graph=request.graph,
    )
    return WorkflowResponse.model_validate(wf)


@router.post("/validate", response_model=ValidationResponse)
async def validate_workflow(
    request: GraphValidateRequest,
    svc: WorkflowService = Depends(get_workflow_service),
) -> ValidationResponse:
    """
    Validate a graph without saving it.
    """
    return ValidationResponse(**svc.validate(request.graph).to_dict())


@router.post("/simulate", response_model=SimulateResponse)
async def simulate_workflow(
    request: SimulateRequest,
    svc: WorkflowService = Depends(get_workflow_service),
) -> SimulateResponse:
    """
    Dry-run a graph: actions are recorded, not executed, and nothing is persisted.
    """
    return SimulateResponse(**await svc.simulate(request.graph, request.context))


@router.get("/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow(
    workflow_id: str,
    svc: WorkflowService = Depends(get_workflow_service),
) -> WorkflowResponse:
    return WorkflowResponse.model_validate(await svc.get(workflow_id))


@router.put("/{workflow_id}", response_model=WorkflowResponse)
async def update_workflow(
    workflow_id: str,
    request: WorkflowUpdate,
    svc: WorkflowService = Depends(get_workflow_service),
) -> WorkflowResponse:
    """
    Update a draft in place. Updating a published or archived version
    creates and returns a new draft version instead.
    """
    wf = await svc.update_draft(
        workflow_id,
        name=request.name,
        description=request.description,
        graph=request.graph,
    )
    return WorkflowResponse.model_validate(wf)


@router.post("/{workflow_id}/publish", response_model=WorkflowResponse)
async def publish_workflow(
    workflow_id: str,
    svc: WorkflowService = Depends(get_workflow_service),
) -> WorkflowResponse:
    """
    Validate and freeze a draft. Returns 422 with every validation error on failure.
    """
    wf = await svc.publish(workflow_id)
    logger.info(f"Workflow {workflow_id} published via API")
    return WorkflowResponse.model_validate(wf)


@router.post("/{workflow_id}/archive", response_model=WorkflowResponse)
async def archive_workflow(
    workflow_id: str,
    svc: WorkflowService = Depends(get_workflow_service),
) -> WorkflowResponse:
    """
    Archive a version. Running executions continue; new triggers are refused.
    """
    return WorkflowResponse.model_validate(await svc.archive(workflow_id))


@router.get("/{workflow_id}/versions", response_model=WorkflowVersionsResponse)
async def list_workflow_versions(
    workflow_id: str,
    svc: WorkflowService = Depends(get_workflow_service),
) -> WorkflowVersionsResponse:
    versions = await svc.list_versions(workflow_id)
    return WorkflowVersionsResponse(
        lineage_id=versions[0].lineage_id,
        versions=[WorkflowResponse.model_validate(v) for v in versions],
    )


@router.post("/{workflow_id}/trigger", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_workflow(
    workflow_id: str,
    request: TriggerRequest,
    executions: ExecutionService = Depends(get_execution_service),
) -> TriggerResponse:
    """
    Start an execution of a published workflow version.
    """
    trigger_type = TriggerType.EVENT if request.event else TriggerType.API
    state = await executions.trigger(
        workflow_id,
        context=request.context,
        event=request.event,
        trigger_type=trigger_type,
    )
    return TriggerResponse(execution_id=state.execution_id, status=state.status.value)
