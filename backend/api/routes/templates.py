"""Workflow template endpoints — create, publish, archive, instantiate."""

from fastapi import APIRouter, Depends, status

from api.schemas.template import InstantiateRequest, TemplateCreate, TemplateResponse
from api.schemas.workflow import WorkflowResponse
from app.dependencies import get_template_service
from services.template_service import TemplateService

router = APIRouter(tags=["templates"])


@router.post("", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_template(
    request: TemplateCreate,
    svc: TemplateService = Depends(get_template_service),
) -> TemplateResponse:
    template = await svc.create_template(
        name=request.name,
        graph=request.graph,
        description=request.description or "",
        category=request.category,
        created_by=request.created_by,
    )
    return TemplateResponse.model_validate(template)


@router.get("/{template_id}", response_model=TemplateResponse)
async def get_template(
    template_id: str,
    svc: TemplateService = Depends(get_template_service),
) -> TemplateResponse:
    return TemplateResponse.model_validate(await svc.get_template(template_id))


@router.post("/{template_id}/publish", response_model=TemplateResponse)
async def publish_template(
    template_id: str,
    svc: TemplateService = Depends(get_template_service),
) -> TemplateResponse:
    return TemplateResponse.model_validate(await svc.publish_template(template_id))


@router.post("/{template_id}/archive", response_model=TemplateResponse)
async def archive_template(
    template_id: str,
    svc: TemplateService = Depends(get_template_service),
) -> TemplateResponse:
    return TemplateResponse.model_validate(await svc.archive_template(template_id))


@router.post("/{template_id}/instantiate", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
async def instantiate_template(
    template_id: str,
    request: InstantiateRequest,
    svc: TemplateService = Depends(get_template_service),
) -> WorkflowResponse:
    """
    Create a draft workflow in a project from a published template.
    """
    wf = await svc.instantiate(template_id, request.project_id, request.customizations)
    return WorkflowResponse.model_validate(wf)
