"""Automation rule endpoints — CRUD, toggle, dry-run test and explicit trigger."""

from fastapi import APIRouter, Depends, status
import logging

from api.schemas.common import MessageResponse
from api.schemas.execution import TriggerResponse
from api.schemas.rule import (
    RuleCreate,
    RuleResponse,
    RuleTestRequest,
    RuleTestResponse,
    RuleTriggerRequest,
    RuleUpdate,
)
from app.dependencies import get_rule_service
from core.exceptions import NotFoundError
from services.automation_rule_service import AutomationRuleService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["rules"])


@router.post("", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(
    request: RuleCreate,
    svc: AutomationRuleService = Depends(get_rule_service),
) -> RuleResponse:
    """
    Create an automation rule. Conditions may be a tree or a legacy flat list;
    they are stored in canonical tree form.
    """
    rule = await svc.create_rule(
        project_id=request.project_id,
        name=request.name,
        description=request.description or "",
        trigger_type=request.trigger_type,
        trigger_config=request.trigger_config,
        conditions=request.conditions,
        actions=[a.model_dump(exclude_none=True) for a in request.actions],
        status=request.status,
    )
    return RuleResponse.model_validate(rule)


@router.get("/{rule_id}", response_model=RuleResponse)
async def get_rule(
    rule_id: str,
    svc: AutomationRuleService = Depends(get_rule_service),
) -> RuleResponse:
    return RuleResponse.model_validate(await svc.get_rule(rule_id))


@router.put("/{rule_id}", response_model=RuleResponse)
async def update_rule(
    rule_id: str,
    request: RuleUpdate,
    svc: AutomationRuleService = Depends(get_rule_service),
) -> RuleResponse:
    data = request.model_dump(exclude_unset=True)
    if request.actions is not None:
        data["actions"] = [a.model_dump(exclude_none=True) for a in request.actions]
    return RuleResponse.model_validate(await svc.update_rule(rule_id, data))


@router.delete("/{rule_id}", response_model=MessageResponse)
async def delete_rule(
    rule_id: str,
    svc: AutomationRuleService = Depends(get_rule_service),
) -> MessageResponse:
    if not await svc.delete_rule(rule_id):
        raise NotFoundError(f"AutomationRule {rule_id} not found")
    return MessageResponse(message="Rule deleted")


@router.post("/{rule_id}/toggle", response_model=RuleResponse)
async def toggle_rule(
    rule_id: str,
    svc: AutomationRuleService = Depends(get_rule_service),
) -> RuleResponse:
    """
    Flip a rule between active and paused.
    """
    rule = await svc.toggle(rule_id)
    logger.info(f"Rule {rule_id} is now {rule.status}")
    return RuleResponse.model_validate(rule)


@router.post("/{rule_id}/test", response_model=RuleTestResponse)
async def test_rule(
    rule_id: str,
    request: RuleTestRequest,
    svc: AutomationRuleService = Depends(get_rule_service),
) -> RuleTestResponse:
    """
    Evaluate the rule against a sample context without running actions
    or touching its counters.
    """
    return RuleTestResponse(**await svc.test_rule(rule_id, request.context))


@router.post("/{rule_id}/trigger", response_model=TriggerResponse)
async def trigger_rule(
    rule_id: str,
    request: RuleTriggerRequest,
    svc: AutomationRuleService = Depends(get_rule_service),
) -> TriggerResponse:
    """
    Run one rule now against the given payload.
    """
    result = await svc.trigger(rule_id, payload=request.payload, event_type=request.event_type)
    return TriggerResponse(
        execution_id=result.execution_id,
        status=result.status or "skipped",
        matched=result.matched,
    )
