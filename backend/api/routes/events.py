"""Domain event ingestion endpoint.

The owning service posts business events here (or publishes them on the
Redis event bus); both paths end in the automation rule matcher.
"""

from fastapi import APIRouter, Depends, status
import logging

from api.schemas.event import EventHandledResponse, EventIn
from app.dependencies import get_rule_service
from services.automation_rule_service import AutomationRuleService
from triggers.base import DomainEvent

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])


@router.post("", response_model=EventHandledResponse, status_code=status.HTTP_202_ACCEPTED)
async def ingest_event(
    request: EventIn,
    svc: AutomationRuleService = Depends(get_rule_service),
) -> EventHandledResponse:
    event = DomainEvent(
        type=request.type,
        payload=request.payload,
        project_id=request.project_id,
        correlation_id=request.correlation_id,
    )
    results = await svc.handle_event(event)
    return EventHandledResponse(
        event_id=event.event_id,
        rules_evaluated=len(results),
        rules_matched=sum(1 for r in results if r.matched),
        results=[r.to_dict() for r in results],
    )
