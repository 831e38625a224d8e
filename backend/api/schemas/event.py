"""Domain event schemas."""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class EventIn(BaseModel):
    """A domain event posted by the owning service."""

    type: str = Field(min_length=1, description="Event type, e.g. issue.created")
    payload: Dict[str, Any] = Field(default_factory=dict)
    project_id: Optional[str] = None
    correlation_id: Optional[str] = None


class EventHandledResponse(BaseModel):
    event_id: str
    rules_evaluated: int
    rules_matched: int
    results: List[Dict[str, Any]]
