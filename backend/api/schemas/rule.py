"""Automation rule schemas."""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union


class RuleAction(BaseModel):
    """One action of a rule."""

    id: Optional[str] = Field(default=None, description="Action ID (generated when omitted)")
    action_type: str = Field(min_length=1, description="Registered action type")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Handler parameters")
    order: Optional[int] = Field(default=None, description="Execution order")


class RuleCreate(BaseModel):
    """Request to create an automation rule."""

    project_id: str = Field(min_length=1, description="Owning project")
    name: str = Field(min_length=1, description="Rule name")
    description: Optional[str] = Field(default="", description="Rule description")
    trigger_type: str = Field(min_length=1, description="Domain event type, e.g. issue.created, or 'scheduled'")
    trigger_config: Dict[str, Any] = Field(default_factory=dict, description="{'match': {...}} payload filter, or {'cron', 'timezone'} for scheduled rules")
    conditions: Optional[Union[Dict[str, Any], List[Dict[str, Any]]]] = Field(
        default=None, description="Condition expression tree (or legacy flat list)"
    )
    actions: List[RuleAction] = Field(min_length=1, description="Ordered actions")
    status: str = Field(default="active", pattern="^(active|paused)$")


class RuleUpdate(BaseModel):
    """Request to update an automation rule. Omitted fields are unchanged."""

    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    trigger_type: Optional[str] = Field(default=None, min_length=1)
    trigger_config: Optional[Dict[str, Any]] = None
    conditions: Optional[Union[Dict[str, Any], List[Dict[str, Any]]]] = None
    actions: Optional[List[RuleAction]] = None
    status: Optional[str] = Field(default=None, pattern="^(active|paused)$")


class RuleResponse(BaseModel):
    """Automation rule with its counters."""

    id: str
    project_id: str
    name: str
    description: str
    trigger_type: str
    trigger_config: Dict[str, Any]
    conditions: Optional[Dict[str, Any]] = None
    actions: List[Dict[str, Any]]
    status: str
    evaluation_count: int = 0
    execution_count: int = 0
    success_count: int = 0
    success_rate: float = 0.0
    last_error: Optional[str] = None
    last_executed_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class RuleTestRequest(BaseModel):
    """Sample context for a dry run."""

    context: Dict[str, Any] = Field(default_factory=dict)


class RuleTestResponse(BaseModel):
    rule_id: str
    matched: bool
    actions: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None


class RuleTriggerRequest(BaseModel):
    """Explicitly run a rule against a synthesized event."""

    payload: Dict[str, Any] = Field(default_factory=dict, description="Event payload")
    event_type: Optional[str] = Field(default=None, description="Defaults to the rule's trigger type")
