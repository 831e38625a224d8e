"""Execution schemas."""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Any, Dict, List, Optional


class TriggerRequest(BaseModel):
    """Request to trigger a workflow or rule."""

    context: Dict[str, Any] = Field(default_factory=dict, description="Initial execution context")
    event: Optional[Dict[str, Any]] = Field(
        default=None, description="Triggering event {type, payload}"
    )


class TriggerResponse(BaseModel):
    """Result of a trigger call."""

    execution_id: Optional[str] = Field(default=None, description="Created execution, if any")
    status: str = Field(description="Execution status right after triggering")
    matched: Optional[bool] = Field(default=None, description="Rule triggers: whether conditions held")


class ApprovalRequest(BaseModel):
    """Approve or reject a waiting execution."""

    actor_id: str = Field(min_length=1, description="Responding approver")
    comment: Optional[str] = Field(default=None, description="Optional comment")


class ExecutionResponse(BaseModel):
    """Execution status, log, result and retry state."""

    id: str = Field(validation_alias="execution_id", description="Execution ID")
    workflow_id: Optional[str] = Field(default=None, description="Workflow version run")
    rule_id: Optional[str] = Field(default=None, description="Rule run")
    project_id: Optional[str] = None
    trigger_type: str = Field(description="manual, api, event or rule")
    trigger_event: Optional[str] = Field(default=None, description="Triggering event type")
    status: str = Field(description="Execution status")
    context: Dict[str, Any] = Field(default_factory=dict)
    execution_log: List[Dict[str, Any]] = Field(default_factory=list)
    retry_count: int = Field(default=0, description="Retries consumed")
    max_retries: int = Field(default=0, description="Retry budget")
    next_retry_at: Optional[datetime] = None
    current_node_id: Optional[str] = Field(default=None, description="Resume point")
    pending_approval: Optional[Dict[str, Any]] = None
    step_count: int = 0
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status_value(cls, v):
        return getattr(v, "value", v)

    class Config:
        from_attributes = True


class ExecutionListResponse(BaseModel):
    """Paginated list of executions."""

    executions: List[ExecutionResponse] = Field(description="List of executions")
    total: int = Field(description="Total number of executions")
    page: int = Field(description="Current page number")
    per_page: int = Field(description="Items per page")
