"""Workflow template schemas."""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, Optional


class TemplateCreate(BaseModel):
    """Request to create a template."""

    name: str = Field(min_length=1)
    description: Optional[str] = ""
    category: str = Field(default="general")
    graph: Dict[str, Any] = Field(description="Template graph")
    created_by: Optional[str] = None


class TemplateResponse(BaseModel):
    id: str
    name: str
    description: str
    category: str
    graph: Dict[str, Any]
    status: str
    usage_count: int = 0
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class InstantiateRequest(BaseModel):
    """Create a draft workflow from a published template.

    ``customizations`` may carry ``name``, ``description``, per-node
    overrides (``nodes: {id: {name, config}}``), per-connection overrides
    (``connections: {id: {...}}``), ``variables`` and ``settings``.
    """

    project_id: str = Field(min_length=1)
    customizations: Dict[str, Any] = Field(default_factory=dict)
