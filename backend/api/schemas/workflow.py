"""Workflow definition schemas."""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Optional, Dict, Any


class WorkflowCreate(BaseModel):
    """Request to create a workflow draft."""

    project_id: str = Field(min_length=1, description="Owning project")
    name: str = Field(min_length=1, description="Workflow name")
    description: Optional[str] = Field(default="", description="Workflow description")
    graph: Dict[str, Any] = Field(
        default_factory=lambda: {"nodes": [], "connections": []},
        description="Nodes, connections, variables and settings",
    )


class WorkflowUpdate(BaseModel):
    """Request to update a draft (or derive a new draft from a published version)."""

    name: Optional[str] = Field(default=None, min_length=1, description="Workflow name")
    description: Optional[str] = Field(default=None, description="Workflow description")
    graph: Optional[Dict[str, Any]] = Field(default=None, description="Workflow graph")


class WorkflowResponse(BaseModel):
    """One version of a workflow."""

    id: str = Field(description="Workflow version ID")
    lineage_id: str = Field(description="ID shared by all versions")
    parent_id: Optional[str] = Field(default=None, description="Version this draft derives from")
    project_id: str = Field(description="Owning project")
    name: str = Field(description="Workflow name")
    description: str = Field(description="Workflow description")
    graph: Dict[str, Any] = Field(description="Workflow graph")
    version: int = Field(description="Version number within the lineage")
    status: str = Field(description="draft, published or archived")
    is_active: bool = Field(description="Whether new executions may be triggered")
    template_id: Optional[str] = Field(default=None, description="Source template")
    published_at: Optional[datetime] = Field(default=None, description="Publish timestamp")
    execution_count: int = Field(default=0, description="Finished executions")
    success_count: int = Field(default=0, description="Completed executions")
    failure_count: int = Field(default=0, description="Failed executions")
    last_executed_at: Optional[datetime] = Field(default=None, description="Last finished execution")
    created_at: datetime = Field(description="Creation timestamp")
    updated_at: datetime = Field(description="Last update timestamp")

    class Config:
        from_attributes = True


class WorkflowVersionsResponse(BaseModel):
    """All versions of a workflow lineage."""

    lineage_id: str
    versions: List[WorkflowResponse]


class GraphValidateRequest(BaseModel):
    """Request to validate a graph without saving it."""

    graph: Dict[str, Any] = Field(description="Workflow graph")


class ValidationResponse(BaseModel):
    """Validation outcome. Warnings never block publishing."""

    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class SimulateRequest(BaseModel):
    """Dry-run a graph with a sample context."""

    graph: Dict[str, Any] = Field(description="Workflow graph")
    context: Dict[str, Any] = Field(default_factory=dict, description="Initial context")


class SimulateResponse(BaseModel):
    """Path taken by a dry run."""

    status: str
    path: List[str]
    stopped_at: Optional[str] = None
    actions: List[Dict[str, Any]] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    execution_log: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
