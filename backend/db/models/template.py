"""Workflow template model."""

from typing import Optional

from sqlalchemy import JSON
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import WorkflowStatus
from db.base import BaseModel


class WorkflowTemplate(BaseModel):
    """Reusable workflow graph that projects can instantiate.

    Attributes:
        name / description / category: Display fields
        graph: Template graph (same shape as Workflow.graph)
        status: draft, published or archived; only published templates instantiate
        usage_count: Number of workflows created from the template
        created_by: Actor id of the author
    """

    __tablename__ = "workflow_templates"

    name: Mapped[str] = mapped_column(nullable=False, index=True)
    description: Mapped[str] = mapped_column(nullable=False, default="")
    category: Mapped[str] = mapped_column(nullable=False, default="general", index=True)
    graph: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(default=WorkflowStatus.DRAFT.value, index=True)
    usage_count: Mapped[int] = mapped_column(default=0)
    created_by: Mapped[Optional[str]] = mapped_column(nullable=True)
