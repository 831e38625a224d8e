"""Workflow definition model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import WorkflowStatus
from db.base import BaseModel


class Workflow(BaseModel):
    """One version of a workflow definition.

    Every version is its own row. All versions of a workflow share a
    ``lineage_id`` (the id of the first version). Published rows are
    never mutated; editing one creates a new draft row with the next
    version number.

    Attributes:
        id: Unique identifier (UUID string)
        lineage_id: Id shared by all versions of this workflow
        parent_id: Version this draft was derived from
        project_id: Owning project
        name: Workflow name
        description: Workflow description
        graph: Nodes, connections, variables and settings (JSON)
        version: Monotonic version number within the lineage
        status: draft, published or archived
        is_active: Whether new executions may be triggered
        template_id: Template the workflow was instantiated from
        published_at: When the version was published
    """

    __tablename__ = "workflows"
    __table_args__ = (
        UniqueConstraint("lineage_id", "version", name="uq_workflows_lineage_version"),
        Index("ix_workflows_project_status", "project_id", "status"),
    )

    lineage_id: Mapped[str] = mapped_column(nullable=False, index=True)
    parent_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    project_id: Mapped[str] = mapped_column(nullable=False, index=True)
    name: Mapped[str] = mapped_column(nullable=False, index=True)
    description: Mapped[str] = mapped_column(nullable=False, default="")
    graph: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(default=1)
    status: Mapped[str] = mapped_column(
        default=WorkflowStatus.DRAFT.value, index=True
    )
    is_active: Mapped[bool] = mapped_column(default=True)
    template_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    published_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Statistics, updated when executions reach a terminal state
    execution_count: Mapped[int] = mapped_column(default=0)
    success_count: Mapped[int] = mapped_column(default=0)
    failure_count: Mapped[int] = mapped_column(default=0)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def is_editable(self) -> bool:
        return self.status == WorkflowStatus.DRAFT.value
