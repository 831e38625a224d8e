"""Workflow execution model (the execution ledger's storage)."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import ExecutionStatus, TriggerType
from db.base import BaseModel


class WorkflowExecution(BaseModel):
    """One run of a workflow version or an automation rule.

    Attributes:
        workflow_id: Exact workflow version row the execution is bound to
        rule_id: Automation rule, for flat rule executions
        project_id: Owning project
        trigger_type: manual, api, event or rule
        trigger_event: Name of the triggering domain event
        trigger_payload: Event payload as received
        context: Current execution context (JSON)
        status: pending, running, waiting_approval, retrying, completed, failed, cancelled
        execution_log: Ordered per-step entries
        retry_count / max_retries / next_retry_at: Retry state
        current_node_id: Resume point
        pending_approval: ``{node_id, approvers, deadline}`` while waiting
        approval_deadline: Indexed copy of the pending approval deadline
        step_count: Nodes visited so far, bounded by the step budget
        result: Final result mapping
        error_message / error_type: Terminal failure details
        claimed_by: Worker that currently owns the execution
    """

    __tablename__ = "workflow_executions"
    __table_args__ = (
        Index("ix_executions_workflow_status", "workflow_id", "status"),
        Index("ix_executions_status_next_retry", "status", "next_retry_at"),
        Index("ix_executions_status_approval_deadline", "status", "approval_deadline"),
    )

    workflow_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("workflows.id", ondelete="RESTRICT"),
        nullable=True,
    )
    rule_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("automation_rules.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    project_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    trigger_type: Mapped[str] = mapped_column(default=TriggerType.MANUAL.value)
    trigger_event: Mapped[Optional[str]] = mapped_column(nullable=True)
    trigger_payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    context: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(default=ExecutionStatus.PENDING.value)
    execution_log: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    retry_count: Mapped[int] = mapped_column(default=0)
    max_retries: Mapped[int] = mapped_column(default=3)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    current_node_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    pending_approval: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    approval_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    step_count: Mapped[int] = mapped_column(default=0)

    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(nullable=True)
    error_type: Mapped[Optional[str]] = mapped_column(nullable=True)

    claimed_by: Mapped[Optional[str]] = mapped_column(nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
