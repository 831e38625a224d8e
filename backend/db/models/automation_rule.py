"""Automation rule model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import RuleStatus
from db.base import BaseModel, SoftDeleteMixin


class AutomationRule(SoftDeleteMixin, BaseModel):
    """Flat trigger → conditions → ordered actions rule.

    Attributes:
        project_id: Owning project
        name / description: Display fields
        trigger_type: Domain event type the rule listens to (e.g. ``issue.created``),
            or ``scheduled`` for cron rules
        trigger_config: ``{"match": {...}}`` payload filter, or
            ``{"cron": ..., "timezone": ...}`` for scheduled rules
        conditions: Condition expression tree, or null for "always"
        actions: ``[{"id", "action_type", "parameters", "order"}]``
        status: active or paused
        evaluation_count: Events that reached condition evaluation
        execution_count: Invocations whose conditions held
        success_count: Invocations where every action succeeded
        success_rate: success_count / execution_count, percent (2 dp)
        last_error: Error from the most recent failed invocation
        last_executed_at: Time of the most recent invocation
        next_run_at: Next cron occurrence of a scheduled rule
    """

    __tablename__ = "automation_rules"
    __table_args__ = (
        Index("ix_automation_rules_trigger_status", "trigger_type", "status"),
    )

    project_id: Mapped[str] = mapped_column(nullable=False, index=True)
    name: Mapped[str] = mapped_column(nullable=False)
    description: Mapped[str] = mapped_column(nullable=False, default="")
    trigger_type: Mapped[str] = mapped_column(nullable=False)
    trigger_config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    conditions: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    actions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(default=RuleStatus.ACTIVE.value)

    evaluation_count: Mapped[int] = mapped_column(default=0)
    execution_count: Mapped[int] = mapped_column(default=0)
    success_count: Mapped[int] = mapped_column(default=0)
    success_rate: Mapped[float] = mapped_column(default=0.0)
    last_error: Mapped[Optional[str]] = mapped_column(nullable=True)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_run_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )

    @property
    def is_active(self) -> bool:
        return self.status == RuleStatus.ACTIVE.value and not self.is_deleted

    def sorted_actions(self) -> list:
        return sorted(self.actions or [], key=lambda a: a.get("order", 0))
