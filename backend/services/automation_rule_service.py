"""Automation rule service — CRUD, toggling, dry runs and explicit triggers."""

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

import pydantic
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from core.constants import RuleStatus, TriggerType
from core.exceptions import InvalidStateError, ValidationError
from core.utils import utc_now
from db.models.automation_rule import AutomationRule
from services.base import BaseService
from triggers.base import DomainEvent
from triggers.schedule import SCHEDULED_TRIGGER, compute_next_run, validate_schedule
from workflow.conditions import check_condition_limits, condition_to_dict, parse_condition
from workflow.dispatcher import ActionDispatcher, get_action_dispatcher
from workflow.rules import AutomationRuleMatcher, RuleRunResult


class AutomationRuleService(BaseService[AutomationRule]):
    """Service for automation rules."""

    def __init__(self, db: AsyncSession, dispatcher: Optional[ActionDispatcher] = None):
        super().__init__(AutomationRule, db)
        self.dispatcher = dispatcher or get_action_dispatcher()

    # ─── Normalization ──────────────────────────────────────

    def normalize_conditions(self, raw: Any) -> Optional[dict]:
        """Parse (and convert legacy lists of) conditions into the canonical tree.

        Raises:
            ValidationError: The expression is malformed or too large.
        """
        if raw is None or raw == [] or raw == {}:
            return None
        try:
            cond = parse_condition(raw)
        except (pydantic.ValidationError, ValueError, TypeError) as e:
            raise ValidationError("Invalid rule conditions", errors=[str(e)])

        settings = get_settings()
        errors = check_condition_limits(cond, settings.CONDITION_MAX_DEPTH, settings.CONDITION_MAX_NODES)
        if errors:
            raise ValidationError("Invalid rule conditions", errors=errors)
        return condition_to_dict(cond)

    def normalize_actions(self, actions: Optional[list]) -> list:
        """Give every action an id and an order, and check its type is registered."""
        known = set(self.dispatcher.available_types)
        normalized, errors = [], []
        for index, action in enumerate(actions or []):
            action_type = action.get("action_type") or action.get("type")
            if not action_type:
                errors.append(f"Action #{index} has no action_type")
                continue
            if action_type not in known:
                errors.append(f"Action #{index} uses unknown action type '{action_type}'")
            normalized.append({
                "id": action.get("id") or str(uuid4()),
                "action_type": action_type,
                "parameters": action.get("parameters") or action.get("config") or {},
                "order": action.get("order", index),
            })
        if errors:
            raise ValidationError("Invalid rule actions", errors=errors)
        return normalized

    @staticmethod
    def next_scheduled_run(trigger_type: str, trigger_config: Optional[dict]) -> Optional[datetime]:
        """First cron occurrence for a scheduled rule; None for event rules.

        Raises:
            ValidationError: The cron expression or timezone is invalid.
        """
        if trigger_type != SCHEDULED_TRIGGER:
            return None
        errors = validate_schedule(trigger_config)
        if errors:
            raise ValidationError("Invalid rule schedule", errors=errors)
        return compute_next_run(trigger_config, utc_now())

    # ─── CRUD ───────────────────────────────────────────────

    async def create_rule(
        self,
        project_id: str,
        name: str,
        trigger_type: str,
        actions: list,
        conditions: Any = None,
        trigger_config: Optional[dict] = None,
        description: str = "",
        status: str = RuleStatus.ACTIVE.value,
    ) -> AutomationRule:
        return await self.create({
            "project_id": project_id,
            "name": name,
            "description": description or "",
            "trigger_type": trigger_type,
            "trigger_config": trigger_config or {},
            "conditions": self.normalize_conditions(conditions),
            "actions": self.normalize_actions(actions),
            "status": RuleStatus(status).value,
            "next_run_at": self.next_scheduled_run(trigger_type, trigger_config),
        })

    async def update_rule(self, rule_id: str, data: dict[str, Any]) -> AutomationRule:
        """Update a rule. Only keys present in ``data`` change."""
        rule = await self.get_or_404(rule_id)
        changes = {k: v for k, v in data.items() if k in {"name", "description", "trigger_type", "trigger_config"}}

        if data.get("trigger_type") is not None or data.get("trigger_config") is not None:
            rule.next_run_at = self.next_scheduled_run(
                data.get("trigger_type") or rule.trigger_type,
                data["trigger_config"] if data.get("trigger_config") is not None else rule.trigger_config,
            )

        # conditions may be cleared explicitly, so assign directly
        if "conditions" in data:
            rule.conditions = self.normalize_conditions(data["conditions"])
        if data.get("actions") is not None:
            changes["actions"] = self.normalize_actions(data["actions"])
        if data.get("status") is not None:
            changes["status"] = RuleStatus(data["status"]).value
        return await self.apply(rule, changes)

    async def get_rule(self, rule_id: str) -> AutomationRule:
        return await self.get_or_404(rule_id)

    async def toggle(self, rule_id: str) -> AutomationRule:
        """Flip a rule between active and paused."""
        rule = await self.get_or_404(rule_id)
        rule.status = (
            RuleStatus.PAUSED.value if rule.status == RuleStatus.ACTIVE.value else RuleStatus.ACTIVE.value
        )
        if rule.status == RuleStatus.ACTIVE.value:
            # occurrences missed while paused are skipped
            rule.next_run_at = self.next_scheduled_run(rule.trigger_type, rule.trigger_config)
        await self.db.flush()
        await self.db.refresh(rule)
        return rule

    async def delete_rule(self, rule_id: str) -> bool:
        return await self.soft_delete(rule_id)

    # ─── Execution ──────────────────────────────────────────

    async def test_rule(self, rule_id: str, context: Optional[dict] = None) -> dict:
        rule = await self.get_or_404(rule_id)
        matcher = AutomationRuleMatcher(self.db, dispatcher=self.dispatcher)
        return await matcher.test_rule(rule, context or {})

    async def trigger(
        self,
        rule_id: str,
        payload: Optional[dict] = None,
        event_type: Optional[str] = None,
    ) -> RuleRunResult:
        """Run one rule explicitly against a synthesized event.

        Raises:
            InvalidStateError: The rule is paused.
        """
        rule = await self.get_or_404(rule_id)
        if rule.status != RuleStatus.ACTIVE.value:
            raise InvalidStateError(f"Rule {rule_id} is {rule.status}")

        event = DomainEvent(
            type=event_type or rule.trigger_type,
            payload=payload or {},
            project_id=rule.project_id,
        )
        matcher = AutomationRuleMatcher(self.db, dispatcher=self.dispatcher)
        return await matcher.execute_rule(rule, event, trigger_type=TriggerType.API)

    async def handle_event(self, event: DomainEvent) -> list[RuleRunResult]:
        matcher = AutomationRuleMatcher(self.db, dispatcher=self.dispatcher)
        return await matcher.handle_event(event)

    async def run_scheduled(self, now: Optional[datetime] = None) -> list[RuleRunResult]:
        matcher = AutomationRuleMatcher(self.db, dispatcher=self.dispatcher)
        return await matcher.run_scheduled_rules(now)
