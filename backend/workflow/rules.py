"""
Automation Rule Matcher.

The flat sibling of the workflow engine: on each domain event, every
active rule listening to that event type has its conditions evaluated
and, if they hold, its actions dispatched in order. The first failing
action stops the rest. Rule invocations are single-shot (no retries)
and are recorded as one-step executions in the ledger.

Rules with trigger type ``scheduled`` ignore domain events and run on
their cron schedule instead (see ``run_scheduled_rules``).

Counters are incremented in SQL so concurrent invocations of the same
rule never lose an update.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

import pydantic
import structlog
from sqlalchemy import Float, Numeric, cast, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import ExecutionStatus, RuleStatus, StepStatus, TriggerType
from core.exceptions import ActionError
from core.utils import ensure_utc, utc_now
from db.models.automation_rule import AutomationRule
from triggers.base import DomainEvent, matches_filter
from triggers.schedule import SCHEDULED_TRIGGER, compute_next_run, cron_expression, validate_schedule
from workflow.conditions import ConditionEvaluator, get_condition_evaluator
from workflow.dispatcher import ActionDispatcher, DryRunDispatcher, get_action_dispatcher
from workflow.ledger import state_to_row
from workflow.state import ExecutionState

logger = structlog.get_logger(__name__)


@dataclass
class RuleRunResult:
    """Outcome of offering one event to one rule."""

    rule_id: str
    matched: bool
    execution_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None
    actions: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "matched": self.matched,
            "execution_id": self.execution_id,
            "status": self.status,
            "error": self.error,
            "actions": self.actions,
        }


class AutomationRuleMatcher:
    """Evaluates automation rules against domain events.

    Works inside the caller's session; the caller commits.
    """

    def __init__(
        self,
        session: AsyncSession,
        dispatcher: Optional[ActionDispatcher] = None,
        evaluator: Optional[ConditionEvaluator] = None,
    ):
        self.session = session
        self.dispatcher = dispatcher or get_action_dispatcher()
        self.evaluator = evaluator or get_condition_evaluator()

    async def find_rules(self, event: DomainEvent) -> List[AutomationRule]:
        query = select(AutomationRule).where(
            AutomationRule.trigger_type == event.type,
            AutomationRule.status == RuleStatus.ACTIVE.value,
            AutomationRule.is_deleted == False,  # noqa: E712
        )
        if event.project_id:
            query = query.where(AutomationRule.project_id == event.project_id)
        result = await self.session.scalars(query.order_by(AutomationRule.created_at))
        return list(result)

    async def handle_event(self, event: DomainEvent) -> List[RuleRunResult]:
        """Offer an event to every active rule listening for its type."""
        if event.type == SCHEDULED_TRIGGER:
            logger.warning("Ignoring domain event named like the schedule trigger", event_id=event.event_id)
            return []

        results = []
        for rule in await self.find_rules(event):
            match_rules = (rule.trigger_config or {}).get("match")
            if match_rules and not matches_filter(event.payload, match_rules):
                logger.debug("Event filtered out by trigger config", rule_id=rule.id, event_type=event.type)
                continue
            results.append(await self.execute_rule(rule, event))

        logger.info(
            "Domain event handled",
            event_type=event.type,
            event_id=event.event_id,
            rules_evaluated=len(results),
            rules_matched=sum(1 for r in results if r.matched),
        )
        return results

    async def execute_rule(self, rule: AutomationRule, event: DomainEvent, trigger_type: TriggerType = TriggerType.EVENT) -> RuleRunResult:
        """Evaluate one rule and, if its conditions hold, run its actions."""
        context = event.as_context()

        try:
            matched = self.evaluator.evaluate(rule.conditions, context)
        except pydantic.ValidationError as e:
            logger.warning("Rule has malformed conditions", rule_id=rule.id, error=str(e))
            error = f"Malformed conditions: {e.error_count()} error(s)"
            await self._update_counters(
                rule, evaluation_count=AutomationRule.evaluation_count + 1, last_error=error
            )
            return RuleRunResult(rule_id=rule.id, matched=False, error=error)

        await self._update_counters(rule, evaluation_count=AutomationRule.evaluation_count + 1)
        if not matched:
            return RuleRunResult(rule_id=rule.id, matched=False)

        started = utc_now()
        state = ExecutionState(
            execution_id=str(uuid4()),
            rule_id=rule.id,
            project_id=rule.project_id,
            trigger_type=trigger_type.value,
            trigger_event=event.type,
            trigger_payload=event.payload,
            status=ExecutionStatus.RUNNING,
            context=context,
            max_retries=0,
            current_node_id=rule.id,
            step_count=1,
            started_at=started,
        )

        outputs, error = await self._run_actions(rule, state)

        log_status = StepStatus.FAILED if error else StepStatus.COMPLETED
        state.append_log(
            rule.id, "rule", log_status, started,
            input={"event": event.type},
            output={"actions": outputs},
            error=error.message if error else None,
            error_type=error.error_type if error else None,
        )
        if error:
            state.fail(error.message, error.error_type)
        else:
            state.complete()

        self.session.add(state_to_row(state))
        await self._record_stats(rule, success=error is None, error=error.message if error else None)

        logger.info(
            "Rule executed",
            rule_id=rule.id,
            execution_id=state.execution_id,
            status=state.status.value,
            actions_run=len(outputs),
        )
        return RuleRunResult(
            rule_id=rule.id,
            matched=True,
            execution_id=state.execution_id,
            status=state.status.value,
            error=state.error_message,
            actions=outputs,
        )

    async def _run_actions(self, rule: AutomationRule, state: ExecutionState):
        outputs: List[Dict[str, Any]] = []
        for action in rule.sorted_actions():
            action_type = action.get("action_type") or action.get("type")
            try:
                patch = await self.dispatcher.dispatch(
                    action_type,
                    action.get("parameters") or action.get("config") or {},
                    {**state.context, "execution_id": state.execution_id},
                )
            except ActionError as e:
                outputs.append({"id": action.get("id"), "action_type": action_type, "status": "failed", "error": e.message})
                return outputs, e
            state.context.update(patch)
            outputs.append({"id": action.get("id"), "action_type": action_type, "status": "completed", "output": patch})
        return outputs, None

    async def _record_stats(self, rule: AutomationRule, success: bool, error: Optional[str]) -> None:
        succeeded = 1 if success else 0
        executions = AutomationRule.execution_count + 1
        successes = AutomationRule.success_count + succeeded
        # SET expressions read the pre-update row, so the rate uses the new counts explicitly
        rate = func.round(cast(cast(successes, Float) * 100 / executions, Numeric), 2)
        await self._update_counters(
            rule,
            execution_count=executions,
            success_count=successes,
            success_rate=rate,
            last_error=None if success else error,
            last_executed_at=utc_now(),
        )

    async def _update_counters(self, rule: AutomationRule, **values: Any) -> None:
        """Apply a row-level UPDATE to the rule and reload the touched columns."""
        await self.session.execute(
            update(AutomationRule)
            .where(AutomationRule.id == rule.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(rule, attribute_names=list(values))

    # ─── Scheduled rules ─────────────────────────────────────────

    async def run_scheduled_rules(self, now: Optional[datetime] = None) -> List[RuleRunResult]:
        """Run every active scheduled rule whose next occurrence has passed.

        A rule's ``next_run_at`` is advanced with a compare-and-swap before
        it runs, so concurrent pollers run each occurrence once. Missed
        occurrences collapse into a single run.
        """
        now = now or utc_now()
        rules = await self.session.scalars(
            select(AutomationRule)
            .where(
                AutomationRule.trigger_type == SCHEDULED_TRIGGER,
                AutomationRule.status == RuleStatus.ACTIVE.value,
                AutomationRule.is_deleted == False,  # noqa: E712
                AutomationRule.next_run_at.is_not(None),
                AutomationRule.next_run_at <= now,
            )
            .order_by(AutomationRule.next_run_at)
        )

        results = []
        for rule in list(rules):
            if validate_schedule(rule.trigger_config):
                logger.warning("Scheduled rule has an invalid schedule", rule_id=rule.id)
                continue

            due_at = ensure_utc(rule.next_run_at)
            claimed = await self.session.execute(
                update(AutomationRule)
                .where(AutomationRule.id == rule.id, AutomationRule.next_run_at == rule.next_run_at)
                .values(next_run_at=compute_next_run(rule.trigger_config, now))
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                logger.debug("Scheduled occurrence taken by another poller", rule_id=rule.id)
                continue
            await self.session.refresh(rule, attribute_names=["next_run_at"])

            event = DomainEvent(
                type=SCHEDULED_TRIGGER,
                payload={"scheduled_at": due_at.isoformat(), "cron": cron_expression(rule.trigger_config)},
                project_id=rule.project_id,
            )
            results.append(await self.execute_rule(rule, event, trigger_type=TriggerType.SCHEDULED))

        if results:
            logger.info("Scheduled rules run", count=len(results))
        return results

    async def test_rule(self, rule: AutomationRule, context: Dict[str, Any]) -> Dict[str, Any]:
        """Dry run: evaluate conditions and list the actions that would run.

        Touches neither the rule's counters nor the ledger.
        """
        try:
            matched = self.evaluator.evaluate(rule.conditions, context)
        except pydantic.ValidationError as e:
            return {"rule_id": rule.id, "matched": False, "error": str(e), "actions": []}

        planned = []
        if matched:
            dry_run = DryRunDispatcher(known_types=self.dispatcher.available_types)
            for action in rule.sorted_actions():
                action_type = action.get("action_type") or action.get("type")
                try:
                    await dry_run.dispatch(action_type, action.get("parameters") or {}, context)
                    planned.append({"id": action.get("id"), "action_type": action_type, "status": "would_run"})
                except ActionError as e:
                    planned.append({"id": action.get("id"), "action_type": action_type, "status": "invalid", "error": e.message})
        return {"rule_id": rule.id, "matched": matched, "actions": planned}
