"""Tests for automation rules: matching, counters and the rule service."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from core.exceptions import InvalidStateError, NotFoundError, ValidationError
from core.utils import ensure_utc, utc_now
from db.models.automation_rule import AutomationRule
from db.models.execution import WorkflowExecution
from services.automation_rule_service import AutomationRuleService
from triggers.base import DomainEvent
from triggers.schedule import compute_next_run, validate_schedule
from workflow.rules import AutomationRuleMatcher

HIGH_PRIORITY = {"type": "compare", "op": "eq", "path": "priority", "value": "high"}


@pytest.fixture
def rules(db_session, dispatcher) -> AutomationRuleService:
    return AutomationRuleService(db_session, dispatcher=dispatcher)


async def execution_rows(session) -> int:
    return await session.scalar(select(func.count()).select_from(WorkflowExecution))


def issue_created(priority: str = "high", project_id: str = "proj-1", **extra) -> DomainEvent:
    return DomainEvent(
        type="issue.created",
        payload={"issue": {"id": "ISS-1"}, "priority": priority, **extra},
        project_id=project_id,
    )


@pytest.mark.unit
class TestRuleMatching:
    """Events offered to rules through the service."""

    async def test_condition_false_only_counts_evaluation(self, rules, db_session, dispatcher):
        rule = await rules.create_rule(
            "proj-1", "Escalate", "issue.created",
            actions=[{"action_type": "assign_user", "parameters": {"user_id": "oncall"}}],
            conditions=HIGH_PRIORITY,
        )

        results = await rules.handle_event(issue_created(priority="low"))
        await db_session.commit()

        assert [r.matched for r in results] == [False]
        await db_session.refresh(rule)
        assert rule.evaluation_count == 1
        assert rule.execution_count == 0
        assert rule.last_executed_at is None
        assert await execution_rows(db_session) == 0
        assert dispatcher.get("assign_user").calls == []

    async def test_match_runs_actions_in_order(self, rules, db_session, dispatcher):
        rule = await rules.create_rule(
            "proj-1", "Escalate", "issue.created",
            actions=[
                {"action_type": "send_notification", "parameters": {"recipients": ["team"]}, "order": 2},
                {"action_type": "assign_user", "parameters": {"user_id": "oncall"}, "order": 1},
            ],
            conditions=HIGH_PRIORITY,
        )

        [result] = await rules.handle_event(issue_created())
        await db_session.commit()

        assert result.matched is True
        assert result.status == "completed"
        assert [a["action_type"] for a in result.actions] == ["assign_user", "send_notification"]
        # later actions see patches from earlier ones
        notify_call = dispatcher.get("send_notification").calls[0]
        assert notify_call["context"]["assignee_id"] == "oncall"
        assert notify_call["context"]["execution_id"] == result.execution_id

        row = await db_session.get(WorkflowExecution, result.execution_id)
        assert row.rule_id == rule.id
        assert row.workflow_id is None
        assert row.trigger_type == "event"
        assert row.max_retries == 0
        assert len(row.execution_log) == 1
        assert row.execution_log[0]["node_id"] == rule.id

        await db_session.refresh(rule)
        assert rule.evaluation_count == 1
        assert rule.execution_count == 1
        assert rule.success_count == 1
        assert rule.success_rate == 100.0

    async def test_first_failure_stops_remaining_actions(self, rules, db_session, dispatcher):
        rule = await rules.create_rule(
            "proj-1", "Sync", "issue.created",
            actions=[
                {"action_type": "broken"},
                {"action_type": "assign_user", "parameters": {"user_id": "oncall"}},
            ],
        )

        [result] = await rules.handle_event(issue_created())
        await db_session.commit()

        assert result.status == "failed"
        assert result.error == "bad request"
        assert [a["status"] for a in result.actions] == ["failed"]
        assert dispatcher.get("assign_user").calls == []

        await db_session.refresh(rule)
        assert rule.execution_count == 1
        assert rule.success_count == 0
        assert rule.success_rate == 0.0
        assert rule.last_error == "bad request"

    async def test_success_rate_tracks_mixed_outcomes(self, rules, db_session):
        rule = await rules.create_rule(
            "proj-1", "Flaky sync", "issue.created",
            actions=[{"action_type": "flaky"}],
        )

        for _ in range(3):
            await rules.handle_event(issue_created())
        await db_session.commit()
        await db_session.refresh(rule)

        # two retryable failures, then a success; rules never retry
        assert rule.execution_count == 3
        assert rule.success_count == 1
        assert rule.success_rate == 33.33
        assert rule.last_error is None
        assert await execution_rows(db_session) == 3

    async def test_trigger_config_filters_payload(self, rules, db_session, dispatcher):
        await rules.create_rule(
            "proj-1", "Bugs only", "issue.created",
            actions=[{"action_type": "update_field"}],
            trigger_config={"match": {"labels_contains": "bug"}},
        )

        assert await rules.handle_event(issue_created(labels=["feature"])) == []
        [result] = await rules.handle_event(issue_created(labels=["bug", "ui"]))
        assert result.matched is True
        assert len(dispatcher.get("update_field").calls) == 1

    async def test_paused_and_foreign_rules_are_ignored(self, rules, db_session):
        await rules.create_rule("proj-1", "Paused", "issue.created", actions=[], status="paused")
        await rules.create_rule("proj-2", "Other project", "issue.created", actions=[])
        await rules.create_rule("proj-1", "Other event", "issue.closed", actions=[])
        deleted = await rules.create_rule("proj-1", "Deleted", "issue.created", actions=[])
        await rules.delete_rule(deleted.id)

        assert await rules.handle_event(issue_created()) == []

    async def test_rule_without_conditions_always_matches(self, rules, db_session):
        await rules.create_rule("proj-1", "Always", "issue.created", actions=[])
        [result] = await rules.handle_event(issue_created(priority="low"))
        assert result.matched is True
        assert result.status == "completed"

    async def test_overlapping_events_keep_every_increment(self, session_factory, dispatcher):
        async with session_factory() as session:
            rule = await AutomationRuleService(session, dispatcher=dispatcher).create_rule(
                "proj-1", "Escalate", "issue.created",
                actions=[{"action_type": "update_field"}],
            )
            await session.commit()

        async with session_factory() as first, session_factory() as second:
            # the second worker loads the rule before the first one writes
            late = AutomationRuleMatcher(second, dispatcher=dispatcher)
            [stale_rule] = await late.find_rules(issue_created())
            await second.commit()

            await AutomationRuleMatcher(first, dispatcher=dispatcher).handle_event(issue_created())
            await first.commit()
            await late.execute_rule(stale_rule, issue_created())
            await second.commit()

        async with session_factory() as session:
            stored = await session.get(AutomationRule, rule.id)
            assert stored.evaluation_count == 2
            assert stored.execution_count == 2
            assert stored.success_count == 2
            assert stored.success_rate == 100.0


@pytest.mark.unit
class TestRuleService:
    """CRUD, toggling, dry runs and explicit triggers."""

    async def test_actions_are_normalized(self, rules):
        rule = await rules.create_rule(
            "proj-1", "Legacy", "issue.created",
            actions=[{"type": "assign_user", "config": {"user_id": "u-1"}}],
        )
        [action] = rule.actions
        assert action["action_type"] == "assign_user"
        assert action["parameters"] == {"user_id": "u-1"}
        assert action["order"] == 0
        assert action["id"]

    async def test_unknown_action_type_rejected(self, rules):
        with pytest.raises(ValidationError) as exc_info:
            await rules.create_rule("proj-1", "Bad", "issue.created", actions=[{"action_type": "teleport"}])
        assert exc_info.value.errors == ["Action #0 uses unknown action type 'teleport'"]

    async def test_legacy_conditions_are_converted(self, rules):
        rule = await rules.create_rule(
            "proj-1", "Legacy", "issue.created", actions=[],
            conditions=[
                {"field": "priority", "operator": "equals", "value": "high"},
                {"field": "points", "operator": "gt", "value": 3, "logicalOperator": "OR"},
            ],
        )
        assert rule.conditions["type"] == "or"
        assert rule.conditions["conditions"][0] == {"type": "compare", "op": "eq", "path": "priority", "value": "high"}

    async def test_malformed_conditions_rejected(self, rules):
        with pytest.raises(ValidationError):
            await rules.create_rule(
                "proj-1", "Bad", "issue.created", actions=[],
                conditions={"type": "eval", "code": "__import__('os')"},
            )

    async def test_update_can_clear_conditions(self, rules):
        rule = await rules.create_rule("proj-1", "R", "issue.created", actions=[], conditions=HIGH_PRIORITY)
        updated = await rules.update_rule(rule.id, {"conditions": None, "name": "Renamed"})
        assert updated.conditions is None
        assert updated.name == "Renamed"

    async def test_toggle(self, rules):
        rule = await rules.create_rule("proj-1", "R", "issue.created", actions=[])
        assert (await rules.toggle(rule.id)).status == "paused"
        assert (await rules.toggle(rule.id)).status == "active"

    async def test_delete_hides_rule(self, rules):
        rule = await rules.create_rule("proj-1", "R", "issue.created", actions=[])
        assert await rules.delete_rule(rule.id) is True
        with pytest.raises(NotFoundError):
            await rules.get_rule(rule.id)
        assert await rules.delete_rule(rule.id) is False

    async def test_dry_run_touches_nothing(self, rules, db_session, dispatcher):
        rule = await rules.create_rule(
            "proj-1", "R", "issue.created",
            actions=[{"action_type": "assign_user", "parameters": {"user_id": "oncall"}}],
            conditions=HIGH_PRIORITY,
        )

        report = await rules.test_rule(rule.id, {"priority": "high"})
        miss = await rules.test_rule(rule.id, {"priority": "low"})

        assert report["matched"] is True
        assert [a["status"] for a in report["actions"]] == ["would_run"]
        assert miss == {"rule_id": rule.id, "matched": False, "actions": []}
        assert dispatcher.get("assign_user").calls == []
        await db_session.refresh(rule)
        assert rule.evaluation_count == 0
        assert await execution_rows(db_session) == 0

    async def test_explicit_trigger(self, rules, db_session):
        rule = await rules.create_rule("proj-1", "R", "issue.created", actions=[{"action_type": "update_field"}])
        result = await rules.trigger(rule.id, payload={"priority": "low"})
        await db_session.commit()

        assert result.matched is True
        row = await db_session.get(WorkflowExecution, result.execution_id)
        assert row.trigger_type == "api"
        assert row.trigger_event == "issue.created"

    async def test_trigger_paused_rule_rejected(self, rules):
        rule = await rules.create_rule("proj-1", "R", "issue.created", actions=[], status="paused")
        with pytest.raises(InvalidStateError):
            await rules.trigger(rule.id)


YEARLY = {"cron": "0 0 1 1 *"}


@pytest.mark.unit
class TestScheduledRules:
    """Rules that run on a cron schedule instead of a domain event."""

    def test_next_run_in_rule_timezone(self):
        after = datetime(2026, 1, 15, 0, 0, tzinfo=timezone.utc)
        next_run = compute_next_run({"cron": "0 9 * * *", "timezone": "Europe/Sofia"}, after)
        assert next_run == datetime(2026, 1, 15, 7, 0, tzinfo=timezone.utc)

    def test_legacy_schedule_key(self):
        after = datetime(2026, 1, 15, 0, 0, tzinfo=timezone.utc)
        assert compute_next_run({"schedule": "*/15 * * * *"}, after) == datetime(2026, 1, 15, 0, 15, tzinfo=timezone.utc)

    def test_schedule_validation(self):
        assert validate_schedule(YEARLY) == []
        assert validate_schedule({}) == ["Scheduled rules need a 'cron' expression in trigger_config"]
        assert validate_schedule({"cron": "every day", "timezone": "Mars/Olympus"}) == [
            "Invalid cron expression 'every day'",
            "Unknown timezone 'Mars/Olympus'",
        ]

    async def test_create_sets_next_run(self, rules):
        rule = await rules.create_rule("proj-1", "Weekly digest", "scheduled", actions=[], trigger_config=YEARLY)
        assert ensure_utc(rule.next_run_at) > utc_now()

        event_rule = await rules.create_rule("proj-1", "R", "issue.created", actions=[])
        assert event_rule.next_run_at is None

    async def test_invalid_schedule_rejected(self, rules):
        with pytest.raises(ValidationError) as exc_info:
            await rules.create_rule("proj-1", "Bad", "scheduled", actions=[], trigger_config={"cron": "61 * * * *"})
        assert exc_info.value.errors == ["Invalid cron expression '61 * * * *'"]

    async def test_due_rule_runs_once_per_occurrence(self, rules, db_session, dispatcher):
        rule = await rules.create_rule(
            "proj-1", "Digest", "scheduled",
            actions=[{"action_type": "send_notification", "parameters": {"recipients": ["team"]}}],
            trigger_config=YEARLY,
        )
        due_at = ensure_utc(rule.next_run_at)
        now = due_at + timedelta(minutes=1)

        [result] = await rules.run_scheduled(now=now)
        await db_session.commit()

        assert result.matched is True
        assert result.status == "completed"
        assert len(dispatcher.get("send_notification").calls) == 1
        row = await db_session.get(WorkflowExecution, result.execution_id)
        assert row.trigger_type == "scheduled"
        assert row.trigger_event == "scheduled"
        assert row.trigger_payload["scheduled_at"] == due_at.isoformat()

        await db_session.refresh(rule)
        assert ensure_utc(rule.next_run_at) > now
        assert rule.execution_count == 1
        assert await rules.run_scheduled(now=now) == []

    async def test_rule_not_due_yet(self, rules, dispatcher):
        await rules.create_rule("proj-1", "Digest", "scheduled", actions=[{"action_type": "update_field"}], trigger_config=YEARLY)
        assert await rules.run_scheduled(now=utc_now()) == []
        assert dispatcher.get("update_field").calls == []

    async def test_paused_rule_skipped(self, rules):
        rule = await rules.create_rule("proj-1", "Digest", "scheduled", actions=[], trigger_config=YEARLY, status="paused")
        assert await rules.run_scheduled(now=ensure_utc(rule.next_run_at) + timedelta(days=1)) == []

    async def test_scheduled_rules_ignore_domain_events(self, rules):
        await rules.create_rule("proj-1", "Digest", "scheduled", actions=[], trigger_config=YEARLY)
        assert await rules.handle_event(DomainEvent(type="scheduled", project_id="proj-1")) == []

    async def test_switching_to_event_trigger_clears_schedule(self, rules):
        rule = await rules.create_rule("proj-1", "Digest", "scheduled", actions=[], trigger_config=YEARLY)
        updated = await rules.update_rule(rule.id, {"trigger_type": "issue.created", "trigger_config": {}})
        assert updated.next_run_at is None
