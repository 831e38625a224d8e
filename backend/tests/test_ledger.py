"""Tests for the execution ledger and queue processor."""

from datetime import timedelta
from uuid import uuid4

import pytest

from core.constants import ExecutionStatus
from core.utils import utc_now
from db.models.workflow import Workflow
from workflow.queue import QueueItem
from workflow.state import ApprovalDecision, ExecutionState


def new_state(status=ExecutionStatus.PENDING, **kwargs) -> ExecutionState:
    return ExecutionState(execution_id=str(uuid4()), status=status, **kwargs)


@pytest.mark.unit
class TestLedgerBasics:
    """Create, read and list executions."""

    async def test_create_and_get(self, ledger):
        state = new_state(context={"issue": {"id": "ISS-1"}}, current_node_id="start", project_id="proj-1")
        await ledger.create(state)

        loaded = await ledger.get(state.execution_id)
        assert loaded.status == ExecutionStatus.PENDING
        assert loaded.context == {"issue": {"id": "ISS-1"}}
        assert loaded.current_node_id == "start"
        assert loaded.execution_log == []

    async def test_get_missing(self, ledger):
        assert await ledger.get("nope") is None

    async def test_datetimes_come_back_aware(self, ledger):
        due = utc_now() + timedelta(minutes=5)
        state = new_state(status=ExecutionStatus.RETRYING, next_retry_at=due)
        await ledger.create(state)
        loaded = await ledger.get(state.execution_id)
        assert loaded.next_retry_at.tzinfo is not None
        assert abs((loaded.next_retry_at - due).total_seconds()) < 1

    async def test_list_filters_and_total(self, ledger):
        for _ in range(3):
            await ledger.create(new_state(workflow_id="wf-a"))
        await ledger.create(new_state(workflow_id="wf-a", status=ExecutionStatus.FAILED))
        await ledger.create(new_state(workflow_id="wf-b"))

        items, total = await ledger.list(workflow_id="wf-a", limit=2)
        assert total == 4
        assert len(items) == 2

        failed, total = await ledger.list(workflow_id="wf-a", status="failed")
        assert total == 1
        assert failed[0].status == ExecutionStatus.FAILED

    async def test_count_by_status(self, ledger):
        await ledger.create(new_state(status=ExecutionStatus.WAITING_APPROVAL))
        await ledger.create(new_state(status=ExecutionStatus.RETRYING))
        await ledger.create(new_state())
        assert await ledger.count_by_status([ExecutionStatus.WAITING_APPROVAL, ExecutionStatus.RETRYING]) == 2

    async def test_load_graph(self, ledger, db_session):
        graph = {"nodes": [{"id": "start", "type": "start"}], "connections": []}
        wf = Workflow(id="wf-1", lineage_id="wf-1", project_id="proj-1", name="wf", graph=graph)
        db_session.add(wf)
        await db_session.commit()
        assert await ledger.load_graph("wf-1") == graph
        assert await ledger.load_graph("missing") is None


@pytest.mark.unit
class TestClaimAndCheckpoint:
    """Row-level coordination between workers."""

    async def test_only_one_claim_wins(self, ledger):
        state = new_state()
        await ledger.create(state)

        results = [
            await ledger.claim(state.execution_id, ExecutionStatus.PENDING, f"worker-{i}") for i in range(5)
        ]

        assert results == [True, False, False, False, False]
        loaded = await ledger.get(state.execution_id)
        assert loaded.status == ExecutionStatus.RUNNING
        assert loaded.claimed_by == "worker-0"
        assert loaded.started_at is not None

    async def test_claim_requires_expected_status(self, ledger):
        state = new_state(status=ExecutionStatus.WAITING_APPROVAL)
        await ledger.create(state)
        assert await ledger.claim(state.execution_id, ExecutionStatus.RETRYING, "w") is False
        assert await ledger.claim(state.execution_id, ExecutionStatus.WAITING_APPROVAL, "w") is True

    async def test_checkpoint_only_while_running(self, ledger):
        state = new_state()
        await ledger.create(state)
        await ledger.claim(state.execution_id, ExecutionStatus.PENDING, "w")

        state.status = ExecutionStatus.RUNNING
        state.step_count = 1
        assert await ledger.checkpoint(state) is True

        assert await ledger.cancel(state.execution_id) is True
        state.step_count = 2
        assert await ledger.checkpoint(state) is False

        loaded = await ledger.get(state.execution_id)
        assert loaded.status == ExecutionStatus.CANCELLED
        assert loaded.step_count == 1

    async def test_cancel_terminal_is_noop(self, ledger):
        state = new_state(status=ExecutionStatus.COMPLETED)
        await ledger.create(state)
        assert await ledger.cancel(state.execution_id) is False
        assert (await ledger.get(state.execution_id)).status == ExecutionStatus.COMPLETED

    async def test_rearm_only_failed(self, ledger):
        failed = new_state(status=ExecutionStatus.FAILED, retry_count=3, step_count=7, error_message="boom")
        waiting = new_state(status=ExecutionStatus.WAITING_APPROVAL)
        await ledger.create(failed)
        await ledger.create(waiting)

        assert await ledger.rearm(failed.execution_id) is True
        assert await ledger.rearm(waiting.execution_id) is False

        loaded = await ledger.get(failed.execution_id)
        assert loaded.status == ExecutionStatus.RETRYING
        assert loaded.retry_count == 0
        assert loaded.step_count == 0
        assert loaded.error_message is None
        assert loaded.next_retry_at is not None


@pytest.mark.unit
class TestDueForResume:
    """Scheduler lookup of suspended executions."""

    async def test_due_rows_in_due_order(self, ledger):
        now = utc_now()
        late_retry = new_state(status=ExecutionStatus.RETRYING, next_retry_at=now - timedelta(minutes=1))
        early_approval = new_state(status=ExecutionStatus.WAITING_APPROVAL, approval_deadline=now - timedelta(minutes=10))
        future_retry = new_state(status=ExecutionStatus.RETRYING, next_retry_at=now + timedelta(minutes=10))
        no_deadline = new_state(status=ExecutionStatus.WAITING_APPROVAL)
        stale_failed = new_state(status=ExecutionStatus.FAILED, next_retry_at=now - timedelta(hours=1))
        for state in (late_retry, early_approval, future_retry, no_deadline, stale_failed):
            await ledger.create(state)

        due = await ledger.due_for_resume(now=now)

        assert due == [
            (early_approval.execution_id, ExecutionStatus.WAITING_APPROVAL),
            (late_retry.execution_id, ExecutionStatus.RETRYING),
        ]

    async def test_limit(self, ledger):
        now = utc_now()
        for i in range(4):
            await ledger.create(new_state(status=ExecutionStatus.RETRYING, next_retry_at=now - timedelta(seconds=i + 1)))
        assert len(await ledger.due_for_resume(now=now, limit=3)) == 3


@pytest.mark.unit
class TestStaleClaims:
    """Executions left behind by a worker that died."""

    async def test_stale_running_row_released(self, ledger):
        state = new_state(current_node_id="act")
        await ledger.create(state)
        assert await ledger.claim(state.execution_id, ExecutionStatus.PENDING, "worker-a")

        released = await ledger.release_stale_claims(utc_now() + timedelta(minutes=1))

        assert released == [state.execution_id]
        loaded = await ledger.get(state.execution_id)
        assert loaded.status == ExecutionStatus.RETRYING
        assert loaded.claimed_by is None
        assert loaded.next_retry_at is not None
        assert loaded.current_node_id == "act"

    async def test_dead_worker_cannot_checkpoint_after_release(self, ledger):
        state = new_state()
        await ledger.create(state)
        await ledger.claim(state.execution_id, ExecutionStatus.PENDING, "worker-a")
        await ledger.release_stale_claims(utc_now() + timedelta(minutes=1))

        claimed = await ledger.get(state.execution_id)
        claimed.status = ExecutionStatus.RUNNING
        claimed.complete()
        assert await ledger.checkpoint(claimed) is False

    async def test_recent_claim_kept(self, ledger):
        state = new_state()
        await ledger.create(state)
        await ledger.claim(state.execution_id, ExecutionStatus.PENDING, "worker-a")

        assert await ledger.release_stale_claims(utc_now() - timedelta(minutes=15)) == []
        assert (await ledger.get(state.execution_id)).status == ExecutionStatus.RUNNING

    async def test_stale_pending(self, ledger):
        old = new_state()
        await ledger.create(old)
        await ledger.create(new_state(status=ExecutionStatus.RETRYING))

        assert await ledger.stale_pending(utc_now() + timedelta(minutes=1)) == [old.execution_id]
        assert await ledger.stale_pending(utc_now() - timedelta(minutes=15)) == []


@pytest.mark.unit
class TestExecutionProcessor:
    """Claiming and dispatching queue items."""

    def test_queue_item_round_trip(self):
        item = QueueItem(
            execution_id="ex-1",
            expected_status="waiting_approval",
            resume_node_id="review",
            approval=ApprovalDecision(outcome="approved", actor_id="lead-1"),
        )
        restored = QueueItem.from_dict(item.to_dict())
        assert restored.expected_status == ExecutionStatus.WAITING_APPROVAL
        assert restored.approval.outcome.value == "approved"
        assert restored.approval.actor_id == "lead-1"

    @pytest.mark.parametrize("status", ["running", "completed", "cancelled"])
    def test_queue_item_needs_claimable_status(self, status):
        with pytest.raises(ValueError):
            QueueItem(execution_id="ex-1", expected_status=status)

    async def test_stale_item_is_discarded(self, processor, ledger):
        state = new_state(status=ExecutionStatus.COMPLETED)
        await ledger.create(state)
        result = await processor.process(QueueItem(execution_id=state.execution_id, expected_status=ExecutionStatus.PENDING))
        assert result is None
        assert (await ledger.get(state.execution_id)).status == ExecutionStatus.COMPLETED

    async def test_duplicate_delivery_runs_once(self, processor, ledger, publish_workflow, dispatcher, graphs):
        wf = await publish_workflow(graphs.priority())
        state = new_state(workflow_id=wf.id, context={"priority": "high"}, current_node_id="start")
        await ledger.create(state)
        item = QueueItem(execution_id=state.execution_id, expected_status=ExecutionStatus.PENDING)

        first = await processor.process(item)
        second = await processor.process(item)

        assert first.status == ExecutionStatus.COMPLETED
        assert second is None
        assert len(dispatcher.get("assign_user").calls) == 1

    async def test_unbound_execution_fails(self, processor, ledger):
        state = new_state(rule_id=None, workflow_id=None)
        await ledger.create(state)
        result = await processor.process(QueueItem(execution_id=state.execution_id, expected_status=ExecutionStatus.PENDING))
        assert result.status == ExecutionStatus.FAILED
        assert (await ledger.get(state.execution_id)).status == ExecutionStatus.FAILED

    async def test_unreadable_graph_fails(self, processor, ledger, db_session):
        db_session.add(Workflow(
            id="wf-bad", lineage_id="wf-bad", project_id="proj-1", name="bad",
            graph={"nodes": [{"id": "x", "type": "teleport"}]},
        ))
        await db_session.commit()
        state = new_state(workflow_id="wf-bad")
        await ledger.create(state)

        result = await processor.process(QueueItem(execution_id=state.execution_id, expected_status=ExecutionStatus.PENDING))
        assert result.status == ExecutionStatus.FAILED
        assert result.error_type == "ValidationError"

    async def test_workflow_stats_updated_on_completion(self, processor, ledger, publish_workflow, session_factory, graphs):
        wf = await publish_workflow(graphs.priority())
        state = new_state(workflow_id=wf.id, context={"priority": "low"}, current_node_id="start")
        await ledger.create(state)
        await processor.process(QueueItem(execution_id=state.execution_id, expected_status=ExecutionStatus.PENDING))

        async with session_factory() as session:
            stored = await session.get(Workflow, wf.id)
            assert stored.execution_count == 1
            assert stored.success_count == 1
            assert stored.failure_count == 0
            assert stored.last_executed_at is not None
