"""Tests for the workflow execution engine."""

from datetime import timedelta

import pytest

from core.constants import ExecutionStatus
from core.exceptions import ForbiddenError, InvalidStateError
from core.utils import utc_now
from workflow.dispatcher import BaseActionHandler
from workflow.engine import WorkflowEngine
from workflow.graph import WorkflowGraph
from workflow.scheduler import ResumeScheduler
from workflow.state import ExecutionState


def running_state(graph: WorkflowGraph, context: dict = None, **kwargs) -> ExecutionState:
    return ExecutionState(
        execution_id="ex-1",
        status=ExecutionStatus.RUNNING,
        context=WorkflowEngine.initial_context(graph, context),
        **kwargs,
    )


def loop_graph() -> dict:
    """Decision that loops back until ``n >= 3``; nothing ever increments ``n``."""
    return {
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "check", "type": "decision"},
            {"id": "bump", "type": "action", "action_type": "update_field", "parameters": {"field": "n"}},
            {"id": "end", "type": "end"},
        ],
        "connections": [
            {"id": "c1", "source": "start", "target": "check"},
            {"id": "c2", "source": "check", "target": "end",
             "condition": {"type": "compare", "op": "gte", "path": "n", "value": 3}},
            {"id": "c3", "source": "check", "target": "bump", "is_default": True},
            {"id": "c4", "source": "bump", "target": "check"},
        ],
    }


@pytest.fixture
def memory_engine(dispatcher):
    """Engine without a ledger; runs purely in memory."""
    return WorkflowEngine(dispatcher=dispatcher, ledger=None, max_steps=10)


async def resume_due(ledger, queue, hours: int = 1) -> int:
    """Run the resume scheduler as if ``hours`` had passed."""
    scheduler = ResumeScheduler(ledger=ledger, queue=queue, interval=1)
    return await scheduler.poll_once(now=utc_now() + timedelta(hours=hours))


@pytest.mark.unit
class TestRouting:
    """Graph walking without persistence."""

    async def test_high_priority_takes_assign_branch(self, memory_engine, dispatcher, graphs):
        graph = WorkflowGraph.from_dict(graphs.priority())
        state = await memory_engine.run(running_state(graph, {"priority": "high"}), graph)

        assert state.status == ExecutionStatus.COMPLETED
        assert [e["node_id"] for e in state.execution_log] == ["start", "triage", "assign", "end"]
        assert len(dispatcher.get("assign_user").calls) == 1
        assert dispatcher.get("send_notification").calls == []
        assert state.execution_log[1]["output"]["matched"] == "condition"

    @pytest.mark.parametrize("priority", ["low", "medium", None])
    async def test_other_priority_takes_default(self, memory_engine, dispatcher, graphs, priority):
        graph = WorkflowGraph.from_dict(graphs.priority())
        context = {} if priority is None else {"priority": priority}
        state = await memory_engine.run(running_state(graph, context), graph)

        assert state.status == ExecutionStatus.COMPLETED
        assert [e["node_id"] for e in state.execution_log] == ["start", "triage", "notify", "end"]
        assert dispatcher.get("assign_user").calls == []

    async def test_action_patch_merged_into_context_and_result(self, memory_engine, graphs):
        data = graphs.priority()
        data["nodes"][4]["result"] = {"summary": "assigned to {{assignee_id}}"}
        graph = WorkflowGraph.from_dict(data)
        state = await memory_engine.run(running_state(graph, {"priority": "high"}), graph)

        assert state.context["assignee_id"] == "oncall"
        assert state.result["summary"] == "assigned to oncall"
        assert state.result["priority"] == "high"

    async def test_handler_sees_execution_id(self, memory_engine, dispatcher, graphs):
        graph = WorkflowGraph.from_dict(graphs.priority())
        await memory_engine.run(running_state(graph, {"priority": "high"}), graph)
        assert dispatcher.get("assign_user").calls[0]["context"]["execution_id"] == "ex-1"

    async def test_workflow_variables_are_initial_context(self, memory_engine, graphs):
        data = graphs.priority()
        data["variables"] = {"priority": "high", "sla_hours": 4}
        graph = WorkflowGraph.from_dict(data)
        state = await memory_engine.run(running_state(graph, {"reporter": "u-1"}), graph)
        assert state.context["sla_hours"] == 4
        assert [e["node_id"] for e in state.execution_log][2] == "assign"

    async def test_no_matching_branch_fails(self, memory_engine, graphs):
        data = graphs.priority()
        data["connections"][2]["is_default"] = False
        data["connections"][2]["condition"] = {"type": "compare", "op": "eq", "path": "priority", "value": "low"}
        graph = WorkflowGraph.from_dict(data)
        state = await memory_engine.run(running_state(graph, {"priority": "medium"}), graph)

        assert state.status == ExecutionStatus.FAILED
        assert state.error_type == "RoutingError"
        assert state.execution_log[-1]["node_id"] == "triage"
        assert state.execution_log[-1]["status"] == "failed"

    async def test_auto_approve_passes_through(self, memory_engine, graphs):
        data = graphs.approval()
        data["nodes"][1]["auto_approve"] = True
        graph = WorkflowGraph.from_dict(data)
        state = await memory_engine.run(running_state(graph), graph)

        assert state.status == ExecutionStatus.COMPLETED
        assert state.execution_log[1]["output"]["auto_approved"] is True

    async def test_non_retryable_action_fails_immediately(self, memory_engine, graphs):
        graph = WorkflowGraph.from_dict(graphs.single_action("broken"))
        state = await memory_engine.run(running_state(graph, max_retries=3), graph)

        assert state.status == ExecutionStatus.FAILED
        assert state.retry_count == 0
        assert state.error_type == "ActionError"
        assert state.current_node_id == "act"


@pytest.mark.unit
class TestTermination:
    """Step budget and terminal-state handling."""

    async def test_cycle_stops_at_step_limit(self, memory_engine):
        graph = WorkflowGraph.from_dict(loop_graph())
        state = await memory_engine.run(running_state(graph), graph)

        assert state.status == ExecutionStatus.FAILED
        assert state.error_type == "StepLimitExceeded"
        assert state.step_count == memory_engine.max_steps

    async def test_cycle_that_exits_completes(self, memory_engine):
        graph = WorkflowGraph.from_dict(loop_graph())
        state = await memory_engine.run(running_state(graph, {"n": 3}), graph)
        assert state.status == ExecutionStatus.COMPLETED
        assert state.step_count == 3

    @pytest.mark.parametrize("terminal", [ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED])
    async def test_terminal_state_is_returned_untouched(self, memory_engine, dispatcher, graphs, terminal):
        graph = WorkflowGraph.from_dict(graphs.priority())
        state = running_state(graph, {"priority": "high"}, current_node_id="assign")
        state.status = terminal
        before = state.to_dict()

        after = await memory_engine.run(state, graph)

        assert after.to_dict() == before
        assert dispatcher.get("assign_user").calls == []

    async def test_unclaimed_state_is_not_advanced(self, memory_engine, graphs):
        graph = WorkflowGraph.from_dict(graphs.priority())
        state = running_state(graph)
        state.status = ExecutionStatus.PENDING
        after = await memory_engine.run(state, graph)
        assert after.status == ExecutionStatus.PENDING
        assert after.execution_log == []


@pytest.mark.unit
class TestApprovals:
    """Approval suspension and resolution through the ledger and inline queue."""

    async def test_approve_completes(self, publish_workflow, execution_service, graphs):
        wf = await publish_workflow(graphs.approval())
        state = await execution_service.trigger(wf.id, context={"issue_id": "ISS-1"})

        assert state.status == ExecutionStatus.WAITING_APPROVAL
        assert state.pending_approval["approvers"] == ["lead-1", "lead-2"]
        assert state.current_node_id == "review"

        state = await execution_service.approve(state.execution_id, "lead-2", comment="ship it")

        assert state.status == ExecutionStatus.COMPLETED
        assert [e["node_id"] for e in state.execution_log] == ["start", "review", "end"]
        review = state.execution_log[1]
        assert review["status"] == "completed"
        assert review["output"]["outcome"] == "approved"
        assert review["output"]["actor_id"] == "lead-2"
        assert state.pending_approval is None
        assert state.result["issue_id"] == "ISS-1"

    async def test_only_listed_approvers_may_respond(self, publish_workflow, execution_service, graphs):
        wf = await publish_workflow(graphs.approval())
        state = await execution_service.trigger(wf.id)
        with pytest.raises(ForbiddenError):
            await execution_service.approve(state.execution_id, "intruder")
        assert (await execution_service.get(state.execution_id)).status == ExecutionStatus.WAITING_APPROVAL

    async def test_reject_without_branch_fails(self, publish_workflow, execution_service, graphs):
        wf = await publish_workflow(graphs.approval())
        state = await execution_service.trigger(wf.id)
        state = await execution_service.reject(state.execution_id, "lead-1")

        assert state.status == ExecutionStatus.FAILED
        assert state.error_type == "ApprovalRejectedError"
        assert state.execution_log[-1]["node_id"] == "review"
        assert state.execution_log[-1]["status"] == "failed"

    async def test_reject_follows_rejected_branch(self, publish_workflow, execution_service, graphs):
        wf = await publish_workflow(graphs.approval(rejected_branch=True))
        state = await execution_service.trigger(wf.id)
        state = await execution_service.reject(state.execution_id, "lead-1")

        assert state.status == ExecutionStatus.COMPLETED
        assert state.result["outcome"] == "rejected"
        assert state.execution_log[-1]["node_id"] == "end_rejected"

    async def test_respond_when_not_waiting(self, publish_workflow, execution_service, graphs):
        wf = await publish_workflow(graphs.approval())
        state = await execution_service.trigger(wf.id)
        await execution_service.approve(state.execution_id, "lead-1")
        with pytest.raises(InvalidStateError):
            await execution_service.approve(state.execution_id, "lead-1")

    async def test_timeout_rejects_by_default(self, publish_workflow, execution_service, ledger, queue, graphs):
        wf = await publish_workflow(graphs.approval(timeout_seconds=60))
        state = await execution_service.trigger(wf.id)

        assert await resume_due(ledger, queue) == 1

        state = await execution_service.get(state.execution_id)
        assert state.status == ExecutionStatus.FAILED
        assert state.error_type == "ApprovalTimeoutError"
        assert state.execution_log[-1]["output"]["outcome"] == "timeout"

    async def test_timeout_outcome_approve(self, publish_workflow, execution_service, ledger, queue, graphs):
        wf = await publish_workflow(graphs.approval(timeout_seconds=60, timeout_outcome="approve"))
        state = await execution_service.trigger(wf.id)
        await resume_due(ledger, queue)
        assert (await execution_service.get(state.execution_id)).status == ExecutionStatus.COMPLETED

    async def test_deadline_not_reached(self, publish_workflow, execution_service, ledger, queue, graphs):
        wf = await publish_workflow(graphs.approval(timeout_seconds=7200))
        await execution_service.trigger(wf.id)
        assert await resume_due(ledger, queue, hours=1) == 0


@pytest.mark.unit
class TestRetries:
    """Retryable action failures suspend the execution and resume on schedule."""

    async def test_fails_twice_then_succeeds(self, publish_workflow, execution_service, ledger, queue, dispatcher, graphs):
        wf = await publish_workflow(graphs.single_action("flaky", max_retries=3))
        state = await execution_service.trigger(wf.id)

        assert state.status == ExecutionStatus.RETRYING
        assert state.retry_count == 1
        assert state.next_retry_at is not None

        await resume_due(ledger, queue)
        await resume_due(ledger, queue)
        state = await execution_service.get(state.execution_id)

        assert state.status == ExecutionStatus.COMPLETED
        assert state.retry_count == 2
        act_entries = [e for e in state.execution_log if e["node_id"] == "act"]
        assert [e["status"] for e in act_entries] == ["failed", "failed", "completed"]
        assert [e["attempt"] for e in act_entries] == [1, 2, 3]
        assert state.result["flaky_attempts"] == 3
        assert dispatcher.get("flaky").attempts == 3

    async def test_retry_count_is_monotonic_and_bounded(self, publish_workflow, execution_service, ledger, queue, dispatcher, graphs):
        dispatcher.get("flaky").failures = 100
        wf = await publish_workflow(graphs.single_action("flaky", max_retries=2))
        state = await execution_service.trigger(wf.id)

        counts = [state.retry_count]
        while not state.is_terminal:
            await resume_due(ledger, queue)
            state = await execution_service.get(state.execution_id)
            counts.append(state.retry_count)

        assert counts == sorted(counts)
        assert state.retry_count == 2
        assert state.status == ExecutionStatus.FAILED
        assert state.error_type == "ActionError"
        assert state.next_retry_at is None

    async def test_retry_not_due_yet(self, publish_workflow, execution_service, ledger, queue, graphs):
        wf = await publish_workflow(graphs.single_action("flaky"))
        await execution_service.trigger(wf.id)
        scheduler = ResumeScheduler(ledger=ledger, queue=queue, interval=1)
        assert await scheduler.poll_once(now=utc_now() - timedelta(minutes=5)) == 0

    async def test_manual_retry_resumes_at_failed_node(self, publish_workflow, execution_service, ledger, queue, dispatcher, graphs):
        wf = await publish_workflow(graphs.single_action("flaky", max_retries=2))
        state = await execution_service.trigger(wf.id)
        await resume_due(ledger, queue)
        state = await execution_service.get(state.execution_id)
        assert state.status == ExecutionStatus.FAILED

        state = await execution_service.retry(state.execution_id)

        assert state.status == ExecutionStatus.COMPLETED
        assert state.error_message is None
        assert state.retry_count == 0
        starts = [e for e in state.execution_log if e["node_id"] == "start"]
        assert len(starts) == 1

    async def test_retry_requires_failed(self, publish_workflow, execution_service, graphs):
        wf = await publish_workflow(graphs.approval())
        state = await execution_service.trigger(wf.id)
        with pytest.raises(InvalidStateError):
            await execution_service.retry(state.execution_id)


class CancelSelfAction(BaseActionHandler):
    """Cancels its own execution mid-run, like a concurrent API call would."""

    action_type = "cancel_self"

    def __init__(self, ledger):
        self.ledger = ledger

    async def handle(self, parameters, context):
        await self.ledger.cancel(context["execution_id"])
        return {"cancel_requested": True}


@pytest.mark.unit
class TestCancellation:
    """Cancelled executions stop at the next checkpoint."""

    async def test_cancel_waiting_execution(self, publish_workflow, execution_service, graphs):
        wf = await publish_workflow(graphs.approval())
        state = await execution_service.trigger(wf.id)

        state = await execution_service.cancel(state.execution_id)
        assert state.status == ExecutionStatus.CANCELLED
        assert state.pending_approval is None

        # idempotent
        assert (await execution_service.cancel(state.execution_id)).status == ExecutionStatus.CANCELLED
        with pytest.raises(InvalidStateError):
            await execution_service.approve(state.execution_id, "lead-1")

    async def test_cancel_completed_is_rejected(self, publish_workflow, execution_service, graphs):
        wf = await publish_workflow(graphs.approval())
        state = await execution_service.trigger(wf.id)
        await execution_service.approve(state.execution_id, "lead-1")
        with pytest.raises(InvalidStateError):
            await execution_service.cancel(state.execution_id)

    async def test_running_worker_halts(self, publish_workflow, execution_service, ledger, dispatcher):
        dispatcher.register("cancel_self", CancelSelfAction(ledger))
        graph = {
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "stop", "type": "action", "action_type": "cancel_self"},
                {"id": "after", "type": "action", "action_type": "update_field", "parameters": {"field": "status"}},
                {"id": "end", "type": "end"},
            ],
            "connections": [
                {"id": "c1", "source": "start", "target": "stop"},
                {"id": "c2", "source": "stop", "target": "after"},
                {"id": "c3", "source": "after", "target": "end"},
            ],
        }
        wf = await publish_workflow(graph)
        state = await execution_service.trigger(wf.id)

        assert state.status == ExecutionStatus.CANCELLED
        assert dispatcher.get("update_field").calls == []
        assert "cancel_requested" not in state.context
