"""Workflow Execution Engine — resumable graph interpreter.

The engine walks a published workflow graph one node at a time:

- ``start``: follow its single outgoing connection
- ``decision``: follow the first connection whose condition holds,
  else the default connection, else fail with a routing error
- ``action``: dispatch to the action handler, merge the returned patch
  into the context; retryable failures suspend the execution in
  ``retrying`` until the backoff delay has passed
- ``approval``: suspend in ``waiting_approval`` until approved,
  rejected or timed out (or pass straight through with auto_approve)
- ``end``: complete the execution

Execution state is checkpointed to the ledger after every node. The
engine never blocks on a suspension: it returns, and the execution is
re-enqueued later (approval API, retry timer or approval timeout) and
re-enters at the recorded node. A per-execution step budget guarantees
termination even for cyclic graphs.
"""

import logging
from datetime import timedelta
from typing import Optional

from app.config import get_settings
from core.constants import (
    ApprovalOutcome,
    ConnectionBranch,
    ExecutionStatus,
    NodeType,
    StepStatus,
)
from core.exceptions import (
    ActionError,
    ApprovalRejectedError,
    ApprovalTimeoutError,
    EngineError,
    RoutingError,
    StepLimitExceeded,
)
from core.utils import utc_now
from workflow.actions import render_template
from workflow.conditions import ConditionEvaluator, get_condition_evaluator
from workflow.dispatcher import ActionDispatcher, get_action_dispatcher
from workflow.graph import ActionNode, ApprovalNode, DecisionNode, EndNode, WorkflowGraph
from workflow.ledger import ExecutionLedger
from workflow.retry_strategies import RetryStrategy
from workflow.state import ApprovalDecision, ExecutionState

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Interprets workflow graphs against execution state.

    Args:
        dispatcher: Action dispatcher; defaults to the shared one.
        ledger: Execution ledger used for checkpoints. Without a ledger
            the engine runs purely in memory (simulations).
        evaluator: Condition evaluator.
        retry_strategy: Default backoff, overridable per workflow via
            ``settings.retry`` in the graph.
        max_steps: Step budget per execution.
        action_timeout: Default action timeout in seconds.
        approval_timeout: Default approval timeout in seconds.
    """

    def __init__(
        self,
        dispatcher: Optional[ActionDispatcher] = None,
        ledger: Optional[ExecutionLedger] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        retry_strategy: Optional[RetryStrategy] = None,
        max_steps: Optional[int] = None,
        action_timeout: Optional[float] = None,
        approval_timeout: Optional[int] = None,
    ):
        settings = get_settings()
        self.dispatcher = dispatcher or get_action_dispatcher()
        self.ledger = ledger
        self.evaluator = evaluator or get_condition_evaluator()
        self.retry_strategy = retry_strategy or RetryStrategy.from_settings()
        self.max_steps = max_steps or settings.WORKFLOW_MAX_STEPS
        self.action_timeout = action_timeout or settings.ACTION_TIMEOUT_SECONDS
        self.approval_timeout = approval_timeout or settings.APPROVAL_DEFAULT_TIMEOUT_SECONDS

    @staticmethod
    def initial_context(graph: WorkflowGraph, context: Optional[dict] = None, event: Optional[dict] = None) -> dict:
        """Workflow variables overlaid with trigger context (and the event, if any)."""
        merged = {**(graph.variables or {}), **(context or {})}
        if event:
            merged["event"] = event
        return merged

    # ─── Entry point ─────────────────────────────────────────────

    async def run(
        self,
        state: ExecutionState,
        graph: WorkflowGraph,
        approval: Optional[ApprovalDecision] = None,
    ) -> ExecutionState:
        """Advance a claimed (``running``) execution until it suspends or ends.

        Terminal executions are returned untouched.
        """
        if state.is_terminal:
            logger.info(f"Execution {state.execution_id} already {state.status.value}, nothing to resume")
            return state
        if state.status != ExecutionStatus.RUNNING:
            logger.warning(
                f"Execution {state.execution_id} is {state.status.value}, expected running; not advancing"
            )
            return state

        strategy = RetryStrategy.from_dict(graph.settings.get("retry"), default=self.retry_strategy)

        try:
            if state.current_node_id is None:
                start = graph.start_node
                if start is None:
                    raise RoutingError("Workflow has no start node")
                state.current_node_id = start.id

            if state.pending_approval:
                if approval is None:
                    # Stray resume of a suspended approval: put it back to sleep
                    state.status = ExecutionStatus.WAITING_APPROVAL
                    return await self._persist(state)
                next_id = self._resolve_approval(state, graph, approval)
                state.current_node_id = next_id
                if not await self._checkpoint(state):
                    return await self._halted(state)

            return await self._loop(state, graph, strategy)

        except EngineError as e:
            return await self._fail(state, e.message, e.error_type, e.node_id)
        except Exception as e:
            logger.error(f"Execution {state.execution_id} crashed: {e}", exc_info=True)
            return await self._fail(state, str(e) or type(e).__name__, "InternalError", state.current_node_id)

    async def _loop(self, state: ExecutionState, graph: WorkflowGraph, strategy: RetryStrategy) -> ExecutionState:
        while True:
            node_id = state.current_node_id
            if not graph.has_node(node_id):
                raise RoutingError(f"Node '{node_id}' does not exist in the workflow", node_id=node_id)

            if state.step_count >= self.max_steps:
                raise StepLimitExceeded(self.max_steps, node_id=node_id)

            node = graph.node(node_id)
            state.step_count += 1
            next_id = await self._visit(node, state, graph, strategy)

            if next_id is not None:
                state.current_node_id = next_id
            if not await self._checkpoint(state):
                return await self._halted(state)
            if next_id is None:
                logger.info(
                    f"Execution {state.execution_id} stopped at '{node_id}' with status {state.status.value}"
                )
                return state

    # ─── Node handlers ───────────────────────────────────────────

    async def _visit(self, node, state: ExecutionState, graph: WorkflowGraph, strategy: RetryStrategy) -> Optional[str]:
        """Execute one node. Returns the next node id, or None when the run stops here."""
        if node.type == NodeType.END:
            return self._visit_end(node, state)
        if node.type == NodeType.DECISION:
            return self._visit_decision(node, state, graph)
        if node.type == NodeType.ACTION:
            return await self._visit_action(node, state, graph, strategy)
        if node.type == NodeType.APPROVAL:
            return self._visit_approval(node, state, graph)

        started = utc_now()
        state.append_log(node.id, node.type, StepStatus.COMPLETED, started)
        return self._single_target(node.id, graph)

    def _visit_end(self, node: EndNode, state: ExecutionState) -> None:
        started = utc_now()
        result = dict(state.context)
        if node.result:
            result.update(render_template(node.result, state.context))
        state.append_log(node.id, node.type, StepStatus.COMPLETED, started, output=node.result)
        state.complete(result)
        return None

    def _visit_decision(self, node: DecisionNode, state: ExecutionState, graph: WorkflowGraph) -> str:
        started = utc_now()
        outgoing = graph.outgoing(node.id)

        chosen = None
        matched = None
        for conn in outgoing:
            if conn.is_default:
                continue
            if self.evaluator.evaluate(conn.condition, state.context):
                chosen, matched = conn, "condition"
                break
        if chosen is None:
            chosen = next((c for c in outgoing if c.is_default), None)
            matched = "default" if chosen else None

        if chosen is None:
            error = RoutingError(f"Decision '{node.id}' has no matching or default connection", node_id=node.id)
            state.append_log(
                node.id, node.type, StepStatus.FAILED, started,
                error=error.message, error_type=error.error_type,
            )
            raise error

        state.append_log(
            node.id, node.type, StepStatus.COMPLETED, started,
            output={"connection_id": chosen.id, "target": chosen.target, "matched": matched},
        )
        return chosen.target

    async def _visit_action(
        self, node: ActionNode, state: ExecutionState, graph: WorkflowGraph, strategy: RetryStrategy
    ) -> Optional[str]:
        started = utc_now()
        attempt = state.retry_count + 1
        state.next_retry_at = None
        dispatch_context = {**state.context, "execution_id": state.execution_id}

        try:
            patch = await self.dispatcher.dispatch(
                node.action_type,
                node.parameters,
                dispatch_context,
                timeout=node.timeout_seconds or self.action_timeout,
            )
        except ActionError as e:
            state.append_log(
                node.id, node.type, StepStatus.FAILED, started,
                input=node.parameters, error=e.message, error_type=e.error_type, attempt=attempt,
            )
            if not e.retryable:
                state.fail(f"Action '{node.action_type}' failed: {e.message}", e.error_type)
                return None

            state.retry_count += 1
            if strategy.should_retry(state.retry_count, state.max_retries, e):
                state.status = ExecutionStatus.RETRYING
                state.next_retry_at = strategy.next_retry_at(state.retry_count)
                logger.info(
                    f"Execution {state.execution_id}: action '{node.id}' failed "
                    f"(retry {state.retry_count}/{state.max_retries}), next attempt at {state.next_retry_at.isoformat()}"
                )
            else:
                state.fail(
                    f"Action '{node.action_type}' failed after {state.retry_count} retries: {e.message}",
                    e.error_type,
                )
            return None

        state.context.update(patch)
        state.append_log(
            node.id, node.type, StepStatus.COMPLETED, started,
            input=node.parameters, output=patch, attempt=attempt,
        )
        return self._single_target(node.id, graph)

    def _visit_approval(self, node: ApprovalNode, state: ExecutionState, graph: WorkflowGraph) -> Optional[str]:
        started = utc_now()

        if node.auto_approve:
            state.append_log(
                node.id, node.type, StepStatus.COMPLETED, started,
                output={"outcome": ApprovalOutcome.APPROVED.value, "auto_approved": True},
            )
            return self._branch_target(node.id, graph, ConnectionBranch.APPROVED)

        timeout = node.timeout_seconds or self.approval_timeout
        deadline = started + timedelta(seconds=timeout)
        state.status = ExecutionStatus.WAITING_APPROVAL
        state.approval_deadline = deadline
        state.pending_approval = {
            "node_id": node.id,
            "approvers": list(node.approvers),
            "deadline": deadline.isoformat(),
            "requested_at": started.isoformat(),
            "timeout_outcome": node.timeout_outcome,
        }
        state.append_log(
            node.id, node.type, StepStatus.WAITING, started,
            output={"approvers": list(node.approvers), "deadline": deadline.isoformat()},
        )
        return None

    def _resolve_approval(self, state: ExecutionState, graph: WorkflowGraph, decision: ApprovalDecision) -> str:
        """Apply an approval decision to the waiting node; returns the next node id."""
        node_id = state.pending_approval.get("node_id") or state.current_node_id
        if not graph.has_node(node_id) or graph.node(node_id).type != NodeType.APPROVAL:
            raise RoutingError(f"Node '{node_id}' is not an approval node", node_id=node_id)
        node = graph.node(node_id)

        outcome = decision.outcome
        if outcome == ApprovalOutcome.TIMEOUT and node.timeout_outcome == "approve":
            branch = ConnectionBranch.APPROVED
        elif outcome == ApprovalOutcome.APPROVED:
            branch = ConnectionBranch.APPROVED
        else:
            branch = ConnectionBranch.REJECTED

        entry = state.last_log_for(node_id)
        target = self._branch_target(node_id, graph, branch, required=False)

        state.pending_approval = None
        state.approval_deadline = None

        if target is None:
            if outcome == ApprovalOutcome.TIMEOUT:
                error = ApprovalTimeoutError(f"Approval '{node_id}' timed out", node_id=node_id)
            else:
                error = ApprovalRejectedError(
                    f"Approval '{node_id}' rejected by {decision.actor_id or 'unknown actor'}", node_id=node_id
                )
            self._close_approval_entry(entry, StepStatus.FAILED, decision, error)
            raise error

        self._close_approval_entry(entry, StepStatus.COMPLETED, decision)
        logger.info(f"Execution {state.execution_id}: approval '{node_id}' resolved as {outcome.value}")
        return target

    @staticmethod
    def _close_approval_entry(entry: Optional[dict], status: StepStatus, decision: ApprovalDecision, error=None) -> None:
        if entry is None:
            return
        entry["status"] = status.value
        entry["finished_at"] = utc_now().isoformat()
        entry["output"] = {**(entry.get("output") or {}), **decision.to_dict()}
        if error is not None:
            entry["error"] = error.message
            entry["error_type"] = error.error_type

    # ─── Routing helpers ─────────────────────────────────────────

    @staticmethod
    def _single_target(node_id: str, graph: WorkflowGraph) -> str:
        outgoing = graph.outgoing(node_id)
        if len(outgoing) != 1:
            raise RoutingError(
                f"Node '{node_id}' must have exactly one outgoing connection (found {len(outgoing)})",
                node_id=node_id,
            )
        return outgoing[0].target

    @staticmethod
    def _branch_target(node_id: str, graph: WorkflowGraph, branch: ConnectionBranch, required: bool = True) -> Optional[str]:
        for conn in graph.outgoing(node_id):
            if conn.branch == branch:
                return conn.target
        if required:
            raise RoutingError(f"Approval '{node_id}' has no {branch.value} connection", node_id=node_id)
        return None

    # ─── Persistence ─────────────────────────────────────────────

    async def _checkpoint(self, state: ExecutionState) -> bool:
        if self.ledger is None:
            return True
        return await self.ledger.checkpoint(state)

    async def _persist(self, state: ExecutionState) -> ExecutionState:
        if not await self._checkpoint(state):
            return await self._halted(state)
        return state

    async def _halted(self, state: ExecutionState) -> ExecutionState:
        """The row left ``running`` under us (cancelled); return what is stored."""
        logger.info(f"Execution {state.execution_id} was cancelled, halting")
        stored = await self.ledger.get(state.execution_id) if self.ledger else None
        return stored or state

    async def _fail(self, state: ExecutionState, message: str, error_type: str, node_id: Optional[str]) -> ExecutionState:
        node_id = node_id or state.current_node_id
        last = state.execution_log[-1] if state.execution_log else None
        if not last or last.get("node_id") != node_id or last.get("status") != StepStatus.FAILED.value:
            # Attribute the failure to a log entry for the node it happened at
            state.append_log(node_id or "", "engine", StepStatus.FAILED, utc_now(), error=message, error_type=error_type)
        state.fail(message, error_type)
        logger.warning(f"Execution {state.execution_id} failed at '{node_id}': {message}")
        return await self._persist(state)


_engine: Optional[WorkflowEngine] = None


def get_workflow_engine() -> WorkflowEngine:
    """Get or create the singleton engine bound to the default ledger."""
    global _engine
    if _engine is None:
        _engine = WorkflowEngine(ledger=ExecutionLedger())
    return _engine
