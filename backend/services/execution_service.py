"""Execution service — triggering workflows and acting on executions.

Every state change that hands work to the engine goes through the
execution queue; this service never runs the engine itself. Requests
commit their own session before enqueueing so an inline worker can
write to the ledger without contending with the request transaction.
"""

import logging
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import (
    ApprovalOutcome,
    ExecutionStatus,
    TriggerType,
    WorkflowStatus,
)
from core.exceptions import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from db.models.workflow import Workflow
from workflow.engine import WorkflowEngine
from workflow.graph import WorkflowGraph
from workflow.ledger import ExecutionLedger
from workflow.queue import QueueItem, get_execution_queue
from workflow.retry_strategies import RetryStrategy
from workflow.state import ApprovalDecision, ExecutionState

logger = logging.getLogger(__name__)


class ExecutionService:
    """Trigger, query, approve, reject, cancel and retry executions."""

    def __init__(self, db: AsyncSession, ledger: Optional[ExecutionLedger] = None, queue=None):
        self.db = db
        self.ledger = ledger or ExecutionLedger()
        self.queue = queue or get_execution_queue()

    # ─── Trigger ────────────────────────────────────────────

    async def trigger(
        self,
        workflow_id: str,
        context: Optional[dict[str, Any]] = None,
        event: Optional[dict[str, Any]] = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
    ) -> ExecutionState:
        """Create an execution of a published workflow version and enqueue it.

        Args:
            workflow_id: Id of the exact version to run
            context: Initial context, overlaid on the workflow variables
            event: Optional triggering event ``{type, payload, ...}``
            trigger_type: manual, api or event

        Returns:
            The execution state after enqueueing (already advanced when the
            queue is inline).
        """
        wf = await self.db.get(Workflow, workflow_id)
        if wf is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        if wf.status != WorkflowStatus.PUBLISHED.value or not wf.is_active:
            raise InvalidStateError(
                f"Workflow {workflow_id} is {wf.status}; only active published versions can be triggered"
            )

        graph = WorkflowGraph.from_dict(wf.graph)
        start = graph.start_node
        strategy = RetryStrategy.from_dict(graph.settings.get("retry"), default=RetryStrategy.from_settings())

        event = event or {}
        state = ExecutionState(
            execution_id=str(uuid4()),
            workflow_id=wf.id,
            project_id=wf.project_id,
            trigger_type=TriggerType(trigger_type).value,
            trigger_event=event.get("type"),
            trigger_payload=event.get("payload") if event else None,
            status=ExecutionStatus.PENDING,
            context=WorkflowEngine.initial_context(graph, context, event or None),
            max_retries=strategy.max_retries,
            current_node_id=start.id if start else None,
        )

        # Release the request transaction before the worker writes
        await self.db.commit()
        await self.ledger.create(state)
        logger.info(f"Execution {state.execution_id} triggered for workflow {wf.id} v{wf.version}")

        await self.queue.enqueue(
            QueueItem(
                execution_id=state.execution_id,
                expected_status=ExecutionStatus.PENDING,
                resume_node_id=state.current_node_id,
            )
        )
        return await self._reload(state.execution_id)

    # ─── Query ──────────────────────────────────────────────

    async def get(self, execution_id: str) -> ExecutionState:
        return await self._reload(execution_id)

    async def list(
        self,
        workflow_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[ExecutionState], int]:
        if status is not None:
            try:
                status = ExecutionStatus(status).value
            except ValueError:
                raise ValidationError(f"Unknown execution status '{status}'")
        return await self.ledger.list(
            workflow_id=workflow_id, rule_id=rule_id, status=status, limit=limit, offset=offset
        )

    # ─── Approvals ──────────────────────────────────────────

    async def approve(self, execution_id: str, actor_id: str, comment: Optional[str] = None) -> ExecutionState:
        return await self._respond(execution_id, ApprovalOutcome.APPROVED, actor_id, comment)

    async def reject(self, execution_id: str, actor_id: str, comment: Optional[str] = None) -> ExecutionState:
        return await self._respond(execution_id, ApprovalOutcome.REJECTED, actor_id, comment)

    async def _respond(
        self,
        execution_id: str,
        outcome: ApprovalOutcome,
        actor_id: str,
        comment: Optional[str],
    ) -> ExecutionState:
        state = await self._reload(execution_id)
        if state.status != ExecutionStatus.WAITING_APPROVAL or not state.pending_approval:
            raise InvalidStateError(
                f"Execution {execution_id} is {state.status.value}, not waiting for approval"
            )

        approvers = state.pending_approval.get("approvers") or []
        if actor_id not in approvers:
            raise ForbiddenError(f"Actor {actor_id} is not an approver for execution {execution_id}")

        await self.db.commit()
        await self.queue.enqueue(
            QueueItem(
                execution_id=execution_id,
                expected_status=ExecutionStatus.WAITING_APPROVAL,
                resume_node_id=state.pending_approval.get("node_id"),
                approval=ApprovalDecision(outcome=outcome, actor_id=actor_id, comment=comment),
            )
        )
        logger.info(f"Execution {execution_id}: {outcome.value} by {actor_id}")
        return await self._reload(execution_id)

    # ─── Cancel / retry ─────────────────────────────────────

    async def cancel(self, execution_id: str) -> ExecutionState:
        """Cancel a non-terminal execution. Cancelling twice is a no-op.

        A worker currently running the execution halts at its next checkpoint.
        """
        state = await self._reload(execution_id)
        if state.status == ExecutionStatus.CANCELLED:
            return state
        if state.is_terminal:
            raise InvalidStateError(f"Execution {execution_id} is already {state.status.value}")

        if not await self.ledger.cancel(execution_id):
            state = await self._reload(execution_id)
            if state.status != ExecutionStatus.CANCELLED:
                raise InvalidStateError(f"Execution {execution_id} is already {state.status.value}")
            return state

        logger.info(f"Execution {execution_id} cancelled (was {state.status.value})")
        return await self._reload(execution_id)

    async def retry(self, execution_id: str) -> ExecutionState:
        """Re-arm a failed workflow execution at the node where it failed."""
        state = await self._reload(execution_id)
        if state.status != ExecutionStatus.FAILED:
            raise InvalidStateError(
                f"Execution {execution_id} is {state.status.value}; only failed executions can be retried"
            )
        if state.workflow_id is None:
            raise InvalidStateError(f"Execution {execution_id} belongs to a rule and cannot be retried")

        await self.db.commit()
        if not await self.ledger.rearm(execution_id):
            raise InvalidStateError(f"Execution {execution_id} changed state while being retried")

        await self.queue.enqueue(
            QueueItem(
                execution_id=execution_id,
                expected_status=ExecutionStatus.RETRYING,
                resume_node_id=state.current_node_id,
            )
        )
        logger.info(f"Execution {execution_id} re-armed at node '{state.current_node_id}'")
        return await self._reload(execution_id)

    async def _reload(self, execution_id: str) -> ExecutionState:
        state = await self.ledger.get(execution_id)
        if state is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return state
