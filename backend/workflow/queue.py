"""
Execution queue and processor.

A queue item names one execution, the status it is expected to be in
(the claim's compare-and-swap precondition), the node it should resume
from, and an optional approval decision. Items are delivered either to
Celery workers (``EXECUTION_MODE=celery``) or processed inline in the
calling coroutine (``EXECUTION_MODE=inline``).
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import pydantic
import structlog

from app.config import get_settings
from core.constants import ExecutionStatus
from core.exceptions import ConcurrencyConflict, NotFoundError
from core.logging_config import execution_log_context
from workflow.engine import WorkflowEngine
from workflow.graph import WorkflowGraph
from workflow.ledger import ExecutionLedger
from workflow.state import ApprovalDecision, ExecutionState

logger = structlog.get_logger(__name__)

PROCESS_TASK_NAME = "worker.tasks.workflow.process_execution"


@dataclass
class QueueItem:
    execution_id: str
    expected_status: ExecutionStatus
    resume_node_id: Optional[str] = None
    approval: Optional[ApprovalDecision] = None

    def __post_init__(self):
        self.expected_status = ExecutionStatus(self.expected_status)
        if not self.expected_status.is_resumable:
            raise ValueError(f"An execution cannot be claimed from status '{self.expected_status.value}'")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "expected_status": self.expected_status.value,
            "resume_node_id": self.resume_node_id,
            "approval": self.approval.to_dict() if self.approval else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueItem":
        approval = data.get("approval")
        return cls(
            execution_id=data["execution_id"],
            expected_status=data["expected_status"],
            resume_node_id=data.get("resume_node_id"),
            approval=ApprovalDecision.from_dict(approval) if approval else None,
        )


class ExecutionProcessor:
    """Claims a queued execution and runs the engine on it."""

    def __init__(
        self,
        ledger: Optional[ExecutionLedger] = None,
        engine: Optional[WorkflowEngine] = None,
        worker_id: Optional[str] = None,
    ):
        self.ledger = ledger or ExecutionLedger()
        self.engine = engine or WorkflowEngine(ledger=self.ledger)
        self.worker_id = worker_id or get_settings().WORKER_ID

    async def claim(self, item: QueueItem) -> ExecutionState:
        """Take ownership of the execution or raise ConcurrencyConflict."""
        if not await self.ledger.claim(item.execution_id, item.expected_status, self.worker_id):
            raise ConcurrencyConflict(
                f"Execution {item.execution_id} is no longer {item.expected_status.value}"
            )
        state = await self.ledger.get(item.execution_id)
        if state is None:
            raise NotFoundError(f"Execution {item.execution_id} not found")
        return state

    async def process(self, item: QueueItem) -> Optional[ExecutionState]:
        """Process one queue item.

        Returns:
            The execution state after the run, or None if the claim was lost.
        """
        try:
            state = await self.claim(item)
        except ConcurrencyConflict as e:
            logger.info("Discarding stale queue item", execution_id=item.execution_id, reason=e.message)
            return None

        if item.resume_node_id and state.current_node_id != item.resume_node_id:
            logger.warning(
                "Queue item resume point differs from ledger, using ledger",
                execution_id=state.execution_id,
                queued=item.resume_node_id,
                stored=state.current_node_id,
            )

        if state.workflow_id is None:
            # Rule executions are single-shot and never queued
            state.fail("Execution is not bound to a workflow", "RoutingError")
            await self.ledger.checkpoint(state)
            return state

        with execution_log_context(state.execution_id, worker_id=self.worker_id):
            graph_data = await self.ledger.load_graph(state.workflow_id)
            try:
                graph = WorkflowGraph.from_dict(graph_data or {})
            except pydantic.ValidationError as e:
                logger.error("Stored workflow graph is unreadable", workflow_id=state.workflow_id)
                state.fail(f"Stored workflow graph is invalid ({e.error_count()} error(s))", "ValidationError")
                await self.ledger.checkpoint(state)
                return state

            logger.info(
                "Processing execution",
                from_status=item.expected_status.value,
                node_id=state.current_node_id,
            )
            return await self.engine.run(state, graph, approval=item.approval)


class InlineExecutionQueue:
    """Processes items immediately in the caller's event loop."""

    def __init__(self, processor: Optional[ExecutionProcessor] = None):
        self.processor = processor or ExecutionProcessor()

    async def enqueue(self, item: QueueItem) -> None:
        await self.processor.process(item)


class CeleryExecutionQueue:
    """Hands items to Celery workers on the ``workflows`` queue."""

    async def enqueue(self, item: QueueItem) -> None:
        from worker.celery_app import celery_app

        celery_app.send_task(PROCESS_TASK_NAME, args=[item.to_dict()], queue="workflows")
        logger.debug("Queued execution", execution_id=item.execution_id, status=item.expected_status.value)


_queue = None


def get_execution_queue():
    """Get or create the queue selected by ``EXECUTION_MODE``."""
    global _queue
    if _queue is None:
        if get_settings().uses_celery:
            _queue = CeleryExecutionQueue()
        else:
            _queue = InlineExecutionQueue()
    return _queue
