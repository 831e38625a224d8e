"""
Execution Ledger — durable record of in-flight and historical executions.

All coordination between workers happens here, at row level:

- ``claim`` is a compare-and-swap from a resumable status to ``running``.
  Exactly one worker wins; the others see zero affected rows.
- ``checkpoint`` only writes while the row is still ``running``. A
  cancelled execution therefore rejects the next checkpoint and the
  worker stops.
- ``release_stale_claims`` returns ``running`` rows whose worker stopped
  checkpointing to ``retrying``.

Every operation runs in its own short transaction.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import ExecutionStatus, TERMINAL_STATUSES
from core.utils import ensure_utc, utc_now
from db.models.execution import WorkflowExecution
from db.models.workflow import Workflow
from workflow.state import ExecutionState

logger = structlog.get_logger(__name__)

# Columns copied verbatim between ExecutionState and the ORM row
_PERSISTED_FIELDS = (
    "workflow_id",
    "rule_id",
    "project_id",
    "trigger_type",
    "trigger_event",
    "trigger_payload",
    "context",
    "execution_log",
    "retry_count",
    "max_retries",
    "next_retry_at",
    "current_node_id",
    "pending_approval",
    "approval_deadline",
    "step_count",
    "result",
    "error_message",
    "error_type",
    "claimed_by",
    "started_at",
    "completed_at",
)

_DATETIME_FIELDS = ("next_retry_at", "approval_deadline", "started_at", "completed_at")


def row_to_state(row: WorkflowExecution) -> ExecutionState:
    values = {name: getattr(row, name) for name in _PERSISTED_FIELDS}
    for name in _DATETIME_FIELDS:
        values[name] = ensure_utc(values[name])
    values["context"] = dict(values["context"] or {})
    values["execution_log"] = list(values["execution_log"] or [])
    return ExecutionState(execution_id=row.id, status=ExecutionStatus(row.status), **values)


def state_to_values(state: ExecutionState) -> Dict[str, Any]:
    values = {name: getattr(state, name) for name in _PERSISTED_FIELDS}
    values["status"] = state.status.value
    return values


def state_to_row(state: ExecutionState) -> WorkflowExecution:
    return WorkflowExecution(id=state.execution_id, **state_to_values(state))


class ExecutionLedger:
    """Persistence and row-level coordination for executions."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        if session_factory is None:
            from db.database import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self.session_factory = session_factory

    # ─── Create / read ───────────────────────────────────────────

    async def create(self, state: ExecutionState) -> ExecutionState:
        async with self.session_factory() as session:
            session.add(state_to_row(state))
            await session.commit()
        logger.info(
            "Execution created",
            execution_id=state.execution_id,
            workflow_id=state.workflow_id,
            rule_id=state.rule_id,
        )
        return state

    async def get(self, execution_id: str) -> Optional[ExecutionState]:
        async with self.session_factory() as session:
            row = await session.get(WorkflowExecution, execution_id)
            return row_to_state(row) if row else None

    async def list(
        self,
        workflow_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[ExecutionState], int]:
        filters = []
        if workflow_id:
            filters.append(WorkflowExecution.workflow_id == workflow_id)
        if rule_id:
            filters.append(WorkflowExecution.rule_id == rule_id)
        if status:
            filters.append(WorkflowExecution.status == status)

        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(WorkflowExecution).where(*filters)
            )
            rows = await session.scalars(
                select(WorkflowExecution)
                .where(*filters)
                .order_by(WorkflowExecution.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return [row_to_state(r) for r in rows], total or 0

    # ─── Coordination ────────────────────────────────────────────

    async def claim(self, execution_id: str, expected_status: ExecutionStatus, worker_id: str) -> bool:
        """Atomically move an execution from ``expected_status`` to ``running``.

        Returns:
            True if this worker now owns the execution.
        """
        now = utc_now()
        async with self.session_factory() as session:
            result = await session.execute(
                update(WorkflowExecution)
                .where(
                    WorkflowExecution.id == execution_id,
                    WorkflowExecution.status == ExecutionStatus(expected_status).value,
                )
                .values(
                    status=ExecutionStatus.RUNNING.value,
                    claimed_by=worker_id,
                    started_at=func.coalesce(WorkflowExecution.started_at, now),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        claimed = result.rowcount == 1
        logger.debug(
            "Execution claim",
            execution_id=execution_id,
            expected_status=ExecutionStatus(expected_status).value,
            worker_id=worker_id,
            claimed=claimed,
        )
        return claimed

    async def checkpoint(self, state: ExecutionState) -> bool:
        """Persist the engine's view of an execution it currently owns.

        Returns:
            False if the row is no longer ``running`` (cancelled meanwhile);
            nothing is written in that case.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(WorkflowExecution)
                .where(
                    WorkflowExecution.id == state.execution_id,
                    WorkflowExecution.status == ExecutionStatus.RUNNING.value,
                )
                .values(**state_to_values(state))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1 and state.is_terminal and state.workflow_id:
                await self._record_workflow_stats(session, state)
            await session.commit()
        return result.rowcount == 1

    async def _record_workflow_stats(self, session: AsyncSession, state: ExecutionState) -> None:
        succeeded = state.status == ExecutionStatus.COMPLETED
        failed = state.status == ExecutionStatus.FAILED
        await session.execute(
            update(Workflow)
            .where(Workflow.id == state.workflow_id)
            .values(
                execution_count=Workflow.execution_count + 1,
                success_count=Workflow.success_count + (1 if succeeded else 0),
                failure_count=Workflow.failure_count + (1 if failed else 0),
                last_executed_at=state.completed_at or utc_now(),
            )
            .execution_options(synchronize_session=False)
        )

    async def cancel(self, execution_id: str) -> bool:
        """Mark a non-terminal execution cancelled.

        Returns:
            True if the status changed.
        """
        now = utc_now()
        async with self.session_factory() as session:
            result = await session.execute(
                update(WorkflowExecution)
                .where(
                    WorkflowExecution.id == execution_id,
                    WorkflowExecution.status.not_in([s.value for s in TERMINAL_STATUSES]),
                )
                .values(
                    status=ExecutionStatus.CANCELLED.value,
                    next_retry_at=None,
                    approval_deadline=None,
                    pending_approval=None,
                    completed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def rearm(self, execution_id: str, max_retries: Optional[int] = None) -> bool:
        """Turn a failed execution back into a due ``retrying`` one.

        Counters restart so the retry policy and step budget apply afresh.
        """
        values: Dict[str, Any] = dict(
            status=ExecutionStatus.RETRYING.value,
            retry_count=0,
            step_count=0,
            next_retry_at=utc_now(),
            error_message=None,
            error_type=None,
            completed_at=None,
            result=None,
        )
        if max_retries is not None:
            values["max_retries"] = max_retries
        async with self.session_factory() as session:
            result = await session.execute(
                update(WorkflowExecution)
                .where(
                    WorkflowExecution.id == execution_id,
                    WorkflowExecution.status == ExecutionStatus.FAILED.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def due_for_resume(self, now: Optional[datetime] = None, limit: int = 100) -> List[Tuple[str, ExecutionStatus]]:
        """Suspended executions whose retry time or approval deadline has passed."""
        now = now or utc_now()
        retry_due = and_(
            WorkflowExecution.status == ExecutionStatus.RETRYING.value,
            WorkflowExecution.next_retry_at.is_not(None),
            WorkflowExecution.next_retry_at <= now,
        )
        approval_due = and_(
            WorkflowExecution.status == ExecutionStatus.WAITING_APPROVAL.value,
            WorkflowExecution.approval_deadline.is_not(None),
            WorkflowExecution.approval_deadline <= now,
        )
        due_at = case(
            (WorkflowExecution.status == ExecutionStatus.RETRYING.value, WorkflowExecution.next_retry_at),
            else_=WorkflowExecution.approval_deadline,
        )
        async with self.session_factory() as session:
            rows = await session.execute(
                select(WorkflowExecution.id, WorkflowExecution.status)
                .where(or_(retry_due, approval_due))
                .order_by(due_at)
                .limit(limit)
            )
            return [(row.id, ExecutionStatus(row.status)) for row in rows]

    async def release_stale_claims(self, older_than: datetime, limit: int = 100) -> List[str]:
        """Hand executions held by a dead worker back to the scheduler.

        A ``running`` row that has not been checkpointed since
        ``older_than`` lost its worker between claim and checkpoint. It is
        moved to ``retrying`` with ``next_retry_at`` set to now, so the
        next resume pass re-enters it at its last checkpointed node. The
        update repeats the staleness check, so a worker that checkpoints
        in the meantime keeps its claim.

        Returns:
            Ids of the executions released.
        """
        now = utc_now()
        stale = and_(
            WorkflowExecution.status == ExecutionStatus.RUNNING.value,
            WorkflowExecution.updated_at < older_than,
        )
        released = []
        async with self.session_factory() as session:
            candidates = await session.scalars(
                select(WorkflowExecution.id)
                .where(stale)
                .order_by(WorkflowExecution.updated_at)
                .limit(limit)
            )
            for execution_id in list(candidates):
                result = await session.execute(
                    update(WorkflowExecution)
                    .where(WorkflowExecution.id == execution_id, stale)
                    .values(
                        status=ExecutionStatus.RETRYING.value,
                        next_retry_at=now,
                        claimed_by=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    released.append(execution_id)
            await session.commit()

        for execution_id in released:
            logger.warning("Released stale execution claim", execution_id=execution_id)
        return released

    async def stale_pending(self, older_than: datetime, limit: int = 100) -> List[str]:
        """``pending`` executions created before ``older_than`` that no worker has claimed."""
        async with self.session_factory() as session:
            rows = await session.scalars(
                select(WorkflowExecution.id)
                .where(
                    WorkflowExecution.status == ExecutionStatus.PENDING.value,
                    WorkflowExecution.updated_at < older_than,
                )
                .order_by(WorkflowExecution.created_at)
                .limit(limit)
            )
            return list(rows)

    async def load_graph(self, workflow_id: str) -> Optional[dict]:
        """Graph JSON of the workflow version an execution is bound to."""
        async with self.session_factory() as session:
            return await session.scalar(select(Workflow.graph).where(Workflow.id == workflow_id))

    async def count_by_status(self, statuses: Iterable[ExecutionStatus]) -> int:
        async with self.session_factory() as session:
            return await session.scalar(
                select(func.count())
                .select_from(WorkflowExecution)
                .where(WorkflowExecution.status.in_([ExecutionStatus(s).value for s in statuses]))
            ) or 0
