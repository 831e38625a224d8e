"""
Resume scheduler.

Suspended executions hold no worker. This scheduler periodically asks
the ledger for executions whose ``next_retry_at`` or approval deadline
has passed and enqueues them:

- ``retrying`` rows resume at their recorded action node
- ``waiting_approval`` rows resume with a ``timeout`` approval decision

Each pass also recovers interrupted work. ``running`` rows whose worker
stopped checkpointing for longer than the execution lease are released
to ``retrying``, and ``pending`` rows older than the lease (their first
enqueue was lost) are enqueued again.

The in-process loop also runs scheduled automation rules whose cron
occurrence has passed.

It runs as an asyncio task inside the API process when
``SCHEDULER_ENABLED`` is set, and as a Celery beat task otherwise.
Enqueueing the same execution twice is harmless: only one claim wins.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Optional

import structlog

from app.config import get_settings
from core.constants import ApprovalOutcome, ExecutionStatus
from core.utils import utc_now
from workflow.ledger import ExecutionLedger
from workflow.queue import QueueItem, get_execution_queue
from workflow.rules import AutomationRuleMatcher
from workflow.state import ApprovalDecision

logger = structlog.get_logger(__name__)


class ResumeScheduler:
    """Polls the ledger for due executions and enqueues them."""

    def __init__(
        self,
        ledger: Optional[ExecutionLedger] = None,
        queue=None,
        interval: Optional[int] = None,
        batch_size: int = 100,
        lease_seconds: Optional[int] = None,
    ):
        settings = get_settings()
        self.ledger = ledger or ExecutionLedger()
        self.queue = queue
        self.interval = interval or settings.SCHEDULER_POLL_INTERVAL
        self.batch_size = batch_size
        self.lease_seconds = settings.EXECUTION_LEASE_SECONDS if lease_seconds is None else lease_seconds
        self._task: Optional[asyncio.Task] = None

    async def poll_once(self, now: Optional[datetime] = None) -> int:
        """Enqueue every due execution. Returns the number enqueued."""
        queue = self.queue or get_execution_queue()
        now = now or utc_now()
        lease_cutoff = now - timedelta(seconds=self.lease_seconds)

        await self.ledger.release_stale_claims(lease_cutoff, limit=self.batch_size)
        items = [
            QueueItem(execution_id=execution_id, expected_status=ExecutionStatus.PENDING)
            for execution_id in await self.ledger.stale_pending(lease_cutoff, limit=self.batch_size)
        ]

        for execution_id, status in await self.ledger.due_for_resume(now=now, limit=self.batch_size):
            if status == ExecutionStatus.WAITING_APPROVAL:
                items.append(QueueItem(
                    execution_id=execution_id,
                    expected_status=status,
                    approval=ApprovalDecision(outcome=ApprovalOutcome.TIMEOUT),
                ))
            else:
                items.append(QueueItem(execution_id=execution_id, expected_status=status))

        enqueued = 0
        for item in items:
            try:
                await queue.enqueue(item)
                enqueued += 1
            except Exception as e:
                logger.error("Failed to enqueue due execution", execution_id=item.execution_id, error=str(e))

        if enqueued:
            logger.info("Resume scheduler enqueued executions", count=enqueued)
        return enqueued

    async def run_scheduled_rules(self, now: Optional[datetime] = None) -> int:
        """Run the scheduled automation rules that are due. Returns how many ran."""
        async with self.ledger.session_factory() as session:
            try:
                results = await AutomationRuleMatcher(session).run_scheduled_rules(now)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return len(results)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
            logger.info("Resume scheduler started", interval=self.interval)

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Resume scheduler stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Resume scheduler poll failed", error=str(e), exc_info=True)
            try:
                await self.run_scheduled_rules()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Scheduled rule run failed", error=str(e), exc_info=True)
            await asyncio.sleep(self.interval)
