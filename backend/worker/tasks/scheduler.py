"""Celery beat tasks: the resume poller and scheduled automation rules.

``poll_due_executions`` finds ``retrying`` executions whose backoff has elapsed and
``waiting_approval`` executions past their approval deadline, and
hands them to the ``workflows`` queue. Executions stranded by a dead
worker are released and re-queued on the same pass.
"""

import asyncio
import logging

from worker.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _poll(batch_size: int) -> int:
    from db.worker_session import worker_session_factory
    from workflow.ledger import ExecutionLedger
    from workflow.queue import CeleryExecutionQueue
    from workflow.scheduler import ResumeScheduler

    async with worker_session_factory() as factory:
        scheduler = ResumeScheduler(
            ledger=ExecutionLedger(factory),
            queue=CeleryExecutionQueue(),
            batch_size=batch_size,
        )
        return await scheduler.poll_once()


@celery_app.task(name="worker.tasks.scheduler.poll_due_executions", queue="scheduler")
def poll_due_executions(batch_size: int = 100) -> dict:
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        enqueued = loop.run_until_complete(_poll(batch_size))
    finally:
        loop.close()
    if enqueued:
        logger.info(f"Enqueued {enqueued} due execution(s)")
    return {"enqueued": enqueued}


async def _run_rules() -> int:
    from db.worker_session import worker_session_factory
    from workflow.ledger import ExecutionLedger
    from workflow.scheduler import ResumeScheduler

    async with worker_session_factory() as factory:
        return await ResumeScheduler(ledger=ExecutionLedger(factory)).run_scheduled_rules()


@celery_app.task(name="worker.tasks.scheduler.run_scheduled_rules", queue="scheduler")
def run_scheduled_rules() -> dict:
    """Run automation rules whose cron occurrence has passed."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        ran = loop.run_until_complete(_run_rules())
    finally:
        loop.close()
    if ran:
        logger.info(f"Ran {ran} scheduled rule(s)")
    return {"ran": ran}
