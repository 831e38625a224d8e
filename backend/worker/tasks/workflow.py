"""Celery tasks for workflow execution.

A queue item names one execution and the status it is expected to be
in. The task claims it on the ledger and runs the engine until the
execution suspends or finishes. A lost claim means another worker got
there first, and the item is dropped.
"""

import asyncio
import logging

from sqlalchemy.exc import DBAPIError, OperationalError

from worker.celery_app import celery_app

logger = logging.getLogger(__name__)

# Infrastructure failures worth redelivering. Engine and action errors
# never reach here: they are recorded on the execution itself.
TRANSIENT_ERRORS = (OperationalError, DBAPIError, ConnectionError, TimeoutError)


async def _process(item_dict: dict) -> dict:
    from db.worker_session import worker_session_factory
    from workflow.engine import WorkflowEngine
    from workflow.ledger import ExecutionLedger
    from workflow.queue import ExecutionProcessor, QueueItem

    item = QueueItem.from_dict(item_dict)
    async with worker_session_factory() as factory:
        ledger = ExecutionLedger(factory)
        processor = ExecutionProcessor(ledger=ledger, engine=WorkflowEngine(ledger=ledger))
        state = await processor.process(item)

    if state is None:
        return {"execution_id": item.execution_id, "status": "discarded"}
    return {"execution_id": state.execution_id, "status": state.status.value}


@celery_app.task(
    name="worker.tasks.workflow.process_execution",
    bind=True,
    max_retries=3,
    default_retry_delay=10,
    acks_late=True,
    queue="workflows",
)
def process_execution(self, item_dict: dict) -> dict:
    """Claim and advance one execution.

    Args:
        item_dict: Serialized ``QueueItem``
    """
    execution_id = item_dict.get("execution_id")
    logger.info(f"Processing execution {execution_id} (expected {item_dict.get('expected_status')})")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_process(item_dict))
        logger.info(f"Execution {execution_id} -> {result['status']}")
        return result
    except TRANSIENT_ERRORS as exc:
        logger.warning(f"Transient failure processing execution {execution_id}: {exc}")
        # The claim is the idempotency guard, so redelivery is safe
        raise self.retry(exc=exc)
    finally:
        loop.close()
