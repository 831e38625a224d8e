"""FastAPI dependency injection functions."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from db import database
from services.automation_rule_service import AutomationRuleService
from services.execution_service import ExecutionService
from services.template_service import TemplateService
from services.workflow_service import WorkflowService
from workflow.ledger import ExecutionLedger
from workflow.queue import get_execution_queue

logger = logging.getLogger(__name__)


async def get_db() -> AsyncSession:
    """
    Provide a database session for API endpoints.

    Yields an async SQLAlchemy session that is automatically
    committed on success or rolled back on error.
    """
    async with database.AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.error(f"Database error: {str(e)}")
            await session.rollback()
            raise
        finally:
            await session.close()


def get_ledger() -> ExecutionLedger:
    return ExecutionLedger(database.AsyncSessionLocal)


def get_workflow_service(db: AsyncSession = Depends(get_db)) -> WorkflowService:
    return WorkflowService(db)


def get_template_service(db: AsyncSession = Depends(get_db)) -> TemplateService:
    return TemplateService(db)


def get_rule_service(db: AsyncSession = Depends(get_db)) -> AutomationRuleService:
    return AutomationRuleService(db)


def get_execution_service(
    db: AsyncSession = Depends(get_db),
    ledger: ExecutionLedger = Depends(get_ledger),
) -> ExecutionService:
    return ExecutionService(db, ledger=ledger, queue=get_execution_queue())
