"""Worker-safe database sessions for Celery tasks.

Each task runs its coroutine in a fresh event loop, so it gets a fresh
async engine as well; pooled connections must not be shared across
loops in forked Celery workers.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import async_sessionmaker

from db.database import create_db_engine, create_session_factory


@asynccontextmanager
async def worker_session_factory() -> AsyncIterator[async_sessionmaker]:
    """Provide a session factory bound to a task-private engine.

    Usage:
        async with worker_session_factory() as factory:
            ledger = ExecutionLedger(factory)
            ...
    """
    engine = create_db_engine()
    try:
        yield create_session_factory(engine)
    finally:
        await engine.dispose()
