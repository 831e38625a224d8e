"""Shared pytest fixtures for the automation engine test suite.

Provides:
- A file-backed async SQLite database per test (claims and checkpoints
  run on separate connections, which an in-memory database can't share)
- Execution ledger, engine and inline queue wired to that database
- A dispatcher with scripted action handlers
- FastAPI test client (httpx.AsyncClient)
"""

import os
import tempfile
from types import SimpleNamespace
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Override settings BEFORE any app imports
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'automation-tests.db')}",
)
os.environ.setdefault("EXECUTION_MODE", "inline")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("EVENT_BUS_ENABLED", "false")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from core.exceptions import ActionError  # noqa: E402
from db.database import create_db_engine, create_session_factory, init_db  # noqa: E402
from workflow.dispatcher import ActionDispatcher, BaseActionHandler  # noqa: E402
from workflow.engine import WorkflowEngine  # noqa: E402
from workflow.ledger import ExecutionLedger  # noqa: E402
from workflow.queue import ExecutionProcessor, InlineExecutionQueue  # noqa: E402
from workflow.retry_strategies import RetryStrategy  # noqa: E402


# ---------------------------------------------------------------------------
# Scripted action handlers
# ---------------------------------------------------------------------------

class RecordingAction(BaseActionHandler):
    """Returns a fixed patch and remembers every call."""

    def __init__(self, action_type: str, patch: dict = None):
        self.action_type = action_type
        self.patch = patch or {}
        self.calls = []

    async def handle(self, parameters, context):
        self.calls.append({"parameters": parameters, "context": context})
        return dict(self.patch)


class FlakyAction(BaseActionHandler):
    """Fails with a retryable error ``failures`` times, then succeeds."""

    action_type = "flaky"

    def __init__(self, failures: int = 2):
        self.failures = failures
        self.attempts = 0

    async def handle(self, parameters, context):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ActionError("upstream unavailable", retryable=True)
        return {"flaky_attempts": self.attempts}


class BrokenAction(BaseActionHandler):
    """Always fails with a non-retryable error."""

    action_type = "broken"

    async def handle(self, parameters, context):
        raise ActionError("bad request", retryable=False)


# ---------------------------------------------------------------------------
# Graph builders
# ---------------------------------------------------------------------------

def approval_graph(timeout_seconds: int = 86400, rejected_branch: bool = False, timeout_outcome: str = "reject") -> dict:
    """start -> approval -> end (optionally with a rejected branch to ``end_rejected``)."""
    nodes = [
        {"id": "start", "type": "start"},
        {
            "id": "review",
            "type": "approval",
            "approvers": ["lead-1", "lead-2"],
            "timeout_seconds": timeout_seconds,
            "timeout_outcome": timeout_outcome,
        },
        {"id": "end", "type": "end"},
    ]
    connections = [
        {"id": "c1", "source": "start", "target": "review"},
        {"id": "c2", "source": "review", "target": "end", "branch": "approved"},
    ]
    if rejected_branch:
        nodes.append({"id": "end_rejected", "type": "end", "result": {"outcome": "rejected"}})
        connections.append({"id": "c3", "source": "review", "target": "end_rejected", "branch": "rejected"})
    return {"nodes": nodes, "connections": connections}


def priority_graph() -> dict:
    """Decision on ``priority == "high"``: assign, otherwise notify."""
    return {
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "triage", "type": "decision"},
            {"id": "assign", "type": "action", "action_type": "assign_user", "parameters": {"user_id": "oncall"}},
            {"id": "notify", "type": "action", "action_type": "send_notification", "parameters": {"recipients": ["team"]}},
            {"id": "end", "type": "end"},
        ],
        "connections": [
            {"id": "c1", "source": "start", "target": "triage"},
            {
                "id": "c2",
                "source": "triage",
                "target": "assign",
                "condition": {"type": "compare", "op": "eq", "path": "priority", "value": "high"},
            },
            {"id": "c3", "source": "triage", "target": "notify", "is_default": True},
            {"id": "c4", "source": "assign", "target": "end"},
            {"id": "c5", "source": "notify", "target": "end"},
        ],
    }


def single_action_graph(action_type: str = "flaky", max_retries: int = 3) -> dict:
    """start -> one action -> end, with a per-workflow retry policy."""
    return {
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "act", "type": "action", "action_type": action_type},
            {"id": "end", "type": "end"},
        ],
        "connections": [
            {"id": "c1", "source": "start", "target": "act"},
            {"id": "c2", "source": "act", "target": "end"},
        ],
        "settings": {"retry": {"policy": "exponential", "max_retries": max_retries, "base_delay": 1.0, "max_delay": 10.0}},
    }


@pytest.fixture
def graphs():
    """Graph builders: ``graphs.approval(...)``, ``graphs.priority()``, ``graphs.single_action(...)``."""
    return SimpleNamespace(approval=approval_graph, priority=priority_graph, single_action=single_action_graph)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """A fresh database file with all tables created."""
    engine = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'automation.db'}")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """A session for service-level tests. Tests commit explicitly."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def ledger(session_factory) -> ExecutionLedger:
    return ExecutionLedger(session_factory)


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def dispatcher() -> ActionDispatcher:
    """Dispatcher with scripted handlers; look them up with ``dispatcher.get``."""
    d = ActionDispatcher(default_timeout=5.0)
    d.register("assign_user", RecordingAction("assign_user", {"assignee_id": "oncall"}))
    d.register("send_notification", RecordingAction("send_notification", {"notified": ["team"]}))
    d.register("update_field", RecordingAction("update_field", {"status": "triaged"}))
    d.register("flaky", FlakyAction(failures=2))
    d.register("broken", BrokenAction())
    return d


@pytest.fixture
def engine(dispatcher, ledger) -> WorkflowEngine:
    return WorkflowEngine(
        dispatcher=dispatcher,
        ledger=ledger,
        retry_strategy=RetryStrategy.exponential(max_retries=3, base_delay=1.0, max_delay=10.0),
        max_steps=50,
    )


@pytest.fixture
def processor(ledger, engine) -> ExecutionProcessor:
    return ExecutionProcessor(ledger=ledger, engine=engine, worker_id="test-worker")


@pytest.fixture
def queue(processor) -> InlineExecutionQueue:
    return InlineExecutionQueue(processor)


@pytest.fixture
def publish_workflow(session_factory, dispatcher):
    """Create and publish a workflow; returns the published version."""
    from services.workflow_service import WorkflowService

    async def _publish(graph: dict, name: str = "Test workflow", project_id: str = "proj-1"):
        async with session_factory() as session:
            svc = WorkflowService(session, dispatcher=dispatcher)
            wf = await svc.create_draft(project_id, name, graph=graph)
            wf = await svc.publish(wf.id)
            await session.commit()
            return wf

    return _publish


@pytest.fixture
def execution_service(db_session, ledger, queue):
    from services.execution_service import ExecutionService

    return ExecutionService(db_session, ledger=ledger, queue=queue)


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(db_engine, session_factory):
    """Create a FastAPI app instance wired to the test database."""
    import db.database as db_mod
    import workflow.queue as queue_mod

    original_engine = db_mod.engine
    original_session = db_mod.AsyncSessionLocal

    db_mod.engine = db_engine
    db_mod.AsyncSessionLocal = session_factory
    # The inline queue binds its ledger on first use
    queue_mod._queue = None

    from app.main import create_app
    test_app = create_app()

    yield test_app

    # Restore originals
    queue_mod._queue = None
    db_mod.engine = original_engine
    db_mod.AsyncSessionLocal = original_session


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac
