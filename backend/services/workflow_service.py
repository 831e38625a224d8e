"""Workflow definition service: drafts, versioning, publishing and simulation."""

import logging
from typing import Any, Optional, Sequence
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import ExecutionStatus, WorkflowStatus
from core.exceptions import InvalidStateError, ValidationError
from core.utils import utc_now
from db.models.workflow import Workflow
from services.base import BaseService
from workflow.dispatcher import ActionDispatcher, DryRunDispatcher, get_action_dispatcher
from workflow.engine import WorkflowEngine
from workflow.graph import WorkflowGraph
from workflow.state import ExecutionState
from workflow.validation import ValidationResult, WorkflowValidator

logger = logging.getLogger(__name__)


class WorkflowService(BaseService[Workflow]):
    """Service for workflow definitions.

    Every version of a workflow is its own row sharing a ``lineage_id``.
    Drafts are edited in place; published and archived versions are
    frozen, so editing one creates the next draft version instead.
    """

    def __init__(self, db: AsyncSession, dispatcher: Optional[ActionDispatcher] = None):
        super().__init__(Workflow, db)
        self.dispatcher = dispatcher or get_action_dispatcher()

    # ─── Drafts ─────────────────────────────────────────────

    async def create_draft(
        self,
        project_id: str,
        name: str,
        graph: Optional[dict] = None,
        description: str = "",
        template_id: Optional[str] = None,
    ) -> Workflow:
        """Create version 1 of a new workflow lineage."""
        workflow_id = str(uuid4())
        wf = await self.create({
            "id": workflow_id,
            "lineage_id": workflow_id,
            "project_id": project_id,
            "name": name,
            "description": description or "",
            "graph": graph or {"nodes": [], "connections": []},
            "version": 1,
            "status": WorkflowStatus.DRAFT.value,
            "template_id": template_id,
        })
        logger.info(f"Workflow draft created: {wf.id} ({name}) in project {project_id}")
        return wf

    async def update_draft(
        self,
        workflow_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        graph: Optional[dict] = None,
    ) -> Workflow:
        """Edit a draft, or derive a new draft version from a frozen one."""
        wf = await self.get_or_404(workflow_id)
        changes = {"name": name, "description": description, "graph": graph}

        if wf.is_editable:
            return await self.apply(wf, changes)

        next_version = await self._next_version(wf.lineage_id)
        draft = await self.create({
            "lineage_id": wf.lineage_id,
            "parent_id": wf.id,
            "project_id": wf.project_id,
            "name": name if name is not None else wf.name,
            "description": description if description is not None else wf.description,
            "graph": graph if graph is not None else dict(wf.graph or {}),
            "version": next_version,
            "status": WorkflowStatus.DRAFT.value,
            "template_id": wf.template_id,
        })
        logger.info(
            f"Workflow {wf.id} v{wf.version} is {wf.status}; created draft {draft.id} v{next_version}"
        )
        return draft

    async def _next_version(self, lineage_id: str) -> int:
        current = await self.db.scalar(
            select(func.max(Workflow.version)).where(Workflow.lineage_id == lineage_id)
        )
        return (current or 0) + 1

    # ─── Validation / lifecycle ─────────────────────────────

    def validate(self, graph: Any) -> ValidationResult:
        """Validate a graph against structural rules and the registered action types."""
        validator = WorkflowValidator(known_action_types=self.dispatcher.available_types)
        return validator.validate(graph)

    async def publish(self, workflow_id: str) -> Workflow:
        """Validate and freeze a draft.

        Raises:
            InvalidStateError: The version is not a draft.
            ValidationError: The graph is invalid.
        """
        wf = await self.get_or_404(workflow_id)
        if wf.status != WorkflowStatus.DRAFT.value:
            raise InvalidStateError(f"Workflow {wf.id} is {wf.status}; only drafts can be published")

        result = self.validate(wf.graph)
        if not result.is_valid:
            raise ValidationError(f"Workflow {wf.id} is invalid", errors=result.errors)

        wf.graph = result.graph.to_dict()
        wf.status = WorkflowStatus.PUBLISHED.value
        wf.is_active = True
        wf.published_at = utc_now()
        await self.db.flush()
        await self.db.refresh(wf)

        if result.warnings:
            logger.warning(f"Workflow {wf.id} published with warnings: {result.warnings}")
        logger.info(f"Workflow {wf.id} v{wf.version} published")
        return wf

    async def archive(self, workflow_id: str) -> Workflow:
        """Stop new executions of a version. In-flight executions continue."""
        wf = await self.get_or_404(workflow_id)
        if wf.status == WorkflowStatus.ARCHIVED.value:
            return wf
        wf.status = WorkflowStatus.ARCHIVED.value
        wf.is_active = False
        await self.db.flush()
        await self.db.refresh(wf)
        logger.info(f"Workflow {wf.id} v{wf.version} archived")
        return wf

    async def get(self, workflow_id: str) -> Workflow:
        return await self.get_or_404(workflow_id)

    async def list_versions(self, workflow_id: str) -> Sequence[Workflow]:
        """All versions in the lineage of ``workflow_id``, oldest first."""
        wf = await self.get_or_404(workflow_id)
        result = await self.db.scalars(
            select(Workflow)
            .where(Workflow.lineage_id == wf.lineage_id)
            .order_by(Workflow.version.asc())
        )
        return result.all()

    # ─── Simulation ─────────────────────────────────────────

    async def simulate(self, graph: dict, context: Optional[dict] = None) -> dict:
        """Dry-run a graph without side effects or persistence.

        Actions are recorded instead of executed, approvals suspend the
        run where they are reached, and nothing is written to the ledger.
        """
        result = self.validate(graph)
        if not result.is_valid:
            raise ValidationError("Workflow is invalid", errors=result.errors)

        dry_run = DryRunDispatcher(known_types=self.dispatcher.available_types)
        engine = WorkflowEngine(dispatcher=dry_run, ledger=None)
        state = _simulation_state(result.graph, context)

        state = await engine.run(state, result.graph)
        return {
            "status": state.status.value,
            "path": [entry["node_id"] for entry in state.execution_log],
            "stopped_at": state.current_node_id if state.status != ExecutionStatus.COMPLETED else None,
            "actions": dry_run.calls,
            "context": state.context,
            "result": state.result,
            "error_message": state.error_message,
            "execution_log": state.execution_log,
            "warnings": result.warnings,
        }


def _simulation_state(graph: WorkflowGraph, context: Optional[dict]) -> ExecutionState:
    return ExecutionState(
        execution_id=f"simulation-{uuid4()}",
        trigger_type="simulation",
        status=ExecutionStatus.RUNNING,
        context=WorkflowEngine.initial_context(graph, context),
        max_retries=0,
    )
