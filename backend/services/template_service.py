"""Workflow template service.

Templates are reusable graphs. Instantiating a published template
creates a new draft workflow in a project, optionally customised:

    {
        "name": "Bug triage",
        "nodes": {"notify": {"name": "Ping lead", "config": {"parameters": {...}}}},
        "connections": {"c3": {"label": "urgent", "condition": {...}}},
        "variables": {"sla_hours": 4},
        "settings": {"retry": {"max_retries": 5}}
    }
"""

import copy
from typing import Any, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import WorkflowStatus
from core.exceptions import InvalidStateError, ValidationError
from db.models.template import WorkflowTemplate
from db.models.workflow import Workflow
from services.base import BaseService
from services.workflow_service import WorkflowService

logger = structlog.get_logger(__name__)

# Node fields a customisation may not change
_PROTECTED_NODE_FIELDS = {"id", "type"}
_PROTECTED_CONNECTION_FIELDS = {"id", "source", "target"}


def apply_customizations(graph: dict, customizations: Optional[dict]) -> dict:
    """Return a copy of ``graph`` with per-node / connection / variable overrides.

    Raises:
        ValidationError: An override names a node or connection that does not exist.
    """
    result = copy.deepcopy(graph or {})
    if not customizations:
        return result

    errors = []
    nodes = {n.get("id"): n for n in result.get("nodes", [])}
    for node_id, override in (customizations.get("nodes") or {}).items():
        node = nodes.get(node_id)
        if node is None:
            errors.append(f"Customization references unknown node '{node_id}'")
            continue
        if "name" in override:
            node["name"] = override["name"]
        config = override.get("config") or {}
        for key, value in config.items():
            if key in _PROTECTED_NODE_FIELDS:
                errors.append(f"Node '{node_id}': field '{key}' cannot be customized")
            elif isinstance(value, dict) and isinstance(node.get(key), dict):
                node[key] = {**node[key], **value}
            else:
                node[key] = value

    connections = {c.get("id"): c for c in result.get("connections", [])}
    for conn_id, override in (customizations.get("connections") or {}).items():
        conn = connections.get(conn_id)
        if conn is None:
            errors.append(f"Customization references unknown connection '{conn_id}'")
            continue
        for key, value in override.items():
            if key in _PROTECTED_CONNECTION_FIELDS:
                errors.append(f"Connection '{conn_id}': field '{key}' cannot be customized")
            else:
                conn[key] = value

    if customizations.get("variables"):
        result["variables"] = {**(result.get("variables") or {}), **customizations["variables"]}
    if customizations.get("settings"):
        result["settings"] = {**(result.get("settings") or {}), **customizations["settings"]}

    if errors:
        raise ValidationError("Invalid template customization", errors=errors)
    return result


class TemplateService(BaseService[WorkflowTemplate]):
    """Service for workflow templates."""

    def __init__(self, db: AsyncSession):
        super().__init__(WorkflowTemplate, db)

    async def create_template(
        self,
        name: str,
        graph: dict,
        description: str = "",
        category: str = "general",
        created_by: Optional[str] = None,
    ) -> WorkflowTemplate:
        template = await self.create({
            "name": name,
            "description": description or "",
            "category": category or "general",
            "graph": graph or {"nodes": [], "connections": []},
            "status": WorkflowStatus.DRAFT.value,
            "created_by": created_by,
        })
        logger.info("Template created", template_id=template.id, name=name)
        return template

    async def get_template(self, template_id: str) -> WorkflowTemplate:
        return await self.get_or_404(template_id)

    async def publish_template(self, template_id: str) -> WorkflowTemplate:
        """Validate the template graph and make it instantiable."""
        template = await self.get_or_404(template_id)
        if template.status == WorkflowStatus.ARCHIVED.value:
            raise InvalidStateError(f"Template {template_id} is archived")

        result = WorkflowService(self.db).validate(template.graph)
        if not result.is_valid:
            raise ValidationError(f"Template {template_id} is invalid", errors=result.errors)

        template.graph = result.graph.to_dict()
        template.status = WorkflowStatus.PUBLISHED.value
        await self.db.flush()
        await self.db.refresh(template)
        logger.info("Template published", template_id=template_id)
        return template

    async def archive_template(self, template_id: str) -> WorkflowTemplate:
        template = await self.get_or_404(template_id)
        template.status = WorkflowStatus.ARCHIVED.value
        await self.db.flush()
        await self.db.refresh(template)
        logger.info("Template archived", template_id=template_id)
        return template

    async def instantiate(
        self,
        template_id: str,
        project_id: str,
        customizations: Optional[dict[str, Any]] = None,
    ) -> Workflow:
        """Create a draft workflow in ``project_id`` from a published template."""
        template = await self.get_or_404(template_id)
        if template.status != WorkflowStatus.PUBLISHED.value:
            raise InvalidStateError(
                f"Template {template_id} is {template.status}; only published templates can be instantiated"
            )

        customizations = customizations or {}
        graph = apply_customizations(template.graph, customizations)

        workflow = await WorkflowService(self.db).create_draft(
            project_id=project_id,
            name=customizations.get("name") or template.name,
            description=customizations.get("description") or template.description,
            graph=graph,
            template_id=template.id,
        )
        await self.db.execute(
            update(WorkflowTemplate)
            .where(WorkflowTemplate.id == template.id)
            .values(usage_count=WorkflowTemplate.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(template, attribute_names=["usage_count"])

        logger.info(
            "Template instantiated",
            template_id=template_id,
            workflow_id=workflow.id,
            project_id=project_id,
            usage_count=template.usage_count,
        )
        return workflow
