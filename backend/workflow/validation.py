"""Static validation of workflow graphs before they can be published."""

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import pydantic
import structlog

from app.config import get_settings
from core.constants import ConnectionBranch, NodeType
from core.exceptions import ValidationError
from workflow.conditions import check_condition_limits
from workflow.graph import WorkflowGraph

logger = structlog.get_logger(__name__)


@dataclass
class ValidationResult:
    """Outcome of validating a graph. Warnings never block publishing."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    graph: Optional[WorkflowGraph] = None

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.is_valid, "errors": self.errors, "warnings": self.warnings}


def _format_pydantic_errors(exc: pydantic.ValidationError) -> list[str]:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        messages.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", "invalid"))
    return messages


class WorkflowValidator:
    """Checks structural and per-node invariants of a graph.

    Args:
        known_action_types: When given, action nodes must use one of these.
        max_condition_depth / max_condition_nodes: Condition size limits,
            defaulting to the configured values.
    """

    def __init__(
        self,
        known_action_types: Optional[Iterable[str]] = None,
        max_condition_depth: Optional[int] = None,
        max_condition_nodes: Optional[int] = None,
    ):
        settings = get_settings()
        self.known_action_types = set(known_action_types) if known_action_types is not None else None
        self.max_condition_depth = max_condition_depth or settings.CONDITION_MAX_DEPTH
        self.max_condition_nodes = max_condition_nodes or settings.CONDITION_MAX_NODES

    def validate(self, data: Any) -> ValidationResult:
        result = ValidationResult()

        if isinstance(data, WorkflowGraph):
            graph = data
        else:
            try:
                graph = WorkflowGraph.from_dict(data)
            except pydantic.ValidationError as e:
                result.errors.extend(_format_pydantic_errors(e))
                return result
        result.graph = graph

        self._check_ids(graph, result)
        self._check_endpoints(graph, result)
        self._check_start_end(graph, result)
        self._check_out_degree(graph, result)
        self._check_conditions(graph, result)
        self._check_action_types(graph, result)
        self._check_reachability(graph, result)

        if result.errors:
            logger.debug("Workflow graph invalid", error_count=len(result.errors))
        return result

    # ─── Individual checks ───────────────────────────────────────

    def _check_ids(self, graph: WorkflowGraph, result: ValidationResult) -> None:
        seen: set[str] = set()
        for node in graph.nodes:
            if node.id in seen:
                result.errors.append(f"Duplicate node id '{node.id}'")
            seen.add(node.id)

        seen = set()
        for conn in graph.connections:
            if conn.id in seen:
                result.errors.append(f"Duplicate connection id '{conn.id}'")
            seen.add(conn.id)

    def _check_endpoints(self, graph: WorkflowGraph, result: ValidationResult) -> None:
        for conn in graph.connections:
            if not graph.has_node(conn.source):
                result.errors.append(f"Connection '{conn.id}' has unknown source '{conn.source}'")
            if not graph.has_node(conn.target):
                result.errors.append(f"Connection '{conn.id}' has unknown target '{conn.target}'")

    def _check_start_end(self, graph: WorkflowGraph, result: ValidationResult) -> None:
        starts = graph.nodes_of_type(NodeType.START)
        if len(starts) != 1:
            result.errors.append(f"Workflow must have exactly one start node (found {len(starts)})")

        if not graph.nodes_of_type(NodeType.END):
            result.errors.append("Workflow must have at least one end node")
        elif len(starts) == 1:
            reachable = graph.reachable_from(starts[0].id)
            if not any(graph.node(n).type == NodeType.END for n in reachable):
                result.errors.append("No end node is reachable from the start node")

    def _check_out_degree(self, graph: WorkflowGraph, result: ValidationResult) -> None:
        for node in graph.nodes:
            outgoing = graph.outgoing(node.id)

            if node.type == NodeType.END:
                if outgoing:
                    result.errors.append(f"End node '{node.id}' must not have outgoing connections")

            elif node.type in (NodeType.START, NodeType.ACTION):
                if len(outgoing) != 1:
                    result.errors.append(
                        f"{node.type.capitalize()} node '{node.id}' must have exactly one "
                        f"outgoing connection (found {len(outgoing)})"
                    )

            elif node.type == NodeType.DECISION:
                if not outgoing:
                    result.errors.append(f"Decision node '{node.id}' has no outgoing connections")
                defaults = [c for c in outgoing if c.is_default]
                if len(defaults) > 1:
                    result.errors.append(f"Decision node '{node.id}' has more than one default connection")

            elif node.type == NodeType.APPROVAL:
                approved = [c for c in outgoing if c.branch == ConnectionBranch.APPROVED]
                rejected = [c for c in outgoing if c.branch == ConnectionBranch.REJECTED]
                if len(approved) != 1:
                    result.errors.append(
                        f"Approval node '{node.id}' must have exactly one approved connection "
                        f"(found {len(approved)})"
                    )
                if len(rejected) > 1:
                    result.errors.append(f"Approval node '{node.id}' has more than one rejected connection")

    def _check_conditions(self, graph: WorkflowGraph, result: ValidationResult) -> None:
        for conn in graph.connections:
            if conn.condition is None and not conn.is_default:
                continue
            source_type = graph.node(conn.source).type if graph.has_node(conn.source) else None
            if source_type != NodeType.DECISION:
                result.errors.append(
                    f"Connection '{conn.id}' carries a condition or default flag but its source is not a decision node"
                )
                continue
            if conn.is_default and conn.condition is not None:
                result.errors.append(
                    f"Connection '{conn.id}' cannot be both the default branch and carry a condition"
                )
            if conn.condition is not None:
                for msg in check_condition_limits(
                    conn.condition, self.max_condition_depth, self.max_condition_nodes
                ):
                    result.errors.append(f"Connection '{conn.id}': {msg}")

    def _check_action_types(self, graph: WorkflowGraph, result: ValidationResult) -> None:
        if self.known_action_types is None:
            return
        for node in graph.nodes_of_type(NodeType.ACTION):
            if node.action_type not in self.known_action_types:
                result.errors.append(f"Action node '{node.id}' uses unknown action type '{node.action_type}'")

    def _check_reachability(self, graph: WorkflowGraph, result: ValidationResult) -> None:
        start = graph.start_node
        if start is None:
            return
        reachable = graph.reachable_from(start.id)
        for node in graph.nodes:
            if node.id not in reachable:
                result.warnings.append(f"Node '{node.id}' is not reachable from the start node")
        if graph.has_cycle():
            result.warnings.append(
                "Workflow contains a cycle; executions are bounded by the step limit"
            )


def validate_graph(data: Any, known_action_types: Optional[Iterable[str]] = None) -> ValidationResult:
    return WorkflowValidator(known_action_types=known_action_types).validate(data)


def ensure_valid(data: Any, known_action_types: Optional[Iterable[str]] = None) -> WorkflowGraph:
    """Validate a graph and return it parsed.

    Raises:
        ValidationError: Carrying every error found.
    """
    result = validate_graph(data, known_action_types)
    if not result.is_valid:
        raise ValidationError("Workflow definition is invalid", errors=result.errors)
    return result.graph
