"""
Workflow graph model.

Nodes are a closed set of tagged variants (start, end, action, decision,
approval) parsed with pydantic. :class:`WorkflowGraph` keeps nodes and
connections in flat lists and indexes them by id, so the graph
serializes back to exactly the JSON it was loaded from.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from core.constants import ConnectionBranch, NodeType
from workflow.conditions import Condition, parse_condition


class _NodeBase(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = ""
    description: Optional[str] = None
    position: Optional[dict[str, Any]] = None


class StartNode(_NodeBase):
    type: Literal["start"] = "start"


class EndNode(_NodeBase):
    type: Literal["end"] = "end"
    result: Optional[dict[str, Any]] = None


class ActionNode(_NodeBase):
    type: Literal["action"] = "action"
    action_type: str = Field(..., min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = Field(None, gt=0)


class DecisionNode(_NodeBase):
    type: Literal["decision"] = "decision"


class ApprovalNode(_NodeBase):
    type: Literal["approval"] = "approval"
    approvers: list[str] = Field(default_factory=list)
    auto_approve: bool = False
    timeout_seconds: Optional[int] = Field(None, gt=0)
    timeout_outcome: Literal["approve", "reject"] = "reject"

    @model_validator(mode="after")
    def _require_approvers(self):
        if not self.auto_approve and not self.approvers:
            raise ValueError("approval node needs at least one approver unless auto_approve is set")
        return self


Node = Annotated[
    Union[StartNode, EndNode, ActionNode, DecisionNode, ApprovalNode],
    Field(discriminator="type"),
]


class Connection(BaseModel):
    id: str = Field(..., min_length=1)
    source: str
    target: str
    condition: Optional[Condition] = None
    is_default: bool = False
    branch: ConnectionBranch = ConnectionBranch.APPROVED
    label: Optional[str] = None

    @field_validator("condition", mode="before")
    @classmethod
    def _parse_condition(cls, v):
        if v is None:
            return None
        return parse_condition(v)


class GraphDefinition(BaseModel):
    """Serialized form of a workflow graph."""

    nodes: list[Node] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    settings: dict[str, Any] = Field(default_factory=dict, description="Engine overrides, e.g. retry policy")


class WorkflowGraph:
    """Indexed, read-only view over a :class:`GraphDefinition`."""

    def __init__(self, definition: GraphDefinition):
        self.definition = definition
        self.nodes = definition.nodes
        self.connections = definition.connections
        self.variables = definition.variables
        self.settings = definition.settings
        self._node_index: dict[str, int] = {}
        self._outgoing: dict[str, list[int]] = {}

        for i, node in enumerate(self.nodes):
            # First occurrence wins; duplicates are reported by validation
            self._node_index.setdefault(node.id, i)
        for i, conn in enumerate(self.connections):
            self._outgoing.setdefault(conn.source, []).append(i)

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowGraph":
        """Parse a graph.

        Raises:
            pydantic.ValidationError: If a node or connection is malformed.
        """
        return cls(GraphDefinition.model_validate(data or {}))

    def to_dict(self) -> dict:
        return self.definition.model_dump(mode="json", exclude_none=True)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._node_index

    def node(self, node_id: str) -> Node:
        return self.nodes[self._node_index[node_id]]

    def outgoing(self, node_id: str) -> list[Connection]:
        """Outgoing connections of a node, in declared order."""
        return [self.connections[i] for i in self._outgoing.get(node_id, [])]

    def nodes_of_type(self, node_type: NodeType) -> list[Node]:
        return [n for n in self.nodes if n.type == node_type]

    @property
    def start_node(self) -> Optional[StartNode]:
        starts = self.nodes_of_type(NodeType.START)
        return starts[0] if starts else None

    def reachable_from(self, node_id: str) -> set[str]:
        """Ids of all nodes reachable from ``node_id`` (inclusive)."""
        seen: set[str] = set()
        stack = [node_id]
        while stack:
            current = stack.pop()
            if current in seen or current not in self._node_index:
                continue
            seen.add(current)
            stack.extend(c.target for c in self.outgoing(current))
        return seen

    def has_cycle(self) -> bool:
        """Detect a directed cycle with an iterative three-colour DFS."""
        WHITE, GREY, BLACK = 0, 1, 2
        colour = {node_id: WHITE for node_id in self._node_index}
        for root in self._node_index:
            if colour[root] != WHITE:
                continue
            stack = [(root, iter(self.outgoing(root)))]
            colour[root] = GREY
            while stack:
                current, edges = stack[-1]
                advanced = False
                for conn in edges:
                    target = conn.target
                    if target not in colour:
                        continue
                    if colour[target] == GREY:
                        return True
                    if colour[target] == WHITE:
                        colour[target] = GREY
                        stack.append((target, iter(self.outgoing(target))))
                        advanced = True
                        break
                if not advanced:
                    colour[current] = BLACK
                    stack.pop()
        return False
