"""
Declarative condition expressions for decision branches and automation rules.

Conditions are a closed tree of ``and`` / ``or`` / ``not`` / ``compare``
nodes. They are parsed with pydantic at definition time and interpreted
by :class:`ConditionEvaluator`, which never executes user-supplied code.

Example::

    {
        "type": "and",
        "conditions": [
            {"type": "compare", "op": "eq", "path": "priority", "value": "high"},
            {"type": "not", "condition": {"type": "compare", "op": "is_empty", "path": "assignee"}},
        ],
    }
"""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

import structlog
from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator

from core.exceptions import EvaluationError

logger = structlog.get_logger(__name__)


class CompareOp(str, Enum):
    """Comparison operators supported by ``compare`` nodes."""

    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IN = "in"
    NOT_IN = "not_in"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


# Operator names used by the older rule builder
OP_ALIASES = {
    "equals": CompareOp.EQ,
    "not_equals": CompareOp.NE,
    "greater_than": CompareOp.GT,
    "less_than": CompareOp.LT,
    "==": CompareOp.EQ,
    "!=": CompareOp.NE,
    ">": CompareOp.GT,
    ">=": CompareOp.GTE,
    "<": CompareOp.LT,
    "<=": CompareOp.LTE,
}

UNARY_OPS = {CompareOp.IS_EMPTY, CompareOp.IS_NOT_EMPTY}


# ─── Expression tree ─────────────────────────────────────────────


class CompareCondition(BaseModel):
    type: Literal["compare"] = "compare"
    op: CompareOp
    path: str = Field(..., min_length=1, description="Dotted path into the context")
    value: Any = None
    value_path: Optional[str] = Field(None, description="Compare against another context path")

    @field_validator("op", mode="before")
    @classmethod
    def _normalize_op(cls, v):
        if isinstance(v, str) and v in OP_ALIASES:
            return OP_ALIASES[v]
        return v

    @model_validator(mode="after")
    def _check_operand(self):
        if self.value_path is not None and "value" in self.model_fields_set:
            raise ValueError("compare takes either 'value' or 'value_path', not both")
        return self


class AndCondition(BaseModel):
    type: Literal["and"] = "and"
    conditions: list["Condition"] = Field(default_factory=list)


class OrCondition(BaseModel):
    type: Literal["or"] = "or"
    conditions: list["Condition"] = Field(default_factory=list)


class NotCondition(BaseModel):
    type: Literal["not"] = "not"
    condition: "Condition"


Condition = Annotated[
    Union[AndCondition, OrCondition, NotCondition, CompareCondition],
    Field(discriminator="type"),
]

AndCondition.model_rebuild()
OrCondition.model_rebuild()
NotCondition.model_rebuild()

_condition_adapter = TypeAdapter(Condition)


def parse_condition(raw: Any) -> Condition:
    """Parse a condition from its JSON form.

    Accepts the expression tree or a legacy flat list of
    ``{field, operator, value, logicalOperator}`` entries.

    Raises:
        pydantic.ValidationError: If the expression is malformed.
    """
    if isinstance(raw, (AndCondition, OrCondition, NotCondition, CompareCondition)):
        return raw
    if isinstance(raw, list):
        raw = convert_legacy_conditions(raw)
    return _condition_adapter.validate_python(raw)


def condition_to_dict(cond: Condition) -> dict:
    return cond.model_dump(mode="json", exclude_none=True)


def convert_legacy_conditions(items: list[dict]) -> dict:
    """Convert a flat rule condition list into an expression tree.

    Entries are folded left to right; each entry's ``logicalOperator``
    joins it to everything accumulated before it. The first entry's
    operator is ignored.
    """
    if not items:
        return {"type": "and", "conditions": []}

    def _leaf(item: dict) -> dict:
        leaf = {"type": "compare", "op": item.get("operator", "eq"), "path": item.get("field", "")}
        if "value" in item:
            leaf["value"] = item["value"]
        return leaf

    tree = _leaf(items[0])
    for item in items[1:]:
        joiner = str(item.get("logicalOperator") or "AND").lower()
        if joiner not in ("and", "or"):
            joiner = "and"
        tree = {"type": joiner, "conditions": [tree, _leaf(item)]}
    return tree


def condition_depth(cond: Condition) -> int:
    """Nesting depth of an expression (a lone comparison has depth 1)."""
    if isinstance(cond, CompareCondition):
        return 1
    if isinstance(cond, NotCondition):
        return 1 + condition_depth(cond.condition)
    return 1 + max((condition_depth(c) for c in cond.conditions), default=0)


def condition_size(cond: Condition) -> int:
    """Total number of nodes in an expression."""
    if isinstance(cond, CompareCondition):
        return 1
    if isinstance(cond, NotCondition):
        return 1 + condition_size(cond.condition)
    return 1 + sum(condition_size(c) for c in cond.conditions)


def check_condition_limits(cond: Condition, max_depth: int, max_nodes: int) -> list[str]:
    errors = []
    depth = condition_depth(cond)
    if depth > max_depth:
        errors.append(f"condition depth {depth} exceeds limit {max_depth}")
    size = condition_size(cond)
    if size > max_nodes:
        errors.append(f"condition size {size} exceeds limit {max_nodes}")
    return errors


# ─── Evaluation ──────────────────────────────────────────────────

MISSING = object()


def resolve_path(context: Any, path: str) -> Any:
    """Resolve a dotted path such as ``issue.labels.0`` against the context.

    Returns the ``MISSING`` sentinel when any segment
    does not resolve.
    """
    current = context
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                return MISSING
        else:
            return MISSING
    return current


def _is_empty(value: Any) -> bool:
    if value is None or value is MISSING:
        return True
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) == 0
    return False


def _compare(op: CompareOp, left: Any, right: Any) -> bool:
    """Apply ``op``; raises EvaluationError when the operands do not support it."""
    try:
        return bool(_apply_op(op, left, right))
    except TypeError as e:
        raise EvaluationError(f"Cannot apply '{op.value}' to {type(left).__name__} and {type(right).__name__}") from e


def _apply_op(op: CompareOp, left: Any, right: Any) -> Any:
    if op == CompareOp.EQ:
        return left == right
    if op == CompareOp.NE:
        return left != right
    if op == CompareOp.GT:
        return left > right
    if op == CompareOp.GTE:
        return left >= right
    if op == CompareOp.LT:
        return left < right
    if op == CompareOp.LTE:
        return left <= right
    if op == CompareOp.CONTAINS:
        return right in left
    if op == CompareOp.NOT_CONTAINS:
        return right not in left
    if op == CompareOp.IN:
        return left in right
    if op == CompareOp.NOT_IN:
        return left not in right
    if op == CompareOp.STARTS_WITH:
        return isinstance(left, str) and isinstance(right, str) and left.startswith(right)
    if op == CompareOp.ENDS_WITH:
        return isinstance(left, str) and isinstance(right, str) and left.endswith(right)
    return False


class ConditionEvaluator:
    """Evaluates condition trees against an execution context.

    ``evaluate`` is total: unresolved paths and type mismatches make the
    comparison false instead of raising. The context is only read.
    """

    def evaluate(self, expr: Union[Condition, dict, list, None], context: dict) -> bool:
        if expr is None:
            return True
        if not isinstance(expr, (AndCondition, OrCondition, NotCondition, CompareCondition)):
            expr = parse_condition(expr)
        return self._eval(expr, context)

    def _eval(self, expr: Condition, context: dict) -> bool:
        if isinstance(expr, AndCondition):
            return all(self._eval(c, context) for c in expr.conditions)
        if isinstance(expr, OrCondition):
            return any(self._eval(c, context) for c in expr.conditions)
        if isinstance(expr, NotCondition):
            return not self._eval(expr.condition, context)
        return self._eval_compare(expr, context)

    def _eval_compare(self, expr: CompareCondition, context: dict) -> bool:
        left = resolve_path(context, expr.path)

        if expr.op in UNARY_OPS:
            empty = _is_empty(left)
            return empty if expr.op == CompareOp.IS_EMPTY else not empty

        if left is MISSING:
            return False

        if expr.value_path is not None:
            right = resolve_path(context, expr.value_path)
            if right is MISSING:
                return False
        else:
            right = expr.value

        try:
            return _compare(expr.op, left, right)
        except EvaluationError as e:
            logger.debug("Comparison type mismatch", path=expr.path, op=expr.op.value, error=e.message)
            return False


_evaluator: Optional[ConditionEvaluator] = None


def get_condition_evaluator() -> ConditionEvaluator:
    """Get or create the singleton evaluator."""
    global _evaluator
    if _evaluator is None:
        _evaluator = ConditionEvaluator()
    return _evaluator
