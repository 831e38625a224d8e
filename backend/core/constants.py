"""Constants and enums for the project automation engine."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """Workflow execution status."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_resumable(self) -> bool:
        return self in RESUMABLE_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)

# Statuses a worker may claim (compare-and-swap to RUNNING)
RESUMABLE_STATUSES = frozenset(
    {ExecutionStatus.PENDING, ExecutionStatus.WAITING_APPROVAL, ExecutionStatus.RETRYING}
)


class WorkflowStatus(str, Enum):
    """Workflow definition / template lifecycle status."""

    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class RuleStatus(str, Enum):
    """Automation rule status."""

    ACTIVE = "active"
    PAUSED = "paused"


class NodeType(str, Enum):
    """Workflow graph node type."""

    START = "start"
    END = "end"
    ACTION = "action"
    DECISION = "decision"
    APPROVAL = "approval"


class ApprovalOutcome(str, Enum):
    """How a pending approval was resolved."""

    APPROVED = "approved"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


class ConnectionBranch(str, Enum):
    """Outgoing branch of an approval node."""

    APPROVED = "approved"
    REJECTED = "rejected"


class StepStatus(str, Enum):
    """Status of a single execution log entry."""

    COMPLETED = "completed"
    FAILED = "failed"
    WAITING = "waiting"


class TriggerType(str, Enum):
    """How an execution was started."""

    MANUAL = "manual"
    API = "api"
    EVENT = "event"
    SCHEDULED = "scheduled"
