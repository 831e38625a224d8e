"""
Resumable execution state.

:class:`ExecutionState` is everything the engine needs to continue an
execution from where it stopped: the resume node, context, retry and
step counters, and the pending approval. It is loaded from and
checkpointed to the execution ledger after every step.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.constants import ApprovalOutcome, ExecutionStatus, StepStatus
from core.utils import json_snapshot, utc_now


@dataclass
class ApprovalDecision:
    """Resolution of a pending approval, carried on a queue item."""

    outcome: ApprovalOutcome
    actor_id: Optional[str] = None
    comment: Optional[str] = None

    def __post_init__(self):
        self.outcome = ApprovalOutcome(self.outcome)

    def to_dict(self) -> Dict[str, Any]:
        return {"outcome": self.outcome.value, "actor_id": self.actor_id, "comment": self.comment}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalDecision":
        return cls(outcome=data["outcome"], actor_id=data.get("actor_id"), comment=data.get("comment"))


@dataclass
class ExecutionState:
    execution_id: str
    workflow_id: Optional[str] = None
    rule_id: Optional[str] = None
    project_id: Optional[str] = None
    trigger_type: str = "manual"
    trigger_event: Optional[str] = None
    trigger_payload: Optional[Dict[str, Any]] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    context: Dict[str, Any] = field(default_factory=dict)
    execution_log: List[Dict[str, Any]] = field(default_factory=list)
    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: Optional[datetime] = None
    current_node_id: Optional[str] = None
    pending_approval: Optional[Dict[str, Any]] = None
    approval_deadline: Optional[datetime] = None
    step_count: int = 0
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    claimed_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = ExecutionStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    # ─── Log helpers ─────────────────────────────────────────────

    def append_log(
        self,
        node_id: str,
        node_type: str,
        status: StepStatus,
        started_at: datetime,
        input: Optional[Dict[str, Any]] = None,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> Dict[str, Any]:
        entry = {
            "node_id": node_id,
            "node_type": node_type,
            "status": StepStatus(status).value,
            "started_at": started_at.isoformat(),
            "finished_at": utc_now().isoformat() if status != StepStatus.WAITING else None,
            "input": json_snapshot(input) if input is not None else None,
            "output": json_snapshot(output) if output is not None else None,
            "error": error,
            "error_type": error_type,
        }
        if attempt is not None:
            entry["attempt"] = attempt
        self.execution_log.append(entry)
        return entry

    def last_log_for(self, node_id: str) -> Optional[Dict[str, Any]]:
        for entry in reversed(self.execution_log):
            if entry["node_id"] == node_id:
                return entry
        return None

    # ─── Terminal transitions ────────────────────────────────────

    def complete(self, result: Optional[Dict[str, Any]] = None) -> None:
        self.status = ExecutionStatus.COMPLETED
        self.result = json_snapshot(result if result is not None else self.context)
        self.next_retry_at = None
        self.pending_approval = None
        self.approval_deadline = None
        self.completed_at = utc_now()

    def fail(self, message: str, error_type: Optional[str] = None) -> None:
        self.status = ExecutionStatus.FAILED
        self.error_message = message
        self.error_type = error_type
        self.next_retry_at = None
        self.pending_approval = None
        self.approval_deadline = None
        self.completed_at = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses and logging."""
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "rule_id": self.rule_id,
            "project_id": self.project_id,
            "trigger_type": self.trigger_type,
            "trigger_event": self.trigger_event,
            "status": self.status.value,
            "context": self.context,
            "execution_log": self.execution_log,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "current_node_id": self.current_node_id,
            "pending_approval": self.pending_approval,
            "step_count": self.step_count,
            "result": self.result,
            "error_message": self.error_message,
            "error_type": self.error_type,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
