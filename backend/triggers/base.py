"""Domain event envelope shared by the event bus, rule matcher and engine."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from core.utils import utc_now

# Events announced by built-in actions for the owning service to apply
ACTION_EVENT_PREFIX = "workflow.action."


@dataclass
class DomainEvent:
    """A business event such as ``issue.created``.

    This is the payload that travels over the event bus and is handed
    to the automation rule matcher.
    """

    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    project_id: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid4()))
    occurred_at: datetime = field(default_factory=utc_now)
    correlation_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "payload": self.payload,
            "project_id": self.project_id,
            "event_id": self.event_id,
            "occurred_at": self.occurred_at.isoformat(),
            "correlation_id": self.correlation_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DomainEvent":
        occurred_at = data.get("occurred_at")
        if isinstance(occurred_at, str):
            occurred_at = datetime.fromisoformat(occurred_at)
        payload = data.get("payload")
        return cls(
            type=data["type"],
            payload=payload if isinstance(payload, dict) else {},
            project_id=data.get("project_id"),
            event_id=data.get("event_id") or str(uuid4()),
            occurred_at=occurred_at or utc_now(),
            correlation_id=data.get("correlation_id"),
        )

    def as_context(self) -> dict[str, Any]:
        """Condition/action context: payload fields at the top level plus ``event``."""
        return {
            **self.payload,
            "event": {"type": self.type, "id": self.event_id, "project_id": self.project_id},
        }


def matches_filter(payload: dict, filter_rules: dict) -> bool:
    """Check if a payload matches a trigger's ``match`` rules.

    Supports:
    - Exact match: {"status": "open"} → payload["status"] == "open"
    - Greater than: {"points_gt": 3} → payload["points"] > 3
    - Less than: {"points_lt": 8} → payload["points"] < 8
    - Contains: {"labels_contains": "bug"} → "bug" in payload["labels"]
    """
    for key, expected in (filter_rules or {}).items():
        try:
            if key.endswith("_gt"):
                field_name = key[:-3]
                if field_name not in payload or payload[field_name] <= expected:
                    return False
            elif key.endswith("_lt"):
                field_name = key[:-3]
                if field_name not in payload or payload[field_name] >= expected:
                    return False
            elif key.endswith("_contains"):
                field_name = key[:-9]
                if field_name not in payload or expected not in payload[field_name]:
                    return False
            else:
                if key not in payload or payload[key] != expected:
                    return False
        except TypeError:
            return False
    return True
