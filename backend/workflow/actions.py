"""Built-in action handlers.

Entity mutations (update_field, assign_user, ...) are owned by the
product services, so these handlers announce the requested change as a
``workflow.action.<type>`` domain event and return the patch the
workflow should see. ``webhook_call`` performs the HTTP request itself.

String parameters may reference the context with ``{{dotted.path}}``.
"""

import ipaddress
import re
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx
import structlog

from core.exceptions import ActionError
from triggers.base import ACTION_EVENT_PREFIX, DomainEvent
from triggers.event_bus import EventPublisher, get_event_publisher
from workflow.conditions import MISSING, resolve_path
from workflow.dispatcher import BaseActionHandler

logger = structlog.get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


def render_template(value: Any, context: Dict[str, Any]) -> Any:
    """Substitute ``{{path}}`` placeholders in strings, recursively.

    A string consisting of a single placeholder is replaced by the raw
    value (keeping its type); unresolved placeholders render as ``""``.
    """
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value.strip())
        if whole:
            resolved = resolve_path(context, whole.group(1))
            return None if resolved is MISSING else resolved

        def _sub(match):
            resolved = resolve_path(context, match.group(1))
            return "" if resolved is MISSING or resolved is None else str(resolved)

        return _PLACEHOLDER.sub(_sub, value)
    if isinstance(value, dict):
        return {k: render_template(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [render_template(v, context) for v in value]
    return value


def _require(parameters: Dict[str, Any], *names: str, action_type: str) -> None:
    missing = [n for n in names if parameters.get(n) in (None, "")]
    if missing:
        raise ActionError(
            f"Missing required parameter(s): {', '.join(missing)}",
            action_type=action_type,
            retryable=False,
        )


class DomainEventAction(BaseActionHandler):
    """Base for actions that are carried out by the owning product service."""

    required: tuple = ()

    def __init__(self, publisher: Optional[EventPublisher] = None):
        self._publisher = publisher

    @property
    def publisher(self) -> EventPublisher:
        return self._publisher or get_event_publisher()

    def build_patch(self, parameters: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    async def handle(self, parameters: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        parameters = render_template(parameters, context)
        _require(parameters, *self.required, action_type=self.action_type)

        event = DomainEvent(
            type=f"{ACTION_EVENT_PREFIX}{self.action_type}",
            payload={"parameters": parameters, "execution_id": context.get("execution_id")},
            project_id=(context.get("event") or {}).get("project_id"),
        )
        await self.publisher.publish(event)
        logger.info("Action event published", action_type=self.action_type, event_id=event.event_id)
        return self.build_patch(parameters, context)


class UpdateFieldAction(DomainEventAction):
    """Set a field on the target entity.

    Parameters:
        entity_id: Target entity (defaults to ``{{issue.id}}`` by convention)
        field: Field name
        value: New value
    """

    action_type = "update_field"
    display_name = "Update Field"
    description = "Set a field on an issue or project entity"
    required = ("field",)

    def build_patch(self, parameters, context):
        return {parameters["field"]: parameters.get("value")}

    @classmethod
    def get_config_schema(cls):
        return {
            "type": "object",
            "required": ["field"],
            "properties": {
                "entity_id": {"type": "string"},
                "field": {"type": "string"},
                "value": {},
            },
        }


class UpdateStatusAction(DomainEventAction):
    action_type = "update_status"
    display_name = "Update Status"
    description = "Move an entity to a new status"
    required = ("status",)

    def build_patch(self, parameters, context):
        return {"status": parameters["status"]}


class AssignUserAction(DomainEventAction):
    action_type = "assign_user"
    display_name = "Assign User"
    description = "Assign an entity to a user"
    required = ("user_id",)

    def build_patch(self, parameters, context):
        return {"assignee_id": parameters["user_id"]}


class SendNotificationAction(DomainEventAction):
    """Ask the notification service to notify recipients. Delivery is not tracked here."""

    action_type = "send_notification"
    display_name = "Send Notification"
    description = "Notify users through the notification service"
    required = ("recipients",)

    def build_patch(self, parameters, context):
        recipients = parameters["recipients"]
        if isinstance(recipients, str):
            recipients = [recipients]
        return {"notified": list(recipients)}


class CreateIssueAction(DomainEventAction):
    action_type = "create_issue"
    display_name = "Create Issue"
    description = "Create a follow-up issue"
    required = ("title",)

    def build_patch(self, parameters, context):
        return {"created_issue": {"title": parameters["title"], "type": parameters.get("issue_type", "task")}}


# ─── Webhook ───


def _validate_url_safety(url: str) -> None:
    """Reject URLs that point at loopback or private addresses.

    Raises:
        ValueError: If URL is unsafe
    """
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ("http", "https"):
        raise ValueError(f"Unsupported scheme: {parsed.scheme}. Only HTTP and HTTPS allowed.")

    hostname = parsed.hostname
    if not hostname:
        raise ValueError("URL must have a valid hostname")
    if hostname.lower() in ("localhost", "127.0.0.1", "::1"):
        raise ValueError("Connections to localhost are not allowed")

    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        return  # domain name
    if ip.is_private or ip.is_loopback or ip.is_reserved or ip.is_link_local:
        raise ValueError(f"Connections to private IP {hostname} are not allowed")


class WebhookCallAction(BaseActionHandler):
    """Call an external webhook.

    Parameters:
        url: Target URL (required)
        method: HTTP method (default: POST)
        headers: Dict of HTTP headers
        body: JSON body (defaults to the rendered context)
        timeout: Request timeout in seconds (default: 10)

    5xx responses and transport errors are retryable; 4xx are not.
    """

    action_type = "webhook_call"
    display_name = "Webhook Call"
    description = "Send an HTTP request to an external endpoint"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, allow_private: bool = False):
        self._transport = transport
        self._allow_private = allow_private

    async def handle(self, parameters: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        parameters = render_template(parameters, context)
        _require(parameters, "url", action_type=self.action_type)
        url = parameters["url"]

        if not self._allow_private:
            try:
                _validate_url_safety(url)
            except ValueError as e:
                raise ActionError(str(e), action_type=self.action_type, retryable=False)

        method = str(parameters.get("method", "POST")).upper()
        body = parameters.get("body", context)
        timeout = parameters.get("timeout", 10)

        kwargs: Dict[str, Any] = {
            "method": method,
            "url": url,
            "headers": parameters.get("headers") or {},
            "timeout": timeout,
        }
        if method in ("POST", "PUT", "PATCH"):
            kwargs["json"] = body

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.request(**kwargs)
        except httpx.TimeoutException:
            raise ActionError(f"Request timed out after {timeout}s", action_type=self.action_type)
        except httpx.HTTPError as e:
            raise ActionError(f"Connection failed: {e}", action_type=self.action_type)

        if response.status_code >= 500:
            raise ActionError(f"HTTP {response.status_code}", action_type=self.action_type)
        if response.status_code >= 400:
            raise ActionError(
                f"HTTP {response.status_code}",
                action_type=self.action_type,
                retryable=False,
                details={"body": response.text[:500]},
            )

        try:
            data = response.json()
        except ValueError:
            data = response.text

        return {"webhook_response": {"status_code": response.status_code, "data": data}}

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["url"],
            "properties": {
                "url": {"type": "string", "description": "Target URL"},
                "method": {"type": "string", "enum": ["GET", "POST", "PUT", "PATCH", "DELETE"]},
                "headers": {"type": "object"},
                "body": {},
                "timeout": {"type": "number", "default": 10},
            },
        }


BUILTIN_ACTIONS = {
    "update_field": UpdateFieldAction,
    "update_status": UpdateStatusAction,
    "assign_user": AssignUserAction,
    "send_notification": SendNotificationAction,
    "create_issue": CreateIssueAction,
    "webhook_call": WebhookCallAction,
}
