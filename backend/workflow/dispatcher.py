"""
Action Dispatcher — registry and invoker for side-effecting action handlers.

Handlers are registered by action type. The dispatcher only looks the
handler up, enforces a timeout, and normalizes failures into
:class:`ActionError`. Business logic lives in the handlers.
"""

import asyncio
import copy
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import structlog

from app.config import get_settings
from core.exceptions import ActionError, ActionTimeoutError

logger = structlog.get_logger(__name__)


class BaseActionHandler(ABC):
    """
    Abstract base class for action handlers.

    Subclasses must implement:
    - handle(parameters, context) -> dict (context patch)
    - action_type (class attribute)
    """

    action_type: str = "base"
    display_name: str = "Base Action"
    description: str = "Abstract base action"

    @abstractmethod
    async def handle(self, parameters: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        """
        Perform the action.

        Args:
            parameters: Node / rule action parameters
            context: A private copy of the execution context

        Returns:
            Fields to merge into the execution context

        Raises:
            ActionError: For failures the handler wants to classify itself.
                Any other exception is treated as a retryable failure.
        """

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        """JSON schema of the handler's parameters."""
        return {"type": "object", "properties": {}}


class ActionDispatcher:
    """Central registry of action handlers."""

    def __init__(self, default_timeout: Optional[float] = None):
        self._handlers: Dict[str, BaseActionHandler] = {}
        self.default_timeout = default_timeout or get_settings().ACTION_TIMEOUT_SECONDS

    def register(self, action_type: str, handler: Any) -> None:
        """Register a handler instance or class for an action type."""
        if isinstance(handler, type):
            handler = handler()
        self._handlers[action_type] = handler

    def get(self, action_type: str) -> Optional[BaseActionHandler]:
        return self._handlers.get(action_type)

    def list_all(self) -> list:
        """List registered action types with metadata."""
        return [
            {
                "action_type": action_type,
                "display_name": handler.display_name,
                "description": handler.description,
                "config_schema": handler.get_config_schema(),
            }
            for action_type, handler in self._handlers.items()
        ]

    @property
    def available_types(self) -> list:
        return list(self._handlers.keys())

    async def dispatch(
        self,
        action_type: str,
        parameters: Optional[Dict[str, Any]],
        context: Optional[Dict[str, Any]],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Invoke the handler for ``action_type``.

        Returns:
            The handler's context patch.

        Raises:
            ActionError: Handler failed (retryable), the type is unknown or
                the handler returned something other than a mapping
                (both non-retryable).
            ActionTimeoutError: Handler exceeded ``timeout``.
        """
        handler = self.get(action_type)
        if handler is None:
            raise ActionError(
                f"No handler registered for action type '{action_type}'",
                action_type=action_type,
                retryable=False,
            )

        timeout = timeout or self.default_timeout
        start = time.monotonic()
        try:
            patch = await asyncio.wait_for(
                handler.handle(copy.deepcopy(parameters or {}), copy.deepcopy(context or {})),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Action timed out", action_type=action_type, timeout=timeout)
            raise ActionTimeoutError(action_type, timeout)
        except ActionError as e:
            e.action_type = e.action_type or action_type
            logger.warning("Action failed", action_type=action_type, error=e.message, retryable=e.retryable)
            raise
        except Exception as e:
            logger.warning("Action raised", action_type=action_type, error=str(e), error_type=type(e).__name__)
            raise ActionError(
                str(e) or type(e).__name__,
                action_type=action_type,
                retryable=True,
                details={"exception": type(e).__name__},
            ) from e

        if patch is None:
            patch = {}
        if not isinstance(patch, dict):
            raise ActionError(
                f"Action '{action_type}' returned {type(patch).__name__}, expected a mapping",
                action_type=action_type,
                retryable=False,
            )

        logger.debug(
            "Action completed",
            action_type=action_type,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )
        return patch


class DryRunDispatcher(ActionDispatcher):
    """Dispatcher used for simulations: records calls, performs no effects."""

    def __init__(self, known_types: Optional[list] = None):
        super().__init__(default_timeout=1.0)
        self.known_types = set(known_types) if known_types is not None else None
        self.calls: list[dict] = []

    async def dispatch(self, action_type, parameters, context, timeout=None):
        if self.known_types is not None and action_type not in self.known_types:
            raise ActionError(
                f"No handler registered for action type '{action_type}'",
                action_type=action_type,
                retryable=False,
            )
        self.calls.append({"action_type": action_type, "parameters": copy.deepcopy(parameters or {})})
        return {}


# Singleton
_dispatcher: Optional[ActionDispatcher] = None


def get_action_dispatcher() -> ActionDispatcher:
    """Get or create the singleton dispatcher with built-in handlers registered."""
    global _dispatcher
    if _dispatcher is None:
        from workflow.actions import BUILTIN_ACTIONS

        _dispatcher = ActionDispatcher()
        for action_type, handler_class in BUILTIN_ACTIONS.items():
            _dispatcher.register(action_type, handler_class)
    return _dispatcher


def register_action(action_type: str, handler: Any) -> None:
    """Register an externally implemented handler on the shared dispatcher."""
    get_action_dispatcher().register(action_type, handler)
