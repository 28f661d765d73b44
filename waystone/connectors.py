"""Connector invocation boundary.

The orchestration core never talks to email, calendar or document services
directly. It hands a resolved payload to a :class:`ConnectorInvoker`, which
enforces its own authorization and policy and returns a
:class:`ConnectorResult`.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ConnectorResult(BaseModel):
    """Outcome reported by a connector action."""

    ok: bool
    summary: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    requires_approval: bool = False
    approval_reason: Optional[str] = None


class ConnectorInvoker(Protocol):
    """Executes a single connector action on behalf of a user."""

    async def invoke(
        self, action_id: str, payload: Dict[str, Any], user_id: str
    ) -> ConnectorResult:
        """Run ``action_id`` with ``payload``."""


ConnectorHandler = Callable[
    [str, Dict[str, Any], str], Union[ConnectorResult, Awaitable[ConnectorResult]]
]


def parse_connector_action_id(action_id: str) -> Tuple[str, str]:
    """Split ``connector.<connector>.<action>`` into its two parts."""
    parts = action_id.split(".")
    if len(parts) < 3 or parts[0] != "connector":
        raise ValueError(f"Invalid connector action id: {action_id}")
    return parts[1], ".".join(parts[2:])


class ConnectorRegistry:
    """In-process invoker dispatching to registered connector handlers.

    Handlers receive ``(action, payload, user_id)`` and may be sync or async.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, ConnectorHandler] = {}

    def register(self, connector_id: str, handler: ConnectorHandler) -> None:
        self._handlers[connector_id] = handler

    def unregister(self, connector_id: str) -> None:
        self._handlers.pop(connector_id, None)

    @property
    def connector_ids(self) -> list[str]:
        return sorted(self._handlers)

    async def invoke(
        self, action_id: str, payload: Dict[str, Any], user_id: str
    ) -> ConnectorResult:
        connector_id, action = parse_connector_action_id(action_id)
        handler = self._handlers.get(connector_id)
        if handler is None:
            logger.warning(f"No connector registered for {connector_id} (action={action_id})")
            return ConnectorResult(
                ok=False,
                summary=f"Connector {connector_id} is not available.",
                error_message=f"Unknown connector: {connector_id}",
            )

        result = handler(action, payload, user_id)
        if inspect.isawaitable(result):
            result = await result
        return result
