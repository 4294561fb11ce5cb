"""Outbound notification port.

Delivery (email, push, kiosk refresh) lives outside the core; the services
only hand events to a dispatcher and never fail because delivery failed.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol

from roomhub.utils.logger import get_logger


logger = get_logger(__name__)


class NotificationDispatcher(Protocol):
    def dispatch(self, event: str, payload: Mapping[str, Any]) -> None:
        """Hand one event to the delivery channel."""


class LoggingNotificationDispatcher:
    """Default dispatcher used when no delivery channel is wired in."""

    def dispatch(self, event: str, payload: Mapping[str, Any]) -> None:
        visible = {key: value for key, value in payload.items() if key != "code"}
        logger.info("Notification %s: %s", event, visible)


def dispatch_safely(
    dispatcher: Optional[NotificationDispatcher],
    event: str,
    payload: Mapping[str, Any],
) -> bool:
    """Fire-and-forget delivery; returns False when the dispatcher raised."""
    if dispatcher is None:
        return False
    try:
        dispatcher.dispatch(event, payload)
    except Exception:
        logger.exception("Notification %s could not be dispatched", event)
        return False
    return True
