# backend/app/core/events.py
"""
Narrow publish/subscribe channel for billing change notifications.

Readers fetch state through the services; this channel only tells them that
something changed. Publishing happens after the write is committed.
"""
import inspect
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from app.core.logging import get_logger

logger = get_logger(__name__)


class ChangeEvent(str, Enum):
    USAGE_CHANGED = "usage_changed"
    SUBSCRIPTION_CHANGED = "subscription_changed"
    PLANS_CHANGED = "plans_changed"


class ChangeNotifier:
    """In-process fan-out keyed by ``ChangeEvent``."""

    def __init__(self) -> None:
        self._handlers: Dict[ChangeEvent, Dict[str, Callable]] = {event: {} for event in ChangeEvent}

    def subscribe(self, event: ChangeEvent, handler: Callable) -> str:
        handler_id = str(uuid.uuid4())
        self._handlers[event][handler_id] = handler
        logger.debug(f"Subscribed handler {handler_id} to {event.value}")
        return handler_id

    def unsubscribe(self, event: ChangeEvent, handler_id: str) -> bool:
        return self._handlers[event].pop(handler_id, None) is not None

    async def publish(self, event: ChangeEvent, organization_id: Optional[str], data: Optional[Dict[str, Any]] = None) -> int:
        """Deliver to every handler; returns how many ran without raising."""
        payload = {"event": event.value, "organization_id": organization_id, **(data or {})}
        delivered = 0
        for handler_id, handler in list(self._handlers[event].items()):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                # The write is already committed; a failing listener must not undo it
                logger.exception(
                    f"Change handler {handler_id} failed for {event.value}",
                    extra={"organization_id": organization_id},
                )
        return delivered

    def clear(self) -> None:
        for handlers in self._handlers.values():
            handlers.clear()


notifier = ChangeNotifier()
