"""Watch/event bus for spec, instance and rollout changes."""

import inspect
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Change notification type."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class ResourceType(str, Enum):
    """Resource types carried on the bus."""

    SPEC = "spec"
    INSTANCE = "instance"
    ROLLOUT = "rollout"


class WatchEvent(BaseModel):
    """Change notification."""

    event_type: EventType
    resource_type: ResourceType
    workload: str
    key: str
    object: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)


EventHandler = Callable[[WatchEvent], Union[None, Awaitable[None]]]


class EventBus:
    """
    In-process change notification bus.

    Handlers are registered per resource type and may be plain callables or
    coroutines. A failing handler is logged and does not stop delivery to
    the remaining handlers.
    """

    def __init__(self):
        """Initialize event bus."""
        self._handlers: dict[ResourceType, list[EventHandler]] = {}

    def register_handler(self, resource_type: ResourceType, handler: EventHandler) -> None:
        """
        Register a handler for events of a resource type.

        Args:
            resource_type: Resource type to subscribe to
            handler: Callback that takes a WatchEvent
        """
        self._handlers.setdefault(resource_type, []).append(handler)

    def unregister_handler(self, resource_type: ResourceType, handler: EventHandler) -> bool:
        handlers = self._handlers.get(resource_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    async def emit(self, event: WatchEvent) -> None:
        """
        Deliver an event to registered handlers.

        Args:
            event: Event to deliver
        """
        for handler in list(self._handlers.get(event.resource_type, [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Error in {event.resource_type.value} event handler "
                    f"for {event.key}: {e}",
                    exc_info=True,
                )
