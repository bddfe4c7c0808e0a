"""State store client implementations."""

from typing import Optional

from ..events import EventBus
from .base import StateStore
from .memory import InMemoryStateStore
from .sql import SQLStateStore


async def create_store(database_url: str, bus: Optional[EventBus] = None) -> StateStore:
    """
    Create the state store selected by configuration.

    Args:
        database_url: SQLAlchemy async URL, or empty for the in-memory store
        bus: Event bus receiving change notifications

    Returns:
        Initialized state store
    """
    if not database_url:
        return InMemoryStateStore(bus)

    store = SQLStateStore(database_url, bus)
    await store.init()
    return store


__all__ = ["StateStore", "InMemoryStateStore", "SQLStateStore", "create_store"]
