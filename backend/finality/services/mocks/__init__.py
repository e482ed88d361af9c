# Mock Store & Lock Interfaces
from finality.services.mocks.store import (
    InMemoryEventCursor,
    InMemoryEventStore,
    InMemoryLockCoordinator,
)

__all__ = [
    "InMemoryEventCursor",
    "InMemoryEventStore",
    "InMemoryLockCoordinator",
]
