"""
Finality Worker - Store & Lock Backends
"""

from finality.store.base import EventCursor, EventStore, LockCoordinator
from finality.store.sql import SqlEventCursor, SqlEventStore, SqlLockCoordinator

__all__ = [
    "EventCursor",
    "EventStore",
    "LockCoordinator",
    "SqlEventCursor",
    "SqlEventStore",
    "SqlLockCoordinator",
]
