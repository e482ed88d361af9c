"""
Finality Worker - Store & Lock Interfaces

Abstract collaborators consumed by the reconciliation core.
Backends (PostgreSQL, in-memory) must implement these methods and raise
StoreError / LockError for I/O failures.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from finality.models.schemas import Contact, LockResult, StorageEvent, UserAccount


class EventCursor(ABC):
    """
    Pausable cursor over one processing window.

    Events are yielded in ascending timestamp order. Nothing is fetched
    until next() is awaited, so the consumer controls the pace.
    """

    @abstractmethod
    async def next(self) -> Optional[StorageEvent]:
        """Fetch the next event, or None when the window is exhausted."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release cursor resources. Safe to call more than once."""
        pass

    async def __aenter__(self) -> "EventCursor":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class EventStore(ABC):
    """Record access for storage events, users and contacts."""

    @abstractmethod
    def open_window(self, start: datetime, end: datetime) -> EventCursor:
        """
        Open a cursor over unprocessed events with a user, where
        start <= timestamp < end, sorted ascending by timestamp.
        """
        pass

    @abstractmethod
    async def save_event_resolution(self, event_id: UUID, success: bool) -> None:
        """Set success and processed=true on an event in one atomic write."""
        pass

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        pass

    @abstractmethod
    async def save_user(self, user: UserAccount) -> None:
        """Persist the user's unknown-report counters."""
        pass

    @abstractmethod
    async def get_contact(self, node_id: str) -> Optional[Contact]:
        pass

    @abstractmethod
    async def save_contact(self, contact: Contact) -> None:
        pass


class LockCoordinator(ABC):
    """Cross-process mutual exclusion with a lease and a state payload."""

    @abstractmethod
    async def acquire(self, name: str, lease: timedelta) -> LockResult:
        """
        Try to take the named lock for at most `lease`.

        Returns LockResult(locked=False) when another holder has an
        unexpired lease. prior_state is the payload stored by the last
        release.
        """
        pass

    @abstractmethod
    async def release(self, name: str, state: dict[str, Any]) -> None:
        """Release the named lock, persisting `state` as its payload."""
        pass
