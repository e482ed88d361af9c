"""
Finality Worker - In-Memory Store & Lock

This is a MOCK implementation.
In production the worker uses the PostgreSQL store (finality.store.sql).

Contract:
    - Same window semantics as the SQL cursor (inclusive start, exclusive end,
      unprocessed events with a user, ascending timestamp)
    - Records are handed out as copies; changes only land through save_*
    - Lock leases expire against the injected clock
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from uuid import UUID

from finality.core.errors import StoreError
from finality.models.schemas import Contact, LockResult, StorageEvent, UserAccount, utc_now
from finality.store.base import EventCursor, EventStore, LockCoordinator


class InMemoryEventCursor(EventCursor):
    """
    Cursor over an in-memory window.

    Matching events are selected on the first next() call, like a database
    cursor opened at query time.
    """

    def __init__(self, store: "InMemoryEventStore", start: datetime, end: datetime) -> None:
        self._store = store
        self._start = start
        self._end = end
        self._pending: Optional[list[UUID]] = None
        self.closed = False

    async def next(self) -> Optional[StorageEvent]:
        if self.closed:
            return None
        if self._pending is None:
            self._pending = self._store.window_ids(self._start, self._end)
        if not self._pending:
            return None
        event_id = self._pending.pop(0)
        self._store.fetched.append(event_id)
        return self._store.events[event_id].model_copy(deep=True)

    async def close(self) -> None:
        self.closed = True


class InMemoryEventStore(EventStore):
    """
    Mock event store.

    Keeps events, users and contacts in dicts. Exposes fetch/save logs for
    test assertions.
    """

    def __init__(self) -> None:
        self.events: dict[UUID, StorageEvent] = {}
        self.users: dict[str, UserAccount] = {}
        self.contacts: dict[str, Contact] = {}
        self.fetched: list[UUID] = []
        self.event_saves: list[UUID] = []
        self.cursors: list[InMemoryEventCursor] = []

    # =========================================================================
    # SEEDING
    # =========================================================================

    def add_event(self, event: StorageEvent) -> StorageEvent:
        self.events[event.id] = event
        return event

    def add_user(self, user: UserAccount) -> UserAccount:
        self.users[user.id] = user
        return user

    def add_contact(self, contact: Contact) -> Contact:
        self.contacts[contact.id] = contact
        return contact

    def window_ids(self, start: datetime, end: datetime) -> list[UUID]:
        matching = [
            event for event in self.events.values()
            if start <= event.timestamp < end
            and not event.processed
            and event.user is not None
        ]
        # sorted() is stable, so equal timestamps keep insertion order
        return [event.id for event in sorted(matching, key=lambda e: e.timestamp)]

    # =========================================================================
    # EventStore
    # =========================================================================

    def open_window(self, start: datetime, end: datetime) -> EventCursor:
        cursor = InMemoryEventCursor(self, start, end)
        self.cursors.append(cursor)
        return cursor

    async def save_event_resolution(self, event_id: UUID, success: bool) -> None:
        event = self.events.get(event_id)
        if event is None:
            raise StoreError(f"storage event {event_id} not found")
        self.events[event_id] = event.model_copy(update={"processed": True, "success": success})
        self.event_saves.append(event_id)

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        user = self.users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def save_user(self, user: UserAccount) -> None:
        if user.id not in self.users:
            raise StoreError(f"user {user.id} not found")
        self.users[user.id] = user.model_copy(deep=True)

    async def get_contact(self, node_id: str) -> Optional[Contact]:
        contact = self.contacts.get(node_id)
        return contact.model_copy(deep=True) if contact else None

    async def save_contact(self, contact: Contact) -> None:
        self.contacts[contact.id] = contact.model_copy(deep=True)


class InMemoryLockCoordinator(LockCoordinator):
    """Mock lock table with leases."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._locked_end: dict[str, Optional[datetime]] = {}
        self.states: dict[str, dict[str, Any]] = {}
        self.releases: list[tuple[str, dict[str, Any]]] = []

    def is_locked(self, name: str) -> bool:
        locked_end = self._locked_end.get(name)
        return locked_end is not None and locked_end > self._clock()

    async def acquire(self, name: str, lease: timedelta) -> LockResult:
        if self.is_locked(name):
            return LockResult(locked=False)
        self._locked_end[name] = self._clock() + lease
        return LockResult(locked=True, prior_state=dict(self.states.get(name, {})))

    async def release(self, name: str, state: dict[str, Any]) -> None:
        self._locked_end[name] = None
        self.states[name] = dict(state)
        self.releases.append((name, dict(state)))
