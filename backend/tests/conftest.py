"""
Shared fixtures: a fixed clock, in-memory store/lock, and event factories.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from finality.core.config import Settings
from finality.models.schemas import Contact, ExchangeReport, StorageEvent, UserAccount
from finality.services.mocks.store import InMemoryEventStore, InMemoryLockCoordinator
from finality.services.outcome_resolver import OutcomeResolver
from finality.services.reputation import ReputationUpdater
from finality.services.window_processor import WindowProcessor


NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
FINALITY_DELAY = timedelta(hours=3)
WINDOW_END = NOW - FINALITY_DELAY

USER_ID = "user@example.com"
FARMER_ID = "4d9a4b3b1f8c0e2d6a7b5c9e1f3a2b4c6d8e0f1a"


def report(code: Optional[int]) -> ExchangeReport:
    return ExchangeReport(exchange_result_code=code)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def window_end() -> datetime:
    return WINDOW_END


@pytest.fixture
def user_id() -> str:
    return USER_ID


@pytest.fixture
def farmer_id() -> str:
    return FARMER_ID


@pytest.fixture
def settings() -> Settings:
    return Settings(
        DATABASE_URL="postgresql+asyncpg://test@localhost/test",
        MAX_RUN_TIME_MS=5000,
        FINALITY_TIME_MS=int(FINALITY_DELAY.total_seconds() * 1000),
        UNKNOWN_REPORT_THRESHOLD=0.3,
    )


@pytest.fixture
def store() -> InMemoryEventStore:
    store = InMemoryEventStore()
    store.add_user(UserAccount(id=USER_ID))
    store.add_contact(Contact(id=FARMER_ID, reputation=100))
    return store


@pytest.fixture
def lock() -> InMemoryLockCoordinator:
    return InMemoryLockCoordinator(clock=lambda: NOW)


@pytest.fixture
def make_event(store):
    """Add an unprocessed event `minutes` after the start of the 08:00 hour."""
    def _make(
        minutes: float,
        success: bool = False,
        client_code: Optional[int] = None,
        farmer_code: Optional[int] = None,
        user: Optional[str] = USER_ID,
        storage: Optional[int] = 1000,
        **fields,
    ) -> StorageEvent:
        event = StorageEvent(
            timestamp=NOW.replace(hour=8) + timedelta(minutes=minutes),
            success=success,
            user=user,
            farmer=FARMER_ID,
            client_report=report(client_code) if client_code is not None else None,
            farmer_report=report(farmer_code) if farmer_code is not None else None,
            storage=storage,
            **fields,
        )
        return store.add_event(event)
    return _make


@pytest.fixture
def make_processor():
    """Processor over a given store with the fixed clock."""
    def _make(store: InMemoryEventStore, threshold: float = 0.3) -> WindowProcessor:
        return WindowProcessor(
            store,
            resolver=OutcomeResolver(unknown_threshold=threshold),
            reputation=ReputationUpdater(store),
            finality_delay=FINALITY_DELAY,
            clock=lambda: NOW,
        )
    return _make


@pytest.fixture
def processor(store, make_processor) -> WindowProcessor:
    return make_processor(store)
