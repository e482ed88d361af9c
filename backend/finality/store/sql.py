"""
Finality Worker - PostgreSQL Store & Lock

Async SQLAlchemy implementations of EventStore and LockCoordinator.

The window cursor is a server-side stream: rows are pulled one at a time as
the processor asks for them. Writes go through short-lived sessions of
their own so they commit independently of the open cursor.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncResult, AsyncSession, async_sessionmaker

from finality.core.errors import LockError, StoreError
from finality.db.models import ContactModel, CronJobModel, StorageEventModel, UserModel
from finality.models.schemas import (
    Contact,
    ExchangeReport,
    LockResult,
    StorageEvent,
    UserAccount,
    utc_now,
)
from finality.store.base import EventCursor, EventStore, LockCoordinator

logger = logging.getLogger(__name__)


def _to_report(data: Optional[dict[str, Any]]) -> Optional[ExchangeReport]:
    if data is None:
        return None
    return ExchangeReport.model_validate(data)


def _to_event(row: StorageEventModel) -> StorageEvent:
    return StorageEvent(
        id=row.id,
        timestamp=row.timestamp,
        success=row.success,
        processed=row.processed,
        user=row.user,
        farmer=row.farmer,
        client_report=_to_report(row.client_report),
        farmer_report=_to_report(row.farmer_report),
        storage=row.storage,
        download_bandwidth=row.download_bandwidth,
    )


class SqlEventCursor(EventCursor):
    """Streaming cursor over storage_events for one window."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        start: datetime,
        end: datetime,
    ) -> None:
        self._session_maker = session_maker
        self._stmt = (
            select(StorageEventModel)
            .where(StorageEventModel.timestamp < end)
            .where(StorageEventModel.timestamp >= start)
            # "= false" so the planner can use idx_storage_events_unprocessed
            .where(StorageEventModel.processed == False)  # noqa: E712
            .where(StorageEventModel.user.is_not(None))
            .order_by(StorageEventModel.timestamp.asc())
        )
        self._session: Optional[AsyncSession] = None
        self._result: Optional[AsyncResult] = None
        self._closed = False

    async def next(self) -> Optional[StorageEvent]:
        if self._closed:
            return None
        try:
            if self._result is None:
                self._session = self._session_maker()
                self._result = await self._session.stream(self._stmt)
            row = await self._result.fetchone()
        except SQLAlchemyError as e:
            raise StoreError(f"storage event cursor failed: {e}") from e
        if row is None:
            return None
        record = row[0]
        event = _to_event(record)
        # Keep the identity map from growing over a long window
        self._session.expunge(record)
        return event

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self._result is not None:
                await self._result.close()
        finally:
            if self._session is not None:
                await self._session.close()


class SqlEventStore(EventStore):
    """
    PostgreSQL-backed event store.

    One session per write. Every SQLAlchemy failure surfaces as StoreError.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    def open_window(self, start: datetime, end: datetime) -> EventCursor:
        return SqlEventCursor(self._session_maker, start, end)

    async def save_event_resolution(self, event_id: UUID, success: bool) -> None:
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    update(StorageEventModel)
                    .where(StorageEventModel.id == event_id)
                    .values(processed=True, success=success)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"failed to save storage event {event_id}: {e}") from e
        if result.rowcount == 0:
            raise StoreError(f"storage event {event_id} not found")

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        try:
            async with self._session_maker() as session:
                row = await session.get(UserModel, user_id)
                if row is None:
                    return None
                return UserAccount.model_validate(row)
        except SQLAlchemyError as e:
            raise StoreError(f"failed to load user {user_id}: {e}") from e

    async def save_user(self, user: UserAccount) -> None:
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    update(UserModel)
                    .where(UserModel.id == user.id)
                    .values(
                        unknown_reports_started=user.unknown_reports_started,
                        unknown_reports_bytes=user.unknown_reports_bytes,
                        total_reports_bytes=user.total_reports_bytes,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"failed to save user {user.id}: {e}") from e
        if result.rowcount == 0:
            raise StoreError(f"user {user.id} not found")

    async def get_contact(self, node_id: str) -> Optional[Contact]:
        try:
            async with self._session_maker() as session:
                row = await session.get(ContactModel, node_id)
                if row is None:
                    return None
                return Contact.model_validate(row)
        except SQLAlchemyError as e:
            raise StoreError(f"failed to load contact {node_id}: {e}") from e

    async def save_contact(self, contact: Contact) -> None:
        try:
            async with self._session_maker() as session:
                await session.execute(
                    update(ContactModel)
                    .where(ContactModel.id == contact.id)
                    .values(
                        reputation=contact.reputation,
                        last_points_at=contact.last_points_at,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"failed to save contact {contact.id}: {e}") from e


class SqlLockCoordinator(LockCoordinator):
    """
    Lock rows in cron_jobs.

    A lock is taken when its row is missing, unlocked, or its lease has
    expired. The payload written on release is handed back on the next
    acquire.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def acquire(self, name: str, lease: timedelta) -> LockResult:
        now = utc_now()
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    update(CronJobModel)
                    .where(CronJobModel.name == name)
                    .where(or_(CronJobModel.locked.is_(False), CronJobModel.locked_end < now))
                    .values(locked=True, locked_at=now, locked_end=now + lease)
                    .returning(CronJobModel.raw_data)
                    .execution_options(synchronize_session=False)
                )
                row = result.first()
                if row is None:
                    result = await session.execute(
                        pg_insert(CronJobModel)
                        .values(
                            name=name,
                            locked=True,
                            locked_at=now,
                            locked_end=now + lease,
                            raw_data={},
                        )
                        .on_conflict_do_nothing(index_elements=[CronJobModel.name])
                        .returning(CronJobModel.raw_data)
                    )
                    row = result.first()
                await session.commit()
        except SQLAlchemyError as e:
            raise LockError(f"failed to acquire {name}: {e}") from e

        if row is None:
            return LockResult(locked=False)
        return LockResult(locked=True, prior_state=dict(row.raw_data or {}))

    async def release(self, name: str, state: dict[str, Any]) -> None:
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    update(CronJobModel)
                    .where(CronJobModel.name == name)
                    .values(locked=False, finished_at=utc_now(), raw_data=state)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise LockError(f"failed to release {name}: {e}") from e
        if result.rowcount == 0:
            raise LockError(f"lock {name} not found")
