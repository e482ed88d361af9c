"""
Finality Worker - Window Processor

Streams one window of storage events and finalizes them one at a time:

    fetch -> resolve -> save event (processed) -> award reputation
          -> update user unknown reports -> advance checkpoint -> fetch ...

WINDOW: checkpoint <= timestamp < now - finality_delay
    The lower bound is inclusive and overlaps the previous run: the
    checkpoint is the last processed event's own timestamp, so events
    sharing that timestamp are never skipped. Already processed events are
    filtered out by the query, so the overlap is safe to repeat.

CHECKPOINT: only advances after an event and its user update are durably
    saved. On error or deadline the last advanced checkpoint is returned and
    the in-flight event stays unprocessed for the next run.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID

from finality.core.config import Settings
from finality.core.errors import DeadlineExceeded, StoreError
from finality.models.schemas import UNKNOWN_REPORTS_PERIOD, StorageEvent, utc_now
from finality.services.outcome_resolver import OutcomeResolver
from finality.services.reputation import ReputationUpdater
from finality.store.base import EventStore

logger = logging.getLogger(__name__)


@dataclass
class WindowResult:
    """Final outcome of one window."""
    checkpoint: datetime
    processed: int = 0
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class WindowProgress:
    """
    Accumulator threaded through the cursor loop.

    finalize() is a one-shot gate: the first call fixes the result, later
    calls return it unchanged and later advances are ignored.
    """

    def __init__(self, checkpoint: datetime) -> None:
        self.checkpoint = checkpoint
        self.processed = 0
        self.in_flight: Optional[UUID] = None
        self._result: Optional[WindowResult] = None

    @property
    def finalized(self) -> bool:
        return self._result is not None

    def advance(self, timestamp: datetime) -> None:
        if self.finalized:
            return
        self.checkpoint = max(self.checkpoint, timestamp)
        self.processed += 1
        self.in_flight = None

    def finalize(self, error: Optional[Exception] = None) -> WindowResult:
        if self._result is None:
            self._result = WindowResult(
                checkpoint=self.checkpoint,
                processed=self.processed,
                error=error,
            )
        return self._result


class WindowProcessor:
    """Cursor loop over one finality window."""

    def __init__(
        self,
        store: EventStore,
        resolver: OutcomeResolver,
        reputation: ReputationUpdater,
        finality_delay: timedelta,
        unknown_reports_period: timedelta = UNKNOWN_REPORTS_PERIOD,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.reputation = reputation
        self.finality_delay = finality_delay
        self.unknown_reports_period = unknown_reports_period
        self._clock = clock
        # Steps left running past a deadline, held until they settle
        self._abandoned: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        store: EventStore,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> "WindowProcessor":
        return cls(
            store,
            resolver=OutcomeResolver.from_settings(settings),
            reputation=ReputationUpdater.from_settings(store, settings),
            finality_delay=settings.finality_delay,
            unknown_reports_period=settings.unknown_reports_period,
            clock=clock,
        )

    async def process_window(self, checkpoint: datetime, max_duration: timedelta) -> WindowResult:
        """
        Process every eligible event from `checkpoint` onwards.

        Never raises for processing failures; they are returned in
        WindowResult.error together with the last confirmed checkpoint.
        """
        progress = WindowProgress(checkpoint)
        window_end = self._clock() - self.finality_delay
        timer = asyncio.timeout(max_duration.total_seconds())

        try:
            async with timer:
                await self._drain(progress, checkpoint, window_end)
        except TimeoutError as e:
            if not timer.expired():
                return progress.finalize(e)
            if progress.in_flight is not None:
                logger.warning("abandoned in-flight storage event %s at deadline", progress.in_flight)
            return progress.finalize(DeadlineExceeded())
        except Exception as e:
            return progress.finalize(e)

        return progress.finalize()

    async def _drain(self, progress: WindowProgress, start: datetime, end: datetime) -> None:
        async with self.store.open_window(start, end) as cursor:
            while not progress.finalized:
                event = await cursor.next()
                if event is None:
                    break
                progress.in_flight = event.id
                # A dispatched step is left to finish if the deadline hits;
                # only the checkpoint advance is withheld.
                step = asyncio.ensure_future(self._finalize_event(event))
                try:
                    timestamp = await asyncio.shield(step)
                except asyncio.CancelledError:
                    self._abandon(step, event.id)
                    raise
                progress.advance(timestamp)

    def _abandon(self, step: asyncio.Task, event_id: UUID) -> None:
        self._abandoned.add(step)

        def _settled(task: asyncio.Task) -> None:
            self._abandoned.discard(task)
            if task.cancelled():
                logger.warning("abandoned storage event %s was cancelled", event_id)
                return
            error = task.exception()
            if error is not None:
                logger.error("abandoned storage event %s failed, reason: %s", event_id, error)

        step.add_done_callback(_settled)

    @property
    def abandoned(self) -> int:
        """Steps still running after their window hit the deadline."""
        return len(self._abandoned)

    async def _finalize_event(self, event: StorageEvent) -> datetime:
        user = await self.store.get_user(event.user)
        if user is None:
            raise StoreError(f"user {event.user} not found for storage event {event.id}")

        resolution = self.resolver.resolve(event, user)
        logger.debug(
            "storage event %s resolved success=%s unknown=%s",
            event.id, resolution.success, resolution.unknown,
        )

        await self.store.save_event_resolution(event.id, resolution.success)
        await self.reputation.award(event.farmer, resolution.success)

        user.update_unknown_reports(
            resolution.unknown,
            event.timestamp,
            event.transferred_bytes,
            period=self.unknown_reports_period,
        )
        await self.store.save_user(user)

        return event.timestamp
