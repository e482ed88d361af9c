"""Worker for the storage events finality job.

Builds the store and lock clients once and triggers the job on a fixed
wall-clock cadence (multiples of RUN_INTERVAL_SECONDS since the epoch, UTC).

Run with --once to trigger a single run and exit.
Run with --dry-run to use the in-memory store and lock (no database).
"""

import argparse
import asyncio
import logging
import math
import signal
import sys
from datetime import datetime, timedelta
from typing import Callable, Optional

from finality.core.config import Settings, get_settings
from finality.db.session import create_engine_from_settings, create_session_maker
from finality.jobs.storage_events import StorageEventsFinalityJob
from finality.models.schemas import EPOCH, RunReport, utc_now
from finality.services.mocks.store import InMemoryEventStore, InMemoryLockCoordinator
from finality.store.sql import SqlEventStore, SqlLockCoordinator

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def next_tick(now: datetime, interval_seconds: int) -> datetime:
    """Next instant strictly after `now` aligned to the interval."""
    elapsed = (now - EPOCH).total_seconds()
    ticks = math.floor(elapsed / interval_seconds) + 1
    return EPOCH + timedelta(seconds=ticks * interval_seconds)


class FinalityWorker:
    """
    Periodic trigger for the finality job.

    Runs never overlap inside one process: a tick that arrives while a run
    is pending is skipped. The distributed lock guards across processes.
    """

    def __init__(
        self,
        job: StorageEventsFinalityJob,
        interval_seconds: int,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.job = job
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._running = False
        self._stop = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Stop after the current run."""
        self._stop.set()

    async def tick(self) -> Optional[RunReport]:
        if self._running:
            logger.warning("%s tick skipped, previous run still pending", self.job.job_name)
            return None
        self._running = True
        try:
            return await self.job.run()
        finally:
            self._running = False

    async def run_forever(self) -> None:
        logger.info("starting the storage events cron")
        while not self._stop.is_set():
            now = self._clock()
            delay = (next_tick(now, self.interval_seconds) - now).total_seconds()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=max(delay, 0.0))
            except TimeoutError:
                await self.tick()
        logger.info("stopped the storage events cron")


async def _serve(settings: Settings, once: bool, dry_run: bool) -> None:
    engine = None
    if dry_run:
        logger.warning("dry run: using in-memory store and lock")
        store = InMemoryEventStore()
        lock = InMemoryLockCoordinator()
    else:
        engine = create_engine_from_settings(settings)
        session_maker = create_session_maker(engine)
        store = SqlEventStore(session_maker)
        lock = SqlLockCoordinator(session_maker)

    job = StorageEventsFinalityJob.from_settings(store, lock, settings)
    worker = FinalityWorker(job, settings.RUN_INTERVAL_SECONDS)

    try:
        if once:
            await worker.tick()
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, worker.stop)
            except NotImplementedError:
                pass  # Windows
        await worker.run_forever()
    finally:
        if engine is not None:
            await engine.dispose()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Storage events finality worker")
    parser.add_argument("--once", action="store_true", help="Run a single window and exit")
    parser.add_argument("--dry-run", action="store_true", help="Use the in-memory store and lock")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)

    asyncio.run(_serve(settings, once=args.once, dry_run=args.dry_run))
    return 0


if __name__ == "__main__":
    sys.exit(main())
