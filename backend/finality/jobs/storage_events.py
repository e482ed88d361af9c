"""
Finality Worker - Storage Events Finality Job

Run controller for the storage events window. Owns the lock lifecycle:

    IDLE → LOCK_PENDING → RUNNING → UNLOCK_PENDING → IDLE
                        ↘ LOCK_DENIED → IDLE

Rules:
    - Lock contention is expected, logged as a warning, and mutates nothing
    - The prior checkpoint comes from the lock payload (epoch if missing)
    - The checkpoint is written on release even when the run failed
    - Nothing raised by the lock or the window escapes run()
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from finality.core.config import Settings
from finality.models.schemas import (
    EPOCH,
    JobCheckpoint,
    RunReport,
    RunState,
    utc_now,
)
from finality.services.window_processor import WindowProcessor, WindowResult
from finality.store.base import EventStore, LockCoordinator

logger = logging.getLogger(__name__)


class StorageEventsFinalityJob:
    """
    Storage events finality run controller.

    Store and lock clients are injected once and reused across runs.
    """

    JOB_NAME = "StorageEventsFinalityCron"

    # Valid state transitions: current_state -> allowed_next_states
    VALID_TRANSITIONS: dict[RunState, set[RunState]] = {
        RunState.IDLE: {RunState.LOCK_PENDING},
        RunState.LOCK_PENDING: {RunState.RUNNING, RunState.LOCK_DENIED, RunState.IDLE},
        RunState.LOCK_DENIED: {RunState.IDLE},
        RunState.RUNNING: {RunState.UNLOCK_PENDING},
        RunState.UNLOCK_PENDING: {RunState.IDLE},
    }

    def __init__(
        self,
        lock: LockCoordinator,
        processor: WindowProcessor,
        max_run_time: timedelta,
        job_name: str = JOB_NAME,
    ) -> None:
        self.lock = lock
        self.processor = processor
        self.max_run_time = max_run_time
        self.job_name = job_name
        self._state: RunState = RunState.IDLE
        self._transition_log: list[tuple[RunState, RunState]] = []

    @classmethod
    def from_settings(
        cls,
        store: EventStore,
        lock: LockCoordinator,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> "StorageEventsFinalityJob":
        return cls(
            lock,
            WindowProcessor.from_settings(store, settings, clock=clock),
            max_run_time=settings.max_run_time,
            job_name=settings.JOB_NAME,
        )

    @property
    def state(self) -> RunState:
        """Current controller state."""
        return self._state

    @property
    def transitions(self) -> list[tuple[RunState, RunState]]:
        return list(self._transition_log)

    def _transition_to(self, target: RunState) -> None:
        if target not in self.VALID_TRANSITIONS.get(self._state, set()):
            raise RuntimeError(
                f"Invalid transition. Current state: {self._state.value}. "
                f"Target state {target.value} not reachable."
            )
        self._transition_log.append((self._state, target))
        self._state = target

    async def run(self) -> RunReport:
        """One scheduled tick: lock, process the window, unlock."""
        name = self.job_name
        report = RunReport(job_name=name)

        if self._state is not RunState.IDLE:
            logger.warning("%s already running", name)
            return self._finish(report)

        self._transition_to(RunState.LOCK_PENDING)
        try:
            lock_result = await self.lock.acquire(name, self.max_run_time)
        except Exception as e:
            logger.error("%s lock failed, reason: %s", name, e)
            report.error = str(e)
            self._transition_to(RunState.IDLE)
            return self._finish(report)
        except asyncio.CancelledError:
            self._transition_to(RunState.IDLE)
            raise

        if not lock_result.locked:
            self._transition_to(RunState.LOCK_DENIED)
            logger.warning("%s already running", name)
            self._transition_to(RunState.IDLE)
            return self._finish(report)

        report.locked = True
        logger.info("Starting %s cron job", name)

        start = self._prior_checkpoint(lock_result.prior_state)
        report.started_from = start

        self._transition_to(RunState.RUNNING)
        try:
            result = await self.processor.process_window(start, self.max_run_time)
        except Exception as e:
            result = WindowResult(checkpoint=start, error=e)
        except asyncio.CancelledError:
            # Progress inside the window is lost; hand the lock back at the start
            logger.warning("%s cancelled, checkpoint preserved at %s", name, start.isoformat())
            await self._release(report, start)
            raise

        report.checkpoint = result.checkpoint
        report.processed = result.processed
        self._log_outcome(result)

        await self._release(report, result.checkpoint)

        if result.error is not None:
            report.error = str(result.error) or type(result.error).__name__
        return self._finish(report)

    async def _release(self, report: RunReport, checkpoint: datetime) -> None:
        logger.info("Stopping %s cron", self.job_name)
        self._transition_to(RunState.UNLOCK_PENDING)
        try:
            await self.lock.release(self.job_name, JobCheckpoint(last_timestamp=checkpoint).to_raw_data())
            report.checkpoint_saved = True
        except Exception as e:
            logger.error("%s unlock failed, reason: %s", self.job_name, e)
        finally:
            self._transition_to(RunState.IDLE)

    def _prior_checkpoint(self, prior_state: Optional[dict]) -> datetime:
        checkpoint = JobCheckpoint.from_raw_data(prior_state)
        if checkpoint is None:
            logger.warning("%s cron has unknown lastTimestamp", self.job_name)
            return EPOCH
        return checkpoint.last_timestamp

    def _log_outcome(self, result: WindowResult) -> None:
        checkpoint = result.checkpoint.isoformat()
        if result.ok:
            logger.info(
                "%s run completed, processed %d events, advanced to %s",
                self.job_name, result.processed, checkpoint,
            )
            return
        message = str(result.error) or type(result.error).__name__
        logger.error(
            "Error running %s after %d events, reason: %s, checkpoint preserved at %s",
            self.job_name, result.processed, message, checkpoint,
        )

    def _finish(self, report: RunReport) -> RunReport:
        report.finished_at = utc_now()
        return report
