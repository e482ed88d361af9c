"""
Finality Worker - Run Controller Tests

Lock lifecycle of the storage events finality job:
- Checkpoint read on acquire, written on release (also after failures)
- Contention and lock errors never touch the store
- Nothing escapes run()
"""

import asyncio
import logging
from datetime import timedelta

import pytest

from finality.core.errors import LockError, StoreError
from finality.jobs.storage_events import StorageEventsFinalityJob
from finality.models.schemas import EPOCH, JobCheckpoint, RunState
from finality.services.mocks.store import InMemoryLockCoordinator


JOB = "StorageEventsFinalityCron"


def millis(ts):
    return JobCheckpoint(last_timestamp=ts).to_raw_data()["lastTimestamp"]


class BrokenAcquireLock(InMemoryLockCoordinator):
    async def acquire(self, name, lease):
        raise LockError("connection refused")


class BrokenReleaseLock(InMemoryLockCoordinator):
    async def release(self, name, state):
        raise LockError("connection reset")


@pytest.fixture
def make_job(store, settings, now):
    def _make(lock):
        return StorageEventsFinalityJob.from_settings(store, lock, settings, clock=lambda: now)
    return _make


class TestCheckpointLifecycle:
    """Checkpoint read on acquire, persisted on release."""

    def test_first_run_starts_from_epoch(self, store, lock, make_job, make_event, caplog):
        caplog.set_level(logging.INFO)
        events = [make_event(minutes=i) for i in range(3)]
        job = make_job(lock)

        report = asyncio.run(job.run())

        assert report.locked
        assert report.started_from == EPOCH
        assert report.processed == 3
        assert report.error is None
        assert report.checkpoint_saved
        assert lock.states[JOB] == {"lastTimestamp": millis(events[-1].timestamp)}
        assert "cron has unknown lastTimestamp" in caplog.text
        assert "Starting StorageEventsFinalityCron cron job" in caplog.text
        assert "Stopping StorageEventsFinalityCron cron" in caplog.text
        assert not lock.is_locked(JOB)

    def test_prior_checkpoint_bounds_window(self, store, lock, make_job, make_event):
        old = make_event(minutes=0)
        at_checkpoint = make_event(minutes=10)
        newer = make_event(minutes=20)
        lock.states[JOB] = {"lastTimestamp": millis(at_checkpoint.timestamp), "other": "kept"}

        report = asyncio.run(make_job(lock).run())

        assert report.started_from == at_checkpoint.timestamp
        assert store.fetched == [at_checkpoint.id, newer.id]
        assert not store.events[old.id].processed
        assert lock.states[JOB] == {"lastTimestamp": millis(newer.timestamp)}

    def test_malformed_checkpoint_falls_back_to_epoch(self, lock, make_job, caplog):
        lock.states[JOB] = {"lastTimestamp": "not-a-number"}
        caplog.set_level(logging.WARNING)

        report = asyncio.run(make_job(lock).run())

        assert report.started_from == EPOCH
        assert "cron has unknown lastTimestamp" in caplog.text

    def test_checkpoint_does_not_move_without_events(self, lock, make_job, now):
        checkpoint = now - timedelta(hours=5)
        lock.states[JOB] = JobCheckpoint(last_timestamp=checkpoint).to_raw_data()

        report = asyncio.run(make_job(lock).run())

        assert report.processed == 0
        assert lock.states[JOB] == JobCheckpoint(last_timestamp=checkpoint).to_raw_data()

    def test_consecutive_runs_are_monotonic(self, lock, make_job, make_event):
        make_event(minutes=0)
        first = asyncio.run(make_job(lock).run())
        make_event(minutes=30)
        second = asyncio.run(make_job(lock).run())

        assert second.started_from == first.checkpoint
        assert second.checkpoint > first.checkpoint

    def test_successful_run_walks_state_machine(self, lock, make_job):
        job = make_job(lock)
        asyncio.run(job.run())
        assert job.state is RunState.IDLE
        assert job.transitions == [
            (RunState.IDLE, RunState.LOCK_PENDING),
            (RunState.LOCK_PENDING, RunState.RUNNING),
            (RunState.RUNNING, RunState.UNLOCK_PENDING),
            (RunState.UNLOCK_PENDING, RunState.IDLE),
        ]


class TestFailedRuns:
    """Errors end the run but the checkpoint is still persisted."""

    def test_store_failure_persists_last_good_checkpoint(self, store, lock, make_job, make_event, monkeypatch, caplog):
        events = [make_event(minutes=i) for i in range(5)]
        calls = {"n": 0}
        save = store.save_event_resolution

        async def flaky(event_id, success):
            calls["n"] += 1
            if calls["n"] == 3:
                raise StoreError("disk full")
            await save(event_id, success)

        monkeypatch.setattr(store, "save_event_resolution", flaky)
        caplog.set_level(logging.ERROR)

        report = asyncio.run(make_job(lock).run())

        assert report.error == "disk full"
        assert report.processed == 2
        assert report.checkpoint == events[1].timestamp
        assert report.checkpoint_saved
        assert lock.states[JOB] == {"lastTimestamp": millis(events[1].timestamp)}
        assert "Error running StorageEventsFinalityCron" in caplog.text
        assert all(not store.events[e.id].processed for e in events[2:])

    def test_processor_crash_still_releases(self, lock, make_job, now):
        job = make_job(lock)
        lock.states[JOB] = JobCheckpoint(last_timestamp=now - timedelta(hours=6)).to_raw_data()

        async def crash(checkpoint, max_duration):
            raise RuntimeError("unexpected")
        job.processor.process_window = crash

        report = asyncio.run(job.run())

        assert report.error == "unexpected"
        assert report.checkpoint_saved
        assert lock.states[JOB] == JobCheckpoint(last_timestamp=now - timedelta(hours=6)).to_raw_data()
        assert job.state is RunState.IDLE

    def test_release_failure_is_logged(self, store, make_job, make_event, now, caplog):
        make_event(minutes=0)
        lock = BrokenReleaseLock(clock=lambda: now)
        caplog.set_level(logging.ERROR)
        job = make_job(lock)

        report = asyncio.run(job.run())

        assert report.locked
        assert not report.checkpoint_saved
        assert "StorageEventsFinalityCron unlock failed, reason: connection reset" in caplog.text
        assert job.state is RunState.IDLE


class TestLockContention:
    """Only one holder processes the window."""

    def test_lock_error_skips_run(self, store, make_job, make_event, now, caplog):
        make_event(minutes=0)
        caplog.set_level(logging.ERROR)
        job = make_job(BrokenAcquireLock(clock=lambda: now))

        report = asyncio.run(job.run())

        assert not report.locked
        assert report.error == "connection refused"
        assert store.fetched == []
        assert "StorageEventsFinalityCron lock failed, reason: connection refused" in caplog.text
        assert job.state is RunState.IDLE

    def test_held_lock_is_already_running(self, store, lock, make_job, make_event, caplog):
        make_event(minutes=0)
        asyncio.run(lock.acquire(JOB, timedelta(minutes=10)))
        caplog.set_level(logging.WARNING)
        job = make_job(lock)

        report = asyncio.run(job.run())

        assert not report.locked
        assert report.error is None
        assert "StorageEventsFinalityCron already running" in caplog.text
        assert store.fetched == []
        assert store.event_saves == []
        assert lock.releases == []
        assert (RunState.LOCK_PENDING, RunState.LOCK_DENIED) in job.transitions

    def test_expired_lease_is_taken_over(self, store, make_job, make_event, now):
        clock = {"now": now}
        lock = InMemoryLockCoordinator(clock=lambda: clock["now"])
        event = make_event(minutes=0)
        asyncio.run(lock.acquire(JOB, timedelta(minutes=10)))  # holder crashed

        clock["now"] = now + timedelta(minutes=11)
        report = asyncio.run(make_job(lock).run())

        assert report.locked
        assert store.events[event.id].processed

    def test_concurrent_triggers_process_once(self, store, lock, make_job, make_event, caplog):
        events = [make_event(minutes=i) for i in range(4)]
        caplog.set_level(logging.WARNING)

        async def both():
            return await asyncio.gather(make_job(lock).run(), make_job(lock).run())

        reports = asyncio.run(both())

        assert sorted(r.locked for r in reports) == [False, True]
        assert store.event_saves == [e.id for e in events]
        assert "already running" in caplog.text

    def test_same_instance_does_not_reenter(self, store, lock, make_job, make_event):
        make_event(minutes=0)
        job = make_job(lock)

        async def twice():
            return await asyncio.gather(job.run(), job.run())

        first, second = asyncio.run(twice())

        assert first.locked
        assert not second.locked
        assert len(lock.releases) == 1


class SlowAcquireLock(InMemoryLockCoordinator):
    async def acquire(self, name, lease):
        await asyncio.Event().wait()


class TestCancellation:
    """A cancelled run still hands the lock back."""

    def test_cancelled_window_releases_at_start(self, lock, make_job, now, caplog):
        job = make_job(lock)
        prior = JobCheckpoint(last_timestamp=now - timedelta(hours=6)).to_raw_data()
        lock.states[JOB] = prior
        caplog.set_level(logging.WARNING)

        async def hang(checkpoint, max_duration):
            await asyncio.Event().wait()
        job.processor.process_window = hang

        async def scenario():
            task = asyncio.create_task(job.run())
            await asyncio.sleep(0)
            assert job.state is RunState.RUNNING
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert job.state is RunState.IDLE
        assert not lock.is_locked(JOB)
        assert lock.states[JOB] == prior
        assert (RunState.RUNNING, RunState.UNLOCK_PENDING) in job.transitions
        assert "StorageEventsFinalityCron cancelled, checkpoint preserved" in caplog.text

    def test_cancelled_acquire_returns_to_idle(self, make_job, now):
        lock = SlowAcquireLock(clock=lambda: now)
        job = make_job(lock)

        async def scenario():
            task = asyncio.create_task(job.run())
            await asyncio.sleep(0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert job.state is RunState.IDLE
        assert lock.releases == []
