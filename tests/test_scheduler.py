"""
Tests for the run guard and the UPH scheduler.
"""
import time

import pytest

from core.scheduling.guard import CalculationBusyError, RunGuard
from core.scheduling.incremental import IncrementalCalculator
from core.scheduling.scheduler import UphScheduler


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def scheduler(jane_doe_source, store, pipeline, guard, clock):
    calculator = IncrementalCalculator(jane_doe_source, store, pipeline, batch_size=2, clock=clock)
    sched = UphScheduler(calculator, guard=guard, interval_hours=6)
    yield sched
    sched.stop()


class TestRunGuard:
    """Single-flight lease with timeout."""

    def test_second_acquire_is_refused(self, guard):
        first = guard.try_acquire("incremental")

        assert first is not None
        assert guard.try_acquire("recalculate") is None
        assert guard.is_busy()

        guard.release(first)
        assert not guard.is_busy()

    def test_expired_lease_is_superseded(self):
        now = [0.0]
        guard = RunGuard(timeout_seconds=60, clock=lambda: now[0])
        stale = guard.try_acquire("incremental")

        now[0] = 61.0
        fresh = guard.try_acquire("incremental")

        assert fresh is not None
        assert stale.superseded
        assert stale.should_stop()

        guard.release(stale)
        assert guard.current is fresh

    def test_hold_raises_when_busy(self, guard):
        guard.try_acquire("incremental")

        with pytest.raises(CalculationBusyError):
            with guard.hold("recalculate"):
                pass

    def test_hold_releases(self, guard):
        with guard.hold("recalculate") as handle:
            assert guard.current is handle
        assert guard.current is None

    def test_cancel_current(self, guard):
        assert not guard.cancel_current()
        handle = guard.try_acquire()
        assert guard.cancel_current()
        assert handle.cancelled


class TestUphScheduler:
    """Scheduled and on-demand triggers."""

    def test_trigger_now(self, scheduler, store, fixed_now):
        result = scheduler.trigger_now()

        assert result.status == "completed"
        assert result.summary.high_water_mark == 3
        assert store.get_high_water_mark() == 3

        status = scheduler.get_status()
        assert status["last_run_time"] == fixed_now
        assert status["last_result"]["status"] == "completed"
        assert not status["is_running"]

    def test_trigger_busy(self, scheduler, guard):
        guard.try_acquire("recalculate")

        result = scheduler.trigger_now()

        assert result.status == "busy"
        assert result.summary is None

    def test_trigger_in_background(self, scheduler):
        result = scheduler.trigger_now(background=True)

        assert result.status == "started"
        assert _wait_for(lambda: scheduler.get_status()["last_result"] is not None)
        assert scheduler.get_status()["last_result"]["status"] == "completed"

    def test_forced_trigger(self, scheduler, store):
        scheduler.trigger_now()

        result = scheduler.trigger_now(force=True)

        assert result.summary.forced
        assert store.get("Jane Doe", "Assembly", "Model-X").observation_count == 2

    def test_start_and_stop(self, scheduler):
        assert scheduler.start(interval_hours=1000, run_immediately=True)
        assert not scheduler.start()
        assert scheduler.get_status()["is_scheduled"]
        assert _wait_for(lambda: scheduler.get_status()["last_result"] is not None)

        scheduler.stop()

        status = scheduler.get_status()
        assert not status["is_scheduled"]
        assert status["interval_hours"] == 1000

    def test_invalid_interval(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.start(interval_hours=0)

    def test_request_cancel(self, scheduler, guard):
        assert not scheduler.request_cancel()

        handle = guard.try_acquire("incremental")

        assert scheduler.request_cancel()
        assert handle.cancelled

    def test_trigger_result_dict(self, scheduler):
        data = scheduler.trigger_now().to_dict()

        assert data["status"] == "completed"
        assert data["summary"]["batches"] == 2
