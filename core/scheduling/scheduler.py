"""
UPH Scheduler

Recurring background trigger plus on-demand trigger for incremental
recalculation. All triggers share one RunGuard, so a trigger arriving
while a run is active gets "busy" instead of a second concurrent run.

Each UphScheduler owns its own state; several may coexist (one per store).
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from .guard import RunGuard
from .incremental import IncrementalCalculator, PassSummary, STATUS_BUSY

logger = logging.getLogger(__name__)


DEFAULT_INTERVAL_HOURS = 6.0

STATUS_STARTED = "started"


@dataclass
class TriggerResult:
    """Answer to a trigger: busy, started (background) or the finished run's status"""
    status: str
    summary: Optional[PassSummary] = None
    message: str = ""

    def to_dict(self) -> Dict:
        return {
            'status': self.status,
            'message': self.message,
            'summary': self.summary.to_dict() if self.summary else None,
        }


class UphScheduler:
    """
    Periodic and on-demand incremental recalculation.

    Args:
        calculator: Incremental batch processor
        guard: Single-flight guard shared with other callers
               (e.g. a UphService over the same store)
        interval_hours: Default interval for start()
    """

    def __init__(
        self,
        calculator: IncrementalCalculator,
        guard: Optional[RunGuard] = None,
        interval_hours: float = DEFAULT_INTERVAL_HOURS,
    ):
        self.calculator = calculator
        self.guard = guard or RunGuard()
        self.interval_hours = interval_hours

        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_run_time: Optional[datetime] = None
        self._last_result: Optional[PassSummary] = None

    def start(self, interval_hours: Optional[float] = None, run_immediately: bool = False) -> bool:
        """
        Start the recurring trigger on a daemon thread.

        Args:
            interval_hours: Hours between runs (defaults to the constructor value)
            run_immediately: Run once right away instead of after the first interval

        Returns:
            False if the scheduler was already running
        """
        if interval_hours is not None:
            if interval_hours <= 0:
                raise ValueError(f"interval_hours must be positive, got {interval_hours}")
            self.interval_hours = interval_hours

        with self._state_lock:
            if self._thread is not None and self._thread.is_alive():
                logger.info("Scheduler already running")
                return False

            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._loop,
                args=(self._stop_event, self.interval_hours * 3600.0, run_immediately),
                name="uph-scheduler",
                daemon=True,
            )
            self._thread.start()

        logger.info(f"Scheduler started: every {self.interval_hours:g}h")
        return True

    def stop(self, timeout: float = 5.0):
        """Stop the recurring trigger. An active run finishes its current batch."""
        with self._state_lock:
            thread = self._thread
            self._stop_event.set()
            self._thread = None

        if thread is not None:
            thread.join(timeout=timeout)
            logger.info("Scheduler stopped")

    def _loop(self, stop_event: threading.Event, interval_seconds: float, run_immediately: bool):
        if run_immediately and not stop_event.is_set():
            self._scheduled_run()
        while not stop_event.wait(interval_seconds):
            self._scheduled_run()

    def _scheduled_run(self):
        result = self.trigger_now(force=False)
        if result.status == STATUS_BUSY:
            logger.info("Scheduled run skipped: a calculation is already running")

    def trigger_now(self, force: bool = False, background: bool = False) -> TriggerResult:
        """
        Run an incremental (or forced full) recalculation now.

        Args:
            force: Clear the cache and reprocess all history
            background: Return immediately with status "started"

        Returns:
            TriggerResult; status "busy" when another run is active
        """
        handle = self.guard.try_acquire("force" if force else "incremental")
        if handle is None:
            return TriggerResult(status=STATUS_BUSY, message="A calculation is already running")

        if background:
            threading.Thread(
                target=self._execute,
                args=(handle, force),
                name="uph-trigger",
                daemon=True,
            ).start()
            return TriggerResult(status=STATUS_STARTED, message="Calculation started")

        summary = self._execute(handle, force)
        return TriggerResult(status=summary.status, summary=summary)

    def _execute(self, handle, force: bool) -> PassSummary:
        try:
            summary = self.calculator.run(force=force, handle=handle)
        finally:
            self.guard.release(handle)

        with self._state_lock:
            self._last_run_time = summary.finished_at
            self._last_result = summary
        return summary

    def request_cancel(self) -> bool:
        """Ask the active run to stop at its next batch boundary."""
        cancelled = self.guard.cancel_current()
        if cancelled:
            logger.info("Cancellation requested for active run")
        return cancelled

    def get_status(self) -> Dict:
        """
        Get scheduler status.

        Returns:
            Dictionary with is_running, is_scheduled, interval_hours,
            last_run_time and last_result
        """
        with self._state_lock:
            is_scheduled = self._thread is not None and self._thread.is_alive()
            last_result = self._last_result
            return {
                'is_running': self.guard.is_busy(),
                'is_scheduled': is_scheduled,
                'interval_hours': self.interval_hours,
                'last_run_time': self._last_run_time,
                'last_result': last_result.to_dict() if last_result else None,
            }
