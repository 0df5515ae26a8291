"""
Run Guard

Single-flight lock shared by the scheduler, manual triggers and guarded
recalculations. A run holds a lease with a deadline; once the deadline
has passed a new run may supersede it, and the stale run stops at its
next batch boundary.
"""

import itertools
import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class CalculationBusyError(RuntimeError):
    """Raised when a guarded calculation starts while another is active."""


class RunHandle:
    """Lease held by one active calculation run."""

    def __init__(self, run_id: int, kind: str, started_at: float, timeout_seconds: Optional[float]):
        self.run_id = run_id
        self.kind = kind
        self.started_at = started_at
        self.deadline = started_at + timeout_seconds if timeout_seconds else None
        self.superseded = False
        self._cancel = threading.Event()

    def cancel(self):
        """Ask the run to stop at its next batch boundary."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def expired(self, now: float) -> bool:
        return self.deadline is not None and now >= self.deadline

    def should_stop(self) -> bool:
        return self.cancelled or self.superseded

    def __repr__(self) -> str:
        return f"RunHandle(id={self.run_id}, kind={self.kind})"


class RunGuard:
    """
    Shared single-flight guard.

    Args:
        timeout_seconds: Lease length; None disables superseding
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(self, timeout_seconds: Optional[float] = 3600.0, clock: Callable[[], float] = time.monotonic):
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._current: Optional[RunHandle] = None
        self._ids = itertools.count(1)

    def try_acquire(self, kind: str = "run") -> Optional[RunHandle]:
        """
        Start a run if none is active.

        Returns:
            RunHandle, or None when another unexpired run holds the guard
        """
        with self._lock:
            now = self.clock()
            current = self._current

            if current is not None:
                if not current.expired(now):
                    return None
                current.superseded = True
                current.cancel()
                logger.warning(
                    f"{current} exceeded its {self.timeout_seconds:.0f}s timeout and was superseded"
                )

            handle = RunHandle(next(self._ids), kind, now, self.timeout_seconds)
            self._current = handle
            return handle

    def release(self, handle: RunHandle):
        """Release the guard if `handle` still holds it."""
        with self._lock:
            if self._current is handle:
                self._current = None

    @contextmanager
    def hold(self, kind: str = "run"):
        """
        Hold the guard for the duration of a block.

        Raises:
            CalculationBusyError: If another run is active
        """
        handle = self.try_acquire(kind)
        if handle is None:
            raise CalculationBusyError(f"A calculation is already running ({self.current})")
        try:
            yield handle
        finally:
            self.release(handle)

    @property
    def current(self) -> Optional[RunHandle]:
        with self._lock:
            return self._current

    def is_busy(self) -> bool:
        with self._lock:
            return self._current is not None and not self._current.expired(self.clock())

    def cancel_current(self) -> bool:
        """Request cancellation of the active run. Returns False when idle."""
        with self._lock:
            if self._current is None:
                return False
            self._current.cancel()
            return True
