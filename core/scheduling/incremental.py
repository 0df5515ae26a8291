"""
Incremental Recalculation

Processes events past the stored high-water-mark in bounded batches and
merges each batch into the rate store. A batch is committed together with
its high-water-mark advance, so a failure leaves the mark where it was and
the next run retries the same events.

Batches are cut by event id but calculated per whole order: every order a
batch touches is reloaded with all of its events up to the snapshot bound,
and orders already handled earlier in the run are skipped. A forced run
therefore stores the same rates as a full recalculation without a date
filter.

Orders still in progress when a run happens are merged again by the next
run with their full quantity. The earlier observation used that quantity
over only part of the hours, so it stays in the cache and biases the
incremental rate upward until the next full recalculation. A run that
fails after committing a widened batch can likewise merge an order twice
on retry. UphService.recalculate is the exact path.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional, Set

import pandas as pd
import pytz

from core.calculations.models import SkipCounts
from core.calculations.pipeline import UphPipeline
from core.db.rate_store import RateStore
from core.db.sources import EventSource
from core.time_windows.models import CalculationWindow, DEFAULT_WINDOW_DAYS, OperatorWindowSettings

from .guard import RunHandle

logger = logging.getLogger(__name__)


DEFAULT_BATCH_SIZE = 1000

STATUS_COMPLETED = "completed"
STATUS_UP_TO_DATE = "up_to_date"
STATUS_CANCELLED = "cancelled"
STATUS_SUPERSEDED = "superseded"
STATUS_FAILED = "failed"
STATUS_BUSY = "busy"


@dataclass
class PassSummary:
    """Outcome of one incremental or forced run"""
    status: str
    forced: bool = False
    batches: int = 0
    events_processed: int = 0
    rates_updated: int = 0
    start_high_water_mark: int = 0
    high_water_mark: int = 0
    target_event_id: int = 0
    skips: SkipCounts = field(default_factory=SkipCounts)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict:
        return {
            'status': self.status,
            'forced': self.forced,
            'batches': self.batches,
            'events_processed': self.events_processed,
            'rates_updated': self.rates_updated,
            'start_high_water_mark': self.start_high_water_mark,
            'high_water_mark': self.high_water_mark,
            'target_event_id': self.target_event_id,
            'skipped': self.skips.to_dict(),
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'duration_seconds': self.duration_seconds,
            'error': self.error,
        }


class IncrementalCalculator:
    """
    Batch processor for events past the high-water-mark.

    Args:
        source: Event feed, orders and operator settings
        store: Rate store holding rates and the high-water-mark
        pipeline: Calculation pass applied to every batch
        batch_size: Maximum events per batch
        window: Window options applied to every batch (per-operator by default)
        default_window_days: Window for operators without a setting
        clock: Returns the current aware datetime
    """

    def __init__(
        self,
        source: EventSource,
        store: RateStore,
        pipeline: Optional[UphPipeline] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        window: Optional[CalculationWindow] = None,
        default_window_days: int = DEFAULT_WINDOW_DAYS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        self.source = source
        self.store = store
        self.pipeline = pipeline or UphPipeline()
        self.batch_size = batch_size
        self.window = window or CalculationWindow()
        self.default_window_days = default_window_days
        self.clock = clock or (lambda: datetime.now(pytz.timezone(self.pipeline.settings.timezone)))

    def needs_recalculation(self) -> bool:
        """True when the feed holds events past the stored high-water-mark."""
        return self.source.max_event_id() > self.store.get_high_water_mark()

    def run(self, force: bool = False, handle: Optional[RunHandle] = None) -> PassSummary:
        """
        Process pending events in batches.

        Args:
            force: Clear the cache, reset the high-water-mark to zero and
                   reprocess all history
            handle: Guard lease; checked between batches for cancellation
                    or superseding

        Returns:
            PassSummary with status completed, up_to_date, cancelled,
            superseded or failed
        """
        summary = PassSummary(status=STATUS_COMPLETED, forced=force, started_at=self.clock())

        try:
            if force:
                logger.info("Force full recalculation: clearing rate cache and high-water-mark")
                self.store.reset()

            high_water_mark = self.store.get_high_water_mark()
            summary.start_high_water_mark = high_water_mark
            summary.high_water_mark = high_water_mark

            snapshot = self.source.snapshot()
            summary.target_event_id = snapshot.max_event_id

            if snapshot.max_event_id <= high_water_mark:
                logger.info(f"No events past high-water-mark {high_water_mark}")
                summary.status = STATUS_UP_TO_DATE
                return self._finish(summary)

            operator_windows = OperatorWindowSettings(
                windows=snapshot.operator_windows,
                default_days=self.default_window_days,
                timezone=self.pipeline.settings.timezone,
            )

            logger.info(
                f"Processing events {high_water_mark + 1}..{snapshot.max_event_id} "
                f"in batches of {self.batch_size}"
            )

            processed_orders: Set[str] = set()
            while high_water_mark < snapshot.max_event_id:
                if handle is not None and handle.should_stop():
                    summary.status = STATUS_SUPERSEDED if handle.superseded else STATUS_CANCELLED
                    logger.info(f"Run stopped at high-water-mark {high_water_mark} ({summary.status})")
                    break

                events = self.source.load_events(
                    after_id=high_water_mark,
                    limit=self.batch_size,
                    up_to_id=snapshot.max_event_id,
                )
                new_high_water_mark = (
                    int(events['event_id'].max()) if not events.empty else snapshot.max_event_id
                )
                batch_events = self._complete_orders(events, processed_orders, snapshot.max_event_id)

                now = self.clock()
                result = self.pipeline.run(
                    batch_events,
                    snapshot.orders,
                    window=self.window,
                    operator_windows=operator_windows,
                    now=now,
                )

                committed = self.store.commit_batch(
                    result.aggregates,
                    expected_high_water_mark=high_water_mark,
                    new_high_water_mark=new_high_water_mark,
                    calculated_at=now,
                )
                if not committed:
                    summary.status = STATUS_SUPERSEDED
                    break

                high_water_mark = new_high_water_mark
                summary.high_water_mark = high_water_mark
                summary.batches += 1
                summary.events_processed += len(events)
                summary.rates_updated += len(result.aggregates)
                summary.skips = summary.skips.merge(result.skips)

                logger.info(
                    f"Batch {summary.batches}: {len(events)} events, "
                    f"{len(result.aggregates)} rates merged, high-water-mark {high_water_mark}"
                )

        except Exception as e:
            logger.error(f"Incremental recalculation failed at high-water-mark {summary.high_water_mark}: {e}", exc_info=True)
            summary.status = STATUS_FAILED
            summary.error = str(e)

        return self._finish(summary)

    def _complete_orders(self, events: pd.DataFrame, processed: Set[str], up_to_id: int) -> pd.DataFrame:
        """
        Widen a batch to the whole event history of the orders it touches.

        Orders already calculated earlier in the run are dropped from the
        batch; events without an order are kept so the pipeline tallies them.

        Args:
            events: Events loaded for this batch
            processed: Order ids handled earlier in the run, updated in place
            up_to_id: Snapshot upper event id

        Returns:
            DataFrame of events ordered by event_id
        """
        if events.empty:
            return events

        order_ids = events['order_id']
        has_order = order_ids.notna() & (order_ids.astype(str).str.strip() != '')
        new_orders = sorted({str(o) for o in order_ids[has_order]} - processed)
        orphans = events[~has_order]

        if not new_orders:
            return orphans.reset_index(drop=True)

        processed.update(new_orders)
        whole = self.source.load_order_events(new_orders, up_to_id)
        if orphans.empty:
            return whole.reset_index(drop=True)

        combined = pd.concat([orphans, whole], ignore_index=True)
        return combined.sort_values('event_id', kind='stable').reset_index(drop=True)

    def _finish(self, summary: PassSummary) -> PassSummary:
        summary.finished_at = self.clock()
        logger.info(
            f"Run {summary.status}: {summary.batches} batches, {summary.events_processed} events, "
            f"high-water-mark {summary.start_high_water_mark} -> {summary.high_water_mark}"
        )
        return summary
