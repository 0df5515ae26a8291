"""
UPH Service

Public entry point of the rate engine: full recalculation into the rate
store, rate lookups with a fallback chain, per-order detail, hour
estimates and audit reports.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional

import pandas as pd
import pytz

from core.calculations.aggregates import combine_rates
from core.calculations.models import AggregateRate, RateObservation
from core.calculations.pipeline import PassResult, UphPipeline
from core.calculations.work_centers import parse_work_center
from core.db.rate_store import RateScope, RateStore
from core.db.sources import EventSource, SourceSnapshot
from core.scheduling.guard import RunGuard
from core.time_windows.models import CalculationWindow, DEFAULT_WINDOW_DAYS, OperatorWindowSettings

from .data_quality import LOW_RATE_THRESHOLD, RateAnomaly, build_anomaly_report, find_suspect_events

logger = logging.getLogger(__name__)


RESOLUTION_EXACT = "exact"
RESOLUTION_OPERATOR_WORK_CENTER = "operator_work_center"
RESOLUTION_WORK_CENTER_ROUTING = "work_center_routing"
RESOLUTION_WORK_CENTER = "work_center"


class UphService:
    """
    Rate engine facade over an EventSource and a RateStore.

    Args:
        source: Event feed, orders and operator settings
        store: Rate cache
        pipeline: Calculation pass (default settings when omitted)
        guard: Single-flight guard, shared with a UphScheduler over the same store
        default_window_days: Window for operators without a setting
        clock: Returns the current aware datetime
    """

    def __init__(
        self,
        source: EventSource,
        store: RateStore,
        pipeline: Optional[UphPipeline] = None,
        guard: Optional[RunGuard] = None,
        default_window_days: int = DEFAULT_WINDOW_DAYS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.source = source
        self.store = store
        self.pipeline = pipeline or UphPipeline()
        self.guard = guard or RunGuard()
        self.default_window_days = default_window_days
        self.clock = clock or (lambda: datetime.now(pytz.timezone(self.pipeline.settings.timezone)))
        self.last_result: Optional[PassResult] = None

    def _operator_windows(self, snapshot: SourceSnapshot) -> OperatorWindowSettings:
        return OperatorWindowSettings(
            windows=snapshot.operator_windows,
            default_days=self.default_window_days,
            timezone=self.pipeline.settings.timezone,
        )

    def _run_pass(
        self,
        window: CalculationWindow,
        operator: Optional[str] = None,
        work_center: Optional[str] = None,
        routing: Optional[str] = None,
    ):
        snapshot = self.source.snapshot()
        events = self.source.load_events(after_id=0, up_to_id=snapshot.max_event_id)

        result = self.pipeline.run(
            events,
            snapshot.orders,
            window=window,
            operator_windows=self._operator_windows(snapshot),
            now=self.clock(),
            operator=operator,
            work_center=work_center,
            routing=routing,
        )
        return result, snapshot

    def recalculate(
        self,
        operator_filter: Optional[str] = None,
        work_center_filter: Optional[str] = None,
        routing_filter: Optional[str] = None,
        window_days: Optional[int] = None,
        bypass_date_filter: bool = False,
    ) -> List[AggregateRate]:
        """
        Recalculate rates from the event history and replace them in the store.

        Only rates inside the filter scope are replaced. An unfiltered
        recalculation replaces every rate and moves the high-water-mark to
        the last event it read.

        Args:
            operator_filter: Only this operator
            work_center_filter: Only this canonical work center
            routing_filter: Only this routing
            window_days: Window override for every operator
            bypass_date_filter: Use the full history

        Returns:
            The recalculated AggregateRate list

        Raises:
            CalculationBusyError: If another calculation is running
            ValueError: On an unknown work center or non-positive window
        """
        window = CalculationWindow(window_days=window_days, bypass=bypass_date_filter)
        scope = RateScope(operator_filter, work_center_filter, routing_filter)

        with self.guard.hold("recalculate"):
            logger.info(f"Recalculating UPH: scope={scope}, window={window}")

            result, snapshot = self._run_pass(
                window, scope.operator_name, scope.work_center, scope.routing
            )

            self.store.replace_all(
                result.aggregates,
                scope=scope,
                high_water_mark=snapshot.max_event_id if scope.is_everything else None,
            )
            self.last_result = result

        logger.info(
            f"Recalculation stored {len(result.aggregates)} rates from "
            f"{len(result.observations)} order rates"
        )
        return result.aggregates

    def lookup(
        self,
        operator_name: Optional[str],
        work_center: str,
        routing: Optional[str],
    ) -> Optional[AggregateRate]:
        """
        Find the best available rate.

        Fallback chain:
        1. exact operator + work center + routing
        2. same operator, every routing in the work center (averaged)
        3. every operator in the work center: that routing when anyone has
           it, otherwise every routing (averaged)
        4. None

        Returns:
            AggregateRate with `resolution` naming the level used, or None
            when no estimate is possible
        """
        work_center = parse_work_center(work_center).value
        operator_name = operator_name.strip() if operator_name else None
        routing = routing.strip() if routing else None

        if operator_name and routing:
            exact = self.store.get(operator_name, work_center, routing)
            if exact is not None:
                return replace(exact, resolution=RESOLUTION_EXACT)

        if operator_name:
            rates = self.store.list_rates(operator_name=operator_name, work_center=work_center)
            if rates:
                return combine_rates(rates, operator_name, work_center, None, RESOLUTION_OPERATOR_WORK_CENTER)

        if routing:
            rates = self.store.list_rates(work_center=work_center, routing=routing)
            if rates:
                return combine_rates(rates, None, work_center, routing, RESOLUTION_WORK_CENTER_ROUTING)

        rates = self.store.list_rates(work_center=work_center)
        if rates:
            return combine_rates(rates, None, work_center, None, RESOLUTION_WORK_CENTER)

        logger.debug(f"No rate for operator={operator_name}, work_center={work_center}, routing={routing}")
        return None

    def get_observation_detail(
        self,
        operator_name: str,
        work_center: str,
        routing: str,
        window_days: Optional[int] = None,
        bypass_date_filter: bool = False,
    ) -> List[RateObservation]:
        """
        List the order rates behind one rate, including rejected outliers.

        Returns:
            RateObservation list (status 'included' or 'outlier'), newest first
        """
        window = CalculationWindow(window_days=window_days, bypass=bypass_date_filter)
        result, _ = self._run_pass(window, operator_name, parse_work_center(work_center).value, routing)

        observations = result.all_observations
        observations.sort(key=lambda o: o.order_id)
        observations.sort(
            key=lambda o: o.reference_date.timestamp() if o.reference_date is not None else float('-inf'),
            reverse=True,
        )
        return observations

    def estimate_hours(
        self,
        operator_name: Optional[str],
        work_center: str,
        routing: Optional[str],
        quantity: float,
    ) -> Optional[float]:
        """
        Estimate hours needed for a quantity from the looked-up rate.

        Returns:
            quantity / average_rate, or None when no rate is available
        """
        if quantity is None or quantity < 0:
            raise ValueError(f"quantity must be >= 0, got {quantity}")

        rate = self.lookup(operator_name, work_center, routing)
        if rate is None or rate.average_rate <= 0:
            return None
        return quantity / rate.average_rate

    def summarize_work_centers(self) -> pd.DataFrame:
        """
        Summarize cached rates per work center.

        Returns:
            DataFrame with work_center, operators, routings, mean_rate and
            observations
        """
        columns = ['work_center', 'operators', 'routings', 'mean_rate', 'observations']
        rates = self.store.list_rates()
        if not rates:
            return pd.DataFrame(columns=columns)

        df = pd.DataFrame([r.to_dict() for r in rates])
        summary = (
            df.groupby('work_center')
            .agg(
                operators=('operator_name', 'nunique'),
                routings=('routing', 'nunique'),
                mean_rate=('average_rate', 'mean'),
                observations=('observation_count', 'sum'),
            )
            .reset_index()
        )
        return summary[columns]

    def get_anomaly_report(
        self,
        window_days: Optional[int] = None,
        bypass_date_filter: bool = False,
        low_threshold: float = LOW_RATE_THRESHOLD,
    ) -> List[RateAnomaly]:
        """Run a read-only pass and list the order rates that look wrong."""
        window = CalculationWindow(window_days=window_days, bypass=bypass_date_filter)
        result, _ = self._run_pass(window)
        return build_anomaly_report(result, self.pipeline.settings.rate_ceilings, low_threshold)

    def find_suspect_events(self) -> pd.DataFrame:
        """Flag events in the feed that look like import or clock artefacts."""
        return find_suspect_events(self.source.load_events(after_id=0))
