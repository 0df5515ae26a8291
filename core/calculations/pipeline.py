"""
UPH Calculation Pipeline

The single pass used by full recalculation and incremental batches:

    raw events -> validate & normalize -> time window -> sum durations
    -> join order quantity -> order rate -> ceiling -> outlier filter -> average

Each stage is an injectable callable so tests and callers can replace one
step without forking the pass.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

import pandas as pd
import pytz

from config import Config
from core.time_windows.filters import filter_events_by_window
from core.time_windows.models import CalculationWindow, OperatorWindowSettings

from .aggregates import average_observations
from .durations import RoutingPolicy, UNKNOWN_ROUTING, aggregate_durations, filter_valid_events
from .models import AggregateRate, RateObservation, SkipCounts
from .outliers import (
    DEFAULT_MAX_REJECTION_FRACTION,
    DEFAULT_MIN_GROUP_SIZE,
    DEFAULT_SIGMA,
    filter_observation_groups,
)
from .rates import DEFAULT_RATE_CEILINGS, MIN_DURATION_SECONDS, build_quantity_lookup, calculate_order_rates
from .work_centers import normalize_work_center, parse_work_center

logger = logging.getLogger(__name__)


@dataclass
class CalculationSettings:
    """Tunable parameters of a calculation pass"""
    min_duration_seconds: float = MIN_DURATION_SECONDS
    rate_ceilings: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_RATE_CEILINGS))
    outlier_sigma: float = DEFAULT_SIGMA
    outlier_max_rejection: float = DEFAULT_MAX_REJECTION_FRACTION
    outlier_min_group: int = DEFAULT_MIN_GROUP_SIZE
    routing_policy: RoutingPolicy = RoutingPolicy.BUCKET
    unknown_routing: str = UNKNOWN_ROUTING
    timezone: str = "UTC"

    def __post_init__(self):
        """Validate settings"""
        if self.min_duration_seconds < 0:
            raise ValueError(f"min_duration_seconds must be >= 0, got {self.min_duration_seconds}")
        if self.outlier_sigma <= 0:
            raise ValueError(f"outlier_sigma must be positive, got {self.outlier_sigma}")
        if not 0 <= self.outlier_max_rejection <= 1:
            raise ValueError(
                f"outlier_max_rejection must be between 0 and 1, got {self.outlier_max_rejection}"
            )
        for work_center, ceiling in self.rate_ceilings.items():
            if ceiling <= 0:
                raise ValueError(f"Ceiling for {work_center} must be positive, got {ceiling}")
        self.routing_policy = RoutingPolicy(self.routing_policy)

    @classmethod
    def from_config(cls, config=Config) -> 'CalculationSettings':
        """Build settings from environment configuration"""
        return cls(
            min_duration_seconds=config.MIN_DURATION_SECONDS,
            rate_ceilings=dict(config.RATE_CEILINGS),
            outlier_sigma=config.OUTLIER_SIGMA,
            outlier_max_rejection=config.OUTLIER_MAX_REJECTION,
            outlier_min_group=config.OUTLIER_MIN_GROUP,
            routing_policy=RoutingPolicy(config.ROUTING_POLICY),
            unknown_routing=config.UNKNOWN_ROUTING,
            timezone=config.TIMEZONE,
        )


@dataclass
class PassResult:
    """Everything a calculation pass produced"""
    aggregates: List[AggregateRate] = field(default_factory=list)
    observations: List[RateObservation] = field(default_factory=list)
    outliers: List[RateObservation] = field(default_factory=list)
    ceiling_rejections: List[RateObservation] = field(default_factory=list)
    skips: SkipCounts = field(default_factory=SkipCounts)
    event_count: int = 0

    @property
    def all_observations(self) -> List[RateObservation]:
        """Included and outlier observations (ceiling drops excluded)"""
        return self.observations + self.outliers

    def summary(self) -> Dict:
        return {
            'events': self.event_count,
            'rates': len(self.aggregates),
            'observations': len(self.observations),
            'outliers': len(self.outliers),
            'above_ceiling': len(self.ceiling_rejections),
            'skipped': self.skips.to_dict(),
        }


class UphPipeline:
    """
    Canonical UPH calculation pass.

    Stages (all optional overrides):
        normalizer: raw work center label -> category or None
        validator: (events_df, orders_df, normalizer, policy, sentinel) -> (prepared_df, SkipCounts)
        window_filter: (prepared_df, window, operator_windows, now) -> (df, excluded)
        aggregator: prepared_df -> aggregated_df
        rate_calculator: (aggregated_df, quantities, min_duration, ceilings) -> RateCalculationResult
        outlier_filter: (observations, sigma, max_rejection, min_group) -> OutlierFilterResult
        averager: (observations, calculated_at) -> List[AggregateRate]
    """

    def __init__(
        self,
        settings: Optional[CalculationSettings] = None,
        normalizer: Callable = normalize_work_center,
        validator: Callable = filter_valid_events,
        window_filter: Callable = filter_events_by_window,
        aggregator: Callable = aggregate_durations,
        rate_calculator: Callable = calculate_order_rates,
        outlier_filter: Callable = filter_observation_groups,
        averager: Callable = average_observations,
    ):
        self.settings = settings or CalculationSettings()
        self.normalizer = normalizer
        self.validator = validator
        self.window_filter = window_filter
        self.aggregator = aggregator
        self.rate_calculator = rate_calculator
        self.outlier_filter = outlier_filter
        self.averager = averager

    def run(
        self,
        events_df: pd.DataFrame,
        orders_df: Optional[pd.DataFrame] = None,
        window: Optional[CalculationWindow] = None,
        operator_windows: Optional[OperatorWindowSettings] = None,
        now: Optional[datetime] = None,
        operator: Optional[str] = None,
        work_center: Optional[str] = None,
        routing: Optional[str] = None,
    ) -> PassResult:
        """
        Run one calculation pass.

        Args:
            events_df: Raw events (see models.EVENT_COLUMNS)
            orders_df: Orders (see models.ORDER_COLUMNS)
            window: Window override / bypass for this pass
            operator_windows: Per-operator window settings snapshot
            now: Reference time for window cutoffs and last_calculated
            operator: Only keep this operator's events
            work_center: Only keep this canonical work center
            routing: Only keep this routing

        Returns:
            PassResult with aggregates, observations and skip tallies
        """
        settings = self.settings
        if window is None:
            window = CalculationWindow.full_history()
        if operator_windows is None:
            operator_windows = OperatorWindowSettings(timezone=settings.timezone)
        if now is None:
            now = datetime.now(pytz.timezone(settings.timezone))

        event_count = 0 if events_df is None else len(events_df)

        prepared, skips = self.validator(
            events_df,
            orders_df,
            self.normalizer,
            settings.routing_policy,
            settings.unknown_routing,
        )

        prepared = self._apply_scope(prepared, operator, work_center, routing)

        prepared, outside_window = self.window_filter(prepared, window, operator_windows, now)
        skips.outside_window = outside_window

        aggregated = self.aggregator(prepared)

        rate_result = self.rate_calculator(
            aggregated,
            build_quantity_lookup(orders_df),
            settings.min_duration_seconds,
            settings.rate_ceilings,
        )
        skips = skips.merge(rate_result.skips)

        filtered = self.outlier_filter(
            rate_result.observations,
            settings.outlier_sigma,
            settings.outlier_max_rejection,
            settings.outlier_min_group,
        )

        aggregates = self.averager(filtered.kept, now)

        if skips.total:
            logger.info(f"Pass skipped {skips.total} records: {_nonzero(skips.to_dict())}")

        logger.info(
            f"Pass complete: {event_count} events -> {len(filtered.kept)} order rates "
            f"({len(filtered.rejected)} outliers) -> {len(aggregates)} aggregate rates"
        )

        return PassResult(
            aggregates=aggregates,
            observations=filtered.kept,
            outliers=filtered.rejected,
            ceiling_rejections=rate_result.ceiling_rejections,
            skips=skips,
            event_count=event_count,
        )

    @staticmethod
    def _apply_scope(
        prepared: pd.DataFrame,
        operator: Optional[str],
        work_center: Optional[str],
        routing: Optional[str],
    ) -> pd.DataFrame:
        """Restrict prepared events to the requested operator / work center / routing"""
        if prepared.empty:
            return prepared

        mask = pd.Series(True, index=prepared.index)
        if operator is not None:
            mask &= prepared['operator_name'] == operator.strip()
        if work_center is not None:
            mask &= prepared['work_center'] == parse_work_center(work_center).value
        if routing is not None:
            mask &= prepared['routing'] == routing.strip()

        return prepared.loc[mask].copy()


def _nonzero(counts: Dict[str, int]) -> Dict[str, int]:
    return {name: count for name, count in counts.items() if count}
