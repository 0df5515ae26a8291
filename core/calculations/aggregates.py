"""
Rate Aggregation

Turns filtered order rates into AggregateRate records and combines
AggregateRate records:
- average_observations: unweighted mean per (operator, work center, routing)
- merge_rates: weighted merge used by incremental passes
- combine_rates: plain mean used by lookup fallbacks
"""

from datetime import datetime
from typing import List, Optional

import numpy as np

from .models import AggregateRate, RateObservation, sort_rates
from .outliers import group_observations


def average_observations(
    observations: List[RateObservation],
    calculated_at: Optional[datetime] = None,
) -> List[AggregateRate]:
    """
    Average order rates per (operator, work center, routing).

    average_rate is the arithmetic mean of the order rates (not weighted by
    duration). total_quantity and total_hours are informational sums over
    the same observations.

    Args:
        observations: Observations that survived outlier filtering
        calculated_at: Timestamp recorded as last_calculated

    Returns:
        AggregateRate list sorted by operator, work center, routing
    """
    rates = []

    for (operator_name, work_center, routing), group in group_observations(observations).items():
        rates.append(AggregateRate(
            operator_name=operator_name,
            work_center=work_center,
            routing=routing,
            average_rate=float(np.mean([obs.rate for obs in group])),
            observation_count=len(group),
            total_quantity=float(sum(obs.quantity for obs in group)),
            total_hours=float(sum(obs.duration_hours for obs in group)),
            last_calculated=calculated_at,
        ))

    return sort_rates(rates)


def merge_rates(
    existing: Optional[AggregateRate],
    incoming: AggregateRate,
    calculated_at: Optional[datetime] = None,
) -> AggregateRate:
    """
    Merge an incremental result into a stored rate.

        new_avg = (old_avg * old_count + in_avg * in_count) / (old_count + in_count)

    Counts and totals are added.
    """
    if calculated_at is None:
        calculated_at = incoming.last_calculated

    if existing is None or existing.observation_count <= 0:
        return AggregateRate(
            operator_name=incoming.operator_name,
            work_center=incoming.work_center,
            routing=incoming.routing,
            average_rate=incoming.average_rate,
            observation_count=incoming.observation_count,
            total_quantity=incoming.total_quantity,
            total_hours=incoming.total_hours,
            last_calculated=calculated_at,
        )

    total_count = existing.observation_count + incoming.observation_count
    if incoming.observation_count <= 0:
        return existing

    merged_average = (
        existing.average_rate * existing.observation_count
        + incoming.average_rate * incoming.observation_count
    ) / total_count

    return AggregateRate(
        operator_name=existing.operator_name,
        work_center=existing.work_center,
        routing=existing.routing,
        average_rate=merged_average,
        observation_count=total_count,
        total_quantity=existing.total_quantity + incoming.total_quantity,
        total_hours=existing.total_hours + incoming.total_hours,
        last_calculated=calculated_at,
    )


def combine_rates(
    rates: List[AggregateRate],
    operator_name: Optional[str],
    work_center: str,
    routing: Optional[str],
    resolution: str,
) -> Optional[AggregateRate]:
    """
    Average several stored rates into one fallback estimate.

    average_rate is the unweighted mean of the candidates' averages;
    counts and totals are summed.
    """
    if not rates:
        return None

    timestamps = [r.last_calculated for r in rates if r.last_calculated is not None]

    return AggregateRate(
        operator_name=operator_name,
        work_center=work_center,
        routing=routing,
        average_rate=float(np.mean([r.average_rate for r in rates])),
        observation_count=sum(r.observation_count for r in rates),
        total_quantity=float(sum(r.total_quantity for r in rates)),
        total_hours=float(sum(r.total_hours for r in rates)),
        last_calculated=max(timestamps) if timestamps else None,
        resolution=resolution,
    )
