"""
Order-level Rate Calculation

Joins aggregated durations with authoritative order quantities and computes
one UPH value per (operator, work center, routing, order) group:

    rate = order_quantity / (total_duration_seconds / 3600)

The order quantity comes from the production order, never from per-event
quantities: one order has many events, and summing their quantities
double-counts.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pandas as pd

from .models import RateObservation, SkipCounts

logger = logging.getLogger(__name__)


MIN_DURATION_SECONDS = 120.0  # shorter totals are clock glitches

# Sanity ceilings in units per hour. Rates above are dropped, never clamped.
DEFAULT_RATE_CEILINGS: Dict[str, float] = {
    'Assembly': 150.0,
    'Cutting': 500.0,
    'Packaging': 300.0,
}


@dataclass
class RateCalculationResult:
    """Output of calculate_order_rates"""
    observations: List[RateObservation] = field(default_factory=list)
    ceiling_rejections: List[RateObservation] = field(default_factory=list)
    skips: SkipCounts = field(default_factory=SkipCounts)


def build_quantity_lookup(orders_df: Optional[pd.DataFrame]) -> Dict[str, float]:
    """
    Build an order_id -> quantity mapping from the order DataFrame.

    Order ids are compared as stripped strings; the last record wins.
    Orders without a numeric quantity map to NaN.
    """
    if orders_df is None or orders_df.empty:
        return {}

    lookup = {}
    quantities = pd.to_numeric(orders_df['quantity'], errors='coerce')
    for order_id, quantity in zip(orders_df['order_id'], quantities):
        if order_id is None or (not isinstance(order_id, str) and pd.isna(order_id)):
            continue
        if isinstance(order_id, float) and order_id.is_integer():
            order_id = int(order_id)
        key = str(order_id).strip()
        if key:
            lookup[key] = float(quantity)
    return lookup


def calculate_order_rates(
    aggregated_df: pd.DataFrame,
    order_quantities: Dict[str, float],
    min_duration_seconds: float = MIN_DURATION_SECONDS,
    rate_ceilings: Optional[Dict[str, float]] = None,
) -> RateCalculationResult:
    """
    Compute one RateObservation per aggregated order group.

    A group is skipped when:
    - its order is unknown (missing_order)
    - the order quantity is missing or <= 0 (non_positive_quantity)
    - the summed duration is <= 0 (non_positive_duration)
    - the summed duration is below min_duration_seconds (below_min_duration)
    - the rate exceeds the work center ceiling (above_ceiling, logged for audit)

    Args:
        aggregated_df: Output of durations.aggregate_durations
        order_quantities: order_id -> authoritative quantity
        min_duration_seconds: Duration floor for a group to count
        rate_ceilings: work center -> maximum plausible UPH
                       (defaults to DEFAULT_RATE_CEILINGS)

    Returns:
        RateCalculationResult with accepted observations, ceiling
        rejections and skip counts
    """
    if rate_ceilings is None:
        rate_ceilings = DEFAULT_RATE_CEILINGS

    result = RateCalculationResult()
    skips = result.skips

    if aggregated_df.empty:
        return result

    for row in aggregated_df.itertuples(index=False):
        if row.order_id not in order_quantities:
            skips.missing_order += 1
            continue

        quantity = order_quantities[row.order_id]
        if quantity is None or math.isnan(quantity) or quantity <= 0:
            skips.non_positive_quantity += 1
            continue

        duration = float(row.total_duration_seconds)
        if duration <= 0:
            skips.non_positive_duration += 1
            continue

        if duration < min_duration_seconds:
            skips.below_min_duration += 1
            continue

        reference_date = row.reference_date
        if reference_date is pd.NaT or (reference_date is not None and pd.isna(reference_date)):
            reference_date = None

        observation = RateObservation(
            operator_name=row.operator_name,
            work_center=row.work_center,
            routing=row.routing,
            order_id=row.order_id,
            total_duration_seconds=duration,
            quantity=float(quantity),
            event_count=int(row.event_count),
            reference_date=reference_date,
        )

        ceiling = rate_ceilings.get(row.work_center)
        if ceiling is not None and observation.rate > ceiling:
            skips.above_ceiling += 1
            observation.status = "above_ceiling"
            result.ceiling_rejections.append(observation)
            logger.warning(
                f"Dropped rate above {row.work_center} ceiling ({ceiling:.0f}/hr): "
                f"operator={row.operator_name}, routing={row.routing}, order={row.order_id}, "
                f"quantity={quantity:.0f}, hours={observation.duration_hours:.3f}, "
                f"rate={observation.rate:.2f}"
            )
            continue

        result.observations.append(observation)

    logger.info(
        f"Calculated {len(result.observations)} order rates "
        f"({len(result.ceiling_rejections)} above ceiling, {skips.total - skips.above_ceiling} groups skipped)"
    )
    return result
