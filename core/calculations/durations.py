"""
Duration Aggregation

Validates raw time-tracking events and sums their durations per
(operator, work center, routing, order) group.

Events are excluded before aggregation when they are flagged corrupted,
lack an operator, work center or order, carry a non-positive duration, or
use a work center label that does not normalize. Exclusions are tallied in
SkipCounts, never raised.
"""

import logging
from enum import Enum
from typing import Callable, Optional, Tuple

import numpy as np
import pandas as pd

from .models import SkipCounts
from .work_centers import WorkCenter, normalize_work_center

logger = logging.getLogger(__name__)


GROUP_COLUMNS = ["operator_name", "work_center", "routing", "order_id"]

PREPARED_COLUMNS = [
    "event_id",
    "operator_name",
    "work_center",
    "routing",
    "order_id",
    "duration_seconds",
    "reference_date",
]

AGGREGATED_COLUMNS = GROUP_COLUMNS + ["total_duration_seconds", "event_count", "reference_date"]

UNKNOWN_ROUTING = "Unknown"


class RoutingPolicy(str, Enum):
    """
    What to do with an event whose routing is unknown.

    BUCKET assigns the sentinel routing ("Unknown"), which merges every
    product without a routing into a single bucket. REJECT excludes the
    event and tallies it as missing_routing.
    """
    BUCKET = "bucket"
    REJECT = "reject"


def _clean_text(value) -> Optional[str]:
    """Strip a text value; None for missing or blank values."""
    if value is None:
        return None
    if not isinstance(value, str) and pd.isna(value):
        return None
    if isinstance(value, (float, np.floating)) and float(value).is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def _clean_column(series: pd.Series) -> pd.Series:
    return series.map(_clean_text).astype(object)


def _to_utc(series: pd.Series) -> pd.Series:
    """Parse dates as UTC timestamps (naive values are taken as UTC)."""
    return pd.to_datetime(series, utc=True, errors='coerce')


def _index_orders(orders_df: Optional[pd.DataFrame]) -> pd.DataFrame:
    """Index orders by cleaned order_id, last record wins."""
    if orders_df is None or orders_df.empty:
        return pd.DataFrame(columns=["routing", "created_at", "quantity"])

    orders = orders_df.copy()
    orders['order_id'] = _clean_column(orders['order_id'])
    orders = orders.loc[orders['order_id'].notna()]
    orders = orders.drop_duplicates(subset='order_id', keep='last').copy()

    if 'routing' not in orders.columns:
        orders['routing'] = None
    if 'created_at' not in orders.columns:
        orders['created_at'] = None

    orders['routing'] = _clean_column(orders['routing'])
    return orders.set_index('order_id')


def empty_prepared_events() -> pd.DataFrame:
    return pd.DataFrame(columns=PREPARED_COLUMNS)


def filter_valid_events(
    events_df: pd.DataFrame,
    orders_df: Optional[pd.DataFrame] = None,
    normalizer: Callable = normalize_work_center,
    routing_policy: RoutingPolicy = RoutingPolicy.BUCKET,
    unknown_routing: str = UNKNOWN_ROUTING,
) -> Tuple[pd.DataFrame, SkipCounts]:
    """
    Validate raw events and resolve work center, routing and reference date.

    Routing resolution order: the order's routing, the event's routing name,
    then the routing policy. Reference date: the order's creation date,
    falling back to the event's effective date.

    Args:
        events_df: Raw event DataFrame (see models.EVENT_COLUMNS)
        orders_df: Order DataFrame (see models.ORDER_COLUMNS), used for
                   routing and reference date resolution
        normalizer: Callable mapping a raw work center label to a category
        routing_policy: Policy for events without any routing
        unknown_routing: Sentinel routing used by RoutingPolicy.BUCKET

    Returns:
        Tuple of (prepared DataFrame with PREPARED_COLUMNS, SkipCounts)
    """
    skips = SkipCounts()

    if events_df is None or events_df.empty:
        return empty_prepared_events(), skips

    df = events_df.copy()

    # Corrupted records are flagged upstream and never enter a pass
    if 'corrupted' in df.columns:
        corrupted = df['corrupted'].fillna(False).astype(bool)
        skips.corrupted = int(corrupted.sum())
        df = df.loc[~corrupted].copy()

    df['operator_name'] = _clean_column(df['operator_name'])
    missing = df['operator_name'].isna()
    skips.missing_operator = int(missing.sum())
    df = df.loc[~missing].copy()

    df['work_center_raw'] = _clean_column(df['work_center_raw'])
    missing = df['work_center_raw'].isna()
    skips.missing_work_center = int(missing.sum())
    df = df.loc[~missing].copy()

    df['duration_seconds'] = pd.to_numeric(df['duration_seconds'], errors='coerce')
    invalid = df['duration_seconds'].isna() | (df['duration_seconds'] <= 0)
    skips.non_positive_duration = int(invalid.sum())
    df = df.loc[~invalid].copy()

    def _normalize(label):
        category = normalizer(label)
        if isinstance(category, WorkCenter):
            return category.value
        return category

    df['work_center'] = df['work_center_raw'].map(_normalize).astype(object)
    unmapped = df['work_center'].isna()
    if unmapped.any():
        logger.debug(
            f"Unmapped work center labels: {sorted(df.loc[unmapped, 'work_center_raw'].unique())}"
        )
    skips.unmapped_work_center = int(unmapped.sum())
    df = df.loc[~unmapped].copy()

    df['order_id'] = _clean_column(df['order_id'])
    missing = df['order_id'].isna()
    skips.missing_order = int(missing.sum())
    df = df.loc[~missing].copy()

    if df.empty:
        return empty_prepared_events(), skips

    orders = _index_orders(orders_df)
    order_routing = df['order_id'].map(orders['routing']).astype(object)
    event_routing = _clean_column(df['routing_name']) if 'routing_name' in df.columns else None

    routing = order_routing.where(order_routing.notna(), event_routing)
    missing = routing.isna()

    if routing_policy == RoutingPolicy.REJECT:
        skips.missing_routing = int(missing.sum())
        df = df.loc[~missing].copy()
        routing = routing.loc[~missing]
    elif missing.any():
        logger.info(f"Assigning routing '{unknown_routing}' to {int(missing.sum())} events without routing")
        routing = routing.where(~missing, unknown_routing)

    df['routing'] = routing.astype(object)

    order_dates = _to_utc(df['order_id'].map(orders['created_at']))
    if 'effective_date' in df.columns:
        event_dates = _to_utc(df['effective_date'])
        df['reference_date'] = order_dates.where(order_dates.notna(), event_dates)
    else:
        df['reference_date'] = order_dates

    return df[PREPARED_COLUMNS].reset_index(drop=True), skips


def aggregate_durations(prepared_df: pd.DataFrame) -> pd.DataFrame:
    """
    Sum event durations per (operator, work center, routing, order).

    Durations are never merged across work centers: an order worked in
    Cutting and Assembly yields two separate groups.

    Args:
        prepared_df: Output of filter_valid_events

    Returns:
        DataFrame with AGGREGATED_COLUMNS, one row per group
    """
    if prepared_df.empty:
        return pd.DataFrame(columns=AGGREGATED_COLUMNS)

    grouped = (
        prepared_df
        .groupby(GROUP_COLUMNS, sort=True)
        .agg(
            total_duration_seconds=('duration_seconds', 'sum'),
            event_count=('duration_seconds', 'size'),
            reference_date=('reference_date', 'max'),
        )
        .reset_index()
    )

    logger.info(f"Aggregated {len(prepared_df)} events into {len(grouped)} order groups")
    return grouped[AGGREGATED_COLUMNS]
