"""
Formatting Utilities

Functions for formatting timestamps, rates and result tables for display.
"""

import logging
import pandas as pd
from datetime import datetime
from typing import List, Optional
from dateutil import parser as dateutil_parser

from core.calculations.models import AggregateRate, RateObservation

logger = logging.getLogger(__name__)


NO_DATA = "no data"

RATE_COLUMNS = [
    'operator_name', 'work_center', 'routing', 'average_rate',
    'observation_count', 'total_quantity', 'total_hours', 'last_calculated', 'resolution',
]

OBSERVATION_COLUMNS = [
    'order_id', 'operator_name', 'work_center', 'routing', 'quantity',
    'duration_hours', 'rate', 'event_count', 'reference_date', 'status',
]


def format_timestamp(iso_timestamp) -> str:
    """
    Convert ISO 8601 timestamp to readable format (YYYY-MM-DD HH:MM:SS), handling potential errors.

    Args:
        iso_timestamp: ISO timestamp string, datetime object, or None

    Returns:
        Formatted timestamp string or empty string if invalid
    """
    if iso_timestamp is None or (not isinstance(iso_timestamp, str) and pd.isna(iso_timestamp)):
        return ""
    if isinstance(iso_timestamp, str) and not iso_timestamp.strip():
        return ""
    try:
        if isinstance(iso_timestamp, datetime):
            return iso_timestamp.strftime("%Y-%m-%d %H:%M:%S")
        # isoparse accepts the 'Z' suffix for UTC
        dt_obj = dateutil_parser.isoparse(str(iso_timestamp))
        return dt_obj.strftime("%Y-%m-%d %H:%M:%S")

    except (ValueError, TypeError, OverflowError):
        return str(iso_timestamp)


def format_rate(rate: Optional[float], decimals: int = 1) -> str:
    """
    Format a units-per-hour value.

    A missing rate renders as "no data", never as zero.
    """
    if rate is None or pd.isna(rate):
        return NO_DATA
    return f"{rate:.{decimals}f}/hr"


def format_hours(hours: Optional[float]) -> str:
    """Format an hour estimate ("no data" when missing)."""
    if hours is None or pd.isna(hours):
        return NO_DATA
    return f"{hours:.2f}h"


def rates_to_dataframe(rates: List[AggregateRate]) -> pd.DataFrame:
    """
    Convert aggregate rates to a display table.

    Args:
        rates: AggregateRate list

    Returns:
        DataFrame with RATE_COLUMNS and last_calculated as text
    """
    if not rates:
        return pd.DataFrame(columns=RATE_COLUMNS)

    df = pd.DataFrame([r.to_dict() for r in rates], columns=RATE_COLUMNS)
    df['last_calculated'] = df['last_calculated'].map(format_timestamp)
    return df


def observations_to_dataframe(observations: List[RateObservation]) -> pd.DataFrame:
    """
    Convert order rates to a display table.

    Args:
        observations: RateObservation list

    Returns:
        DataFrame with OBSERVATION_COLUMNS and reference_date as text
    """
    if not observations:
        return pd.DataFrame(columns=OBSERVATION_COLUMNS)

    df = pd.DataFrame([o.to_dict() for o in observations])
    df = df[OBSERVATION_COLUMNS]
    df['reference_date'] = df['reference_date'].map(format_timestamp)
    return df
