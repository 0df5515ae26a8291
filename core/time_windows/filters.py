"""
Time Window Filtering Utilities

Functions to filter prepared event DataFrames by calculation window.
"""

import logging
from datetime import datetime
from typing import Optional, Tuple

import pandas as pd

from .models import CalculationWindow, OperatorWindowSettings

logger = logging.getLogger(__name__)


def filter_events_by_window(
    df: pd.DataFrame,
    window: Optional[CalculationWindow] = None,
    operator_windows: Optional[OperatorWindowSettings] = None,
    now: Optional[datetime] = None,
    timestamp_column: str = 'reference_date'
) -> Tuple[pd.DataFrame, int]:
    """
    Filter events to those inside each operator's look-back window.

    An event is kept when its reference date is on or after
    now - window days. Events without any date are kept.

    Args:
        df: DataFrame with operator_name and timestamp column
        window: Pass window options (override / bypass)
        operator_windows: Per-operator window settings
        now: Reference time for the cutoff
        timestamp_column: Name of the datetime column to filter on

    Returns:
        Tuple of (filtered DataFrame, number of excluded rows)

    Example:
        >>> filtered, excluded = filter_events_by_window(prepared, CalculationWindow(window_days=7))
        >>> print(f"Excluded {excluded} events older than 7 days")
    """
    if window is None:
        window = CalculationWindow()
    if operator_windows is None:
        operator_windows = OperatorWindowSettings()

    if df.empty or window.bypass:
        return df, 0

    if timestamp_column not in df.columns:
        raise ValueError(
            f"Column '{timestamp_column}' not found in DataFrame. "
            f"Available columns: {list(df.columns)}"
        )

    timestamps = pd.to_datetime(df[timestamp_column], utc=True, errors='coerce')
    now = operator_windows.localize(now)

    cutoffs = {
        operator_name: pd.Timestamp(operator_windows.cutoff_for(operator_name, now, window.window_days))
        for operator_name in df['operator_name'].unique()
    }
    cutoff_series = df['operator_name'].map(cutoffs)
    cutoff_series = pd.to_datetime(cutoff_series, utc=True)

    mask = timestamps.isna() | (timestamps >= cutoff_series)
    excluded = int((~mask).sum())

    if excluded:
        logger.debug(f"Excluded {excluded} events outside calculation window ({window})")

    return df.loc[mask].copy(), excluded
