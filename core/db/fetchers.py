"""
Data Fetching Module

This module contains the database fetching functions for the UPH engine:
time-tracking events, production orders and operator window settings.

Unlike display queries, a failed fetch is logged and re-raised: an empty
result would otherwise look like "no data" and wipe the rate cache.
"""

import logging
from typing import Dict, List, Optional

import pandas as pd

from core.calculations.models import EVENT_COLUMNS, ORDER_COLUMNS

from .pool import get_uph_connection
from .queries import secure_query_builder

logger = logging.getLogger(__name__)


def _to_dataframe(cursor, data, columns: List[str]) -> pd.DataFrame:
    """Build a DataFrame from cursor rows, keeping the expected column set."""
    if cursor.description:
        names = [desc[0] for desc in cursor.description]
    else:
        names = columns
    df = pd.DataFrame(data, columns=names)
    for column in columns:
        if column not in df.columns:
            df[column] = None
    return df[columns]


def _typed_events(df: pd.DataFrame) -> pd.DataFrame:
    # numeric columns arrive as Decimal / real
    df['duration_seconds'] = pd.to_numeric(df['duration_seconds'], errors='coerce')
    df['quantity_done'] = pd.to_numeric(df['quantity_done'], errors='coerce')
    df['corrupted'] = df['corrupted'].fillna(False).astype(bool)
    return df


def fetch_raw_events(
    after_id: int = 0,
    up_to_id: Optional[int] = None,
    limit: Optional[int] = None,
    connection_factory=get_uph_connection,
    query_builder=secure_query_builder,
) -> pd.DataFrame:
    """
    Fetch raw time-tracking events ordered by event id.

    Args:
        after_id: Only events with id > after_id
        up_to_id: Only events with id <= up_to_id
        limit: Maximum number of events

    Returns:
        DataFrame with EVENT_COLUMNS
    """
    logger.info(f"Fetching events after id {after_id} (up_to={up_to_id}, limit={limit})")

    try:
        with connection_factory() as conn:
            with conn.cursor() as cursor:
                query, parameters = query_builder.build_events_query(after_id, up_to_id, limit)
                cursor.execute(query, parameters)
                data = cursor.fetchall()
                df = _typed_events(_to_dataframe(cursor, data, EVENT_COLUMNS))

        logger.info(f"Successfully fetched {len(df)} events")
        return df

    except Exception as e:
        logger.error(f"Error fetching events after id {after_id}: {e}", exc_info=True)
        raise


def fetch_order_events(
    order_ids: List[str],
    up_to_id: int,
    connection_factory=get_uph_connection,
    query_builder=secure_query_builder,
) -> pd.DataFrame:
    """
    Fetch every event of the given orders, used to complete a batch.

    Args:
        order_ids: Order numbers touched by the batch
        up_to_id: Only events with id <= up_to_id

    Returns:
        DataFrame with EVENT_COLUMNS
    """
    try:
        with connection_factory() as conn:
            with conn.cursor() as cursor:
                query, parameters = query_builder.build_order_events_query(order_ids, up_to_id)
                cursor.execute(query, parameters)
                data = cursor.fetchall()
                df = _typed_events(_to_dataframe(cursor, data, EVENT_COLUMNS))

        logger.debug(f"Fetched {len(df)} events for {len(order_ids)} orders")
        return df

    except Exception as e:
        logger.error(f"Error fetching events for {len(order_ids)} orders: {e}", exc_info=True)
        raise


def fetch_max_event_id(connection_factory=get_uph_connection, query_builder=secure_query_builder) -> int:
    """Fetch the largest event id in the feed (0 when empty)."""
    try:
        with connection_factory() as conn:
            with conn.cursor() as cursor:
                query, parameters = query_builder.build_max_event_id_query()
                cursor.execute(query, parameters)
                row = cursor.fetchone()
        return int(row[0]) if row and row[0] is not None else 0

    except Exception as e:
        logger.error(f"Error fetching max event id: {e}", exc_info=True)
        raise


def fetch_orders(
    order_ids: Optional[List[str]] = None,
    connection_factory=get_uph_connection,
    query_builder=secure_query_builder,
) -> pd.DataFrame:
    """
    Fetch production orders with their authoritative quantities.

    Args:
        order_ids: Optional list of order numbers

    Returns:
        DataFrame with ORDER_COLUMNS
    """
    logger.info(f"Fetching production orders ({len(order_ids) if order_ids else 'all'})")

    try:
        with connection_factory() as conn:
            with conn.cursor() as cursor:
                query, parameters = query_builder.build_orders_query(order_ids)
                cursor.execute(query, parameters)
                data = cursor.fetchall()
                df = _to_dataframe(cursor, data, ORDER_COLUMNS)

        df['quantity'] = pd.to_numeric(df['quantity'], errors='coerce')

        logger.info(f"Successfully fetched {len(df)} production orders")
        return df

    except Exception as e:
        logger.error(f"Error fetching production orders: {e}", exc_info=True)
        raise


def fetch_operator_windows(
    connection_factory=get_uph_connection,
    query_builder=secure_query_builder,
) -> Dict[str, int]:
    """
    Fetch per-operator calculation windows.

    Returns:
        Dictionary operator_name -> window days (operators without a
        setting are omitted)
    """
    try:
        with connection_factory() as conn:
            with conn.cursor() as cursor:
                query, parameters = query_builder.build_operator_windows_query()
                cursor.execute(query, parameters)
                rows = cursor.fetchall()

        windows = {
            str(name).strip(): int(days)
            for name, days in rows
            if name is not None and days is not None
        }
        logger.info(f"Loaded calculation windows for {len(windows)} operators")
        return windows

    except Exception as e:
        logger.error(f"Error fetching operator windows: {e}", exc_info=True)
        raise
