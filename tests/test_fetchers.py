"""
Tests for the database fetchers and the Postgres event source.
"""
from contextlib import contextmanager
from decimal import Decimal
from unittest.mock import MagicMock

import psycopg2
import pytest

from core.calculations.models import EVENT_COLUMNS, ORDER_COLUMNS
from core.db.fetchers import (
    fetch_max_event_id,
    fetch_operator_windows,
    fetch_order_events,
    fetch_orders,
    fetch_raw_events,
)
from core.db.queries import SecureQueryBuilder
from core.db.sources import InMemoryEventSource, PostgresEventSource


@pytest.fixture
def cursor():
    return MagicMock()


@pytest.fixture
def connection_kwargs(cursor):
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor

    @contextmanager
    def factory():
        yield conn

    return {"connection_factory": factory, "query_builder": SecureQueryBuilder()}


class TestFetchRawEvents:

    def test_columns_and_types(self, cursor, connection_kwargs):
        cursor.description = [(name,) for name in EVENT_COLUMNS]
        cursor.fetchall.return_value = [
            (1, "Jane Doe", "Assembly", "Model-X", "MO1", "Build", Decimal("1800"), None, None, None),
        ]

        df = fetch_raw_events(after_id=0, limit=10, **connection_kwargs)

        assert list(df.columns) == EVENT_COLUMNS
        assert df.loc[0, "duration_seconds"] == 1800.0
        assert df.loc[0, "corrupted"] == False  # noqa: E712
        assert cursor.execute.call_args[0][1] == [0, 10]

    def test_empty_result_keeps_columns(self, cursor, connection_kwargs):
        cursor.description = None
        cursor.fetchall.return_value = []

        df = fetch_raw_events(**connection_kwargs)

        assert df.empty
        assert list(df.columns) == EVENT_COLUMNS

    def test_errors_propagate(self, cursor, connection_kwargs):
        cursor.execute.side_effect = psycopg2.OperationalError("connection lost")

        with pytest.raises(psycopg2.OperationalError):
            fetch_raw_events(**connection_kwargs)


class TestOtherFetchers:

    def test_order_events(self, cursor, connection_kwargs):
        cursor.description = [(name,) for name in EVENT_COLUMNS]
        cursor.fetchall.return_value = [
            (3, "Jane Doe", "Assembly", "Model-X", "MO1", "Build", 70, None, None, True),
        ]

        df = fetch_order_events(["MO1"], 9, **connection_kwargs)

        assert df.loc[0, "duration_seconds"] == 70.0
        assert bool(df.loc[0, "corrupted"])
        assert cursor.execute.call_args[0][1] == [["MO1"], 9]

    def test_orders(self, cursor, connection_kwargs):
        cursor.description = [(name,) for name in ORDER_COLUMNS]
        cursor.fetchall.return_value = [("MO1", Decimal("60"), "Model-X", None)]

        df = fetch_orders(["MO1"], **connection_kwargs)

        assert df.loc[0, "quantity"] == 60.0
        assert cursor.execute.call_args[0][1] == [["MO1"]]

    def test_max_event_id(self, cursor, connection_kwargs):
        cursor.fetchone.return_value = (42,)
        assert fetch_max_event_id(**connection_kwargs) == 42

        cursor.fetchone.return_value = (None,)
        assert fetch_max_event_id(**connection_kwargs) == 0

    def test_operator_windows_skip_unset(self, cursor, connection_kwargs):
        cursor.fetchall.return_value = [(" Jane Doe ", 30), ("John Smith", None), (None, 7)]

        assert fetch_operator_windows(**connection_kwargs) == {"Jane Doe": 30}


class TestPostgresEventSource:

    def test_snapshot_reads_orders_and_settings(self, cursor, connection_kwargs):
        cursor.description = None
        cursor.fetchall.return_value = []
        cursor.fetchone.return_value = (0,)

        snapshot = PostgresEventSource(**connection_kwargs).snapshot()

        assert snapshot.orders.empty
        assert snapshot.operator_windows == {}
        assert snapshot.max_event_id == 0


class TestInMemoryEventSource:

    def test_order_events_respect_bound(self, make_event):
        source = InMemoryEventSource([
            make_event(order_id="MO1"),
            make_event(order_id="MO2"),
            make_event(order_id="MO1"),
            make_event(order_id="MO1"),
        ])

        df = source.load_order_events(["MO1"], up_to_id=3)

        assert list(df["event_id"]) == [1, 3]
        assert source.load_order_events(["MO9"], up_to_id=4).empty
