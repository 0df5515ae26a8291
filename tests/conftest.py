"""
Shared fixtures for the UPH engine tests.
"""
import itertools
from datetime import datetime

import pytest
import pytz

from core.analysis.uph import UphService
from core.calculations.models import Order, RawEvent
from core.calculations.pipeline import CalculationSettings, UphPipeline
from core.db.rate_store import InMemoryRateStore
from core.db.sources import InMemoryEventSource
from core.scheduling.guard import RunGuard


FIXED_NOW = pytz.UTC.localize(datetime(2026, 1, 15, 12, 0, 0))


@pytest.fixture
def fixed_now():
    """Reference time used by every clock in the tests."""
    return FIXED_NOW


@pytest.fixture
def clock(fixed_now):
    return lambda: fixed_now


@pytest.fixture
def make_event():
    """Factory for RawEvent with auto-incrementing ids."""
    ids = itertools.count(1)

    def _make(
        operator_name="Jane Doe",
        work_center_raw="Sewing / Assembly",
        order_id="MO1001",
        duration_seconds=3600.0,
        routing_name="Model-X",
        **kwargs
    ):
        event_id = kwargs.pop("event_id", None) or next(ids)
        return RawEvent(
            event_id=event_id,
            operator_name=operator_name,
            work_center_raw=work_center_raw,
            routing_name=routing_name,
            order_id=order_id,
            duration_seconds=duration_seconds,
            **kwargs
        )

    return _make


@pytest.fixture
def settings():
    return CalculationSettings()


@pytest.fixture
def pipeline(settings):
    return UphPipeline(settings)


@pytest.fixture
def source():
    """Empty in-memory event source."""
    return InMemoryEventSource()


@pytest.fixture
def store():
    return InMemoryRateStore()


@pytest.fixture
def guard():
    return RunGuard(timeout_seconds=3600)


@pytest.fixture
def service(source, store, pipeline, guard, clock):
    return UphService(source, store, pipeline, guard=guard, clock=clock)


@pytest.fixture
def jane_doe_source(make_event):
    """
    Jane Doe sewing two Model-X orders: 120 units in 1h and 90 units in 1h.
    """
    events = [
        make_event(order_id="MO1", duration_seconds=1800.0),
        make_event(order_id="MO1", duration_seconds=1800.0),
        make_event(order_id="MO2", duration_seconds=3600.0),
    ]
    orders = [
        Order("MO1", 120, routing="Model-X"),
        Order("MO2", 90, routing="Model-X"),
    ]
    return InMemoryEventSource(events, orders)
