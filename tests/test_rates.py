"""
Tests for order-level rate calculation.
"""
import math

import pandas as pd
import pytest

from core.calculations.durations import aggregate_durations, filter_valid_events
from core.calculations.models import Order, events_to_dataframe, orders_to_dataframe
from core.calculations.rates import build_quantity_lookup, calculate_order_rates


def _aggregate(events, orders):
    prepared, _ = filter_valid_events(events_to_dataframe(events), orders_to_dataframe(orders))
    return aggregate_durations(prepared)


class TestQuantityLookup:
    """Order quantities keyed by cleaned order id."""

    def test_lookup(self):
        orders = orders_to_dataframe([Order("MO1", 100), Order(" MO2 ", 5)])
        assert build_quantity_lookup(orders) == {"MO1": 100.0, "MO2": 5.0}

    def test_empty(self):
        assert build_quantity_lookup(None) == {}
        assert build_quantity_lookup(pd.DataFrame()) == {}

    def test_non_numeric_quantity_is_nan(self):
        orders = pd.DataFrame({"order_id": ["MO1"], "quantity": ["n/a"]})
        assert math.isnan(build_quantity_lookup(orders)["MO1"])


class TestCalculateOrderRates:
    """Rate formula, skip rules and ceilings."""

    def test_order_quantity_is_authoritative(self, make_event):
        """Event quantity 5, order quantity 500: the order wins."""
        events = [make_event(work_center_raw="Cutting", duration_seconds=3600, quantity_done=5)]
        orders = [Order("MO1001", 500)]

        result = calculate_order_rates(_aggregate(events, orders), build_quantity_lookup(orders_to_dataframe(orders)))

        assert len(result.observations) == 1
        observation = result.observations[0]
        assert observation.quantity == 500
        assert observation.rate == pytest.approx(500.0)

    def test_rate_formula(self, make_event):
        events = [make_event(duration_seconds=1800), make_event(duration_seconds=1800)]
        orders = [Order("MO1001", 120)]

        result = calculate_order_rates(_aggregate(events, orders), {"MO1001": 120.0})

        observation = result.observations[0]
        assert observation.total_duration_seconds == 3600
        assert observation.event_count == 2
        assert observation.rate == pytest.approx(120.0)

    def test_duration_floor(self, make_event):
        """90s totals are dropped, 121s totals are kept."""
        events = [
            make_event(order_id="MO1", duration_seconds=90),
            make_event(order_id="MO2", duration_seconds=121),
        ]
        orders = [Order("MO1", 1), Order("MO2", 1)]

        result = calculate_order_rates(_aggregate(events, orders), {"MO1": 1.0, "MO2": 1.0})

        assert [o.order_id for o in result.observations] == ["MO2"]
        assert result.skips.below_min_duration == 1

    def test_unknown_order_and_zero_quantity_skipped(self, make_event):
        events = [
            make_event(order_id="MO1"),
            make_event(order_id="MO2"),
            make_event(order_id="MO3"),
        ]
        orders = [Order("MO1", 0), Order("MO2", 10)]

        result = calculate_order_rates(_aggregate(events, orders), {"MO1": 0.0, "MO2": 10.0})

        assert [o.order_id for o in result.observations] == ["MO2"]
        assert result.skips.non_positive_quantity == 1
        assert result.skips.missing_order == 1

    def test_ceiling_drops_instead_of_clamping(self, make_event):
        """200 units in one hour of Assembly exceeds the 150/h ceiling."""
        events = [
            make_event(order_id="MO1", duration_seconds=3600),
            make_event(order_id="MO2", duration_seconds=3600),
        ]
        orders = [Order("MO1", 200), Order("MO2", 80)]

        result = calculate_order_rates(_aggregate(events, orders), {"MO1": 200.0, "MO2": 80.0})

        assert [o.order_id for o in result.observations] == ["MO2"]
        assert len(result.ceiling_rejections) == 1
        assert result.ceiling_rejections[0].status == "above_ceiling"
        assert result.ceiling_rejections[0].rate == pytest.approx(200.0)
        assert result.skips.above_ceiling == 1

    def test_custom_ceiling(self, make_event):
        events = [make_event(duration_seconds=3600)]
        orders = [Order("MO1001", 180)]

        result = calculate_order_rates(
            _aggregate(events, orders), {"MO1001": 180.0}, rate_ceilings={"Assembly": 200.0}
        )

        assert len(result.observations) == 1

    def test_empty_input(self):
        result = calculate_order_rates(aggregate_durations(pd.DataFrame()), {})
        assert result.observations == []
