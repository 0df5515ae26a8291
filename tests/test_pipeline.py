"""
End-to-end tests for a single calculation pass.
"""
from datetime import timedelta

import pytest

from core.calculations.durations import RoutingPolicy
from core.calculations.models import Order, events_to_dataframe, orders_to_dataframe
from core.calculations.pipeline import CalculationSettings, UphPipeline
from core.time_windows.models import CalculationWindow, OperatorWindowSettings


def _frames(events, orders):
    return events_to_dataframe(events), orders_to_dataframe(orders)


class TestUphPipeline:
    """Validate, window, aggregate, rate, filter and average in one pass."""

    def test_jane_doe_sewing(self, pipeline, jane_doe_source, fixed_now):
        events_df = jane_doe_source.load_events()
        orders_df = jane_doe_source.load_orders()

        result = pipeline.run(events_df, orders_df, now=fixed_now)

        assert len(result.aggregates) == 1
        rate = result.aggregates[0]
        assert rate.key == ("Jane Doe", "Assembly", "Model-X")
        assert rate.average_rate == pytest.approx(105.0)
        assert rate.observation_count == 2
        assert rate.last_calculated == fixed_now
        assert result.event_count == 3

    def test_mixed_work_centers_kept_apart(self, pipeline, make_event, fixed_now):
        events = [
            make_event(work_center_raw="Cutting Table 2", order_id="MO1", duration_seconds=3600.0),
            make_event(work_center_raw="Sewing / Assembly", order_id="MO1", duration_seconds=7200.0),
        ]
        events_df, orders_df = _frames(events, [Order("MO1", 100, routing="Model-X")])

        result = pipeline.run(events_df, orders_df, now=fixed_now)

        rates = {r.work_center: r.average_rate for r in result.aggregates}
        assert rates == {"Cutting": pytest.approx(100.0), "Assembly": pytest.approx(50.0)}

    def test_skips_are_tallied(self, pipeline, make_event, fixed_now):
        events = [
            make_event(order_id="MO1"),
            make_event(order_id="MO1", corrupted=True),
            make_event(operator_name=None, order_id="MO1"),
            make_event(work_center_raw="Quality Control", order_id="MO1"),
            make_event(order_id="MO-UNKNOWN"),
            make_event(order_id="MO2", duration_seconds=60.0),
        ]
        orders = [Order("MO1", 50, routing="Model-X"), Order("MO2", 10, routing="Model-X")]

        result = pipeline.run(*_frames(events, orders), now=fixed_now)

        skips = result.skips
        assert skips.corrupted == 1
        assert skips.missing_operator == 1
        assert skips.unmapped_work_center == 1
        assert skips.missing_order == 1
        assert skips.below_min_duration == 1
        assert [r.average_rate for r in result.aggregates] == [pytest.approx(50.0)]

    def test_ceiling_rejection_reported(self, pipeline, make_event, fixed_now):
        events = [make_event(order_id="MO1", duration_seconds=3600.0)]
        result = pipeline.run(*_frames(events, [Order("MO1", 200, routing="Model-X")]), now=fixed_now)

        assert result.aggregates == []
        assert len(result.ceiling_rejections) == 1
        assert result.skips.above_ceiling == 1

    def test_outliers_excluded_from_average(self, pipeline, make_event, fixed_now):
        quantities = [80, 82, 78, 81, 79, 10]
        events = [make_event(order_id=f"MO{i}") for i in range(len(quantities))]
        orders = [Order(f"MO{i}", q, routing="Model-X") for i, q in enumerate(quantities)]

        result = pipeline.run(*_frames(events, orders), now=fixed_now)

        assert [o.order_id for o in result.outliers] == ["MO5"]
        assert result.aggregates[0].average_rate == pytest.approx(80.0)
        assert result.aggregates[0].observation_count == 5
        assert len(result.all_observations) == 6

    def test_window_applies_to_order_date(self, pipeline, make_event, fixed_now):
        events = [make_event(order_id="OLD"), make_event(order_id="NEW")]
        orders = [
            Order("OLD", 50, routing="Model-X", created_at=fixed_now - timedelta(days=60)),
            Order("NEW", 70, routing="Model-X", created_at=fixed_now - timedelta(days=2)),
        ]

        result = pipeline.run(
            *_frames(events, orders),
            window=CalculationWindow(),
            operator_windows=OperatorWindowSettings(default_days=30),
            now=fixed_now,
        )

        assert [o.order_id for o in result.observations] == ["NEW"]
        assert result.skips.outside_window == 1

    def test_reject_routing_policy(self, make_event, fixed_now):
        pipeline = UphPipeline(CalculationSettings(routing_policy=RoutingPolicy.REJECT))
        events = [make_event(order_id="MO1", routing_name=None)]

        result = pipeline.run(*_frames(events, [Order("MO1", 50)]), now=fixed_now)

        assert result.aggregates == []
        assert result.skips.missing_routing == 1

    def test_unknown_routing_bucket(self, pipeline, make_event, fixed_now):
        events = [make_event(order_id="MO1", routing_name=None)]

        result = pipeline.run(*_frames(events, [Order("MO1", 50)]), now=fixed_now)

        assert result.aggregates[0].routing == "Unknown"

    def test_scope_filters(self, pipeline, make_event, fixed_now):
        events = [
            make_event(operator_name="Jane Doe", order_id="MO1"),
            make_event(operator_name="John Roe", order_id="MO1"),
            make_event(operator_name="Jane Doe", work_center_raw="Packing", order_id="MO1"),
        ]
        orders = [Order("MO1", 60, routing="Model-X")]

        result = pipeline.run(
            *_frames(events, orders), now=fixed_now, operator="Jane Doe", work_center="assembly"
        )

        assert [r.key for r in result.aggregates] == [("Jane Doe", "Assembly", "Model-X")]

    def test_empty_input(self, pipeline, fixed_now):
        result = pipeline.run(*_frames([], []), now=fixed_now)

        assert result.aggregates == []
        assert result.event_count == 0
        assert result.skips.total == 0

    def test_injected_stage(self, make_event, fixed_now):
        """A replacement normalizer routes every label to Cutting."""
        pipeline = UphPipeline(normalizer=lambda label: "Cutting")
        events = [make_event(work_center_raw="Quality Control", order_id="MO1")]

        result = pipeline.run(*_frames(events, [Order("MO1", 200, routing="Model-X")]), now=fixed_now)

        assert [r.work_center for r in result.aggregates] == ["Cutting"]

    def test_summary(self, pipeline, jane_doe_source, fixed_now):
        events_df = jane_doe_source.load_events()
        orders_df = jane_doe_source.load_orders()

        summary = pipeline.run(events_df, orders_df, now=fixed_now).summary()

        assert summary["events"] == 3
        assert summary["rates"] == 1
        assert summary["outliers"] == 0


class TestCalculationSettings:
    """Validation of pass parameters."""

    def test_invalid_sigma(self):
        with pytest.raises(ValueError):
            CalculationSettings(outlier_sigma=0)

    def test_invalid_ceiling(self):
        with pytest.raises(ValueError):
            CalculationSettings(rate_ceilings={"Assembly": -1})

    def test_policy_from_string(self):
        assert CalculationSettings(routing_policy="reject").routing_policy is RoutingPolicy.REJECT
