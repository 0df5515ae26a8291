"""
Tests for data quality reports.
"""
from core.analysis.data_quality import build_anomaly_report, find_suspect_events
from core.calculations.models import RateObservation, events_to_dataframe
from core.calculations.pipeline import PassResult
from core.calculations.rates import DEFAULT_RATE_CEILINGS


def _observation(order_id, quantity, hours=1.0, status="included"):
    return RateObservation(
        "Jane Doe", "Assembly", "Model-X", order_id, hours * 3600.0, float(quantity), status=status
    )


class TestFindSuspectEvents:
    """Import and clock artefacts in the raw feed."""

    def test_long_duration(self, make_event):
        events = events_to_dataframe([
            make_event(duration_seconds=3600.0),
            make_event(order_id="MO2", duration_seconds=36000.0),
        ])

        suspects = find_suspect_events(events)

        assert list(suspects["order_id"]) == ["MO2"]
        assert suspects.iloc[0]["reason"] == "long_duration: 10.0h exceeds 8h"

    def test_repeated_short_duration(self, make_event):
        events = events_to_dataframe(
            [make_event(duration_seconds=30.0) for _ in range(4)] + [make_event(duration_seconds=45.0)]
        )

        suspects = find_suspect_events(events, repeat_threshold=3)

        assert len(suspects) == 4
        assert suspects["reason"].str.startswith("repeated_short_duration: 30s recorded 4 times").all()

    def test_corrupted_ignored(self, make_event):
        events = events_to_dataframe([make_event(duration_seconds=36000.0, corrupted=True)])
        assert find_suspect_events(events).empty

    def test_empty(self):
        assert find_suspect_events(events_to_dataframe([])).empty


class TestBuildAnomalyReport:
    """Audit listing of dropped and implausible order rates."""

    def test_all_anomaly_types(self):
        result = PassResult(
            observations=[_observation("OK", 50), _observation("SLOW", 0.5)],
            outliers=[_observation("ODD", 10, status="outlier")],
            ceiling_rejections=[_observation("FAST", 400, status="above_ceiling")],
        )

        report = build_anomaly_report(result, DEFAULT_RATE_CEILINGS)

        assert [(a.order_id, a.anomaly_type) for a in report] == [
            ("FAST", "extreme_high"),
            ("ODD", "statistical_outlier"),
            ("SLOW", "extreme_low"),
        ]
        assert report[0].reason == "UPH 400.0 exceeds Assembly ceiling of 150"
        assert report[2].hours == 1.0

    def test_custom_low_threshold(self):
        result = PassResult(observations=[_observation("MO1", 4)])

        assert build_anomaly_report(result, DEFAULT_RATE_CEILINGS, low_threshold=5.0)[0].anomaly_type == "extreme_low"
        assert build_anomaly_report(result, DEFAULT_RATE_CEILINGS) == []
