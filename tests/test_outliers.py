"""
Tests for the statistical outlier filter.
"""
import pytest

from core.calculations.models import RateObservation
from core.calculations.outliers import filter_observation_groups, filter_outliers, find_outliers


# five rates close to 100 and one far value 2.2 sigma above the group mean
SIX_WITH_OUTLIER = [100, 102, 98, 101, 99, 500]


def _observation(rate, order_id, operator_name="Jane Doe", routing="Model-X"):
    """Observation lasting one hour, so quantity == rate."""
    return RateObservation(
        operator_name=operator_name,
        work_center="Assembly",
        routing=routing,
        order_id=order_id,
        total_duration_seconds=3600.0,
        quantity=float(rate),
    )


class TestFindOutliers:
    """Distance from the full-group mean in population standard deviations."""

    def test_measured_from_group_mean(self):
        """mean 110, sigma 17.32: 140 is 30 away, inside 2 sigma."""
        assert find_outliers([100, 100, 100, 140]) == [False, False, False, False]

    def test_five_values_reach_exactly_two_sigma(self):
        """One value among five can sit at most sqrt(4) = 2 sigma away."""
        assert not any(find_outliers([100, 100, 100, 100, 500]))

    def test_six_values_exceed_two_sigma(self):
        assert find_outliers([100, 100, 100, 100, 100, 500]) == [False] * 5 + [True]

    def test_tight_group_kept(self):
        assert not any(find_outliers([100, 105, 95, 102, 98]))

    def test_sigma_configurable(self):
        assert find_outliers([100, 100, 100, 140], sigma=1.5) == [False, False, False, True]


class TestFilterOutliers:
    """Per-group rejection rules."""

    def test_one_far_outlier_in_six(self):
        result = filter_outliers(SIX_WITH_OUTLIER)

        assert result.kept_mask == [True, True, True, True, True, False]
        assert result.rejected_count == 1
        assert result.mean == pytest.approx(1000 / 6)
        assert not result.guard_applied

    def test_one_far_value_in_five_kept(self):
        result = filter_outliers([100, 102, 98, 101, 500])
        assert all(result.kept_mask)

    def test_two_values_never_filtered(self):
        result = filter_outliers([10, 1000])
        assert result.kept_mask == [True, True]

    def test_below_min_group_size_never_filtered(self):
        result = filter_outliers(SIX_WITH_OUTLIER, min_group_size=7)
        assert all(result.kept_mask)

    def test_identical_values_kept(self):
        result = filter_outliers([50, 50, 50, 50])
        assert all(result.kept_mask)

    def test_guard_keeps_full_group(self):
        """At 1 sigma both 200s are flagged: 2 of 6 (33%) exceeds the 30% guard."""
        result = filter_outliers([100, 100, 100, 100, 200, 200], sigma=1.0)

        assert result.kept_mask == [True] * 6
        assert result.guard_applied

    def test_guard_fraction_configurable(self):
        result = filter_outliers([100, 100, 100, 100, 200, 200], sigma=1.0, max_rejection_fraction=0.5)
        assert result.kept_mask == [True, True, True, True, False, False]

    def test_empty(self):
        assert filter_outliers([]).kept_mask == []


class TestFilterObservationGroups:
    """Filtering applied per operator, work center and routing."""

    def test_rejected_observations_marked(self):
        observations = [_observation(r, f"MO{i}") for i, r in enumerate(SIX_WITH_OUTLIER)]

        result = filter_observation_groups(observations)

        assert len(result.kept) == 5
        assert [o.order_id for o in result.rejected] == ["MO5"]
        assert result.rejected[0].status == "outlier"
        assert all(o.status == "included" for o in result.kept)

    def test_groups_are_independent(self):
        observations = [_observation(r, f"A{i}") for i, r in enumerate(SIX_WITH_OUTLIER)]
        observations += [_observation(500, "B0", routing="Model-Y"), _observation(510, "B1", routing="Model-Y")]

        result = filter_observation_groups(observations)

        assert len(result.kept) == 7
        assert {o.order_id for o in result.kept if o.routing == "Model-Y"} == {"B0", "B1"}

    def test_guarded_groups_reported(self):
        observations = [_observation(r, f"MO{i}") for i, r in enumerate([100, 100, 100, 100, 200, 200])]

        result = filter_observation_groups(observations, sigma=1.0)

        assert len(result.kept) == 6
        assert result.guarded_groups == [("Jane Doe", "Assembly", "Model-X")]
