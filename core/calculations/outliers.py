"""
Statistical Outlier Filtering

Removes anomalous order rates from each (operator, work center, routing)
group before averaging.

A rate is rejected when it lies more than `sigma` population standard
deviations from its group mean. A single value among n can sit at most
sqrt(n - 1) standard deviations from that mean, so at 2 sigma a group needs
six rates before one value can be rejected; with five it reaches exactly 2
sigma and is kept.

Rejection is skipped for the whole group when it would remove more than
max_rejection_fraction of it: a group that is mostly "outliers" has a
systemic skew, and dropping half of it would hide that.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import List, Sequence

import numpy as np

from .models import RateKey, RateObservation

logger = logging.getLogger(__name__)


DEFAULT_SIGMA = 2.0
DEFAULT_MAX_REJECTION_FRACTION = 0.30
DEFAULT_MIN_GROUP_SIZE = 3


@dataclass
class OutlierResult:
    """Result of filtering one group of rates"""
    kept_mask: List[bool]
    mean: float
    std: float
    guard_applied: bool = False

    @property
    def rejected_count(self) -> int:
        return sum(1 for kept in self.kept_mask if not kept)


@dataclass
class OutlierFilterResult:
    """Result of filtering every group of a pass"""
    kept: List[RateObservation] = field(default_factory=list)
    rejected: List[RateObservation] = field(default_factory=list)
    guarded_groups: List[RateKey] = field(default_factory=list)


def find_outliers(values: Sequence[float], sigma: float = DEFAULT_SIGMA) -> List[bool]:
    """
    Flag values lying more than `sigma` standard deviations from the group mean.

    Args:
        values: Rates of one group (at least 2 values)
        sigma: Rejection threshold in population standard deviations

    Returns:
        List of booleans, True where the value is an outlier
    """
    arr = np.asarray(values, dtype=float)
    mean = arr.mean()
    std = arr.std()  # population (ddof=0)
    # float noise must not push a value sitting exactly on the bound over it
    tolerance = 1e-9 * max(1.0, abs(mean))

    return [bool(flag) for flag in np.abs(arr - mean) > sigma * std + tolerance]


def filter_outliers(
    values: Sequence[float],
    sigma: float = DEFAULT_SIGMA,
    max_rejection_fraction: float = DEFAULT_MAX_REJECTION_FRACTION,
    min_group_size: int = DEFAULT_MIN_GROUP_SIZE,
) -> OutlierResult:
    """
    Decide which rates of one group survive outlier rejection.

    Groups smaller than min_group_size are never filtered.

    Args:
        values: Rates of one group
        sigma: Rejection threshold in standard deviations
        max_rejection_fraction: Keep the full group when rejection would
                                remove more than this fraction
        min_group_size: Smallest group that is filtered

    Returns:
        OutlierResult with a keep mask aligned to values
    """
    arr = np.asarray(values, dtype=float)
    n = len(arr)

    if n == 0:
        return OutlierResult(kept_mask=[], mean=0.0, std=0.0)

    mean = float(arr.mean())
    std = float(arr.std())

    if n < max(min_group_size, 2):
        return OutlierResult(kept_mask=[True] * n, mean=mean, std=std)

    outliers = find_outliers(arr, sigma)
    rejected = sum(outliers)

    if rejected == 0:
        return OutlierResult(kept_mask=[True] * n, mean=mean, std=std)

    if rejected / n > max_rejection_fraction:
        return OutlierResult(kept_mask=[True] * n, mean=mean, std=std, guard_applied=True)

    return OutlierResult(kept_mask=[not flag for flag in outliers], mean=mean, std=std)


def group_observations(observations: List[RateObservation]) -> "OrderedDict[RateKey, List[RateObservation]]":
    """Group observations by (operator, work center, routing), preserving order."""
    groups: "OrderedDict[RateKey, List[RateObservation]]" = OrderedDict()
    for observation in observations:
        groups.setdefault(observation.key, []).append(observation)
    return groups


def filter_observation_groups(
    observations: List[RateObservation],
    sigma: float = DEFAULT_SIGMA,
    max_rejection_fraction: float = DEFAULT_MAX_REJECTION_FRACTION,
    min_group_size: int = DEFAULT_MIN_GROUP_SIZE,
) -> OutlierFilterResult:
    """
    Apply filter_outliers to every (operator, work center, routing) group.

    Rejected observations are marked status='outlier' and logged with the
    group statistics for audit.
    """
    result = OutlierFilterResult()

    for key, group in group_observations(observations).items():
        outcome = filter_outliers(
            [obs.rate for obs in group],
            sigma=sigma,
            max_rejection_fraction=max_rejection_fraction,
            min_group_size=min_group_size,
        )

        if outcome.guard_applied:
            result.guarded_groups.append(key)
            logger.info(
                f"Outlier rejection skipped for {key}: would remove more than "
                f"{max_rejection_fraction:.0%} of {len(group)} rates "
                f"(mean={outcome.mean:.2f}, std={outcome.std:.2f})"
            )

        for observation, kept in zip(group, outcome.kept_mask):
            if kept:
                result.kept.append(observation)
                continue

            observation.status = "outlier"
            result.rejected.append(observation)
            logger.info(
                f"Outlier rejected: operator={observation.operator_name}, "
                f"work_center={observation.work_center}, routing={observation.routing}, "
                f"order={observation.order_id}, rate={observation.rate:.2f} "
                f"(group mean={outcome.mean:.2f}, std={outcome.std:.2f}, n={len(group)})"
            )

    return result
