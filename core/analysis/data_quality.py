"""
Data Quality Reports

Audit views over the event feed and a calculation pass. Reports never
modify or delete data; they list what looks wrong and why.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Dict, List

import pandas as pd

from core.calculations.models import RateObservation
from core.calculations.pipeline import PassResult

logger = logging.getLogger(__name__)


MAX_EVENT_DURATION_SECONDS = 8 * 3600
SHORT_DURATION_SECONDS = 120
REPEAT_THRESHOLD = 100
LOW_RATE_THRESHOLD = 1.0

SUSPECT_COLUMNS = ["event_id", "operator_name", "work_center_raw", "order_id", "duration_seconds", "reason"]


def find_suspect_events(
    events_df: pd.DataFrame,
    max_duration_seconds: float = MAX_EVENT_DURATION_SECONDS,
    short_duration_seconds: float = SHORT_DURATION_SECONDS,
    repeat_threshold: int = REPEAT_THRESHOLD,
) -> pd.DataFrame:
    """
    Flag events that look like import or clock artefacts.

    - long_duration: a single event longer than max_duration_seconds
      (usually an order total stored as one cycle)
    - repeated_short_duration: the same duration under
      short_duration_seconds recorded more than repeat_threshold times

    Args:
        events_df: Raw event DataFrame
        max_duration_seconds: Longest plausible single event
        short_duration_seconds: Upper bound for "short" durations
        repeat_threshold: Repeat count above which a short duration is suspect

    Returns:
        DataFrame with SUSPECT_COLUMNS, one row per flagged event
    """
    if events_df is None or events_df.empty:
        return pd.DataFrame(columns=SUSPECT_COLUMNS)

    df = events_df.copy()
    df['duration_seconds'] = pd.to_numeric(df['duration_seconds'], errors='coerce')
    if 'corrupted' in df.columns:
        df = df.loc[~df['corrupted'].fillna(False).astype(bool)]

    long_events = df.loc[df['duration_seconds'] > max_duration_seconds].copy()
    long_events['reason'] = long_events['duration_seconds'].map(
        lambda d: f"long_duration: {d / 3600:.1f}h exceeds {max_duration_seconds / 3600:.0f}h"
    )

    short = df.loc[(df['duration_seconds'] > 0) & (df['duration_seconds'] < short_duration_seconds)]
    counts = short['duration_seconds'].value_counts()
    repeated_values = counts[counts > repeat_threshold]
    repeated = short.loc[short['duration_seconds'].isin(repeated_values.index)].copy()
    repeated['reason'] = repeated['duration_seconds'].map(
        lambda d: f"repeated_short_duration: {d:g}s recorded {int(repeated_values[d])} times"
    )

    suspects = pd.concat([long_events, repeated], ignore_index=True)
    if suspects.empty:
        return pd.DataFrame(columns=SUSPECT_COLUMNS)

    for column in SUSPECT_COLUMNS:
        if column not in suspects.columns:
            suspects[column] = None

    logger.info(
        f"Found {len(long_events)} long-duration and {len(repeated)} repeated short-duration events"
    )
    return suspects[SUSPECT_COLUMNS].sort_values('event_id').reset_index(drop=True)


@dataclass
class RateAnomaly:
    """One suspicious order rate"""
    operator_name: str
    work_center: str
    routing: str
    order_id: str
    quantity: float
    hours: float
    rate: float
    anomaly_type: str  # extreme_high, extreme_low or statistical_outlier
    reason: str

    def to_dict(self) -> Dict:
        return asdict(self)


def _anomaly(observation: RateObservation, anomaly_type: str, reason: str) -> RateAnomaly:
    return RateAnomaly(
        operator_name=observation.operator_name,
        work_center=observation.work_center,
        routing=observation.routing,
        order_id=observation.order_id,
        quantity=observation.quantity,
        hours=round(observation.duration_hours, 4),
        rate=round(observation.rate, 2),
        anomaly_type=anomaly_type,
        reason=reason,
    )


def build_anomaly_report(
    result: PassResult,
    rate_ceilings: Dict[str, float],
    low_threshold: float = LOW_RATE_THRESHOLD,
) -> List[RateAnomaly]:
    """
    List the order rates of a pass that were dropped or look implausible.

    Args:
        result: Output of UphPipeline.run
        rate_ceilings: Ceilings used by the pass (for the reason text)
        low_threshold: Rates below this many units per hour are extreme_low

    Returns:
        List of RateAnomaly, highest rate first
    """
    anomalies = []

    for observation in result.ceiling_rejections:
        ceiling = rate_ceilings.get(observation.work_center)
        anomalies.append(_anomaly(
            observation,
            "extreme_high",
            f"UPH {observation.rate:.1f} exceeds {observation.work_center} ceiling of {ceiling:g}",
        ))

    for observation in result.observations:
        if observation.rate < low_threshold:
            anomalies.append(_anomaly(
                observation,
                "extreme_low",
                f"UPH {observation.rate:.2f} below threshold of {low_threshold:g}",
            ))

    for observation in result.outliers:
        anomalies.append(_anomaly(
            observation,
            "statistical_outlier",
            f"UPH {observation.rate:.1f} rejected by the outlier filter",
        ))

    anomalies.sort(key=lambda a: a.rate, reverse=True)
    return anomalies
