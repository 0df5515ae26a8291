"""
UPH Data Model

Dataclasses for the records flowing through a calculation pass:
- RawEvent / Order: external inputs (time-tracking events, production orders)
- RateObservation: one order's rate, transient inside a pass
- AggregateRate: averaged rate per operator / work center / routing, persisted
- SkipCounts: tally of records excluded for data quality reasons
"""

from dataclasses import dataclass, asdict, fields
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd


EVENT_COLUMNS = [
    "event_id",
    "operator_name",
    "work_center_raw",
    "routing_name",
    "order_id",
    "operation_name",
    "duration_seconds",
    "quantity_done",
    "effective_date",
    "corrupted",
]

ORDER_COLUMNS = ["order_id", "quantity", "routing", "created_at"]

RateKey = Tuple[Optional[str], str, str]


@dataclass(frozen=True)
class RawEvent:
    """One contiguous time-tracking interval of an operator on one order."""
    event_id: int
    operator_name: Optional[str]
    work_center_raw: Optional[str]
    routing_name: Optional[str]
    order_id: Optional[str]
    duration_seconds: Optional[float]
    operation_name: Optional[str] = None
    quantity_done: Optional[float] = None  # informational only, never used for rates
    effective_date: Optional[datetime] = None
    corrupted: bool = False


@dataclass(frozen=True)
class Order:
    """Authoritative production order (quantity source for rate math)."""
    order_id: str
    quantity: float
    routing: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class RateObservation:
    """
    Rate of one order for one operator / work center / routing.

    status is 'included' for observations that reached the average and
    'outlier' for those rejected by the statistical filter.
    """
    operator_name: str
    work_center: str
    routing: str
    order_id: str
    total_duration_seconds: float
    quantity: float
    event_count: int = 0
    reference_date: Optional[datetime] = None
    status: str = "included"

    @property
    def duration_hours(self) -> float:
        return self.total_duration_seconds / 3600.0

    @property
    def rate(self) -> float:
        """Units per hour"""
        return self.quantity / self.duration_hours

    @property
    def key(self) -> RateKey:
        return (self.operator_name, self.work_center, self.routing)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['duration_hours'] = round(self.duration_hours, 4)
        data['rate'] = round(self.rate, 4)
        return data


@dataclass
class AggregateRate:
    """
    Averaged UPH for an operator / work center / routing combination.

    resolution records how a lookup produced the value: 'exact',
    'operator_work_center', 'work_center_routing' or 'work_center'.
    """
    operator_name: Optional[str]
    work_center: str
    routing: Optional[str]
    average_rate: float
    observation_count: int
    total_quantity: float
    total_hours: float
    last_calculated: Optional[datetime] = None
    resolution: str = "exact"

    @property
    def key(self) -> RateKey:
        return (self.operator_name, self.work_center, self.routing)

    def to_dict(self) -> Dict:
        return {
            'operator_name': self.operator_name,
            'work_center': self.work_center,
            'routing': self.routing,
            'average_rate': round(self.average_rate, 4),
            'observation_count': self.observation_count,
            'total_quantity': self.total_quantity,
            'total_hours': round(self.total_hours, 4),
            'last_calculated': self.last_calculated,
            'resolution': self.resolution,
        }


@dataclass
class SkipCounts:
    """Records excluded from a pass, by reason. Never raised to callers."""
    corrupted: int = 0
    missing_operator: int = 0
    missing_work_center: int = 0
    unmapped_work_center: int = 0
    non_positive_duration: int = 0
    missing_order: int = 0
    missing_routing: int = 0
    outside_window: int = 0
    non_positive_quantity: int = 0
    below_min_duration: int = 0
    above_ceiling: int = 0

    @property
    def total(self) -> int:
        return sum(getattr(self, f.name) for f in fields(self))

    def merge(self, other: 'SkipCounts') -> 'SkipCounts':
        """Return a new tally with both sets of counts added"""
        return SkipCounts(**{
            f.name: getattr(self, f.name) + getattr(other, f.name)
            for f in fields(self)
        })

    def to_dict(self) -> Dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def events_to_dataframe(events: Iterable[RawEvent]) -> pd.DataFrame:
    """Convert RawEvent records into the event DataFrame used by the pipeline."""
    rows = [asdict(event) for event in events]
    if not rows:
        return pd.DataFrame(columns=EVENT_COLUMNS)
    return pd.DataFrame(rows, columns=EVENT_COLUMNS)


def orders_to_dataframe(orders: Iterable[Order]) -> pd.DataFrame:
    """Convert Order records into the order DataFrame used by the pipeline."""
    rows = [asdict(order) for order in orders]
    if not rows:
        return pd.DataFrame(columns=ORDER_COLUMNS)
    return pd.DataFrame(rows, columns=ORDER_COLUMNS)


def sort_rates(rates: List[AggregateRate]) -> List[AggregateRate]:
    return sorted(rates, key=lambda r: (r.operator_name or "", r.work_center, r.routing or ""))
