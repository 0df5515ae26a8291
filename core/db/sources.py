"""
Event Sources

Read access to the three inputs of a calculation pass: the append-only
event feed, the production order lookup and the operator window settings.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import pandas as pd

from core.calculations.models import (
    EVENT_COLUMNS,
    Order,
    RawEvent,
    events_to_dataframe,
    orders_to_dataframe,
)

from . import fetchers

logger = logging.getLogger(__name__)


@dataclass
class SourceSnapshot:
    """Inputs frozen at the start of a pass"""
    orders: pd.DataFrame
    operator_windows: Dict[str, int] = field(default_factory=dict)
    max_event_id: int = 0


class EventSource(ABC):
    """Read interface over the event feed, orders and operator settings."""

    @abstractmethod
    def load_events(
        self,
        after_id: int = 0,
        limit: Optional[int] = None,
        up_to_id: Optional[int] = None,
    ) -> pd.DataFrame:
        """Events with after_id < event_id <= up_to_id, ordered by event_id"""

    @abstractmethod
    def load_order_events(self, order_ids: Iterable[str], up_to_id: int) -> pd.DataFrame:
        """All events of the given orders with event_id <= up_to_id, ordered by event_id"""

    @abstractmethod
    def load_orders(self) -> pd.DataFrame:
        """All production orders (order_id, quantity, routing, created_at)"""

    @abstractmethod
    def load_operator_windows(self) -> Dict[str, int]:
        """operator_name -> window days"""

    @abstractmethod
    def max_event_id(self) -> int:
        """Largest event id in the feed, 0 when empty"""

    def snapshot(self) -> SourceSnapshot:
        """Capture orders, operator windows and the upper event id."""
        max_id = self.max_event_id()
        return SourceSnapshot(
            orders=self.load_orders(),
            operator_windows=dict(self.load_operator_windows()),
            max_event_id=max_id,
        )


class InMemoryEventSource(EventSource):
    """
    EventSource backed by Python lists.

    Used by tests and by callers that already hold the data.
    """

    def __init__(
        self,
        events: Optional[Iterable[RawEvent]] = None,
        orders: Optional[Iterable[Order]] = None,
        operator_windows: Optional[Dict[str, int]] = None,
    ):
        self._lock = threading.Lock()
        self._events: List[RawEvent] = []
        self._orders: Dict[str, Order] = {}
        self._operator_windows: Dict[str, int] = dict(operator_windows or {})

        self.add_events(events or [])
        self.add_orders(orders or [])

    def add_events(self, events: Iterable[RawEvent]):
        """Append events to the feed (ids must keep increasing)."""
        with self._lock:
            for event in events:
                if self._events and event.event_id <= self._events[-1].event_id:
                    raise ValueError(
                        f"Event ids must increase: {event.event_id} after {self._events[-1].event_id}"
                    )
                self._events.append(event)

    def add_orders(self, orders: Iterable[Order]):
        """Add or replace orders by order_id."""
        with self._lock:
            for order in orders:
                self._orders[order.order_id] = order

    def set_operator_window(self, operator_name: str, days: int):
        with self._lock:
            self._operator_windows[operator_name] = days

    def load_events(self, after_id: int = 0, limit: Optional[int] = None, up_to_id: Optional[int] = None) -> pd.DataFrame:
        with self._lock:
            selected = [
                e for e in self._events
                if e.event_id > after_id and (up_to_id is None or e.event_id <= up_to_id)
            ]
        if limit is not None:
            selected = selected[:limit]
        if not selected:
            return pd.DataFrame(columns=EVENT_COLUMNS)
        return events_to_dataframe(selected)

    def load_order_events(self, order_ids: Iterable[str], up_to_id: int) -> pd.DataFrame:
        wanted = set(order_ids)
        with self._lock:
            selected = [e for e in self._events if e.order_id in wanted and e.event_id <= up_to_id]
        if not selected:
            return pd.DataFrame(columns=EVENT_COLUMNS)
        return events_to_dataframe(selected)

    def load_orders(self) -> pd.DataFrame:
        with self._lock:
            orders = list(self._orders.values())
        return orders_to_dataframe(orders)

    def load_operator_windows(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._operator_windows)

    def max_event_id(self) -> int:
        with self._lock:
            return self._events[-1].event_id if self._events else 0


class PostgresEventSource(EventSource):
    """EventSource reading the work_cycles, production_orders and operators tables."""

    def __init__(self, connection_factory=None, query_builder=None):
        self._kwargs = {}
        if connection_factory is not None:
            self._kwargs['connection_factory'] = connection_factory
        if query_builder is not None:
            self._kwargs['query_builder'] = query_builder

    def load_events(self, after_id: int = 0, limit: Optional[int] = None, up_to_id: Optional[int] = None) -> pd.DataFrame:
        return fetchers.fetch_raw_events(after_id=after_id, up_to_id=up_to_id, limit=limit, **self._kwargs)

    def load_order_events(self, order_ids: Iterable[str], up_to_id: int) -> pd.DataFrame:
        return fetchers.fetch_order_events(list(order_ids), up_to_id, **self._kwargs)

    def load_orders(self) -> pd.DataFrame:
        return fetchers.fetch_orders(**self._kwargs)

    def load_operator_windows(self) -> Dict[str, int]:
        return fetchers.fetch_operator_windows(**self._kwargs)

    def max_event_id(self) -> int:
        return fetchers.fetch_max_event_id(**self._kwargs)
