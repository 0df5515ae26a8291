"""
Rate Store

Persistence for AggregateRate records and the incremental high-water-mark.

Full passes replace the rates of a scope; incremental batches merge into
existing rates. A batch commit and the high-water-mark advance are one
atomic step guarded by a compare-and-set on the previous mark.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from core.calculations.aggregates import merge_rates
from core.calculations.models import AggregateRate, RateKey, sort_rates
from core.calculations.work_centers import parse_work_center

from .queries import HIGH_WATER_MARK_KEY, SecureQueryBuilder, secure_query_builder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateScope:
    """Subset of rates affected by a filtered recalculation. None matches anything."""
    operator_name: Optional[str] = None
    work_center: Optional[str] = None
    routing: Optional[str] = None

    def __post_init__(self):
        if self.work_center is not None:
            object.__setattr__(self, 'work_center', parse_work_center(self.work_center).value)

    @property
    def is_everything(self) -> bool:
        return self.operator_name is None and self.work_center is None and self.routing is None

    def matches(self, rate: AggregateRate) -> bool:
        return (
            (self.operator_name is None or rate.operator_name == self.operator_name)
            and (self.work_center is None or rate.work_center == self.work_center)
            and (self.routing is None or rate.routing == self.routing)
        )


class RateStore(ABC):
    """Storage contract shared by full and incremental passes."""

    @abstractmethod
    def get(self, operator_name: str, work_center: str, routing: str) -> Optional[AggregateRate]:
        """Exact rate for a key, or None"""

    @abstractmethod
    def list_rates(
        self,
        operator_name: Optional[str] = None,
        work_center: Optional[str] = None,
        routing: Optional[str] = None,
    ) -> List[AggregateRate]:
        """Rates matching every given filter, sorted"""

    @abstractmethod
    def replace_all(
        self,
        rates: List[AggregateRate],
        scope: Optional[RateScope] = None,
        high_water_mark: Optional[int] = None,
    ):
        """Atomically delete the rates in scope and insert `rates`"""

    @abstractmethod
    def commit_batch(
        self,
        incoming: List[AggregateRate],
        expected_high_water_mark: int,
        new_high_water_mark: int,
        calculated_at: Optional[datetime] = None,
    ) -> bool:
        """
        Merge a batch and advance the high-water-mark atomically.

        Returns False (and writes nothing) when the stored mark no longer
        equals expected_high_water_mark.
        """

    @abstractmethod
    def get_high_water_mark(self) -> int:
        """Largest committed event id, 0 when nothing was processed"""

    @abstractmethod
    def reset(self):
        """Delete every rate and set the high-water-mark to zero"""

    def clear(self, scope: Optional[RateScope] = None):
        """Delete the rates in scope (everything by default)."""
        self.replace_all([], scope=scope)


class InMemoryRateStore(RateStore):
    """Thread-safe dictionary-backed store"""

    def __init__(self):
        self._lock = threading.Lock()
        self._rates: Dict[RateKey, AggregateRate] = {}
        self._high_water_mark = 0

    def get(self, operator_name: str, work_center: str, routing: str) -> Optional[AggregateRate]:
        with self._lock:
            return self._rates.get((operator_name, work_center, routing))

    def list_rates(self, operator_name=None, work_center=None, routing=None) -> List[AggregateRate]:
        scope = RateScope(operator_name, work_center, routing)
        with self._lock:
            return sort_rates([r for r in self._rates.values() if scope.matches(r)])

    def replace_all(self, rates, scope=None, high_water_mark=None):
        scope = scope or RateScope()
        with self._lock:
            kept = {key: r for key, r in self._rates.items() if not scope.matches(r)}
            for rate in rates:
                kept[rate.key] = rate
            self._rates = kept
            if high_water_mark is not None:
                self._high_water_mark = high_water_mark

    def commit_batch(self, incoming, expected_high_water_mark, new_high_water_mark, calculated_at=None) -> bool:
        with self._lock:
            if self._high_water_mark != expected_high_water_mark:
                logger.warning(
                    f"High-water-mark moved ({self._high_water_mark} != expected "
                    f"{expected_high_water_mark}), batch discarded"
                )
                return False

            merged = dict(self._rates)
            for rate in incoming:
                merged[rate.key] = merge_rates(merged.get(rate.key), rate, calculated_at)

            self._rates = merged
            self._high_water_mark = new_high_water_mark
            return True

    def get_high_water_mark(self) -> int:
        with self._lock:
            return self._high_water_mark

    def reset(self):
        with self._lock:
            self._rates = {}
            self._high_water_mark = 0


class PostgresRateStore(RateStore):
    """
    Store backed by the uph_rates and uph_calculation_state tables.

    Every write runs in a single transaction (`with conn:` commits on
    success and rolls back on error).
    """

    def __init__(self, connection_factory=None, query_builder: SecureQueryBuilder = None):
        if connection_factory is None:
            from .pool import get_uph_connection
            connection_factory = get_uph_connection
        self.connection_factory = connection_factory
        self.queries = query_builder or secure_query_builder

    def ensure_schema(self):
        """Create the rates and state tables if missing."""
        with self.connection_factory() as conn:
            with conn:
                with conn.cursor() as cursor:
                    for statement in self.queries.build_schema_statements():
                        cursor.execute(statement)
                    cursor.execute(
                        f"INSERT INTO {self.queries.state_table} (key, value) VALUES (%s, 0) "
                        f"ON CONFLICT (key) DO NOTHING",
                        [HIGH_WATER_MARK_KEY],
                    )
        logger.info("UPH rate tables ready")

    @staticmethod
    def _row_to_rate(row) -> AggregateRate:
        return AggregateRate(
            operator_name=row[0],
            work_center=row[1],
            routing=row[2],
            average_rate=float(row[3]),
            observation_count=int(row[4]),
            total_quantity=float(row[5] or 0),
            total_hours=float(row[6] or 0),
            last_calculated=row[7],
        )

    @staticmethod
    def _rate_params(rate: AggregateRate) -> list:
        return [
            rate.operator_name,
            rate.work_center,
            rate.routing,
            float(rate.average_rate),
            int(rate.observation_count),
            float(rate.total_quantity),
            float(rate.total_hours),
            rate.last_calculated,
        ]

    def _select(self, cursor, operator_name=None, work_center=None, routing=None) -> List[AggregateRate]:
        query, parameters = self.queries.build_rates_select_query(operator_name, work_center, routing)
        cursor.execute(query, parameters)
        return [self._row_to_rate(row) for row in cursor.fetchall()]

    def _read_high_water_mark(self, cursor, for_update: bool = False) -> int:
        query, parameters = self.queries.build_state_select_query(HIGH_WATER_MARK_KEY, for_update)
        cursor.execute(query, parameters)
        row = cursor.fetchone()
        return int(row[0]) if row else 0

    def _write_high_water_mark(self, cursor, value: int):
        query, parameters = self.queries.build_state_upsert_query(HIGH_WATER_MARK_KEY, value)
        cursor.execute(query, parameters)

    def get(self, operator_name, work_center, routing) -> Optional[AggregateRate]:
        rates = self.list_rates(operator_name, work_center, routing)
        return rates[0] if rates else None

    def list_rates(self, operator_name=None, work_center=None, routing=None) -> List[AggregateRate]:
        with self.connection_factory() as conn:
            with conn.cursor() as cursor:
                rates = self._select(cursor, operator_name, work_center, routing)
            conn.rollback()
        return rates

    def replace_all(self, rates, scope=None, high_water_mark=None):
        scope = scope or RateScope()
        upsert = self.queries.build_rate_upsert_query()

        with self.connection_factory() as conn:
            with conn:
                with conn.cursor() as cursor:
                    query, parameters = self.queries.build_rates_delete_query(
                        scope.operator_name, scope.work_center, scope.routing
                    )
                    cursor.execute(query, parameters)
                    for rate in rates:
                        cursor.execute(upsert, self._rate_params(rate))
                    if high_water_mark is not None:
                        self._write_high_water_mark(cursor, high_water_mark)

        logger.info(f"Replaced rates in scope {scope} with {len(rates)} rows")

    def commit_batch(self, incoming, expected_high_water_mark, new_high_water_mark, calculated_at=None) -> bool:
        upsert = self.queries.build_rate_upsert_query()

        with self.connection_factory() as conn:
            with conn:
                with conn.cursor() as cursor:
                    current = self._read_high_water_mark(cursor, for_update=True)
                    if current != expected_high_water_mark:
                        logger.warning(
                            f"High-water-mark moved ({current} != expected "
                            f"{expected_high_water_mark}), batch discarded"
                        )
                        return False

                    for rate in incoming:
                        existing = self._select(cursor, rate.operator_name, rate.work_center, rate.routing)
                        merged = merge_rates(existing[0] if existing else None, rate, calculated_at)
                        cursor.execute(upsert, self._rate_params(merged))

                    self._write_high_water_mark(cursor, new_high_water_mark)

        return True

    def get_high_water_mark(self) -> int:
        with self.connection_factory() as conn:
            with conn.cursor() as cursor:
                value = self._read_high_water_mark(cursor)
            conn.rollback()
        return value

    def reset(self):
        self.replace_all([], RateScope(), high_water_mark=0)
