"""
Secure Query Builder Module

This module provides secure, parameterized query building functions to prevent SQL injection attacks.
Filter values are always passed as parameters; table names are validated identifiers.
"""

import logging
import re
from typing import Any, List, Optional, Tuple

from config import Config
from core.calculations.work_centers import parse_work_center

logger = logging.getLogger(__name__)


HIGH_WATER_MARK_KEY = "last_processed_event_id"

_IDENTIFIER_PATTERN = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]{0,62}(\.[a-zA-Z_][a-zA-Z0-9_]{0,62})?$')


class SecureQueryBuilder:
    """Secure query builder with parameterized queries and input validation."""

    def __init__(
        self,
        events_table: str = None,
        orders_table: str = None,
        operators_table: str = None,
        rates_table: str = None,
        state_table: str = None,
    ):
        self.events_table = self.require_identifier(events_table or Config.EVENTS_TABLE)
        self.orders_table = self.require_identifier(orders_table or Config.ORDERS_TABLE)
        self.operators_table = self.require_identifier(operators_table or Config.OPERATORS_TABLE)
        self.rates_table = self.require_identifier(rates_table or Config.RATES_TABLE)
        self.state_table = self.require_identifier(state_table or Config.STATE_TABLE)

    @staticmethod
    def validate_identifier(name: str) -> bool:
        """
        Validate a SQL identifier (table name, optionally schema-qualified).

        Args:
            name: Identifier to validate

        Returns:
            bool: True if the identifier is safe to interpolate
        """
        if not name or not isinstance(name, str):
            return False
        return bool(_IDENTIFIER_PATTERN.match(name))

    @classmethod
    def require_identifier(cls, name: str) -> str:
        if not cls.validate_identifier(name):
            raise ValueError(f"Invalid SQL identifier: {name!r}")
        return name

    @staticmethod
    def validate_event_id(event_id: Any) -> bool:
        """
        Validate an event id bound (non-negative integer).

        Args:
            event_id: Value to validate

        Returns:
            bool: True if valid
        """
        return isinstance(event_id, int) and not isinstance(event_id, bool) and event_id >= 0

    @staticmethod
    def validate_name(value: Any) -> bool:
        """
        Validate an operator or routing name filter.

        Args:
            value: Value to validate

        Returns:
            bool: True if a non-empty string of reasonable length
        """
        return isinstance(value, str) and 0 < len(value.strip()) <= 255

    def _require_name(self, value: Any, label: str) -> str:
        if not self.validate_name(value):
            raise ValueError(f"Invalid {label}: {value!r}")
        return value.strip()

    def _events_select(self) -> str:
        return f"""
            SELECT
                id AS event_id,
                work_cycles_operator_rec_name AS operator_name,
                work_cycles_work_center_rec_name AS work_center_raw,
                work_production_routing_rec_name AS routing_name,
                work_production_number AS order_id,
                work_operation_rec_name AS operation_name,
                work_cycles_duration AS duration_seconds,
                work_cycles_quantity_done AS quantity_done,
                COALESCE(work_production_create_date, created_at) AS effective_date,
                COALESCE(data_corrupted, FALSE) AS corrupted
            FROM {self.events_table}"""

    def build_events_query(
        self,
        after_id: int = 0,
        up_to_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Tuple[str, List[Any]]:
        """
        Build query for raw time-tracking events, ordered by event id.

        Corrupted rows are returned with their flag set so callers can
        advance the high-water-mark past them.

        Args:
            after_id: Only events with id > after_id
            up_to_id: Only events with id <= up_to_id (pass snapshot bound)
            limit: Maximum number of rows (batch size)

        Returns:
            Tuple[str, List[Any]]: (query_string, parameters)
        """
        if not self.validate_event_id(after_id):
            raise ValueError(f"Invalid after_id: {after_id!r}")

        query = f"""
            {self._events_select()}
            WHERE id > %s
        """
        parameters: List[Any] = [after_id]

        if up_to_id is not None:
            if not self.validate_event_id(up_to_id):
                raise ValueError(f"Invalid up_to_id: {up_to_id!r}")
            query += " AND id <= %s"
            parameters.append(up_to_id)

        query += " ORDER BY id ASC"

        if limit is not None:
            if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
                raise ValueError(f"Invalid limit: {limit!r}")
            query += " LIMIT %s"
            parameters.append(limit)

        logger.debug(f"Built events query (after_id={after_id}, up_to_id={up_to_id}, limit={limit})")
        return query, parameters

    def build_order_events_query(self, order_ids: List[str], up_to_id: int) -> Tuple[str, List[Any]]:
        """
        Build query for every event of the given orders up to an event id.

        Args:
            order_ids: Order numbers whose events are wanted
            up_to_id: Only events with id <= up_to_id (pass snapshot bound)

        Returns:
            Tuple[str, List[Any]]: (query_string, parameters)
        """
        if not self.validate_event_id(up_to_id):
            raise ValueError(f"Invalid up_to_id: {up_to_id!r}")

        validated = [str(o).strip() for o in order_ids if self.validate_name(str(o))]
        if not validated:
            return f"{self._events_select()} WHERE 1=0", []

        query = f"""
            {self._events_select()}
            WHERE work_production_number = ANY(%s) AND id <= %s
            ORDER BY id ASC
        """
        logger.debug(f"Built order events query for {len(validated)} orders (up_to_id={up_to_id})")
        return query, [validated, up_to_id]

    def build_max_event_id_query(self) -> Tuple[str, List[Any]]:
        """Build query for the largest event id in the feed."""
        return f"SELECT COALESCE(MAX(id), 0) FROM {self.events_table}", []

    def build_orders_query(self, order_ids: Optional[List[str]] = None) -> Tuple[str, List[Any]]:
        """
        Build query for production orders (authoritative quantities).

        Args:
            order_ids: Optional list of order numbers to restrict to

        Returns:
            Tuple[str, List[Any]]: (query_string, parameters)
        """
        query = f"""
            SELECT
                mo_number AS order_id,
                quantity,
                routing,
                created_at
            FROM {self.orders_table}
        """

        if order_ids:
            validated = [str(o).strip() for o in order_ids if self.validate_name(str(o))]
            if not validated:
                return f"{query} WHERE 1=0", []
            query += " WHERE mo_number = ANY(%s)"
            logger.debug(f"Built orders query for {len(validated)} orders")
            return query, [validated]

        return query, []

    def build_operator_windows_query(self) -> Tuple[str, List[Any]]:
        """Build query for per-operator calculation windows (days)."""
        query = f"""
            SELECT name AS operator_name, uph_calculation_window AS window_days
            FROM {self.operators_table}
            WHERE name IS NOT NULL
        """
        return query, []

    def build_rates_select_query(
        self,
        operator_name: Optional[str] = None,
        work_center: Optional[str] = None,
        routing: Optional[str] = None,
    ) -> Tuple[str, List[Any]]:
        """
        Build query for cached aggregate rates.

        Args:
            operator_name: Optional operator filter
            work_center: Optional canonical work center filter
            routing: Optional routing filter

        Returns:
            Tuple[str, List[Any]]: (query_string, parameters)
        """
        where, parameters = self._scope_clause(operator_name, work_center, routing)
        query = f"""
            SELECT operator_name, work_center, routing, average_rate,
                   observation_count, total_quantity, total_hours, last_calculated
            FROM {self.rates_table}
            {where}
            ORDER BY operator_name, work_center, routing
        """
        return query, parameters

    def build_rates_delete_query(
        self,
        operator_name: Optional[str] = None,
        work_center: Optional[str] = None,
        routing: Optional[str] = None,
    ) -> Tuple[str, List[Any]]:
        """Build delete for the rates within a scope (all rates when unscoped)."""
        where, parameters = self._scope_clause(operator_name, work_center, routing)
        return f"DELETE FROM {self.rates_table} {where}", parameters

    def build_rate_upsert_query(self) -> str:
        """
        Build the upsert statement for one aggregate rate.

        Parameters (in order): operator_name, work_center, routing,
        average_rate, observation_count, total_quantity, total_hours,
        last_calculated.
        """
        return f"""
            INSERT INTO {self.rates_table}
                (operator_name, work_center, routing, average_rate,
                 observation_count, total_quantity, total_hours, last_calculated)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (operator_name, work_center, routing) DO UPDATE SET
                average_rate = EXCLUDED.average_rate,
                observation_count = EXCLUDED.observation_count,
                total_quantity = EXCLUDED.total_quantity,
                total_hours = EXCLUDED.total_hours,
                last_calculated = EXCLUDED.last_calculated
        """

    def build_state_select_query(self, key: str = HIGH_WATER_MARK_KEY, for_update: bool = False) -> Tuple[str, List[Any]]:
        """Build query reading one calculation state value."""
        query = f"SELECT value FROM {self.state_table} WHERE key = %s"
        if for_update:
            query += " FOR UPDATE"
        return query, [key]

    def build_state_upsert_query(self, key: str, value: int) -> Tuple[str, List[Any]]:
        """Build upsert writing one calculation state value."""
        if not self.validate_event_id(value):
            raise ValueError(f"Invalid state value: {value!r}")
        query = f"""
            INSERT INTO {self.state_table} (key, value, updated_at)
            VALUES (%s, %s, NOW())
            ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
        """
        return query, [key, value]

    def build_schema_statements(self) -> List[str]:
        """Build DDL for the tables this engine owns."""
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {self.rates_table} (
                operator_name TEXT NOT NULL,
                work_center TEXT NOT NULL,
                routing TEXT NOT NULL,
                average_rate DOUBLE PRECISION NOT NULL,
                observation_count INTEGER NOT NULL,
                total_quantity DOUBLE PRECISION NOT NULL DEFAULT 0,
                total_hours DOUBLE PRECISION NOT NULL DEFAULT 0,
                last_calculated TIMESTAMPTZ,
                PRIMARY KEY (operator_name, work_center, routing)
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {self.state_table} (
                key TEXT PRIMARY KEY,
                value BIGINT NOT NULL,
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,
        ]

    def _scope_clause(
        self,
        operator_name: Optional[str],
        work_center: Optional[str],
        routing: Optional[str],
    ) -> Tuple[str, List[Any]]:
        conditions = []
        parameters: List[Any] = []

        if operator_name is not None:
            conditions.append("operator_name = %s")
            parameters.append(self._require_name(operator_name, "operator_name"))
        if work_center is not None:
            conditions.append("work_center = %s")
            parameters.append(parse_work_center(work_center).value)
        if routing is not None:
            conditions.append("routing = %s")
            parameters.append(self._require_name(routing, "routing"))

        if not conditions:
            return "", parameters
        return "WHERE " + " AND ".join(conditions), parameters


# Global instance for easy access
secure_query_builder = SecureQueryBuilder()
