"""
Database Connection Pool Manager

Provides thread-safe PostgreSQL connection pooling for the UPH database,
shared by the event feed readers and the rate store.
"""

import threading
import time
import logging
from contextlib import contextmanager
from typing import Optional, Dict, Any

import psycopg2
from psycopg2 import pool

from utils.config import get_database_config


# Configure logging
logger = logging.getLogger(__name__)


class DatabasePool:
    """Thread-safe database connection pool manager."""

    def __init__(self, db_config: Optional[Dict[str, Any]] = None):
        """
        Initialize the database pool.

        Args:
            db_config: psycopg2 connection keywords; read from the
                       environment (UPH_DB_*) when omitted

        Raises:
            ValueError: If required connection settings are missing
        """
        self.pool: Optional[pool.AbstractConnectionPool] = None
        self.pool_lock = threading.Lock()
        self.stats = {
            "connections_created": 0,
            "connections_used": 0,
            "connections_returned": 0,
            "pool_exhausted": 0,
            "fallback_connections": 0,
            "errors": 0
        }

        self.db_config = dict(db_config) if db_config is not None else get_database_config()
        self.db_config.setdefault("sslmode", "disable")

        # Validate configuration
        self._validate_config()

    def _validate_config(self):
        """Validate that all required configuration is present."""
        required_keys = ["host", "port", "database", "user", "password"]
        missing = [k for k in required_keys if not self.db_config.get(k)]

        if missing:
            raise ValueError(
                f"Missing UPH database configuration: {missing}. "
                f"Please check your .env file."
            )

    def initialize_pool(self, min_connections: int = 1, max_connections: int = 5) -> bool:
        """
        Initialize the connection pool.

        Args:
            min_connections: Minimum number of connections to maintain
            max_connections: Maximum number of connections allowed

        Returns:
            bool: True if pool was created successfully, False otherwise
        """
        try:
            with self.pool_lock:
                if self.pool is not None:
                    logger.info("UPH pool already initialized")
                    return True

                self.pool = psycopg2.pool.ThreadedConnectionPool(
                    min_connections,
                    max_connections,
                    **self.db_config
                )

                self.stats["connections_created"] = min_connections

                # Test the pool with a simple query
                with self.get_connection() as conn:
                    with conn.cursor() as cursor:
                        cursor.execute("SELECT 1")
                        cursor.fetchone()

                logger.info(
                    f"Initialized UPH pool with {min_connections}-{max_connections} connections"
                )
                return True

        except Exception as e:
            logger.error(f"Failed to initialize UPH pool: {e}")
            self.stats["errors"] += 1
            return False

    @contextmanager
    def get_connection(self):
        """
        Get a connection from the pool using context manager.

        Falls back to a direct connection when the pool is missing or
        exhausted.

        Yields:
            psycopg2.connection: Database connection

        Example:
            >>> db = DatabasePool()
            >>> with db.get_connection() as conn:
            ...     cursor = conn.cursor()
            ...     cursor.execute("SELECT * FROM uph_rates LIMIT 1")
        """
        connection = None
        pooled = False
        start_time = time.time()

        try:
            if self.pool is not None:
                try:
                    connection = self.pool.getconn()
                    pooled = True
                    self.stats["connections_used"] += 1
                except pool.PoolError:
                    self.stats["pool_exhausted"] += 1
                    logger.warning("UPH pool exhausted, using fallback")

            if connection is None:
                self.stats["fallback_connections"] += 1
                connection = psycopg2.connect(**self.db_config)

            yield connection

        except psycopg2.Error as e:
            self.stats["errors"] += 1
            elapsed = time.time() - start_time
            logger.error(f"UPH connection error after {elapsed:.2f}s: {e}")
            raise

        finally:
            if connection is not None:
                try:
                    if pooled and self.pool is not None:
                        self.pool.putconn(connection)
                        self.stats["connections_returned"] += 1
                    else:
                        connection.close()
                except Exception as e:
                    logger.warning(f"Error returning connection to pool: {e}")
                    self.stats["errors"] += 1

    def close_pool(self):
        """Close all connections in the pool."""
        try:
            with self.pool_lock:
                if self.pool is not None:
                    self.pool.closeall()
                    self.pool = None
                    logger.info("Closed UPH connection pool")
        except Exception as e:
            logger.warning(f"Error closing UPH pool: {e}")
            self.stats["errors"] += 1

    def get_stats(self) -> Dict[str, Any]:
        """
        Get connection pool statistics.

        Returns:
            Dictionary with pool statistics
        """
        stats = self.stats.copy()
        stats["pool_initialized"] = self.pool is not None
        if self.pool is not None:
            stats["pool_type"] = type(self.pool).__name__
        return stats


# Global pool instance
_uph_pool: Optional[DatabasePool] = None
_pool_lock = threading.Lock()


def get_pool() -> DatabasePool:
    """
    Get or create the UPH database pool.

    Raises:
        ValueError: If database configuration is missing
    """
    global _uph_pool

    with _pool_lock:
        if _uph_pool is None:
            _uph_pool = DatabasePool()
            _uph_pool.initialize_pool()
        return _uph_pool


def close_all_pools():
    """Close the UPH database pool."""
    global _uph_pool

    with _pool_lock:
        if _uph_pool is not None:
            _uph_pool.close_pool()
            _uph_pool = None


@contextmanager
def get_uph_connection():
    """
    Get a UPH database connection using context manager.

    Yields:
        psycopg2.connection: Database connection

    Example:
        >>> with get_uph_connection() as conn:
        ...     cursor = conn.cursor()
        ...     cursor.execute("SELECT * FROM work_cycles LIMIT 1")
    """
    db = get_pool()
    with db.get_connection() as conn:
        yield conn
