"""
Database connection layer for the macro humanizer.
Supports SQLite (default) and any other SQLAlchemy URL, e.g. MariaDB/MySQL
or PostgreSQL for shared deployments.

Implementation Notes:
- In-memory SQLite shares one connection across threads (StaticPool) so
  that executor-thread jobs see the same data as the event loop
- Connection pooling configured for server databases
"""

from contextlib import contextmanager, nullcontext
import logging
import threading

from sqlalchemy import create_engine, text
from sqlalchemy.pool import QueuePool, StaticPool

from .const import DEFAULT_DB_URL

logger = logging.getLogger(__name__)


class DatabaseConnector:
    """
    Read-write database connection manager.

    Args:
        db_url: SQLAlchemy connection string (default: local SQLite file).
        query_timeout: Maximum seconds per query (default 30).

    Example:
        db = DatabaseConnector()  # ./macro_humanizer.db
        db = DatabaseConnector(db_url="sqlite://")  # In-memory, for tests
    """

    def __init__(self, db_url: str = None, query_timeout: int = 30):
        self.db_url = db_url or DEFAULT_DB_URL
        self.query_timeout = query_timeout
        self.is_sqlite = self.db_url.startswith("sqlite")
        self.is_memory = self.is_sqlite and (
            self.db_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in self.db_url
        )

        # A single shared in-memory connection must not be used by two threads at once
        self._lock = threading.RLock() if self.is_memory else nullcontext()

        pool_kwargs = {"pool_pre_ping": True}

        if self.is_memory:
            pool_kwargs["poolclass"] = StaticPool
            pool_kwargs["connect_args"] = {"check_same_thread": False}
        elif self.is_sqlite:
            pool_kwargs["connect_args"] = {
                "check_same_thread": False,
                "timeout": query_timeout,
            }
        else:
            pool_kwargs["poolclass"] = QueuePool
            pool_kwargs["pool_size"] = 2
            pool_kwargs["max_overflow"] = 3
            pool_kwargs["pool_recycle"] = 3600  # Recycle connections after 1 hour

        try:
            self.engine = create_engine(self.db_url, echo=False, **pool_kwargs)
            logger.info(f"Database connector initialized: {'SQLite' if self.is_sqlite else 'server'}")
        except Exception as e:
            logger.error(f"Failed to create database engine: {e}")
            raise

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections.

        Usage:
            with db.get_connection() as conn:
                result = conn.execute(text("SELECT 1"))
                conn.commit()
        """
        with self._lock:
            conn = self.engine.connect()
            try:
                yield conn
            finally:
                conn.close()

    def test_connection(self) -> dict:
        """
        Verify database connectivity.

        Returns:
            Dictionary with the backend type and a liveness flag
        """
        with self.get_connection() as conn:
            alive = conn.execute(text("SELECT 1")).scalar() == 1
        return {
            "alive": alive,
            "database_type": "SQLite" if self.is_sqlite else self.engine.dialect.name,
        }

    def dispose(self):
        """Release pooled connections."""
        self.engine.dispose()
