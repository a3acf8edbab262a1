"""
Skip-validation doubles.

Wired in by ``create_database`` only when ``DB_SKIP_VALIDATION`` is set outside
production. They let the rest of the application start and exercise its code
paths with no database: the pool hands out connections that never touch the
network and the executor answers every statement with an empty result.
The real ``ConnectionPool``/``QueryExecutor`` contain no trace of this mode.
"""
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

from tenantdb.core.logger import setup_logger
from tenantdb.core.sanitize import sanitize_sql_for_logging
from tenantdb.db.executor import QueryExecutor, Statement
from tenantdb.db.pool import ConnectionPool, PoolConnection

logger = setup_logger(__name__, include_location=True)

SKIP_VALIDATION_DATABASE = "skip-validation"


class _CannedCursor:
    description = None
    rowcount = 0
    statusmessage = "SKIPPED"

    def __init__(self):
        self._row: Optional[Dict[str, Any]] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def execute(self, query, params=None):
        self._row = {"db_name": SKIP_VALIDATION_DATABASE} if "current_database()" in str(query) else None

    async def fetchone(self):
        return self._row

    async def fetchall(self):
        return [self._row] if self._row else []


class _CannedConnection:
    def __init__(self):
        self.closed = False
        self.broken = False
        self.info = SimpleNamespace(backend_pid=0)

    def cursor(self):
        return _CannedCursor()

    async def close(self):
        self.closed = True


class _CannedDriverPool:
    def __init__(self, max_size: int):
        self.max_size = max_size
        self._handed_out = 0

    async def getconn(self, timeout=None):
        self._handed_out += 1
        return _CannedConnection()

    async def putconn(self, conn):
        self._handed_out -= 1

    async def close(self):
        self._handed_out = 0

    def get_stats(self):
        return {"pool_size": self.max_size, "pool_available": self.max_size - self._handed_out}


class FakeConnectionPool(ConnectionPool):
    """``ConnectionPool`` whose leases are canned connections; bounds and lease guards still apply."""

    async def open(self) -> None:
        if self._pool is not None:
            return
        logger.warning(f"Skip-validation mode: pool {self.name} will not contact the database")
        self._pool = _CannedDriverPool(self.max_size)


class FakeQueryExecutor(QueryExecutor):
    """Answers every statement with an empty result. Never fabricates rows."""

    async def _execute(self, lease: PoolConnection, stmt: Statement) -> Tuple[List[Dict[str, Any]], int, Optional[str]]:
        logger.debug(f"[skip-validation] {sanitize_sql_for_logging(stmt.text, max_length=200)}")
        return [], 0, "SKIPPED"
