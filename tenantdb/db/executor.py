"""
Single-statement execution on a leased connection.

``QueryExecutor.query`` borrows a connection when none is bound, runs one
statement through a cursor, logs it in sanitized form and gives the
connection back. Driver failures are re-shaped into ``QueryError`` and raised;
nothing is swallowed and nothing is retried here.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import psycopg

from tenantdb.core.errors import QueryError, classify_postgres_error
from tenantdb.core.logger import setup_logger
from tenantdb.core.sanitize import sanitize_params_for_logging, sanitize_sql_for_logging
from tenantdb.db.pool import ConnectionPool, PoolConnection

logger = setup_logger(__name__, include_location=True)

__all__ = ["Statement", "QueryResult", "QueryExecutor", "query_error_from_driver"]

Params = Union[Sequence[Any], Mapping[str, Any], None]


@dataclass(frozen=True)
class Statement:
    """Statement text plus its bound parameters."""

    text: str
    params: Params = None

    @classmethod
    def of(cls, statement: Union["Statement", str], params: Params = None) -> "Statement":
        if isinstance(statement, Statement):
            if params is not None:
                raise ValueError("params given twice: pass them on the Statement or the call, not both")
            return statement
        if isinstance(params, list):
            params = tuple(params)
        return cls(statement, params)


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    rowcount: int = 0
    status: Optional[str] = None
    duration_ms: float = 0.0

    def first(self) -> Optional[Dict[str, Any]]:
        return self.rows[0] if self.rows else None

    def scalar(self) -> Any:
        row = self.first()
        if not row:
            return None
        return next(iter(row.values()))

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self):
        return iter(self.rows)


def _diag_position(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def query_error_from_driver(error: psycopg.Error) -> QueryError:
    """Re-shape any psycopg error into a ``QueryError`` keeping its diagnostics."""
    diag = getattr(error, "diag", None)
    sqlstate = getattr(diag, "sqlstate", None) or getattr(error, "sqlstate", None)
    message = getattr(diag, "message_primary", None) or str(error).strip() or type(error).__name__
    return QueryError(
        message,
        sqlstate=sqlstate,
        detail=getattr(diag, "message_detail", None),
        hint=getattr(diag, "message_hint", None),
        position=_diag_position(getattr(diag, "statement_position", None)),
        info=classify_postgres_error(error, sqlstate),
    )


class QueryExecutor:
    """
    Runs statements against the pool, or against one bound lease.

    An unbound executor acquires and releases a connection per call. A bound
    executor (see ``bind``) reuses the caller's lease and never releases it;
    this is how transaction and RLS scopes keep every statement on the same
    session.
    """

    def __init__(self, pool: ConnectionPool, lease: Optional[PoolConnection] = None):
        self._pool = pool
        self._lease = lease

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def lease(self) -> Optional[PoolConnection]:
        return self._lease

    def bind(self, lease: PoolConnection) -> "QueryExecutor":
        """Executor that runs every statement on ``lease``."""
        return self.__class__(self._pool, lease)

    async def query(self, statement: Union[Statement, str], params: Params = None) -> QueryResult:
        stmt = Statement.of(statement, params)
        if self._lease is not None:
            return await self._run(self._lease, stmt)

        lease = await self._pool.acquire()
        try:
            return await self._run(lease, stmt)
        finally:
            await self._pool.release(lease)

    async def fetch_one(self, statement: Union[Statement, str], params: Params = None) -> Optional[Dict[str, Any]]:
        return (await self.query(statement, params)).first()

    async def fetch_all(self, statement: Union[Statement, str], params: Params = None) -> List[Dict[str, Any]]:
        return (await self.query(statement, params)).rows

    async def _run(self, lease: PoolConnection, stmt: Statement) -> QueryResult:
        start = time.perf_counter()
        try:
            rows, rowcount, status = await self._execute(lease, stmt)
        except psycopg.Error as e:
            duration_ms = (time.perf_counter() - start) * 1000
            error = query_error_from_driver(e)
            logger.error(
                f"Query failed after {duration_ms:.1f}ms: {sanitize_sql_for_logging(stmt.text)} "
                f"params={sanitize_params_for_logging(stmt.params, stmt.text)} "
                f"sqlstate={error.sqlstate} position={error.position} error={sanitize_sql_for_logging(error.original_message)}"
            )
            raise error from e

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Query executed in {duration_ms:.1f}ms rows={rowcount}: {sanitize_sql_for_logging(stmt.text)} "
            f"params={sanitize_params_for_logging(stmt.params, stmt.text)}"
        )
        return QueryResult(rows=rows, rowcount=rowcount, status=status, duration_ms=duration_ms)

    async def _execute(self, lease: PoolConnection, stmt: Statement) -> Tuple[List[Dict[str, Any]], int, Optional[str]]:
        async with lease.raw.cursor() as cur:
            await cur.execute(stmt.text, stmt.params)
            rows = await cur.fetchall() if cur.description is not None else []
            rowcount = cur.rowcount if cur.rowcount is not None and cur.rowcount >= 0 else len(rows)
            return list(rows), rowcount, cur.statusmessage
