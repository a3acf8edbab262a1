"""
Bounded PostgreSQL connection pool with exclusive, one-shot leases.

The psycopg pool owns the physical connections; this module adds the lease
discipline the rest of tenantdb relies on:

- ``acquire()`` suspends while ``max_size`` leases are outstanding and resumes
  as leases are released (backpressure, not an error)
- every lease is a ``PoolConnection`` that can be released exactly once;
  releasing twice or touching it afterwards raises ``LeaseError``
- session state a lease put on its connection (the RLS identity) is reset
  before the connection goes back, or the connection is discarded
"""
import asyncio
import itertools
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import psycopg
from psycopg import AsyncConnection
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from tenantdb.core.config import validate_setting_name
from tenantdb.core.errors import DatabaseConnectionError, LeaseError
from tenantdb.core.logger import setup_logger

logger = setup_logger(__name__, include_location=True)

__all__ = ["PoolConnection", "ConnectionPool"]

# Wait applied to the driver pool when no acquire timeout is configured; a lease
# slot is already held at that point, so this only covers opening a connection.
_DEFAULT_CONNECT_WAIT = 30.0


class PoolConnection:
    """
    Exclusive lease on one physical connection.

    Owned by whoever acquired it until ``ConnectionPool.release`` is called.
    Carries the per-lease state that must never outlive the lease: the RLS
    identity applied to the session and whether a transaction is open.
    """

    def __init__(self, raw: AsyncConnection, pool: "ConnectionPool", lease_id: int):
        self._raw = raw
        self._pool = pool
        self.lease_id = lease_id
        self.identity: Optional[str] = None
        self.identity_scope: Optional[str] = None  # "session" | "transaction"
        self.in_transaction = False
        self.acquired_at = time.monotonic()
        self._released = False

    @property
    def raw(self) -> AsyncConnection:
        if self._released:
            raise LeaseError(f"Connection lease {self.lease_id} used after release")
        return self._raw

    @property
    def released(self) -> bool:
        return self._released

    @property
    def pool(self) -> "ConnectionPool":
        return self._pool

    @property
    def backend_pid(self) -> Any:
        info = getattr(self._raw, "info", None)
        return getattr(info, "backend_pid", "unknown") if info is not None else "unknown"

    @property
    def closed(self) -> bool:
        return bool(getattr(self._raw, "closed", False) or getattr(self._raw, "broken", False))

    def _mark_released(self) -> None:
        if self._released:
            raise LeaseError(f"Connection lease {self.lease_id} released twice")
        self._released = True

    def __repr__(self) -> str:
        state = "released" if self._released else "leased"
        return f"<PoolConnection lease={self.lease_id} pid={self.backend_pid} {state}>"


class ConnectionPool:
    """
    Bounded pool of reusable connections.

    Args:
        conninfo: libpq connection string (credentials included, never logged)
        max_size: maximum number of concurrent leases
        min_size: connections kept open while idle
        acquire_timeout: seconds ``acquire()`` may wait for a free slot;
            ``None`` waits indefinitely
        rls_setting: session variable reset on release when a lease set it
        name: pool name used in logs
        target: credential-free description of the server for log lines
    """

    def __init__(
        self,
        conninfo: str,
        *,
        max_size: int = 10,
        min_size: int = 1,
        acquire_timeout: Optional[float] = None,
        rls_setting: str = "app.current_user_id",
        name: str = "tenantdb",
        target: Optional[Dict[str, Any]] = None,
    ):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._conninfo = conninfo
        self.max_size = max_size
        self.min_size = min(min_size, max_size)
        self.acquire_timeout = acquire_timeout
        self.rls_setting = validate_setting_name(rls_setting)
        self.name = name
        self.target = dict(target or {})
        self._pool: Optional[AsyncConnectionPool] = None
        self._slots = asyncio.Semaphore(max_size)
        self._leases: Dict[int, PoolConnection] = {}
        self._lease_ids = itertools.count(1)
        self._waiting = 0

    @classmethod
    def from_settings(cls, settings) -> "ConnectionPool":
        return cls(
            settings.conninfo,
            max_size=settings.pool_size,
            min_size=settings.pool_min_size,
            acquire_timeout=settings.acquire_timeout,
            rls_setting=settings.rls_setting,
            target={
                "host": settings.db_host,
                "port": settings.db_port,
                "database": settings.db_name,
            },
        )

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    @property
    def in_use(self) -> int:
        return len(self._leases)

    @property
    def waiting(self) -> int:
        return self._waiting

    def _driver_pool(self) -> AsyncConnectionPool:
        return AsyncConnectionPool(
            self._conninfo,
            min_size=self.min_size,
            max_size=self.max_size,
            timeout=self.acquire_timeout or _DEFAULT_CONNECT_WAIT,
            kwargs={"row_factory": dict_row, "autocommit": True},
            configure=self._on_connect,
            name=self.name,
            open=False,
        )

    async def open(self) -> None:
        """
        Open the pool without waiting for connections; ``probe()`` is what
        verifies the server is reachable.
        """
        if self._pool is not None:
            return
        logger.info(
            f"Opening connection pool {self.name}: host={self.target.get('host')} "
            f"port={self.target.get('port')} database={self.target.get('database')} "
            f"max_size={self.max_size} min_size={self.min_size}"
        )
        pool = self._driver_pool()
        try:
            await pool.open(wait=False)
        except Exception as e:
            raise DatabaseConnectionError(
                "Failed to open connection pool", details={"originalError": str(e)}
            ) from e
        self._pool = pool

    async def _on_connect(self, conn: AsyncConnection) -> None:
        logger.info(
            f"Database connection opened: pool={self.name} host={self.target.get('host')} "
            f"port={self.target.get('port')} database={self.target.get('database')} "
            f"pid={conn.info.backend_pid}"
        )

    async def acquire(self) -> PoolConnection:
        """Lease a connection, suspending while the pool is at capacity."""
        if self._pool is None:
            raise DatabaseConnectionError(f"Connection pool {self.name} is not open")

        self._waiting += 1
        wait_start = time.monotonic()
        try:
            async with asyncio.timeout(self.acquire_timeout):
                await self._slots.acquire()
        except TimeoutError as e:
            raise DatabaseConnectionError(
                f"Timed out after {self.acquire_timeout}s waiting for a connection",
                details={"pool": self.name, "in_use": self.in_use, "max_size": self.max_size},
            ) from e
        finally:
            self._waiting -= 1

        try:
            raw = await self._pool.getconn(timeout=self.acquire_timeout or _DEFAULT_CONNECT_WAIT)
        except Exception as e:
            self._slots.release()
            raise DatabaseConnectionError(
                "Failed to obtain a database connection",
                details={"pool": self.name, "originalError": str(e)},
            ) from e
        except BaseException:
            # cancelled while waiting on the driver pool
            self._slots.release()
            raise

        lease = PoolConnection(raw, self, next(self._lease_ids))
        self._leases[lease.lease_id] = lease
        logger.debug(
            f"Connection lease {lease.lease_id} acquired from {self.name} "
            f"in {(time.monotonic() - wait_start) * 1000:.1f}ms (in_use={self.in_use}/{self.max_size})"
        )
        return lease

    async def release(self, lease: PoolConnection) -> None:
        """Return a lease. Must be called exactly once per ``acquire()``."""
        if lease.pool is not self or lease.lease_id not in self._leases:
            if lease.released:
                raise LeaseError(f"Connection lease {lease.lease_id} released twice")
            raise LeaseError(f"Connection lease {lease.lease_id} does not belong to pool {self.name}")
        lease._mark_released()
        del self._leases[lease.lease_id]
        raw = lease._raw
        try:
            if lease.identity is not None and lease.identity_scope == "session" and not lease.closed:
                await self._reset_identity(lease, raw)
            if lease.closed:
                logger.info(
                    f"Database connection closed: pool={self.name} pid={lease.backend_pid} "
                    f"(discarded on release of lease {lease.lease_id})"
                )
            await self._pool.putconn(raw)
        finally:
            lease.identity = None
            lease.identity_scope = None
            lease.in_transaction = False
            self._slots.release()
        logger.debug(
            f"Connection lease {lease.lease_id} returned to {self.name} "
            f"after {(time.monotonic() - lease.acquired_at) * 1000:.1f}ms"
        )

    async def _reset_identity(self, lease: PoolConnection, raw: AsyncConnection) -> None:
        try:
            async with raw.cursor() as cur:
                await cur.execute(f"RESET {self.rls_setting}")
        except psycopg.Error as e:
            logger.warning(
                f"Failed to reset {self.rls_setting} on lease {lease.lease_id}; "
                f"discarding connection pid={lease.backend_pid}: {e}"
            )
            await raw.close()

    @asynccontextmanager
    async def connection(self):
        """
        Lease a connection for the duration of the block.

        Usage:
            async with pool.connection() as lease:
                async with lease.raw.cursor() as cur:
                    await cur.execute("SELECT 1")
        """
        lease = await self.acquire()
        try:
            yield lease
        finally:
            if not lease.released:
                await self.release(lease)

    async def probe(self, attempts: int = 5, delay: float = 2.0) -> str:
        """
        Verify the server answers, retrying with a fixed delay.

        Returns the connected database name. Exhausting ``attempts`` raises
        ``DatabaseConnectionError``; callers treat that as fatal at startup.
        """
        attempts = max(1, attempts)
        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            try:
                async with self.connection() as lease:
                    async with lease.raw.cursor() as cur:
                        await cur.execute("SELECT current_database() AS db_name")
                        row = await cur.fetchone()
                db_name = row["db_name"] if row else None
                logger.info(
                    f"Database connection verified: database={db_name} attempt={attempt}/{attempts} "
                    f"pool_size={self.max_size}"
                )
                return db_name
            except (DatabaseConnectionError, psycopg.Error, OSError) as e:
                last_error = e
                if attempt < attempts:
                    logger.warning(
                        f"Database probe attempt {attempt}/{attempts} failed for "
                        f"{self.target.get('host')}:{self.target.get('port')}/{self.target.get('database')}; "
                        f"retrying in {delay:.1f}s ({e})"
                    )
                    await asyncio.sleep(delay)

        logger.error(f"Database unreachable after {attempts} attempts: {last_error}")
        raise DatabaseConnectionError(
            f"Database unreachable after {attempts} attempts",
            details={"originalError": str(last_error), "attempts": attempts},
        ) from last_error

    def stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "name": self.name,
            "max_size": self.max_size,
            "in_use": self.in_use,
            "waiting": self._waiting,
        }
        if self._pool is not None:
            try:
                driver = self._pool.get_stats()
                stats["size"] = driver.get("pool_size", 0)
                stats["available"] = driver.get("pool_available", 0)
            except Exception as e:
                logger.debug(f"Could not get stats for pool {self.name}: {e}")
        return stats

    async def close(self) -> None:
        """Close every connection. Outstanding leases become unusable."""
        if self._pool is None:
            return
        if self._leases:
            logger.warning(f"Closing pool {self.name} with {len(self._leases)} outstanding leases")
        pool, self._pool = self._pool, None
        await pool.close()
        logger.info(f"Connection pool {self.name} closed; all database connections disconnected")
