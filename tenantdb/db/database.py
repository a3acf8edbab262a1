"""
Wiring for the data-access layer.

``create_database(settings)`` builds pool -> executor -> RLS -> transactions ->
migrations and returns them as one ``Database``; nothing here is a module
global, so tests and tools can hold as many instances as they need.
"""
from pathlib import Path
from typing import Optional, Union

from tenantdb.core.config import Settings
from tenantdb.core.logger import setup_logger
from tenantdb.db.executor import QueryExecutor
from tenantdb.db.fake import FakeConnectionPool, FakeQueryExecutor
from tenantdb.db.pool import ConnectionPool
from tenantdb.db.rls import RLSContextManager
from tenantdb.db.transaction import TransactionManager
from tenantdb.migrations.engine import MigrationEngine, MigrationReport
from tenantdb.migrations.ledger import SchemaVersionLedger

logger = setup_logger(__name__, include_location=True)


class Database:
    def __init__(
        self,
        settings: Settings,
        pool: ConnectionPool,
        executor: QueryExecutor,
        rls: RLSContextManager,
        transactions: TransactionManager,
        migrations: MigrationEngine,
        skip_validation: bool = False,
    ):
        self.settings = settings
        self.pool = pool
        self.executor = executor
        self.rls = rls
        self.transactions = transactions
        self.migrations = migrations
        self.skip_validation = skip_validation

    # convenience pass-throughs
    async def query(self, statement, params=None):
        return await self.executor.query(statement, params)

    async def with_context(self, identity, fn):
        return await self.rls.with_context(identity, fn)

    async def with_transaction(self, identity, isolation, fn):
        return await self.transactions.with_transaction(identity, isolation, fn)

    async def initialize(self, run_migrations: bool = True) -> Optional[MigrationReport]:
        """
        Open the pool, probe the server with fixed-delay retry and apply
        pending migrations. Any failure here means the process must not report
        itself ready.
        """
        logger.info(f"Initializing database: {self.settings.describe()}")
        await self.pool.open()
        await self.pool.probe(self.settings.connect_retries, self.settings.connect_retry_delay)
        if not run_migrations:
            return None
        if self.skip_validation:
            logger.warning("Skip-validation mode: migrations were not applied")
            return None
        return await self.migrations.run()

    async def close(self) -> None:
        await self.transactions.drain()
        await self.pool.close()

    async def __aenter__(self) -> "Database":
        await self.pool.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
        return False


def create_database(settings: Settings, migrations_dir: Union[str, Path, None] = None) -> Database:
    skip_validation = settings.skip_validation_active
    if settings.skip_validation and not skip_validation:
        logger.warning("DB_SKIP_VALIDATION is ignored in production")

    if skip_validation:
        logger.warning("Skip-validation mode enabled: queries return empty canned results")
        pool = FakeConnectionPool.from_settings(settings)
        executor = FakeQueryExecutor(pool)
    else:
        pool = ConnectionPool.from_settings(settings)
        executor = QueryExecutor(pool)

    rls = RLSContextManager(executor, settings.rls_setting)
    transactions = TransactionManager(
        executor,
        rls,
        default_isolation=settings.default_isolation,
        strict_isolation=settings.strict_isolation,
    )
    migrations = MigrationEngine(
        executor,
        transactions,
        directory=migrations_dir or settings.migrations_dir,
        ledger=SchemaVersionLedger(executor, settings.db_schema),
    )
    return Database(settings, pool, executor, rls, transactions, migrations, skip_validation=skip_validation)
