"""
The ``schema_version`` ledger: one row per applied migration version.
"""
import re
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Set

from tenantdb.core.errors import MigrationError, QueryError
from tenantdb.core.logger import setup_logger
from tenantdb.db.executor import QueryExecutor

logger = setup_logger(__name__, include_location=True)

LEDGER_TABLE = "schema_version"
UNDEFINED_TABLE = "42P01"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class MigrationRecord:
    version: str
    applied_at: Optional[datetime]
    description: Optional[str]


class SchemaVersionLedger:
    """
    Reads and appends ``MigrationRecord`` rows. Records are never updated or
    deleted here; recording a version twice is a no-op.
    """

    def __init__(self, executor: QueryExecutor, schema: str = "public"):
        if not _IDENTIFIER.match(schema):
            raise ValueError(f"Invalid schema name {schema!r}")
        self._executor = executor
        self.schema = schema
        self.table = f'"{schema}".{LEDGER_TABLE}'

    def _create_script(self) -> str:
        return f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                version VARCHAR(255) NOT NULL PRIMARY KEY,
                applied_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
                description TEXT
            );

            CREATE OR REPLACE FUNCTION "{self.schema}".check_schema_version(required_version VARCHAR)
            RETURNS BOOLEAN AS $$
            BEGIN
                RETURN EXISTS (SELECT 1 FROM {self.table} WHERE version = required_version);
            END;
            $$ LANGUAGE plpgsql;

            CREATE OR REPLACE FUNCTION "{self.schema}".register_schema_version(version_id VARCHAR, version_description TEXT)
            RETURNS VOID AS $$
            BEGIN
                INSERT INTO {self.table} (version, description)
                VALUES (version_id, version_description)
                ON CONFLICT (version) DO NOTHING;
            END;
            $$ LANGUAGE plpgsql;
        """

    async def exists(self) -> bool:
        row = await self._executor.fetch_one(
            "SELECT EXISTS (SELECT FROM information_schema.tables "
            "WHERE table_schema = %s AND table_name = %s) AS exists",
            (self.schema, LEDGER_TABLE),
        )
        return bool(row and row.get("exists"))

    async def ensure(self) -> bool:
        """
        Create the ledger table and its helper functions when absent.
        Returns True if they were created by this call.
        """
        try:
            if await self.exists():
                logger.info(f"Schema version table {self.table} already exists")
                return False
            logger.info(f"Creating schema version table {self.table}")
            await self._executor.query(self._create_script())
        except QueryError as e:
            raise MigrationError(
                f"Failed to initialize schema version tracking: {e.original_message}",
                code="DATABASE_INIT_ERROR",
                details={"originalError": e.original_message, "code": e.sqlstate, "detail": e.detail},
            ) from e
        logger.info(f"Schema version table {self.table} created")
        return True

    async def applied_versions(self) -> Set[str]:
        """Versions in the ledger; empty when the ledger does not exist yet."""
        if not await self.exists():
            logger.info("Schema version table does not exist yet; no migrations applied")
            return set()
        try:
            rows = await self._executor.fetch_all(f"SELECT version FROM {self.table} ORDER BY applied_at")
        except QueryError as e:
            if e.sqlstate == UNDEFINED_TABLE:
                return set()
            raise
        return {row["version"] for row in rows}

    async def record(self, version: str, description: str, executor=None) -> None:
        """Append ``version``. Pass the transaction executor to record inside its transaction."""
        await (executor or self._executor).query(
            f"INSERT INTO {self.table} (version, description) VALUES (%s, %s) "
            f"ON CONFLICT (version) DO NOTHING",
            (version, description),
        )

    async def history(self) -> List[MigrationRecord]:
        if not await self.exists():
            return []
        rows = await self._executor.fetch_all(
            f"SELECT version, applied_at, description FROM {self.table} ORDER BY applied_at, version"
        )
        return [
            MigrationRecord(version=row["version"], applied_at=row.get("applied_at"), description=row.get("description"))
            for row in rows
        ]
