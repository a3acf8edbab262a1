"""
Versioned, fail-fast schema migrations.

A run:

1. ensures the ``schema_version`` ledger exists
2. reads the applied versions once
3. discovers the artifacts in the migrations directory
4. applies special artifacts first, each directly on a pooled connection
   (bootstrap artifacts are never recorded by the engine)
5. applies the transactional artifacts in order, each inside
   ``with_transaction(None, READ COMMITTED, ...)`` together with its ledger row

The first failure aborts the run. Artifacts applied before it stay applied.
"""
import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Set, Tuple, Union

from tenantdb.core.errors import DatabaseError, LeaseError, MigrationError
from tenantdb.core.logger import setup_logger
from tenantdb.core.logging_context import LoggingContext
from tenantdb.db.executor import QueryExecutor
from tenantdb.db.transaction import IsolationLevel, TransactionExecutor, TransactionManager
from tenantdb.migrations.artifacts import MigrationArtifact, discover_artifacts
from tenantdb.migrations.ledger import SchemaVersionLedger

logger = setup_logger(__name__, include_location=True)

_APPLY_ERRORS = (DatabaseError, LeaseError)


class ErrorLocation(NamedTuple):
    line: int
    content: str
    position: int


def error_location(sql: str, position: Optional[int]) -> Optional[ErrorLocation]:
    """
    Turn a 1-based character position reported by the server into the
    1-based line number and the (stripped) text of that line.

    >>> error_location("SELECT 1;\\nSELEC 2;", 11)
    ErrorLocation(line=2, content='SELEC 2;', position=11)
    """
    if not sql or position is None:
        return None
    try:
        position = int(position)
    except (TypeError, ValueError):
        return None
    if position < 1:
        return None
    line = sql[:position].count("\n") + 1
    lines = sql.split("\n")
    content = lines[line - 1].strip() if line <= len(lines) else ""
    return ErrorLocation(line=line, content=content, position=position)


@dataclass
class MigrationReport:
    run_id: str
    applied: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    bootstrapped: List[str] = field(default_factory=list)
    durations_ms: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "run_id": self.run_id,
            "applied": list(self.applied),
            "skipped": list(self.skipped),
            "bootstrapped": list(self.bootstrapped),
            "durations_ms": {k: round(v, 1) for k, v in self.durations_ms.items()},
        }


class MigrationEngine:
    def __init__(
        self,
        executor: QueryExecutor,
        transactions: TransactionManager,
        directory: Union[str, Path] = "migrations",
        ledger: Optional[SchemaVersionLedger] = None,
    ):
        self._executor = executor
        self._transactions = transactions
        self.directory = Path(directory)
        self.ledger = ledger or SchemaVersionLedger(executor)
        self._lock = asyncio.Lock()

    async def ensure_version_table(self) -> bool:
        return await self.ledger.ensure()

    async def get_applied_versions(self) -> Set[str]:
        return await self.ledger.applied_versions()

    def discover_artifacts(self, directory: Union[str, Path, None] = None) -> List[MigrationArtifact]:
        return discover_artifacts(directory or self.directory)

    async def status(self, directory: Union[str, Path, None] = None) -> List[Tuple[MigrationArtifact, bool]]:
        """Each artifact paired with whether its version is in the ledger."""
        applied = await self.get_applied_versions()
        return [(a, a.version in applied) for a in self.discover_artifacts(directory)]

    async def run(self, directory: Union[str, Path, None] = None) -> MigrationReport:
        """Apply every pending artifact. Raises ``MigrationError`` on the first failure."""
        async with self._lock:
            report = MigrationReport(run_id=f"migration-{int(time.time() * 1000)}")
            with LoggingContext(run_id=report.run_id):
                try:
                    await self._run(report, directory)
                except Exception as e:
                    logger.error(f"Failed to run migrations: {e}")
                    raise
            return report

    async def _run(self, report: MigrationReport, directory) -> None:
        logger.info("Starting database migrations")
        await self.ensure_version_table()
        applied = await self.get_applied_versions()
        artifacts = self.discover_artifacts(directory)

        special = [a for a in artifacts if a.special]
        regular = [a for a in artifacts if not a.special]

        for artifact in special:
            with LoggingContext(migration=artifact.file):
                await self._apply_special(artifact, applied, report)
        for artifact in regular:
            with LoggingContext(migration=artifact.file):
                await self._apply_transactional(artifact, applied, report)

        logger.info(
            f"All migrations applied successfully: applied={len(report.applied)} "
            f"skipped={len(report.skipped)} bootstrapped={len(report.bootstrapped)}"
        )

    def _already_applied(self, artifact: MigrationArtifact, applied: Set[str], report: MigrationReport) -> bool:
        if artifact.version not in applied:
            return False
        logger.info(f"Migration {artifact.version} already applied, skipping")
        report.skipped.append(artifact.version)
        return True

    async def _apply_special(self, artifact: MigrationArtifact, applied: Set[str], report: MigrationReport) -> None:
        if self._already_applied(artifact, applied, report):
            return
        logger.info(f"Applying special migration: {artifact.file}")
        sql = artifact.read_sql()
        start = time.perf_counter()
        try:
            await self._executor.query(sql)
        except _APPLY_ERRORS as e:
            raise self._failure(artifact, sql, e) from e

        if artifact.bootstrap:
            report.bootstrapped.append(artifact.version)
        else:
            try:
                await self.ledger.record(artifact.version, artifact.ledger_description)
            except _APPLY_ERRORS as e:
                raise self._failure(artifact, None, e) from e
            applied.add(artifact.version)
            report.applied.append(artifact.version)
        report.durations_ms[artifact.version] = (time.perf_counter() - start) * 1000
        logger.info(f"Special migration {artifact.version} applied successfully")

    async def _apply_transactional(
        self, artifact: MigrationArtifact, applied: Set[str], report: MigrationReport
    ) -> None:
        if self._already_applied(artifact, applied, report):
            return
        logger.info(f"Applying migration: {artifact.file}")
        sql = artifact.read_sql()

        async def apply(tx: TransactionExecutor) -> None:
            await tx.query(sql)
            try:
                await self.ledger.record(artifact.version, artifact.ledger_description, executor=tx)
            except _APPLY_ERRORS as e:
                # the position belongs to the ledger INSERT, not to the file
                raise self._failure(artifact, None, e) from e

        start = time.perf_counter()
        try:
            await self._transactions.with_transaction(None, IsolationLevel.READ_COMMITTED, apply)
        except MigrationError:
            raise
        except _APPLY_ERRORS as e:
            raise self._failure(artifact, sql, e) from e
        applied.add(artifact.version)
        report.applied.append(artifact.version)
        report.durations_ms[artifact.version] = (time.perf_counter() - start) * 1000
        logger.info(f"Migration {artifact.version} applied successfully")

    def _failure(
        self, artifact: MigrationArtifact, sql: Optional[str], error: Union[DatabaseError, LeaseError]
    ) -> MigrationError:
        position = getattr(error, "position", None)
        location = error_location(sql, position) if sql else None
        message = getattr(error, "original_message", None) or str(error)
        kind = "Special migration" if artifact.special else "Migration"
        logger.error(f"{kind} {artifact.file} failed: {message}")
        if location:
            logger.error(f"Error at line {location.line}: {location.content}")

        details = {
            "file": artifact.file,
            "version": artifact.version,
            "errorLine": location.line if location else None,
            "errorContent": location.content if location else None,
            "originalError": message,
            "code": getattr(error, "sqlstate", None) or getattr(error, "code", None),
            "detail": getattr(error, "detail", None),
        }
        if position is not None:
            details["position"] = position
        return MigrationError(f"{kind} failed: {message}", details=details)
