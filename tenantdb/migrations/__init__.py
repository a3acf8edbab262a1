"""
tenantdb.migrations
===================

Discovery, ledger and fail-fast application of versioned SQL migrations.
"""
from .artifacts import MigrationArtifact, discover_artifacts, version_of
from .ledger import MigrationRecord, SchemaVersionLedger
from .engine import ErrorLocation, MigrationEngine, MigrationReport, error_location

__all__ = [
    "MigrationArtifact",
    "discover_artifacts",
    "version_of",
    "MigrationRecord",
    "SchemaVersionLedger",
    "ErrorLocation",
    "MigrationEngine",
    "MigrationReport",
    "error_location",
]
