"""
Error taxonomy for the tenantdb data-access layer.

Two layers live here:

- ``ErrorKind`` / ``ErrorInfo``: a stable classification of driver failures
  (connection, constraint, deadlock, ...) with a ``retryable`` hint, so callers
  can decide on retries without matching on message strings.
- The exception hierarchy raised by the pool, executor, RLS, transaction and
  migration components. Every exception renders to the caller payload shape::

      {"code": ..., "message": ..., "status": ..., "details": {...}}

  and its ``details`` are passed through ``sanitize_sensitive_data`` so that
  secret-shaped values never reach an API response.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from tenantdb.core.sanitize import sanitize_error_detail, sanitize_sensitive_data


class ErrorKind(str, Enum):
    """Standardized error categories."""

    DB_CONNECTION = "db_connection"     # cannot reach / lost the server
    DB_CONSTRAINT = "db_constraint"     # unique, foreign key, check
    DB_DEADLOCK = "db_deadlock"         # deadlock or serialization failure
    DB_TIMEOUT = "db_timeout"           # statement or lock timeout
    DB_SYNTAX = "db_syntax"             # syntax error or undefined object
    DB_PERMISSION = "db_permission"     # insufficient privilege / RLS violation
    UNKNOWN = "unknown"


class ErrorInfo(BaseModel):
    """
    Classification attached to a ``QueryError``.

    - info.kind == ErrorKind.DB_DEADLOCK
    - info.retryable is True
    - info.pg_code in ('40001', '40P01')
    """

    kind: ErrorKind = Field(default=ErrorKind.UNKNOWN, description="Error category")
    retryable: bool = Field(default=False, description="Whether retrying may succeed")
    code: str = Field(default="PG_UNKNOWN", description="Prefixed driver code, e.g. PG_40P01")
    message: str = Field(default="Unknown error", description="Human-readable message")
    pg_code: Optional[str] = Field(None, description="PostgreSQL SQLSTATE")

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "kind": self.kind.value,
            "retryable": self.retryable,
            "code": self.code,
            "message": self.message,
        }
        if self.pg_code is not None:
            d["pg_code"] = self.pg_code
        return d


def classify_postgres_error(error: Exception, error_code: Optional[str] = None) -> ErrorInfo:
    """Classify a PostgreSQL error by SQLSTATE, falling back to its message."""
    error_str = str(error).lower()

    pg_code = error_code or getattr(error, "sqlstate", None)
    code = f"PG_{pg_code}" if pg_code else "PG_UNKNOWN"

    def info(kind: ErrorKind, retryable: bool) -> ErrorInfo:
        return ErrorInfo(kind=kind, retryable=retryable, code=code, message=str(error), pg_code=pg_code)

    if pg_code in ("40001", "40P01") or "deadlock" in error_str:
        return info(ErrorKind.DB_DEADLOCK, True)
    if (pg_code and pg_code.startswith("23")) or "duplicate key" in error_str:
        return info(ErrorKind.DB_CONSTRAINT, False)
    if (pg_code and pg_code.startswith("08")) or "connection" in error_str:
        return info(ErrorKind.DB_CONNECTION, True)
    if pg_code in ("57014", "55P03") or "timeout" in error_str:
        return info(ErrorKind.DB_TIMEOUT, True)
    if pg_code and pg_code.startswith("42"):
        if pg_code == "42501":
            return info(ErrorKind.DB_PERMISSION, False)
        return info(ErrorKind.DB_SYNTAX, False)
    return info(ErrorKind.UNKNOWN, False)


class DatabaseError(Exception):
    """Base class for every error this layer raises to its callers."""

    code = "DATABASE_ERROR"
    status = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status
        self.details = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "status": self.status,
            "details": sanitize_sensitive_data(self.details),
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class DatabaseConnectionError(DatabaseError):
    """A connection could not be established or leased."""

    code = "CONNECTION_ERROR"
    status = 503


class QueryError(DatabaseError):
    """
    A statement failed. Always classified as ``DATABASE_ERROR`` whatever the
    driver's native exception type; the driver's SQLSTATE, detail, hint and
    1-based character position are preserved.
    """

    code = "DATABASE_ERROR"
    status = 500

    def __init__(
        self,
        message: str,
        *,
        sqlstate: Optional[str] = None,
        detail: Optional[str] = None,
        hint: Optional[str] = None,
        position: Optional[int] = None,
        info: Optional[ErrorInfo] = None,
    ):
        detail = sanitize_error_detail(detail)
        details: Dict[str, Any] = {
            "originalError": message,
            "code": sqlstate,
            "detail": detail,
        }
        if hint is not None:
            details["hint"] = hint
        if position is not None:
            details["position"] = position
        super().__init__("Database operation failed", details=details)
        self.original_message = message
        self.sqlstate = sqlstate
        self.detail = detail
        self.hint = hint
        self.position = position
        self.info = info or ErrorInfo(message=message, pg_code=sqlstate)

    @property
    def retryable(self) -> bool:
        return self.info.retryable

    def __str__(self) -> str:
        return f"{self.message}: {self.original_message}"


class InvalidIdentityError(DatabaseError):
    """An RLS identity failed validation; no statement was sent."""

    code = "INVALID_IDENTITY"
    status = 400


class InvalidIsolationLevelError(DatabaseError):
    """An isolation level outside the allow-list was requested in strict mode."""

    code = "INVALID_ISOLATION_LEVEL"
    status = 400


class TransactionError(DatabaseError):
    """
    ROLLBACK itself failed (logged alongside the error that caused it), or the
    server answered COMMIT by rolling the transaction back.
    """

    code = "TRANSACTION_ERROR"
    status = 500


class MigrationError(DatabaseError):
    """A migration artifact could not be read, parsed or applied."""

    code = "MIGRATION_EXECUTION_ERROR"
    status = 500

    @property
    def file(self) -> Optional[str]:
        return self.details.get("file")

    @property
    def version(self) -> Optional[str]:
        return self.details.get("version")

    @property
    def line(self) -> Optional[int]:
        return self.details.get("errorLine")


class LeaseError(RuntimeError):
    """Programming error: a lease was released twice, reused after release, or is foreign to the pool."""


__all__ = [
    "ErrorKind",
    "ErrorInfo",
    "classify_postgres_error",
    "DatabaseError",
    "DatabaseConnectionError",
    "QueryError",
    "InvalidIdentityError",
    "InvalidIsolationLevelError",
    "TransactionError",
    "MigrationError",
    "LeaseError",
]
