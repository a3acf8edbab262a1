import pytest

from tenantdb.core.errors import (
    DatabaseConnectionError,
    DatabaseError,
    ErrorKind,
    InvalidIdentityError,
    MigrationError,
    QueryError,
    classify_postgres_error,
)


@pytest.mark.parametrize(
    "code, kind, retryable",
    [
        ("40P01", ErrorKind.DB_DEADLOCK, True),
        ("40001", ErrorKind.DB_DEADLOCK, True),
        ("23505", ErrorKind.DB_CONSTRAINT, False),
        ("08006", ErrorKind.DB_CONNECTION, True),
        ("57014", ErrorKind.DB_TIMEOUT, True),
        ("42501", ErrorKind.DB_PERMISSION, False),
        ("42601", ErrorKind.DB_SYNTAX, False),
        ("XX000", ErrorKind.UNKNOWN, False),
    ],
)
def test_classify_by_sqlstate(code, kind, retryable):
    info = classify_postgres_error(Exception("boom"), code)
    assert info.kind == kind
    assert info.retryable is retryable
    assert info.code == f"PG_{code}"
    assert info.pg_code == code


def test_classify_falls_back_to_message():
    info = classify_postgres_error(Exception("duplicate key value violates unique constraint"))
    assert info.kind == ErrorKind.DB_CONSTRAINT
    assert info.code == "PG_UNKNOWN"
    assert "pg_code" not in info.to_dict()


def test_query_error_payload_shape():
    error = QueryError(
        'syntax error at or near "SELEC"',
        sqlstate="42601",
        detail=None,
        hint="check the keyword",
        position=12,
    )
    assert error.to_dict() == {
        "code": "DATABASE_ERROR",
        "message": "Database operation failed",
        "status": 500,
        "details": {
            "originalError": 'syntax error at or near "SELEC"',
            "code": "42601",
            "detail": None,
            "hint": "check the keyword",
            "position": 12,
        },
    }
    assert error.retryable is False
    assert "SELEC" in str(error)


def test_query_error_omits_missing_position():
    details = QueryError("connection reset", sqlstate="08006").to_dict()["details"]
    assert "position" not in details
    assert "hint" not in details


def test_payload_details_are_sanitized():
    error = DatabaseConnectionError(
        "Failed to open connection pool",
        details={"originalError": "boom", "password": "s3cr3t", "dsn": "postgresql://a:b@h/db"},
    )
    payload = error.to_dict()
    assert payload["code"] == "CONNECTION_ERROR"
    assert payload["status"] == 503
    assert payload["details"]["password"] == "[REDACTED]"
    assert payload["details"]["dsn"] == "[REDACTED]"
    assert error.details["password"] == "s3cr3t"


def test_class_codes_and_overrides():
    assert InvalidIdentityError("bad").to_dict()["code"] == "INVALID_IDENTITY"
    assert InvalidIdentityError("bad").status == 400

    error = MigrationError(
        "Migration failed", code="MIGRATION_MANIFEST_ERROR",
        details={"file": "002_add_col.sql", "version": "002", "errorLine": 3},
    )
    assert error.code == "MIGRATION_MANIFEST_ERROR"
    assert MigrationError.code == "MIGRATION_EXECUTION_ERROR"
    assert (error.file, error.version, error.line) == ("002_add_col.sql", "002", 3)
    assert isinstance(error, DatabaseError)


def test_query_error_detail_never_carries_secret_values():
    error = QueryError(
        'duplicate key value violates unique constraint "sessions_token_key"',
        sqlstate="23505",
        detail="Key (session_token)=(tok_9f8e7d6c) already exists.",
    )

    assert "tok_9f8e7d6c" not in error.detail
    assert "tok_9f8e7d6c" not in str(error.to_dict())
    assert error.to_dict()["details"]["detail"] == "Key (session_token)=(*****) already exists."
