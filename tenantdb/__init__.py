from .core.config import Settings, get_settings
from .core.errors import (
    DatabaseConnectionError,
    DatabaseError,
    InvalidIdentityError,
    InvalidIsolationLevelError,
    LeaseError,
    MigrationError,
    QueryError,
    TransactionError,
)
from .core.logger import setup_logger
from .db import Database, IsolationLevel, create_database

__version__ = "0.1.0"

__all__ = [
    "Settings",
    "get_settings",
    "DatabaseError",
    "DatabaseConnectionError",
    "QueryError",
    "InvalidIdentityError",
    "InvalidIsolationLevelError",
    "TransactionError",
    "MigrationError",
    "LeaseError",
    "setup_logger",
    "Database",
    "IsolationLevel",
    "create_database",
]
