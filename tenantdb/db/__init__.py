"""
tenantdb.db
===========

Connection pool, query executor, RLS context and transactions.

Every component takes its collaborators as constructor arguments; use
``create_database(settings)`` to get them wired together:

    db = create_database(get_settings())
    await db.initialize()
    rows = await db.with_transaction(user_id, "SERIALIZABLE", do_work)
"""
from .pool import ConnectionPool, PoolConnection
from .executor import QueryExecutor, QueryResult, Statement
from .rls import RLSContextManager, validate_identity
from .transaction import (
    Committed,
    IsolationLevel,
    RolledBack,
    TransactionExecutor,
    TransactionHandle,
    TransactionManager,
    TransactionState,
)
from .database import Database, create_database

__all__ = [
    "ConnectionPool",
    "PoolConnection",
    "QueryExecutor",
    "QueryResult",
    "Statement",
    "RLSContextManager",
    "validate_identity",
    "Committed",
    "IsolationLevel",
    "RolledBack",
    "TransactionExecutor",
    "TransactionHandle",
    "TransactionManager",
    "TransactionState",
    "Database",
    "create_database",
]
