"""
Transactions on a single leased connection.

``TransactionManager.with_transaction(identity, isolation, fn)`` leases one
connection, runs ``BEGIN``, sets the isolation level, optionally applies a
transaction-local RLS identity, awaits ``fn(executor)`` and commits. Any
exception rolls back and is re-raised unchanged, and so does a statement error
that ``fn`` caught itself. A failing ROLLBACK is logged as a
``TransactionError`` but never replaces the original error. The lease is
released exactly once on every path.

Internally every unit of work ends in an explicit outcome,
``Committed(value)`` or ``RolledBack(error)``, tracked on a
``TransactionHandle`` whose state moves

    IDLE -> IN_TRANSACTION -> COMMITTED | ROLLED_BACK -> RELEASED

(``IDLE -> RELEASED`` when ``BEGIN`` itself fails).
"""
import asyncio
import inspect
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Set, TypeVar, Union

from tenantdb.core.errors import InvalidIsolationLevelError, LeaseError, QueryError, TransactionError
from tenantdb.core.logger import setup_logger
from tenantdb.core.sanitize import mask_value
from tenantdb.db.executor import Params, QueryExecutor, QueryResult, Statement
from tenantdb.db.pool import PoolConnection
from tenantdb.db.rls import RLSContextManager, validate_identity

logger = setup_logger(__name__, include_location=True)

T = TypeVar("T")

__all__ = [
    "IsolationLevel",
    "TransactionState",
    "Committed",
    "RolledBack",
    "TransactionHandle",
    "TransactionExecutor",
    "TransactionManager",
]


class IsolationLevel(str, Enum):
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"

    @classmethod
    def parse(cls, value: Any) -> Optional["IsolationLevel"]:
        """
        Match ``value`` against the allow-list ignoring case, repeated
        whitespace and underscores. Returns None for anything else.

        >>> IsolationLevel.parse("repeatable_read")
        <IsolationLevel.REPEATABLE_READ: 'REPEATABLE READ'>
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        normalized = " ".join(value.replace("_", " ").split()).upper()
        for level in cls:
            if level.value == normalized:
                return level
        return None


class TransactionState(str, Enum):
    IDLE = "idle"
    IN_TRANSACTION = "in_transaction"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    RELEASED = "released"


_TRANSITIONS = {
    TransactionState.IDLE: {TransactionState.IN_TRANSACTION, TransactionState.RELEASED},
    TransactionState.IN_TRANSACTION: {TransactionState.COMMITTED, TransactionState.ROLLED_BACK},
    TransactionState.COMMITTED: {TransactionState.RELEASED},
    TransactionState.ROLLED_BACK: {TransactionState.RELEASED},
    TransactionState.RELEASED: set(),
}


@dataclass(frozen=True)
class Committed:
    value: Any


@dataclass(frozen=True)
class RolledBack:
    error: BaseException


Outcome = Union[Committed, RolledBack]


class TransactionHandle:
    """One unit of work on one lease. Its outcome is decided exactly once."""

    def __init__(self, lease: PoolConnection, isolation: IsolationLevel, identity: Optional[str] = None):
        self.lease = lease
        self.isolation = isolation
        self.identity = identity
        self.state = TransactionState.IDLE
        self.outcome: Optional[Outcome] = None
        self.failure: Optional[QueryError] = None
        self.started_at = time.monotonic()
        self._hooks: List[Callable[[], Any]] = []

    @property
    def identity_set(self) -> bool:
        return self.identity is not None and self.lease.identity == self.identity

    @property
    def active(self) -> bool:
        return self.state is TransactionState.IN_TRANSACTION

    def transition(self, new_state: TransactionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid transaction transition {self.state.value} -> {new_state.value}")
        self.state = new_state

    def decide(self, outcome: Outcome) -> None:
        if self.outcome is not None:
            raise RuntimeError("Transaction outcome already decided")
        self.outcome = outcome
        if self.state is TransactionState.IN_TRANSACTION:
            self.transition(
                TransactionState.COMMITTED if isinstance(outcome, Committed) else TransactionState.ROLLED_BACK
            )

    def note_failure(self, error: QueryError) -> None:
        """Remember the first statement that failed; the server has aborted the transaction."""
        if self.failure is None:
            self.failure = error

    def add_hook(self, callback: Callable[[], Any]) -> None:
        if self.outcome is not None:
            raise RuntimeError("Cannot register after_commit hook: outcome already decided")
        self._hooks.append(callback)

    def take_hooks(self) -> List[Callable[[], Any]]:
        hooks, self._hooks = self._hooks, []
        return hooks


class TransactionExecutor:
    """
    Executor handed to a transaction body. Every statement runs on the
    transaction's lease; use after the outcome is decided raises ``LeaseError``.
    """

    def __init__(self, executor: QueryExecutor, handle: TransactionHandle):
        self._executor = executor
        self._handle = handle

    @property
    def handle(self) -> TransactionHandle:
        return self._handle

    @property
    def lease(self) -> PoolConnection:
        return self._handle.lease

    async def query(self, statement: Union[Statement, str], params: Params = None) -> QueryResult:
        if not self._handle.active:
            raise LeaseError(f"Transaction on lease {self.lease.lease_id} is {self._handle.state.value}")
        try:
            return await self._executor.query(statement, params)
        except QueryError as e:
            self._handle.note_failure(e)
            raise

    async def fetch_one(self, statement: Union[Statement, str], params: Params = None):
        return (await self.query(statement, params)).first()

    async def fetch_all(self, statement: Union[Statement, str], params: Params = None):
        return (await self.query(statement, params)).rows

    def after_commit(self, callback: Callable[[], Any]) -> None:
        """
        Run ``callback`` once the transaction has committed and its connection
        is released. Coroutines are scheduled without being awaited; failures
        are logged. Dropped if the transaction rolls back.
        """
        self._handle.add_hook(callback)


class TransactionManager:
    def __init__(
        self,
        executor: QueryExecutor,
        rls: Optional[RLSContextManager] = None,
        *,
        default_isolation: Union[IsolationLevel, str] = IsolationLevel.READ_COMMITTED,
        strict_isolation: bool = False,
    ):
        self._executor = executor
        self._rls = rls or RLSContextManager(executor)
        self.default_isolation = IsolationLevel.parse(default_isolation) or IsolationLevel.READ_COMMITTED
        self.strict_isolation = strict_isolation
        self._background: Set[asyncio.Future] = set()

    def resolve_isolation(self, isolation: Union[IsolationLevel, str, None]) -> IsolationLevel:
        if isolation is None:
            return self.default_isolation
        level = IsolationLevel.parse(isolation)
        if level is not None:
            return level
        if self.strict_isolation:
            raise InvalidIsolationLevelError(
                "Invalid isolation level",
                details={"requested": str(isolation), "allowed": [l.value for l in IsolationLevel]},
            )
        logger.warning(
            f"Unsupported isolation level {str(isolation)!r}; falling back to "
            f"{IsolationLevel.READ_COMMITTED.value}"
        )
        return IsolationLevel.READ_COMMITTED

    async def with_transaction(
        self,
        identity: Optional[str],
        isolation: Union[IsolationLevel, str, None],
        fn: Callable[[TransactionExecutor], Awaitable[T]],
    ) -> T:
        """
        Run ``fn`` in one transaction and return its result, or raise the
        error that made it roll back.
        """
        level = self.resolve_isolation(isolation)
        if identity is not None:
            identity = validate_identity(identity)

        pool = self._executor.pool
        lease = await pool.acquire()
        handle = TransactionHandle(lease, level, identity)
        try:
            outcome = await self._run(handle, fn)
        finally:
            if not lease.released:
                await pool.release(lease)
            handle.transition(TransactionState.RELEASED)

        if isinstance(outcome, RolledBack):
            raise outcome.error
        self._run_hooks(handle)
        return outcome.value

    async def _run(self, handle: TransactionHandle, fn) -> Outcome:
        lease = handle.lease
        bound = self._executor.bind(lease)
        try:
            await bound.query("BEGIN")
            handle.transition(TransactionState.IN_TRANSACTION)
            lease.in_transaction = True
            await bound.query(f"SET TRANSACTION ISOLATION LEVEL {handle.isolation.value}")
            if handle.identity is not None:
                await self._rls.set_context(lease, handle.identity, local=True)
            logger.debug(
                f"Transaction started on lease {lease.lease_id}: isolation={handle.isolation.value} "
                f"identity={mask_value(handle.identity) if handle.identity else None}"
            )

            value = await fn(TransactionExecutor(bound, handle))

            if handle.failure is not None:
                # a statement failed inside fn and the error was caught there
                raise handle.failure
            result = await bound.query("COMMIT")
            if result.status == "ROLLBACK":
                raise TransactionError(
                    "Transaction was rolled back by the server on COMMIT",
                    details={"lease": lease.lease_id, "isolation": handle.isolation.value},
                )
            handle.decide(Committed(value))
            lease.in_transaction = False
            logger.info(
                f"Transaction committed on lease {lease.lease_id} "
                f"in {(time.monotonic() - handle.started_at) * 1000:.1f}ms"
            )
            return handle.outcome
        except Exception as e:
            await self._rollback(handle, bound, e)
            return handle.outcome
        except BaseException as e:
            # cancellation: roll back, then let it propagate as-is
            await self._rollback(handle, bound, e)
            raise

    async def _rollback(self, handle: TransactionHandle, bound: QueryExecutor, error: BaseException) -> None:
        lease = handle.lease
        if handle.active:
            try:
                await bound.query("ROLLBACK")
            except Exception as rollback_error:
                failure = TransactionError(
                    "Rollback failed",
                    details={"originalError": str(rollback_error), "cause": str(error)},
                )
                logger.error(f"{failure.message} on lease {lease.lease_id}: {failure.to_dict()}")
        handle.decide(RolledBack(error))
        lease.in_transaction = False
        handle.take_hooks()
        logger.warning(f"Transaction rolled back on lease {lease.lease_id}: {type(error).__name__}: {error}")

    def _run_hooks(self, handle: TransactionHandle) -> None:
        for callback in handle.take_hooks():
            try:
                result = callback()
            except Exception as e:
                logger.error(f"after_commit hook {getattr(callback, '__name__', callback)!r} failed: {e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._background.add(task)
                task.add_done_callback(self._hook_done)

    def _hook_done(self, task: asyncio.Future) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"after_commit hook failed: {type(error).__name__}: {error}")

    async def drain(self) -> None:
        """Wait for scheduled after_commit hooks to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
