"""
Row-level-security identity propagation.

The identity is a property of a leased connection, never of the pool:
``set_context`` configures one already-borrowed lease, ``with_context`` borrows
a dedicated lease for the duration of a callable. Identities are validated
before any connection is touched, and a failure to establish the identity
fails the whole operation.
"""
import re
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenantdb.core.errors import InvalidIdentityError
from tenantdb.core.logger import setup_logger
from tenantdb.core.sanitize import mask_value
from tenantdb.db.executor import QueryExecutor
from tenantdb.db.pool import PoolConnection

logger = setup_logger(__name__, include_location=True)

T = TypeVar("T")

_IDENTITY = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


def validate_identity(identity: Any) -> str:
    """Return ``identity`` if it is a well-formed UUID, else raise ``InvalidIdentityError``."""
    if not isinstance(identity, str) or not _IDENTITY.match(identity):
        raise InvalidIdentityError(
            "Invalid identity format",
            details={"expected": "UUID (8-4-4-4-12 hex digits)"},
        )
    return identity


class RLSContextManager:
    """
    Applies the tenant identity through a custom setting (``rls_setting``)
    that the database's row policies read with ``current_setting()``.
    """

    def __init__(self, executor: QueryExecutor, rls_setting: Optional[str] = None):
        self._executor = executor
        self.rls_setting = rls_setting or executor.pool.rls_setting

    async def set_context(self, lease: PoolConnection, identity: Any, *, local: bool = False) -> None:
        """
        Set the identity on ``lease``.

        ``local=True`` scopes it to the open transaction; otherwise it lasts
        for the session and is reset when the lease is released.
        """
        identity = validate_identity(identity)
        scope = "transaction" if local else "session"
        try:
            await self._executor.bind(lease).query(
                "SELECT set_config(%s, %s, %s)", (self.rls_setting, identity, local)
            )
        except Exception:
            lease.identity = None
            lease.identity_scope = None
            logger.error(f"Failed to set RLS context {mask_value(identity)} on lease {lease.lease_id}")
            raise
        lease.identity = identity
        lease.identity_scope = scope
        logger.debug(f"RLS context {mask_value(identity)} set on lease {lease.lease_id} ({scope})")

    async def current_identity(self, lease: PoolConnection) -> Optional[str]:
        """Identity the database currently sees on ``lease`` (None when unset)."""
        value = await self._executor.bind(lease).fetch_one(
            "SELECT current_setting(%s, true) AS identity", (self.rls_setting,)
        )
        return (value or {}).get("identity") or None

    async def with_context(self, identity: Any, fn: Callable[[QueryExecutor], Awaitable[T]]) -> T:
        """
        Run ``fn`` with an executor bound to a dedicated lease carrying ``identity``.

        The lease is released on every path, including when setting the
        identity fails, in which case ``fn`` is never called.
        """
        identity = validate_identity(identity)
        pool = self._executor.pool
        lease = await pool.acquire()
        try:
            await self.set_context(lease, identity)
            return await fn(self._executor.bind(lease))
        finally:
            await pool.release(lease)
