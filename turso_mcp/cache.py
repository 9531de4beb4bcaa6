"""
In-memory cache of database tokens.

    get_token(db, permission)
        │
        ├── entry for (db, permission) and not expired ──> cached token
        │
        └── otherwise ──> issuer.issue(db, permission) ──> store ──> new token

Entries are keyed by CacheKey, so a full-access token is never handed out
for a read-only request or the other way round. Expired entries are rejected
at read time; the periodic sweep only exists to reclaim memory for databases
nobody asks about any more.

The lock guards the dict, not the issuance: two concurrent misses for the same
key may both call the issuer. Both tokens are valid and the last one stored
wins.
"""

import asyncio
import contextlib
import datetime
import logging
import threading
from typing import Callable, Protocol

from turso_mcp.errors import RemoteServiceError
from turso_mcp.tokens import CacheKey, Permission, ScopedToken, utcnow

logger = logging.getLogger("turso-mcp.cache")


class Issuer(Protocol):
    async def issue(self, database_name: str, permission: Permission) -> ScopedToken: ...


class TokenCache:
    """
    Keyed store of ScopedTokens with expiry tracking and a cancellable sweeper.

    Args:
        issuer: Anything with `async issue(database_name, permission)`
        cleanup_interval: Seconds between background sweeps
        clock: Returns the current UTC time; tests substitute a fake clock
    """

    def __init__(
        self,
        issuer: Issuer,
        cleanup_interval: float = 3600.0,
        clock: Callable[[], datetime.datetime] = utcnow,
    ):
        self.issuer = issuer
        self.cleanup_interval = cleanup_interval
        self.clock = clock
        self._entries: dict[CacheKey, ScopedToken] = {}
        self._lock = threading.Lock()
        self._sweeper: asyncio.Task | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def peek(self, database_name: str, permission: Permission) -> ScopedToken | None:
        """Return the stored entry for a key, expired or not, without issuing."""
        with self._lock:
            return self._entries.get(CacheKey(database_name, Permission(permission)))

    async def get_token(self, database_name: str, permission: Permission) -> ScopedToken:
        """
        Return a valid token for (database_name, permission).

        A cached token is returned when its expiry is strictly after now.
        Otherwise a fresh one is issued and stored. If issuance fails, or the
        new token is already expired, the error propagates and the cache is
        left untouched.
        """
        key = CacheKey(database_name, Permission(permission))

        with self._lock:
            cached = self._entries.get(key)
            if cached is not None and not cached.is_expired(self.clock()):
                logger.debug(
                    "Token cache hit",
                    extra={"log_data": {"database": database_name, "permission": key.permission.value}},
                )
                return cached

        logger.debug(
            "Token cache miss",
            extra={
                "log_data": {
                    "database": database_name,
                    "permission": key.permission.value,
                    "reason": "expired" if cached is not None else "absent",
                }
            },
        )
        token = await self.issuer.issue(database_name, key.permission)
        if token.is_expired(self.clock()):
            logger.warning(
                "Issued token is already expired",
                extra={
                    "log_data": {
                        "database": database_name,
                        "permission": key.permission.value,
                        "expires_at": token.expires_at.isoformat(),
                    }
                },
            )
            raise RemoteServiceError(
                f"Token issued for database {database_name} expired at "
                f"{token.expires_at.isoformat()}; check the local clock",
                database_name=database_name,
                permission=key.permission.value,
            )

        with self._lock:
            self._entries[key] = token
        return token

    def invalidate(self, database_name: str, permission: Permission | None = None) -> int:
        """
        Drop cached tokens for a database: one permission level, or both when
        `permission` is None. Returns the number of entries removed.
        """
        if permission is not None:
            keys = [CacheKey(database_name, Permission(permission))]
        else:
            keys = [CacheKey(database_name, p) for p in Permission]
        removed = 0
        with self._lock:
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        now = self.clock()
        with self._lock:
            stale = [key for key, token in self._entries.items() if token.is_expired(now)]
            for key in stale:
                del self._entries[key]
            remaining = len(self._entries)

        if stale:
            logger.info(
                "Purged expired tokens",
                extra={"log_data": {"purged": len(stale), "remaining": remaining}},
            )
        return len(stale)

    # ---------------------------------------------------------------------
    # Background sweep
    # ---------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    def start(self) -> None:
        """Start the periodic sweep on the running event loop. Idempotent."""
        if self.running:
            return
        self._sweeper = asyncio.create_task(self._sweep_forever(), name="token-cache-sweeper")

    async def stop(self) -> None:
        """Cancel the periodic sweep and wait for it to finish."""
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self.purge_expired()
