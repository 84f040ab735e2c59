from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from antares.logging import get_logger
from antares.storage.errors import StoreUnavailable

logger = get_logger(__name__)

REFRESH_TOKEN_PREFIX = "refresh_token::"
USER_REFRESH_TOKEN_PREFIX = "user_refresh_token::"
LOGIN_ATTEMPTS_PREFIX = "login_attempts::"
ACCOUNT_LOCKED_PREFIX = "account_locked::"


class RedisCache:
    """Redis wrapper holding login-attempt counters and the refresh-token index."""

    # Atomic failure recording: the window starts at the first failure and the
    # counter is replaced by the lock flag once the threshold is reached.
    _LOGIN_FAILURE_SCRIPT = """
local attempts = redis.call('INCR', KEYS[1])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[2])
end

local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
  redis.call('SET', KEYS[2], '1', 'EX', ARGV[3])
  redis.call('DEL', KEYS[1])
  return {1, attempts}
end

return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._login_failure = self.client.register_script(self._LOGIN_FAILURE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        from redis import Redis

        # Short-lived sync client so the async pool is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except RedisError as exc:
            logger.error("redis_operation_failed", operation=operation, error=str(exc))
            raise StoreUnavailable("redis", str(exc)) from exc

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

    # =========================================================================
    # Login attempts
    # =========================================================================

    async def record_login_failure(
        self,
        identifier: str,
        *,
        max_attempts: int,
        window_seconds: int,
        lock_seconds: int,
    ) -> tuple[bool, int]:
        """Record a failed login and lock the identifier at the threshold.

        Returns:
            Tuple of (locked_now, attempts_counted)
        """
        async with self._guard("record_login_failure"):
            result = await self._login_failure(
                keys=[
                    f"{LOGIN_ATTEMPTS_PREFIX}{identifier}",
                    f"{ACCOUNT_LOCKED_PREFIX}{identifier}",
                ],
                args=[max_attempts, window_seconds, lock_seconds],
            )
        return (bool(result[0]), int(result[1]))

    async def login_lock_ttl(self, identifier: str) -> int:
        """Seconds left on the lock flag, 0 when the identifier is not locked."""
        async with self._guard("login_lock_ttl"):
            ttl = await self.client.ttl(f"{ACCOUNT_LOCKED_PREFIX}{identifier}")
        return max(0, int(ttl))

    async def is_login_locked(self, identifier: str) -> bool:
        async with self._guard("is_login_locked"):
            return bool(await self.client.exists(f"{ACCOUNT_LOCKED_PREFIX}{identifier}"))

    async def clear_login_attempts(self, identifier: str) -> None:
        async with self._guard("clear_login_attempts"):
            await self.client.delete(
                f"{LOGIN_ATTEMPTS_PREFIX}{identifier}",
                f"{ACCOUNT_LOCKED_PREFIX}{identifier}",
            )

    async def get_login_attempts(self, identifier: str) -> int:
        async with self._guard("get_login_attempts"):
            value = await self.client.get(f"{LOGIN_ATTEMPTS_PREFIX}{identifier}")
        return int(value) if value is not None else 0

    # =========================================================================
    # Refresh tokens
    # =========================================================================

    async def store_refresh_token(
        self, token_hash: str, principal_hash: str, principal_id: str, ttl_seconds: int
    ) -> None:
        async with self._guard("store_refresh_token"):
            pipe = self.client.pipeline()
            pipe.set(f"{REFRESH_TOKEN_PREFIX}{token_hash}", principal_id, ex=ttl_seconds)
            pipe.set(
                f"{USER_REFRESH_TOKEN_PREFIX}{principal_hash}", token_hash, ex=ttl_seconds
            )
            await pipe.execute()

    async def get_refresh_principal(self, token_hash: str) -> Optional[str]:
        async with self._guard("get_refresh_principal"):
            return await self.client.get(f"{REFRESH_TOKEN_PREFIX}{token_hash}")

    async def consume_refresh_token(self, token_hash: str) -> Optional[str]:
        """GETDEL, so concurrent redemptions of one token see it once."""
        async with self._guard("consume_refresh_token"):
            return await self.client.getdel(f"{REFRESH_TOKEN_PREFIX}{token_hash}")

    async def get_user_refresh_hash(self, principal_hash: str) -> Optional[str]:
        async with self._guard("get_user_refresh_hash"):
            return await self.client.get(f"{USER_REFRESH_TOKEN_PREFIX}{principal_hash}")

    async def delete_refresh_token(self, token_hash: str, principal_hash: str) -> None:
        async with self._guard("delete_refresh_token"):
            await self.client.delete(
                f"{REFRESH_TOKEN_PREFIX}{token_hash}",
                f"{USER_REFRESH_TOKEN_PREFIX}{principal_hash}",
            )
