from __future__ import annotations

import base64
import hashlib
import secrets
from typing import Optional, Protocol

from antares.logging import get_logger

logger = get_logger(__name__)


class RefreshCache(Protocol):
    async def store_refresh_token(
        self, token_hash: str, principal_hash: str, principal_id: str, ttl_seconds: int
    ) -> None:
        ...

    async def get_refresh_principal(self, token_hash: str) -> Optional[str]:
        ...

    async def consume_refresh_token(self, token_hash: str) -> Optional[str]:
        ...

    async def get_user_refresh_hash(self, principal_hash: str) -> Optional[str]:
        ...

    async def delete_refresh_token(self, token_hash: str, principal_hash: str) -> None:
        ...


def hash_value(value: str) -> str:
    """SHA-256 digest, URL-safe base64 without padding."""
    digest = hashlib.sha256(value.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class RefreshTokenStore:
    """Opaque refresh tokens, hashed at rest, one live token per principal.

    Two entries share the refresh TTL: ``hash(token) -> principal_id`` and the
    reverse index ``hash(principal_id) -> hash(token)`` used for revocation.
    Storage errors propagate to the caller.
    """

    def __init__(self, cache: RefreshCache, *, ttl_seconds: int, token_bytes: int = 48):
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.token_bytes = token_bytes

    async def issue(self, principal_id: str) -> str:
        await self.revoke(principal_id)
        raw_token = secrets.token_urlsafe(self.token_bytes)
        await self.cache.store_refresh_token(
            hash_value(raw_token),
            hash_value(principal_id),
            principal_id,
            self.ttl_seconds,
        )
        return raw_token

    async def resolve(self, raw_token: str) -> Optional[str]:
        if not raw_token:
            return None
        return await self.cache.get_refresh_principal(hash_value(raw_token))

    async def consume(self, raw_token: str) -> Optional[str]:
        """Resolve and delete in one step; a token redeems at most once."""
        if not raw_token:
            return None
        return await self.cache.consume_refresh_token(hash_value(raw_token))

    async def revoke(self, principal_id: str) -> None:
        principal_hash = hash_value(principal_id)
        token_hash = await self.cache.get_user_refresh_hash(principal_hash)
        if token_hash is None:
            return
        await self.cache.delete_refresh_token(token_hash, principal_hash)
        logger.debug("refresh_token_revoked", principal_id=principal_id)
