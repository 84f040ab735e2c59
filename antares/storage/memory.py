from __future__ import annotations

import math
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from antares.logging import get_logger
from antares.storage.errors import ConstraintViolation
from antares.storage.models import ROLES, User
from antares.storage.redis_cache import (
    ACCOUNT_LOCKED_PREFIX,
    LOGIN_ATTEMPTS_PREFIX,
    REFRESH_TOKEN_PREFIX,
    USER_REFRESH_TOKEN_PREFIX,
)


class MemoryStore:
    """In-process credential store used for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def _email_taken(self, email: str, *, exclude_id: Optional[str] = None) -> bool:
        return any(
            existing.email == email and existing.id != exclude_id
            for existing in self.users.values()
        )

    def create_user(
        self,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: str = "user",
    ) -> User:
        with self._data_lock:
            if self._email_taken(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(
                email, first_name=first_name, last_name=last_name, role=role
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def update_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            email = changes.get("email")
            if email is not None and self._email_taken(email, exclude_id=user_id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            updated = user.with_changes(**changes)
            self.users[user_id] = updated
            return updated

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        if role not in ROLES:
            raise ValueError(f"unknown role: {role}")
        return self.update_user(user_id, role=role)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            self.credentials.pop(user_id, None)
            return self.users.pop(user_id, None) is not None

    def exists_by_role(self, role: str) -> bool:
        with self._data_lock:
            return any(u.role == role for u in self.users.values())

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)


class MemoryCache:
    """Key-value fallback mirroring ``RedisCache`` key layout and TTL semantics.

    Entries are ``key -> (value, expires_at)`` where ``expires_at`` is measured on
    the injected clock. Only meant for TEST_MODE or the explicit dev fallback:
    counters live in one process, so lockouts are not shared across instances.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

    # =========================================================================
    # primitives
    # =========================================================================

    def _get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    def _set(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._entries[key] = (value, expires_at)

    def _ttl(self, key: str) -> int:
        if self._get(key) is None:
            return -2
        expires_at = self._entries[key][1]
        if expires_at is None:
            return -1
        return max(1, math.ceil(expires_at - self._clock()))

    # =========================================================================
    # login attempts
    # =========================================================================

    async def record_login_failure(
        self,
        identifier: str,
        *,
        max_attempts: int,
        window_seconds: int,
        lock_seconds: int,
    ) -> tuple[bool, int]:
        attempts_key = f"{LOGIN_ATTEMPTS_PREFIX}{identifier}"
        lock_key = f"{ACCOUNT_LOCKED_PREFIX}{identifier}"
        with self._lock:
            current = self._get(attempts_key)
            attempts = int(current) + 1 if current is not None else 1
            if attempts >= max_attempts:
                self._set(lock_key, "1", lock_seconds)
                self._entries.pop(attempts_key, None)
                return (True, attempts)
            if current is None:
                self._set(attempts_key, str(attempts), window_seconds)
            else:
                # INCR keeps the existing expiry
                self._entries[attempts_key] = (
                    str(attempts),
                    self._entries[attempts_key][1],
                )
            return (False, attempts)

    async def login_lock_ttl(self, identifier: str) -> int:
        with self._lock:
            return max(0, self._ttl(f"{ACCOUNT_LOCKED_PREFIX}{identifier}"))

    async def is_login_locked(self, identifier: str) -> bool:
        with self._lock:
            return self._get(f"{ACCOUNT_LOCKED_PREFIX}{identifier}") is not None

    async def clear_login_attempts(self, identifier: str) -> None:
        with self._lock:
            self._entries.pop(f"{LOGIN_ATTEMPTS_PREFIX}{identifier}", None)
            self._entries.pop(f"{ACCOUNT_LOCKED_PREFIX}{identifier}", None)

    async def get_login_attempts(self, identifier: str) -> int:
        with self._lock:
            value = self._get(f"{LOGIN_ATTEMPTS_PREFIX}{identifier}")
            return int(value) if value is not None else 0

    # =========================================================================
    # refresh tokens
    # =========================================================================

    async def store_refresh_token(
        self, token_hash: str, principal_hash: str, principal_id: str, ttl_seconds: int
    ) -> None:
        with self._lock:
            self._set(f"{REFRESH_TOKEN_PREFIX}{token_hash}", principal_id, ttl_seconds)
            self._set(f"{USER_REFRESH_TOKEN_PREFIX}{principal_hash}", token_hash, ttl_seconds)

    async def get_refresh_principal(self, token_hash: str) -> Optional[str]:
        with self._lock:
            return self._get(f"{REFRESH_TOKEN_PREFIX}{token_hash}")

    async def consume_refresh_token(self, token_hash: str) -> Optional[str]:
        key = f"{REFRESH_TOKEN_PREFIX}{token_hash}"
        with self._lock:
            principal_id = self._get(key)
            self._entries.pop(key, None)
            return principal_id

    async def get_user_refresh_hash(self, principal_hash: str) -> Optional[str]:
        with self._lock:
            return self._get(f"{USER_REFRESH_TOKEN_PREFIX}{principal_hash}")

    async def delete_refresh_token(self, token_hash: str, principal_hash: str) -> None:
        with self._lock:
            self._entries.pop(f"{REFRESH_TOKEN_PREFIX}{token_hash}", None)
            self._entries.pop(f"{USER_REFRESH_TOKEN_PREFIX}{principal_hash}", None)
