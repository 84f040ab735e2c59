from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from antares.config import Settings
from antares.logging import fingerprint, get_logger
from antares.service.errors import UpstreamUnavailableError
from antares.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class AttemptCache(Protocol):
    async def record_login_failure(
        self,
        identifier: str,
        *,
        max_attempts: int,
        window_seconds: int,
        lock_seconds: int,
    ) -> tuple[bool, int]:
        ...

    async def login_lock_ttl(self, identifier: str) -> int:
        ...

    async def clear_login_attempts(self, identifier: str) -> None:
        ...


@dataclass(frozen=True)
class AttemptStatus:
    allowed: bool
    remaining_seconds: int = 0

    @property
    def locked(self) -> bool:
        return not self.allowed


ALLOWED = AttemptStatus(allowed=True)


class LoginAttemptGuard:
    """Per-identifier failure counter with a temporary lock at the threshold.

    When the cache is unreachable the guard raises ``UpstreamUnavailableError``
    unless ``fail_open`` is set, in which case the attempt is let through and a
    warning is logged.
    """

    def __init__(
        self,
        cache: AttemptCache,
        *,
        max_attempts: int = 5,
        window_seconds: int = 900,
        lock_seconds: int = 900,
        fail_open: bool = False,
    ) -> None:
        self.cache = cache
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.lock_seconds = lock_seconds
        self.fail_open = fail_open

    @classmethod
    def from_settings(cls, cache: AttemptCache, settings: Settings) -> "LoginAttemptGuard":
        return cls(
            cache,
            max_attempts=settings.login_max_attempts,
            window_seconds=settings.login_attempt_window_seconds,
            lock_seconds=settings.login_lock_seconds,
            fail_open=settings.login_lockout_fail_open,
        )

    def _store_failed(self, operation: str, identifier: str, exc: StoreUnavailable) -> None:
        if not self.fail_open:
            logger.error(
                "login_guard_unavailable",
                operation=operation,
                identifier_hash=fingerprint(identifier),
                error=str(exc),
            )
            raise UpstreamUnavailableError() from exc
        logger.warning(
            "login_guard_fail_open",
            operation=operation,
            identifier_hash=fingerprint(identifier),
            error=str(exc),
        )

    async def check(self, identifier: str) -> AttemptStatus:
        try:
            remaining = await self.cache.login_lock_ttl(identifier)
        except StoreUnavailable as exc:
            self._store_failed("check", identifier, exc)
            return ALLOWED
        if remaining > 0:
            return AttemptStatus(allowed=False, remaining_seconds=remaining)
        return ALLOWED

    async def record_failure(self, identifier: str) -> AttemptStatus:
        try:
            locked, attempts = await self.cache.record_login_failure(
                identifier,
                max_attempts=self.max_attempts,
                window_seconds=self.window_seconds,
                lock_seconds=self.lock_seconds,
            )
        except StoreUnavailable as exc:
            self._store_failed("record_failure", identifier, exc)
            return ALLOWED
        if locked:
            logger.warning(
                "account_locked",
                identifier_hash=fingerprint(identifier),
                attempts=attempts,
                lock_seconds=self.lock_seconds,
            )
            return AttemptStatus(allowed=False, remaining_seconds=self.lock_seconds)
        return ALLOWED

    async def record_success(self, identifier: str) -> None:
        try:
            await self.cache.clear_login_attempts(identifier)
        except StoreUnavailable as exc:
            self._store_failed("record_success", identifier, exc)
