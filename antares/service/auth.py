from __future__ import annotations

import contextlib
import secrets
from dataclasses import dataclass
from typing import Iterator, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from antares.config import Settings
from antares.logging import fingerprint, get_logger
from antares.service.attempts import AttemptCache, LoginAttemptGuard
from antares.service.errors import (
    AccountLockedError,
    IdentifierConflictError,
    InvalidCredentialsError,
    SessionExpiredError,
    TokenInvalidError,
    UpstreamUnavailableError,
)
from antares.service.refresh import RefreshCache, RefreshTokenStore
from antares.service.tokens import HS256TokenSigner, TokenSigner
from antares.storage.errors import ConstraintViolation, StoreUnavailable
from antares.storage.models import ROLE_ADMIN, ROLE_USER, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: str = "user",
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **changes) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def exists_by_role(self, role: str) -> bool: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def verify_connection(self) -> None: ...


class SessionCache(AttemptCache, RefreshCache, Protocol):
    pass


@dataclass
class IssuedSession:
    """Token pair minted for a principal; the HTTP layer moves it into cookies."""

    user: User
    access_token: str
    refresh_token: str


@contextlib.contextmanager
def upstream(operation: str) -> Iterator[None]:
    """Translate storage outages into ``UpstreamUnavailableError``."""
    try:
        yield
    except StoreUnavailable as exc:
        logger.error(
            "upstream_unavailable",
            operation=operation,
            backend=exc.backend,
            error=exc.message,
        )
        raise UpstreamUnavailableError() from exc


class AuthService:
    """Register, login, refresh and logout on top of the credential store.

    Every login consults the attempt guard before the credential store is
    touched. Unknown identifiers go through the same hash verification and
    failure accounting as known ones.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: SessionCache,
        settings: Settings,
        *,
        signer: Optional[TokenSigner] = None,
        attempts: Optional[LoginAttemptGuard] = None,
        refresh_tokens: Optional[RefreshTokenStore] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.signer: TokenSigner = signer or HS256TokenSigner.from_settings(settings)
        self.attempts = attempts or LoginAttemptGuard.from_settings(cache, settings)
        self.refresh_tokens = refresh_tokens or RefreshTokenStore(
            cache, ttl_seconds=settings.refresh_token_ttl_seconds
        )
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    # =========================================================================
    # Passwords
    # =========================================================================

    def _hash_password(self, password: str) -> Tuple[str, str]:
        digest = self._pwd_hasher.hash(password)
        return digest, PASSWORD_ALGO

    def _burn_verification(self, password: str) -> None:
        """Spend one hash verification so unknown identifiers cost the same time."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        with contextlib.suppress(VerificationError, InvalidHash):
            self._pwd_hasher.verify(self._dummy_hash, password)

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        with upstream("get_password_record"):
            record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            self._burn_verification(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False
        except VerificationError:
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        with upstream("save_password"):
            self.store.save_password(user_id, pwd_hash, algo)

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def issue_session(self, user: User) -> IssuedSession:
        """Mint a fresh access token and replace the principal's refresh token."""
        access_token = self.signer.issue(user)
        with upstream("issue_refresh_token"):
            refresh_token = await self.refresh_tokens.issue(user.id)
        return IssuedSession(user=user, access_token=access_token, refresh_token=refresh_token)

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> IssuedSession:
        with upstream("register"):
            if self.store.get_user_by_email(email):
                raise IdentifierConflictError(detail={"field": "email"})
            try:
                user = self.store.create_user(
                    email, first_name=first_name, last_name=last_name, role=ROLE_USER
                )
            except ConstraintViolation as exc:
                raise IdentifierConflictError(detail=exc.detail) from exc
        try:
            self.save_password(user.id, password)
        except UpstreamUnavailableError:
            # no account without a credential; the identifier stays free for a retry
            try:
                self.store.delete_user(user.id)
            except StoreUnavailable as exc:
                self.logger.error(
                    "register_rollback_failed", user_id=user.id, error=exc.message
                )
            raise
        self.logger.info("user_registered", user_id=user.id)
        return await self.issue_session(user)

    async def login(self, email: str, password: str) -> IssuedSession:
        status = await self.attempts.check(email)
        if status.locked:
            self.logger.info(
                "login_rejected_locked",
                identifier_hash=fingerprint(email),
                remaining_seconds=status.remaining_seconds,
            )
            raise AccountLockedError(status.remaining_seconds)

        with upstream("get_user_by_email"):
            user = self.store.get_user_by_email(email)
        if user is None:
            self._burn_verification(password)
            verified = False
        else:
            verified = self.verify_password(user.id, password) and user.enabled

        if not verified:
            await self.attempts.record_failure(email)
            self.logger.info(
                "login_failed",
                identifier_hash=fingerprint(email),
                known_identifier=user is not None,
            )
            raise InvalidCredentialsError()

        await self.attempts.record_success(email)
        issued = await self.issue_session(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return issued

    async def refresh(self, raw_refresh_token: Optional[str]) -> IssuedSession:
        if not raw_refresh_token:
            raise SessionExpiredError()
        with upstream("consume_refresh_token"):
            principal_id = await self.refresh_tokens.consume(raw_refresh_token)
        if principal_id is None:
            self.logger.info("refresh_token_not_found")
            raise SessionExpiredError()
        with upstream("get_user"):
            user = self.store.get_user(principal_id)
        if user is None or not user.enabled:
            with upstream("revoke_refresh_token"):
                await self.refresh_tokens.revoke(principal_id)
            self.logger.info("refresh_principal_unavailable", user_id=principal_id)
            raise SessionExpiredError()
        issued = await self.issue_session(user)
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return issued

    async def logout(
        self, *, user_id: Optional[str] = None, refresh_token: Optional[str] = None
    ) -> None:
        """Revoke the principal's refresh token; never raises on store errors."""
        try:
            if user_id is None and refresh_token:
                user_id = await self.refresh_tokens.resolve(refresh_token)
            if user_id is not None:
                await self.refresh_tokens.revoke(user_id)
        except StoreUnavailable as exc:
            self.logger.warning("logout_revoke_failed", user_id=user_id, error=str(exc))
            return
        self.logger.info("logout", user_id=user_id)

    # =========================================================================
    # Principal resolution
    # =========================================================================

    def resolve_principal(self, access_token: Optional[str]) -> User:
        """Validate an access token and load its principal.

        Raises:
            TokenInvalidError: token invalid, or principal missing/disabled
            UpstreamUnavailableError: credential store unreachable
        """
        if not access_token:
            raise TokenInvalidError()
        claims = self.signer.validate(access_token)
        if claims is None:
            raise TokenInvalidError()
        with upstream("get_user_by_email"):
            user = self.store.get_user_by_email(claims.subject)
        if user is None or not user.enabled:
            self.logger.info("token_principal_unavailable", token_id=claims.token_id)
            raise TokenInvalidError()
        return user

    # =========================================================================
    # Admin bootstrap
    # =========================================================================

    def bootstrap_admin(self, email: str, password: str) -> User:
        """Create an admin, or promote an existing account and reset its password."""
        with upstream("bootstrap_admin"):
            user = self.store.get_user_by_email(email)
            if user is None:
                user = self.store.create_user(email, role=ROLE_ADMIN)
                created = True
            else:
                user = self.store.update_user_role(user.id, ROLE_ADMIN) or user
                created = False
        self.save_password(user.id, password)
        self.logger.info("admin_bootstrapped", user_id=user.id, created=created)
        return user

    def ensure_default_admin(self) -> Optional[User]:
        """Create the configured admin when no admin exists yet."""
        email = self.settings.admin_email
        password = self.settings.admin_password
        if not email or not password:
            return None
        with upstream("exists_by_role"):
            if self.store.exists_by_role(ROLE_ADMIN):
                return None
        return self.bootstrap_admin(email.strip().lower(), password)
