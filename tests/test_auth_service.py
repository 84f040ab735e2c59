"""Unit tests for AuthService against the in-memory stores."""

import pytest

from antares.service.auth import AuthService
from antares.service.errors import (
    AccountLockedError,
    IdentifierConflictError,
    InvalidCredentialsError,
    SessionExpiredError,
    TokenInvalidError,
    UpstreamUnavailableError,
)
from antares.service.tokens import HS256TokenSigner
from antares.storage.errors import StoreUnavailable
from antares.storage.memory import MemoryCache, MemoryStore
from antares.storage.models import ROLE_ADMIN, ROLE_USER

EMAIL = "alice@example.com"
PASSWORD = "CorrectHorse1!"


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def auth(store, cache, settings, clock):
    signer = HS256TokenSigner.from_settings(settings, clock=clock)
    return AuthService(store, cache, settings, signer=signer)


class DownCache(MemoryCache):
    async def login_lock_ttl(self, identifier):
        raise StoreUnavailable("redis", "connection refused")

    async def get_user_refresh_hash(self, principal_hash):
        raise StoreUnavailable("redis", "connection refused")

    async def get_refresh_principal(self, token_hash):
        raise StoreUnavailable("redis", "connection refused")

    async def consume_refresh_token(self, token_hash):
        raise StoreUnavailable("redis", "connection refused")


class FlakyCredentialStore(MemoryStore):
    def __init__(self):
        super().__init__()
        self.credential_store_up = False

    def save_password(self, user_id, password_hash, password_algo):
        if not self.credential_store_up:
            raise StoreUnavailable("postgres", "connection reset")
        super().save_password(user_id, password_hash, password_algo)


class TestRegister:
    async def test_register_creates_user_and_session(self, auth, store):
        issued = await auth.register(EMAIL, PASSWORD, first_name="Alice")

        assert issued.user.email == EMAIL
        assert issued.user.role == ROLE_USER
        assert issued.user.first_name == "Alice"
        assert store.get_user_by_email(EMAIL) is not None
        assert auth.signer.validate(issued.access_token).subject == EMAIL
        assert await auth.refresh_tokens.resolve(issued.refresh_token) == issued.user.id

    async def test_password_stored_as_argon2id(self, auth, store):
        issued = await auth.register(EMAIL, PASSWORD)
        stored_hash, algo = store.get_password_record(issued.user.id)
        assert algo == "argon2id"
        assert stored_hash.startswith("$argon2id$")
        assert PASSWORD not in stored_hash

    async def test_duplicate_email_conflicts(self, auth):
        await auth.register(EMAIL, PASSWORD)
        with pytest.raises(IdentifierConflictError):
            await auth.register(EMAIL, "AnotherPass1!")

    async def test_failed_credential_write_leaves_no_account(self, cache, settings, clock):
        store = FlakyCredentialStore()
        auth = AuthService(
            store, cache, settings, signer=HS256TokenSigner.from_settings(settings, clock=clock)
        )
        with pytest.raises(UpstreamUnavailableError):
            await auth.register(EMAIL, PASSWORD)
        assert store.get_user_by_email(EMAIL) is None
        assert store.users == {}

        store.credential_store_up = True
        issued = await auth.register(EMAIL, PASSWORD)
        assert (await auth.login(EMAIL, PASSWORD)).user.id == issued.user.id


class TestLogin:
    async def test_login_success(self, auth):
        registered = await auth.register(EMAIL, PASSWORD)
        issued = await auth.login(EMAIL, PASSWORD)
        assert issued.user.id == registered.user.id
        # the registration refresh token was replaced
        assert await auth.refresh_tokens.resolve(registered.refresh_token) is None
        assert await auth.refresh_tokens.resolve(issued.refresh_token) == issued.user.id

    async def test_wrong_password(self, auth, cache):
        await auth.register(EMAIL, PASSWORD)
        with pytest.raises(InvalidCredentialsError):
            await auth.login(EMAIL, "wrong-password")
        assert await cache.get_login_attempts(EMAIL) == 1

    async def test_unknown_identifier_counts_as_failure(self, auth, cache):
        with pytest.raises(InvalidCredentialsError) as excinfo:
            await auth.login("ghost@example.com", PASSWORD)
        assert excinfo.value.error_code == "invalid_credentials"
        assert await cache.get_login_attempts("ghost@example.com") == 1

    async def test_unknown_and_wrong_password_are_indistinguishable(self, auth):
        await auth.register(EMAIL, PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth.login(EMAIL, "nope-nope")
        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth.login("ghost@example.com", "nope-nope")
        assert wrong.value.message == unknown.value.message
        assert wrong.value.detail == unknown.value.detail

    async def test_disabled_user_cannot_login(self, auth, store):
        issued = await auth.register(EMAIL, PASSWORD)
        store.update_user(issued.user.id, enabled=False)
        with pytest.raises(InvalidCredentialsError):
            await auth.login(EMAIL, PASSWORD)

    async def test_lockout_after_max_attempts(self, auth):
        await auth.register(EMAIL, PASSWORD)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth.login(EMAIL, "wrong-password")
        # correct password is refused while locked
        with pytest.raises(AccountLockedError) as excinfo:
            await auth.login(EMAIL, PASSWORD)
        assert excinfo.value.remaining_seconds > 0
        assert excinfo.value.detail == {"remaining_seconds": excinfo.value.remaining_seconds}

    async def test_lock_expires(self, auth, clock):
        await auth.register(EMAIL, PASSWORD)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth.login(EMAIL, "wrong-password")
        clock.advance(auth.settings.login_lock_seconds)
        issued = await auth.login(EMAIL, PASSWORD)
        assert issued.user.email == EMAIL

    async def test_success_resets_counter(self, auth, cache):
        await auth.register(EMAIL, PASSWORD)
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await auth.login(EMAIL, "wrong-password")
        await auth.login(EMAIL, PASSWORD)
        assert await cache.get_login_attempts(EMAIL) == 0

        # a fresh window: four more failures stay under the threshold
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await auth.login(EMAIL, "wrong-password")
        assert await cache.get_login_attempts(EMAIL) == 4
        issued = await auth.login(EMAIL, PASSWORD)
        assert issued.user.email == EMAIL

    async def test_lockout_store_down_fails_closed(self, store, settings, clock):
        auth = AuthService(store, DownCache(clock=clock), settings)
        with pytest.raises(UpstreamUnavailableError):
            await auth.login(EMAIL, PASSWORD)


class TestRefresh:
    async def test_refresh_rotates(self, auth):
        issued = await auth.register(EMAIL, PASSWORD)
        rotated = await auth.refresh(issued.refresh_token)

        assert rotated.refresh_token != issued.refresh_token
        assert rotated.user.id == issued.user.id
        assert auth.signer.validate(rotated.access_token) is not None

    async def test_refresh_token_is_single_use(self, auth):
        issued = await auth.register(EMAIL, PASSWORD)
        await auth.refresh(issued.refresh_token)
        with pytest.raises(SessionExpiredError):
            await auth.refresh(issued.refresh_token)

    @pytest.mark.parametrize("token", [None, "", "unknown-token"])
    async def test_missing_or_unknown(self, auth, token):
        with pytest.raises(SessionExpiredError):
            await auth.refresh(token)

    async def test_expired_refresh_token(self, auth, clock):
        issued = await auth.register(EMAIL, PASSWORD)
        clock.advance(auth.settings.refresh_token_ttl_seconds)
        with pytest.raises(SessionExpiredError):
            await auth.refresh(issued.refresh_token)

    async def test_disabled_principal_revoked(self, auth, store):
        issued = await auth.register(EMAIL, PASSWORD)
        store.update_user(issued.user.id, enabled=False)
        with pytest.raises(SessionExpiredError):
            await auth.refresh(issued.refresh_token)
        assert await auth.refresh_tokens.resolve(issued.refresh_token) is None

    async def test_store_down_is_upstream_error(self, store, settings, clock):
        auth = AuthService(store, DownCache(clock=clock), settings)
        with pytest.raises(UpstreamUnavailableError):
            await auth.refresh("some-token")


class TestLogout:
    async def test_logout_by_user_id(self, auth):
        issued = await auth.register(EMAIL, PASSWORD)
        await auth.logout(user_id=issued.user.id)
        assert await auth.refresh_tokens.resolve(issued.refresh_token) is None

    async def test_logout_by_refresh_token(self, auth):
        issued = await auth.register(EMAIL, PASSWORD)
        await auth.logout(refresh_token=issued.refresh_token)
        with pytest.raises(SessionExpiredError):
            await auth.refresh(issued.refresh_token)

    async def test_logout_without_session(self, auth):
        await auth.logout()
        await auth.logout(refresh_token="stale")

    async def test_logout_swallows_store_errors(self, store, settings, clock):
        auth = AuthService(store, DownCache(clock=clock), settings)
        await auth.logout(user_id="user-1")


class TestResolvePrincipal:
    async def test_valid_token(self, auth):
        issued = await auth.register(EMAIL, PASSWORD)
        assert auth.resolve_principal(issued.access_token).id == issued.user.id

    @pytest.mark.parametrize("token", [None, "", "garbage"])
    def test_invalid_token(self, auth, token):
        with pytest.raises(TokenInvalidError):
            auth.resolve_principal(token)

    async def test_expired_token(self, auth, clock):
        issued = await auth.register(EMAIL, PASSWORD)
        clock.advance(
            auth.settings.access_token_ttl_seconds + auth.settings.jwt_clock_skew_seconds
        )
        with pytest.raises(TokenInvalidError):
            auth.resolve_principal(issued.access_token)

    async def test_disabled_principal(self, auth, store):
        issued = await auth.register(EMAIL, PASSWORD)
        store.update_user(issued.user.id, enabled=False)
        with pytest.raises(TokenInvalidError):
            auth.resolve_principal(issued.access_token)


class TestAdminBootstrap:
    def test_creates_admin(self, auth, store):
        user = auth.bootstrap_admin("root@example.com", "AdminPass123!")
        assert user.role == ROLE_ADMIN
        assert auth.verify_password(user.id, "AdminPass123!")

    async def test_promotes_existing_user(self, auth, store):
        issued = await auth.register(EMAIL, PASSWORD)
        user = auth.bootstrap_admin(EMAIL, "NewAdminPass1!")
        assert user.id == issued.user.id
        assert store.get_user(user.id).role == ROLE_ADMIN
        assert auth.verify_password(user.id, "NewAdminPass1!")
        assert not auth.verify_password(user.id, PASSWORD)

    def test_default_admin_requires_settings(self, auth):
        assert auth.ensure_default_admin() is None

    def test_default_admin_created_once(self, store, cache, settings):
        settings = settings.model_copy(
            update={"admin_email": "Root@Example.com", "admin_password": "AdminPass123!"}
        )
        auth = AuthService(store, cache, settings)
        created = auth.ensure_default_admin()
        assert created.email == "root@example.com"
        assert auth.ensure_default_admin() is None
