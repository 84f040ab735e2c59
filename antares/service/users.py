from __future__ import annotations

from typing import Optional, Tuple

from antares.logging import get_logger
from antares.service.auth import AuthService, AuthStore, IssuedSession, upstream
from antares.service.errors import (
    IdentifierConflictError,
    InvalidPasswordError,
    TokenInvalidError,
)
from antares.storage.errors import ConstraintViolation
from antares.storage.models import User

logger = get_logger(__name__)


class AccountService:
    """Profile, preference and password updates for the signed-in principal."""

    def __init__(self, store: AuthStore, auth: AuthService) -> None:
        self.store = store
        self.auth = auth

    def _update(self, user: User, **changes) -> User:
        with upstream("update_user"):
            try:
                updated = self.store.update_user(user.id, **changes)
            except ConstraintViolation as exc:
                raise IdentifierConflictError(detail=exc.detail) from exc
        if updated is None:
            # principal deleted between token validation and the update
            raise TokenInvalidError()
        return updated

    async def update_profile(
        self,
        user: User,
        *,
        first_name: Optional[str],
        last_name: Optional[str],
        email: str,
    ) -> Tuple[User, Optional[IssuedSession]]:
        """Apply a profile update.

        A new email changes the access-token subject, so a fresh token pair is
        returned alongside the user in that case.
        """
        email_changed = email != user.email
        if email_changed:
            with upstream("get_user_by_email"):
                if self.store.get_user_by_email(email):
                    raise IdentifierConflictError(detail={"field": "email"})
        updated = self._update(
            user, first_name=first_name, last_name=last_name, email=email
        )
        if not email_changed:
            return updated, None
        logger.info("user_email_changed", user_id=user.id)
        return updated, await self.auth.issue_session(updated)

    def update_preferences(
        self, user: User, *, locale: Optional[str] = None, theme: Optional[str] = None
    ) -> User:
        changes = {}
        if locale is not None:
            changes["locale"] = locale
        if theme is not None:
            changes["theme"] = theme
        if not changes:
            return user
        return self._update(user, **changes)

    async def change_password(
        self,
        user: User,
        *,
        current_password: str,
        new_password: str,
        confirmation_password: str,
    ) -> IssuedSession:
        """Replace the password and rotate the caller onto a new token pair.

        The previous refresh token is revoked, so other devices must sign in again.
        """
        if new_password != confirmation_password:
            raise InvalidPasswordError(
                "password confirmation does not match",
                detail={"field": "confirmation_password"},
            )
        if not self.auth.verify_password(user.id, current_password):
            raise InvalidPasswordError(
                "current password is incorrect", detail={"field": "current_password"}
            )
        self.auth.save_password(user.id, new_password)
        logger.info("user_password_changed", user_id=user.id)
        return await self.auth.issue_session(user)
