from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLES = frozenset({ROLE_USER, ROLE_ADMIN})

DEFAULT_LOCALE = "en"
DEFAULT_THEME = "light"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str = ROLE_USER
    enabled: bool = True
    locale: str = DEFAULT_LOCALE
    theme: str = DEFAULT_THEME
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: str = ROLE_USER,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            first_name=first_name,
            last_name=last_name,
            role=role,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def with_changes(self, **changes) -> "User":
        """Copy with ``updated_at`` bumped; stores never mutate users in place."""
        return replace(self, updated_at=utcnow(), **changes)

