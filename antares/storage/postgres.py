from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from antares.logging import get_logger
from antares.storage.errors import ConstraintViolation, StoreUnavailable
from antares.storage.models import User, utcnow

_USER_COLUMNS = (
    "first_name",
    "last_name",
    "email",
    "role",
    "enabled",
    "locale",
    "theme",
)


class PostgresStore:
    """Postgres-backed credential store for principals and their password hashes."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("postgres", str(exc)) from exc

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` and ``user_auth_credential`` tables if missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    first_name VARCHAR(50),
                    last_name VARCHAR(50),
                    role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
                    enabled BOOLEAN NOT NULL DEFAULT TRUE,
                    locale VARCHAR(10) NOT NULL DEFAULT 'en'
                        CHECK (locale ~ '^[a-z]{2}(-[A-Z]{2})?$'),
                    theme VARCHAR(20) NOT NULL DEFAULT 'light'
                        CHECK (theme IN ('light', 'dark')),
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_auth_credential (
                    user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
                    password_hash TEXT NOT NULL,
                    password_algo TEXT NOT NULL,
                    last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            role=row.get("role", "user"),
            enabled=row.get("enabled", True),
            locale=row.get("locale", "en"),
            theme=row.get("theme", "light"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def create_user(
        self,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: str = "user",
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, role)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, first_name, last_name, role),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(user_id)
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def update_user(self, user_id: str, **changes) -> Optional[User]:
        unknown = set(changes) - set(_USER_COLUMNS)
        if unknown:
            raise ValueError(f"unsupported user fields: {', '.join(sorted(unknown))}")
        if not changes:
            return self.get_user(user_id)
        assignments = ", ".join(f"{column} = %s" for column in changes)
        params = [*changes.values(), user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if not row:
            return None
        return self._row_to_user(row)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self.update_user(user_id, role=role)

    def delete_user(self, user_id: str) -> bool:
        """Remove a user; credentials go with it through ON DELETE CASCADE."""
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM app_user WHERE id = %s RETURNING id", (user_id,)
            ).fetchone()
        return row is not None

    def exists_by_role(self, role: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT EXISTS (SELECT 1 FROM app_user WHERE role = %s) AS present",
                (role,),
            ).fetchone()
        return bool(row and row["present"])

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def close(self) -> None:
        self.pool.close()
