from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenlogin.logging import get_logger
from tokenlogin.storage.errors import ConstraintViolation
from tokenlogin.storage.models import (
    FactorPreference,
    LoginSession,
    LoginToken,
    User,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT UNIQUE,
        email TEXT UNIQUE,
        profile JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_token (
        hashed_token TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_session (
        id UUID PRIMARY KEY,
        user_id TEXT NOT NULL,
        connection_id TEXT,
        factor TEXT NOT NULL,
        token TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expire_at TIMESTAMPTZ,
        verify_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_session_scope_idx ON login_session (user_id, connection_id)",
    "CREATE INDEX IF NOT EXISTS login_session_expire_idx ON login_session (expire_at)",
    "CREATE INDEX IF NOT EXISTS login_session_verify_idx ON login_session (verify_at)",
    # at most one unverified session per (user, connection)
    """
    CREATE UNIQUE INDEX IF NOT EXISTS login_session_one_open_idx
    ON login_session (user_id, COALESCE(connection_id, ''))
    WHERE verify_at IS NULL
    """,
)


class PostgresStore:
    """Postgres-backed store for principals, credentials and login sessions."""

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

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _scope_key(user_id: str, connection_id: Optional[str]) -> str:
        return f"login_session:{user_id}:{connection_id or ''}"

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        profile = row.get("profile") or {}
        if isinstance(profile, str):
            profile = json.loads(profile)
        return User(
            id=str(row["id"]),
            username=row.get("username"),
            email=row.get("email"),
            created_at=row.get("created_at") or utcnow(),
            profile=profile,
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> LoginSession:
        return LoginSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            factor=row["factor"],
            token=row["token"],
            created_at=row["created_at"],
            expire_at=row.get("expire_at"),
            verify_at=row.get("verify_at"),
            connection_id=row.get("connection_id"),
        )

    # users
    def create_user(
        self,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        profile: Optional[Dict[str, Any]] = None,
    ) -> User:
        if not username and not email:
            raise ConstraintViolation("username or email required", {"field": "username"})
        user = User.new(username=username, email=email, profile=profile)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, profile, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.username,
                        user.email,
                        json.dumps(user.profile),
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("username or email already exists", {"field": "username"})
        return user

    def _get_user_where(self, column: str, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {column} = %s", (value,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        return self._get_user_where("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._get_user_where("email", email.lower())

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._get_user_where("username", username)

    def set_profile_entry(self, user_id: str, key: str, value: Any) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET profile = jsonb_set(profile, ARRAY[%s], %s::jsonb, true)
                WHERE id = %s
                """,
                (key, json.dumps(value), user_id),
            )
            if cur.rowcount != 1:
                raise ConstraintViolation("user not found for profile", {"user_id": user_id})

    def get_factor_preference(self, user_id: str, profile_key: str) -> Optional[FactorPreference]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT profile -> %s AS preference FROM app_user WHERE id = %s",
                (profile_key, user_id),
            ).fetchone()
        if not row:
            return None
        return FactorPreference.from_profile(row.get("preference"))

    # credentials
    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
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
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def add_login_token(self, login_token: LoginToken) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO login_token (hashed_token, user_id, created_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (
                        login_token.hashed_token,
                        login_token.user_id,
                        login_token.created_at,
                        login_token.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for login token", {"user_id": login_token.user_id}
            )

    def list_login_tokens(self, user_id: str) -> List[LoginToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM login_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [
            LoginToken(
                hashed_token=row["hashed_token"],
                user_id=str(row["user_id"]),
                created_at=row["created_at"],
                expires_at=row["expires_at"],
            )
            for row in rows
        ]

    # login sessions
    def replace_login_session(self, session: LoginSession) -> LoginSession:
        """Delete unverified sessions for the scope and insert ``session`` atomically.

        A transaction-scoped advisory lock serialises concurrent replaces for
        one scope; the partial unique index backs it up.
        """
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s))",
                    (self._scope_key(session.user_id, session.connection_id),),
                )
                removed = conn.execute(
                    """
                    DELETE FROM login_session
                    WHERE user_id = %s
                      AND connection_id IS NOT DISTINCT FROM %s
                      AND verify_at IS NULL
                    """,
                    (session.user_id, session.connection_id),
                ).rowcount
                conn.execute(
                    """
                    INSERT INTO login_session
                        (id, user_id, connection_id, factor, token, created_at, expire_at, verify_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.connection_id,
                        session.factor,
                        session.token,
                        session.created_at,
                        session.expire_at,
                        session.verify_at,
                    ),
                )
        if removed:
            self.logger.debug("login_sessions_replaced", user_id=session.user_id, removed=removed)
        return session

    def get_login_session(self, session_id: str) -> Optional[LoginSession]:
        try:
            uuid.UUID(str(session_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM login_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_login_sessions(
        self, user_id: str, connection_id: Optional[str]
    ) -> List[LoginSession]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM login_session
                WHERE user_id = %s AND connection_id IS NOT DISTINCT FROM %s
                ORDER BY created_at DESC
                """,
                (user_id, connection_id),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def mark_login_session_verified(self, session_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE login_session
                SET verify_at = %s, expire_at = NULL
                WHERE id = %s AND verify_at IS NULL AND expire_at > %s
                """,
                (now, session_id, now),
            )
            return cur.rowcount == 1

    def delete_open_login_session(
        self, user_id: str, connection_id: Optional[str], now: datetime
    ) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                DELETE FROM login_session
                WHERE user_id = %s
                  AND connection_id IS NOT DISTINCT FROM %s
                  AND verify_at IS NULL
                RETURNING expire_at
                """,
                (user_id, connection_id),
            ).fetchall()
        return sum(1 for row in rows if row["expire_at"] and row["expire_at"] > now)

    def delete_login_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM login_session WHERE id = %s", (session_id,))

    def purge_login_sessions(self, now: datetime, retain_seconds: int) -> int:
        cutoff = now - timedelta(seconds=retain_seconds)
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM login_session
                WHERE (verify_at IS NULL AND (expire_at IS NULL OR expire_at <= %s))
                   OR (verify_at IS NOT NULL AND verify_at <= %s)
                """,
                (now, cutoff),
            )
            return cur.rowcount
