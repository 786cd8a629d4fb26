from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from tokenlogin.logging import get_logger
from tokenlogin.storage.errors import ConstraintViolation
from tokenlogin.storage.models import (
    FactorPreference,
    LoginSession,
    LoginToken,
    User,
    UserCredentials,
)


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Records handed out are copies; callers never mutate stored state without
    going through a method that holds the data lock.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserCredentials] = {}
        self.login_sessions: Dict[str, LoginSession] = {}
        # RLock for all data operations; nested acquisitions in one thread are allowed
        self._data_lock = threading.RLock()

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
        with self._data_lock:
            user = User.new(username=username, email=email, profile=profile)
            for existing in self.users.values():
                if username and existing.username == username:
                    raise ConstraintViolation("username already exists", {"field": "username"})
                if user.email and existing.email == user.email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            self.users[user.id] = user
            return replace(user, profile=dict(user.profile))

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user, profile=dict(user.profile)) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        needle = email.lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == needle), None)
            return replace(user, profile=dict(user.profile)) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == username), None)
            return replace(user, profile=dict(user.profile)) if user else None

    def set_profile_entry(self, user_id: str, key: str, value: Any) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for profile", {"user_id": user_id})
            user.profile[key] = value

    def get_factor_preference(self, user_id: str, profile_key: str) -> Optional[FactorPreference]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            return FactorPreference.from_profile(user.profile.get(profile_key))

    # credentials
    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            existing = self.credentials.get(user_id)
            tokens = existing.login_tokens if existing else []
            self.credentials[user_id] = UserCredentials(
                password_hash=password_hash,
                password_algo=password_algo,
                login_tokens=tokens,
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            record = self.credentials.get(user_id)
            return (record.password_hash, record.password_algo) if record else None

    def add_login_token(self, login_token: LoginToken) -> None:
        with self._data_lock:
            if login_token.user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for login token", {"user_id": login_token.user_id}
                )
            record = self.credentials.setdefault(
                login_token.user_id, UserCredentials(password_hash="", password_algo="none")
            )
            record.login_tokens.append(login_token)

    def list_login_tokens(self, user_id: str) -> List[LoginToken]:
        with self._data_lock:
            record = self.credentials.get(user_id)
            return list(record.login_tokens) if record else []

    # login sessions
    def replace_login_session(self, session: LoginSession) -> LoginSession:
        """Drop every unverified session for the scope and store ``session``.

        Both steps run under one lock acquisition, so concurrent requests for
        the same scope leave exactly one unverified record behind.
        """
        with self._data_lock:
            stale = [
                sid
                for sid, existing in self.login_sessions.items()
                if existing.user_id == session.user_id
                and existing.connection_id == session.connection_id
                and existing.verify_at is None
            ]
            for sid in stale:
                del self.login_sessions[sid]
            self.login_sessions[session.id] = replace(session)
            if stale:
                self.logger.debug(
                    "login_sessions_replaced", user_id=session.user_id, removed=len(stale)
                )
            return replace(session)

    def get_login_session(self, session_id: str) -> Optional[LoginSession]:
        with self._data_lock:
            session = self.login_sessions.get(session_id)
            return replace(session) if session else None

    def list_login_sessions(
        self, user_id: str, connection_id: Optional[str]
    ) -> List[LoginSession]:
        """Sessions for one scope, newest first."""
        with self._data_lock:
            matches = [
                replace(s)
                for s in self.login_sessions.values()
                if s.user_id == user_id and s.connection_id == connection_id
            ]
        return sorted(matches, key=lambda s: s.created_at, reverse=True)

    def mark_login_session_verified(self, session_id: str, now: datetime) -> bool:
        with self._data_lock:
            session = self.login_sessions.get(session_id)
            if not session or not session.is_open(now):
                return False
            session.verify_at = now
            session.expire_at = None
            return True

    def delete_open_login_session(
        self, user_id: str, connection_id: Optional[str], now: datetime
    ) -> int:
        with self._data_lock:
            doomed = [
                s
                for s in self.login_sessions.values()
                if s.user_id == user_id
                and s.connection_id == connection_id
                and s.verify_at is None
            ]
            for s in doomed:
                del self.login_sessions[s.id]
            return sum(1 for s in doomed if s.is_open(now))

    def delete_login_session(self, session_id: str) -> None:
        with self._data_lock:
            self.login_sessions.pop(session_id, None)

    def purge_login_sessions(self, now: datetime, retain_seconds: int) -> int:
        retain = timedelta(seconds=retain_seconds)
        with self._data_lock:
            dead = [
                sid
                for sid, s in self.login_sessions.items()
                if (s.verify_at is None and (s.expire_at is None or s.expire_at <= now))
                or (s.verify_at is not None and s.verify_at + retain <= now)
            ]
            for sid in dead:
                del self.login_sessions[sid]
            return len(dead)
