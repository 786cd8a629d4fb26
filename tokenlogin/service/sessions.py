from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from tokenlogin.logging import get_logger
from tokenlogin.storage.models import LoginSession, utcnow

logger = get_logger(__name__)


def normalize_scope(connection_id: Optional[str]) -> Optional[str]:
    """Empty connection ids share the ``None`` scope."""
    return connection_id or None


class SessionStore:
    """Lifecycle rules for login sessions on top of a storage backend.

    Readers never see an unverified session past ``expire_at`` nor a verified
    one past ``verify_at + retain_seconds``; such records are deleted when
    encountered and by :meth:`purge_expired`.
    """

    def __init__(self, backend, config, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.backend = backend
        self.config = config
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    def _visible(self, session: Optional[LoginSession], now: datetime) -> Optional[LoginSession]:
        if session is None:
            return None
        if session.is_live(now, self.config.retain_seconds):
            return session
        self.backend.delete_login_session(session.id)
        logger.debug("login_session_lazily_purged", session_id=session.id)
        return None

    def create(self, user_id: str, connection_id: Optional[str], factor: str) -> LoginSession:
        """Replace any open session for the scope with a fresh one."""
        session = LoginSession.new(
            user_id,
            factor,
            self.config.generate(),
            expiry_seconds=self.config.expiry_seconds,
            connection_id=normalize_scope(connection_id),
            now=self.now(),
        )
        return self.backend.replace_login_session(session)

    def find_open(self, user_id: str, connection_id: Optional[str]) -> Optional[LoginSession]:
        now = self.now()
        for session in self.backend.list_login_sessions(user_id, normalize_scope(connection_id)):
            if session.is_open(now):
                return session
        return None

    def find_for_principal(
        self,
        user_id: str,
        *,
        session_id: Optional[str] = None,
        connection_id: Optional[str] = None,
    ) -> Optional[LoginSession]:
        """Scoped lookup: by session id when given, else the newest live session of the scope."""
        now = self.now()
        if session_id:
            session = self.backend.get_login_session(session_id)
            if session is None or session.user_id != user_id:
                return None
            return self._visible(session, now)
        for session in self.backend.list_login_sessions(user_id, normalize_scope(connection_id)):
            visible = self._visible(session, now)
            if visible is not None:
                return visible
        return None

    def mark_verified(self, session: LoginSession) -> bool:
        """Compare-and-set: only one caller can move an open session to verified."""
        return self.backend.mark_login_session_verified(session.id, self.now())

    def invalidate(self, user_id: str, connection_id: Optional[str]) -> int:
        return self.backend.delete_open_login_session(
            user_id, normalize_scope(connection_id), self.now()
        )

    def purge_expired(self) -> int:
        removed = self.backend.purge_login_sessions(self.now(), self.config.retain_seconds)
        if removed:
            logger.info("login_sessions_purged", removed=removed)
        return removed
