from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: Optional[str] = None
    email: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    profile: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        *,
        username: str | None = None,
        email: str | None = None,
        profile: Dict[str, Any] | None = None,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email.lower() if email else None,
            profile=dict(profile or {}),
        )


@dataclass(frozen=True)
class FactorPreference:
    """Where and how a principal receives second-factor tokens."""

    contact: str
    factor: str

    @classmethod
    def from_profile(cls, raw: Any) -> Optional["FactorPreference"]:
        if not isinstance(raw, dict):
            return None
        contact = raw.get("contact")
        factor = raw.get("factor")
        if not isinstance(contact, str) or not contact:
            return None
        if not isinstance(factor, str) or not factor:
            return None
        return cls(contact=contact, factor=factor)

    def to_dict(self) -> Dict[str, str]:
        return {"contact": self.contact, "factor": self.factor}


@dataclass
class LoginSession:
    """One second-factor attempt.

    ``verify_at`` marks the session verified; verification also clears
    ``expire_at``. ``connection_id`` of ``None`` is a scope of its own.
    """

    id: str
    user_id: str
    factor: str
    token: str = field(repr=False)
    created_at: datetime
    expire_at: Optional[datetime]
    verify_at: Optional[datetime] = None
    connection_id: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        factor: str,
        token: str,
        *,
        expiry_seconds: int,
        connection_id: str | None = None,
        now: datetime | None = None,
    ) -> "LoginSession":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            factor=factor,
            token=token,
            created_at=created,
            expire_at=created + timedelta(seconds=expiry_seconds),
            connection_id=connection_id,
        )

    @property
    def is_verified(self) -> bool:
        return self.verify_at is not None

    def is_open(self, now: datetime) -> bool:
        """Unverified and not yet expired."""
        return (
            self.verify_at is None
            and self.expire_at is not None
            and self.expire_at > now
        )

    def is_live(self, now: datetime, retain_seconds: int) -> bool:
        """Visible to readers: open, or verified inside the retention window."""
        if self.verify_at is not None:
            return self.verify_at + timedelta(seconds=retain_seconds) > now
        return self.is_open(now)


@dataclass
class LoginToken:
    """Stored form of a long-lived login credential; only the hash is kept."""

    hashed_token: str
    user_id: str
    created_at: datetime
    expires_at: datetime


@dataclass
class UserCredentials:
    password_hash: str
    password_algo: str = "argon2id"
    login_tokens: List[LoginToken] = field(default_factory=list)
