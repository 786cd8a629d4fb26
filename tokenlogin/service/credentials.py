from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from tokenlogin.logging import get_logger
from tokenlogin.service.errors import CredentialIssuanceFailed
from tokenlogin.storage.errors import StorageError
from tokenlogin.storage.models import LoginToken

logger = get_logger(__name__)


def hash_login_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class IssuedCredential:
    user_id: str
    token: str = field(repr=False)
    expires_at: datetime


class LoginTokenIssuer:
    """Issues long-lived resume tokens once the second factor has verified.

    Only the SHA-256 of the token is stored; the plaintext is returned once.
    """

    def __init__(self, store, *, ttl_days: int = 90) -> None:
        self.store = store
        self.ttl = timedelta(days=ttl_days)

    def issue_long_lived_credential(self, user_id: str) -> IssuedCredential:
        token = secrets.token_urlsafe(32)
        now = datetime.now(timezone.utc)
        record = LoginToken(
            hashed_token=hash_login_token(token),
            user_id=user_id,
            created_at=now,
            expires_at=now + self.ttl,
        )
        try:
            self.store.add_login_token(record)
        except StorageError as exc:
            logger.error("login_token_store_failed", user_id=user_id, error=exc.message)
            raise CredentialIssuanceFailed(
                "could not store login credential", detail={"user_id": user_id}
            ) from exc
        logger.info("login_token_issued", user_id=user_id, expires_at=record.expires_at.isoformat())
        return IssuedCredential(user_id=user_id, token=token, expires_at=record.expires_at)
