from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional

from tokenlogin.logging import get_logger
from tokenlogin.service.credentials import IssuedCredential
from tokenlogin.service.delivery import DeliveryDispatcher, DeliveryResult
from tokenlogin.service.errors import (
    ContactNotConfigured,
    CredentialIssuanceFailed,
    FatalError,
    InvalidTokenSessionPair,
    ServiceError,
    UnsupportedFactor,
)
from tokenlogin.service.sessions import SessionStore
from tokenlogin.storage.models import FactorPreference


@dataclass(frozen=True)
class TokenRequest:
    """Outcome of :meth:`TokenLoginService.request_token`.

    The session stays open even when delivery failed; ``delivery`` says why.
    """

    session_id: str
    factor: str
    delivery: DeliveryResult

    @property
    def delivered(self) -> bool:
        return self.delivery.ok


class TokenLoginService:
    """Second-factor session state machine: NoSession, Open, then Verified, Expired or Invalidated."""

    def __init__(
        self,
        sessions: SessionStore,
        dispatcher: DeliveryDispatcher,
        accounts,
        config,
        issuer=None,
    ) -> None:
        self.sessions = sessions
        self.dispatcher = dispatcher
        self.accounts = accounts
        self.config = config
        self.issuer = issuer
        self.logger = get_logger(__name__)

    async def request_token(
        self,
        user_id: str,
        contact: str,
        factor: str,
        connection_id: Optional[str] = None,
    ) -> TokenRequest:
        """Open a new session for the scope and send its token through ``factor``.

        Any previously open session for the same scope is discarded first.
        """
        if self.config.factors.resolve(factor) is None:
            raise UnsupportedFactor(factor)
        session = self.sessions.create(user_id, connection_id, factor)
        self.logger.info(
            "login_session_opened",
            user_id=user_id,
            session_id=session.id,
            factor=factor,
            expire_at=session.expire_at.isoformat(),
        )
        # No lock is held here; a slow channel only delays this caller
        delivery = await self.dispatcher.deliver(contact, session.token, factor)
        if not delivery.ok:
            self.logger.warning(
                "login_session_delivery_failed",
                user_id=user_id,
                session_id=session.id,
                status=delivery.status,
            )
        return TokenRequest(session_id=session.id, factor=factor, delivery=delivery)

    async def request_token_for(self, user_id: str, connection_id: Optional[str] = None) -> TokenRequest:
        preference = self.verify_contact(user_id)
        return await self.request_token(
            user_id, preference.contact, preference.factor, connection_id
        )

    def verify_token(
        self,
        user_id: str,
        token: str,
        *,
        session_id: Optional[str] = None,
        connection_id: Optional[str] = None,
    ) -> bool:
        session = self.sessions.find_for_principal(
            user_id, session_id=session_id, connection_id=connection_id
        )
        if session is None:
            self.logger.info("verify_token_no_session", user_id=user_id)
            return False
        if session.is_verified:
            self.logger.info("verify_token_already_verified", user_id=user_id, session_id=session.id)
            return False
        if not session.is_open(self.sessions.now()):
            self.logger.info("verify_token_expired", user_id=user_id, session_id=session.id)
            return False
        submitted = (token or "").encode("utf-8")
        if not hmac.compare_digest(submitted, session.token.encode("utf-8")):
            self.logger.info("verify_token_mismatch", user_id=user_id, session_id=session.id)
            return False
        if not self.sessions.mark_verified(session):
            # Another verification won, or the session expired in between
            self.logger.info("verify_token_lost_race", user_id=user_id, session_id=session.id)
            return False
        self.logger.info("login_session_verified", user_id=user_id, session_id=session.id)
        return True

    def exchange_token(
        self,
        user_id: str,
        token: str,
        *,
        session_id: Optional[str] = None,
        connection_id: Optional[str] = None,
    ) -> IssuedCredential:
        """Verify ``token`` and issue a long-lived credential.

        A credential bridge failure leaves the session verified; the caller
        must request a new token to retry.
        """
        if not self.verify_token(
            user_id, token, session_id=session_id, connection_id=connection_id
        ):
            raise InvalidTokenSessionPair()
        if self.issuer is None:
            raise CredentialIssuanceFailed("no credential issuer configured")
        try:
            return self.issuer.issue_long_lived_credential(user_id)
        except FatalError:
            raise
        except ServiceError as exc:
            raise CredentialIssuanceFailed(exc.message, detail=exc.detail) from exc

    def invalidate_session(self, user_id: str, connection_id: Optional[str] = None) -> int:
        removed = self.sessions.invalidate(user_id, connection_id)
        self.logger.info("login_session_invalidated", user_id=user_id, removed=removed)
        return removed

    def assert_open_session(self, user_id: str, connection_id: Optional[str] = None) -> bool:
        return self.sessions.find_open(user_id, connection_id) is not None

    def verify_contact(self, user_id: str) -> FactorPreference:
        preference = self.accounts.get_factor_preference(user_id)
        if preference is None:
            raise ContactNotConfigured(
                "no second-factor contact configured", detail={"profile": self.config.profile}
            )
        return preference
