from __future__ import annotations

from typing import Any, Optional

from tokenlogin.service.credentials import IssuedCredential
from tokenlogin.service.ratelimit import RateLimiter
from tokenlogin.service.verification import TokenLoginService, TokenRequest
from tokenlogin.storage.models import FactorPreference


class TokenLoginFlow:
    """Password check followed by second-factor operations, one rate limit per operation.

    Every method first spends one call from the caller's bucket, so a caller
    that is refused never reaches the credential store.
    """

    def __init__(self, accounts, engine: TokenLoginService, limiter: RateLimiter) -> None:
        self.accounts = accounts
        self.engine = engine
        self.limiter = limiter

    async def request_token(
        self,
        selector: str,
        password: str,
        *,
        connection_id: Optional[str] = None,
        caller: Any = None,
    ) -> TokenRequest:
        await self.limiter.enforce("request_token", caller)
        user = self.accounts.find_principal_by_credential(selector, password)
        return await self.engine.request_token_for(user.id, connection_id)

    async def get_login_token(
        self,
        selector: str,
        password: str,
        token: str,
        *,
        connection_id: Optional[str] = None,
        session_id: Optional[str] = None,
        caller: Any = None,
    ) -> IssuedCredential:
        await self.limiter.enforce("get_login_token", caller)
        user = self.accounts.find_principal_by_credential(selector, password)
        return self.engine.exchange_token(
            user.id, token, session_id=session_id, connection_id=connection_id
        )

    async def invalidate_session(
        self,
        selector: str,
        password: str,
        *,
        connection_id: Optional[str] = None,
        caller: Any = None,
    ) -> int:
        """Drop the open session of the principal for this connection.

        The scope is chosen by the client, so the password is required to
        keep others from cancelling a pending login.
        """
        await self.limiter.enforce("invalidate_session", caller)
        user = self.accounts.find_principal_by_credential(selector, password)
        return self.engine.invalidate_session(user.id, connection_id)

    async def verify_contact(
        self, selector: str, password: str, *, caller: Any = None
    ) -> FactorPreference:
        await self.limiter.enforce("verify_contact", caller)
        user = self.accounts.find_principal_by_credential(selector, password)
        return self.engine.verify_contact(user.id)

    async def assert_open_session(
        self,
        selector: str,
        password: str,
        *,
        connection_id: Optional[str] = None,
        caller: Any = None,
    ) -> bool:
        await self.limiter.enforce("assert_open_session", caller)
        user = self.accounts.find_principal_by_credential(selector, password)
        return self.engine.assert_open_session(user.id, connection_id)
