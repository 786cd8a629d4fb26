from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Header, Request, Response

from tokenlogin.api.schemas import (
    ContactResponse,
    CredentialRequest,
    Envelope,
    InvalidateResponse,
    LoginTokenRequest,
    LoginTokenResponse,
    OpenSessionResponse,
    TokenRequestBody,
    TokenRequestResponse,
)
from tokenlogin.service.runtime import get_runtime

router = APIRouter(prefix="/v1/token-login")


def _caller(request: Request) -> str:
    """Rate-limit subject: the client address."""
    return request.client.host if request.client else "unknown"


@router.post("/request", response_model=Envelope, tags=["token-login"])
async def request_token(
    body: TokenRequestBody,
    request: Request,
    x_connection_id: Optional[str] = Header(default=None, max_length=128),
):
    """Check the password and send a fresh token to the principal's contact.

    Raises:
        404: If credentials are wrong or no contact/factor is configured
        429: If rate limit exceeded for this caller
        503: If the channel failed or timed out; the session stays open
    """
    runtime = get_runtime()
    result = await runtime.flow.request_token(
        body.selector,
        body.password,
        connection_id=x_connection_id,
        caller=_caller(request),
    )
    if not result.delivered:
        error = result.delivery.error
        error.detail = {**error.detail, "session_id": result.session_id}
        raise error
    return Envelope(
        status="ok",
        data=TokenRequestResponse(
            session_id=result.session_id,
            factor=result.factor,
            delivered=result.delivered,
        ),
    )


@router.post("/login", response_model=Envelope, tags=["token-login"])
async def login_with_token(
    body: LoginTokenRequest,
    request: Request,
    response: Response,
    x_connection_id: Optional[str] = Header(default=None, max_length=128),
):
    """Exchange a delivered token for a long-lived login token.

    Raises:
        401: If the token does not verify against an open session
        404: If credentials are wrong
        500: If the login token could not be stored
    """
    runtime = get_runtime()
    issued = await runtime.flow.get_login_token(
        body.selector,
        body.password,
        body.token,
        connection_id=x_connection_id,
        session_id=body.session_id,
        caller=_caller(request),
    )
    response.headers["Cache-Control"] = "no-store"
    return Envelope(
        status="ok",
        data=LoginTokenResponse(
            user_id=issued.user_id,
            login_token=issued.token,
            expires_at=issued.expires_at,
        ),
    )


@router.post("/invalidate", response_model=Envelope, tags=["token-login"])
async def invalidate_session(
    body: CredentialRequest,
    request: Request,
    x_connection_id: Optional[str] = Header(default=None, max_length=128),
):
    runtime = get_runtime()
    removed = await runtime.flow.invalidate_session(
        body.selector,
        body.password,
        connection_id=x_connection_id,
        caller=_caller(request),
    )
    return Envelope(status="ok", data=InvalidateResponse(removed=removed))


@router.post("/contact", response_model=Envelope, tags=["token-login"])
async def verify_contact(body: CredentialRequest, request: Request):
    runtime = get_runtime()
    preference = await runtime.flow.verify_contact(
        body.selector, body.password, caller=_caller(request)
    )
    return Envelope(
        status="ok",
        data=ContactResponse(contact=preference.contact, factor=preference.factor),
    )


@router.post("/open", response_model=Envelope, tags=["token-login"])
async def assert_open_session(
    body: CredentialRequest,
    request: Request,
    x_connection_id: Optional[str] = Header(default=None, max_length=128),
):
    runtime = get_runtime()
    is_open = await runtime.flow.assert_open_session(
        body.selector,
        body.password,
        connection_id=x_connection_id,
        caller=_caller(request),
    )
    return Envelope(status="ok", data=OpenSessionResponse(open=is_open))
