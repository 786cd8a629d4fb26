from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _SelectorMixin(BaseModel):
    selector: str = Field(..., min_length=1, max_length=254)

    @field_validator("selector")
    @classmethod
    def _normalize_selector(cls, value: str) -> str:
        normalized = _normalize_unicode(value.strip())
        if not normalized:
            raise ValueError("selector must not be blank")
        # emails are stored lowercased
        return normalized.lower() if "@" in normalized else normalized


class CredentialRequest(_SelectorMixin):
    password: str = Field(..., min_length=1, max_length=1024)


class TokenRequestBody(CredentialRequest):
    pass


class TokenRequestResponse(BaseModel):
    session_id: str
    factor: str
    delivered: bool


class LoginTokenRequest(CredentialRequest):
    token: str = Field(..., min_length=1, max_length=128)
    session_id: Optional[str] = Field(default=None, max_length=64)


class LoginTokenResponse(BaseModel):
    user_id: str
    login_token: str
    expires_at: datetime


class InvalidateResponse(BaseModel):
    removed: int


class ContactResponse(BaseModel):
    contact: str
    factor: str


class OpenSessionResponse(BaseModel):
    open: bool
