from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidConfig(ValidationError):
    """Token login configuration was rejected at setup time."""


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenSessionPair(AuthenticationError):
    """The submitted token does not verify against any open session.

    Mismatch, expiry, missing session and an already-verified session all
    surface with the same message.
    """

    def __init__(self, message: str = "invalid token-session pair", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFound(NotFoundError):
    def __init__(
        self, message: str = "The username and password combination is not found", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ContactNotConfigured(NotFoundError):
    """The principal has no usable {contact, factor} preference."""


class UnsupportedFactor(NotFoundError):
    """No delivery channel is registered under the requested name."""

    def __init__(self, factor: str, **kwargs) -> None:
        kwargs.setdefault("detail", {"factor": factor})
        super().__init__(f"unsupported factor: {factor}", **kwargs)
        self.factor = factor


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class TransientError(ServiceError):
    """A collaborator failed in a way a retry may fix (503)."""
    status_code = 503
    error_code = "service_unavailable"


class DeliveryError(TransientError):
    """The token could not be handed to the delivery channel."""


class DeliveryTimeout(DeliveryError):
    def __init__(self, factor: str, timeout_ms: int, **kwargs) -> None:
        kwargs.setdefault("detail", {"factor": factor, "timeout_ms": timeout_ms})
        super().__init__(f"delivery via {factor} timed out after {timeout_ms}ms", **kwargs)
        self.factor = factor
        self.timeout_ms = timeout_ms


class DeliveryFailed(DeliveryError):
    def __init__(self, factor: str, cause: Optional[BaseException] = None, **kwargs) -> None:
        kwargs.setdefault("detail", {"factor": factor})
        super().__init__(f"delivery via {factor} failed", **kwargs)
        self.factor = factor
        self.cause = cause
        self.__cause__ = cause


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class FatalError(ServerError):
    """Unrecoverable failure; the operation must not be retried blindly."""


class CredentialIssuanceFailed(FatalError):
    """The session verified but no long-lived credential could be stored."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidConfig",
    "AuthenticationError",
    "InvalidTokenSessionPair",
    "NotFoundError",
    "UserNotFound",
    "ContactNotConfigured",
    "UnsupportedFactor",
    "ConflictError",
    "RateLimitedError",
    "TransientError",
    "DeliveryError",
    "DeliveryTimeout",
    "DeliveryFailed",
    "ServerError",
    "FatalError",
    "CredentialIssuanceFailed",
]
