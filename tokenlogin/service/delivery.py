from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping, Optional

from tokenlogin.logging import get_logger, redact_contact
from tokenlogin.service.errors import (
    DeliveryError,
    DeliveryFailed,
    DeliveryTimeout,
    ServiceError,
    UnsupportedFactor,
)

logger = get_logger(__name__)

STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_TIMEOUT = "timeout"
STATUS_UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class DeliveryResult:
    """Normalised outcome of one delivery attempt."""

    factor: str
    status: str
    info: Any = None
    error: Optional[ServiceError] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SENT

    def raise_for_status(self) -> None:
        if self.error is not None:
            raise self.error


class DeliveryDispatcher:
    """Resolves a factor by name and sends a token through it under a deadline."""

    def __init__(self, config) -> None:
        self.config = config

    def _timeout_ms(self, spec) -> int:
        return spec.timeout_ms or self.config.timeout_ms

    def _channel_settings(self, spec) -> Mapping[str, Any]:
        """Channel settings layered over the global ``settings``."""
        merged = dict(self.config.settings or {})
        merged.update(spec.settings or {})
        return MappingProxyType(merged)

    async def _invoke(self, spec, contact: str, token: str) -> Any:
        settings = self._channel_settings(spec)
        if inspect.iscoroutinefunction(spec.send):
            return await spec.send(contact, token, spec.name, settings)
        result = await asyncio.to_thread(spec.send, contact, token, spec.name, settings)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _log_fallback(self, contact: str, token: str, factor: str, reason: str) -> None:
        if not self.config.dev_token_fallback:
            return
        # "verification_code" avoids the redaction processor on purpose
        logger.warning(
            "insecure_dev_token_fallback",
            contact=redact_contact(contact),
            factor=factor,
            reason=reason,
            verification_code=token,
        )

    async def deliver(self, contact: str, token: str, factor: str) -> DeliveryResult:
        spec = self.config.factors.resolve(factor)
        if spec is None:
            logger.warning("token_delivery_unsupported_factor", factor=factor)
            self._log_fallback(contact, token, factor, STATUS_UNSUPPORTED)
            return DeliveryResult(
                factor=factor, status=STATUS_UNSUPPORTED, error=UnsupportedFactor(factor)
            )

        timeout_ms = self._timeout_ms(spec)
        try:
            info = await asyncio.wait_for(
                self._invoke(spec, contact, token), timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            logger.warning(
                "token_delivery_timeout",
                factor=factor,
                contact=redact_contact(contact),
                timeout_ms=timeout_ms,
            )
            self._log_fallback(contact, token, factor, STATUS_TIMEOUT)
            return DeliveryResult(
                factor=factor,
                status=STATUS_TIMEOUT,
                error=DeliveryTimeout(factor, timeout_ms),
            )
        except DeliveryError as exc:
            logger.warning("token_delivery_failed", factor=factor, error=exc.message)
            self._log_fallback(contact, token, factor, STATUS_FAILED)
            return DeliveryResult(factor=factor, status=STATUS_FAILED, error=exc)
        except Exception as exc:
            logger.warning(
                "token_delivery_failed",
                factor=factor,
                contact=redact_contact(contact),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._log_fallback(contact, token, factor, STATUS_FAILED)
            return DeliveryResult(
                factor=factor, status=STATUS_FAILED, error=DeliveryFailed(factor, exc)
            )

        logger.info("token_delivered", factor=factor, contact=redact_contact(contact))
        return DeliveryResult(factor=factor, status=STATUS_SENT, info=info)
