from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, Mapping, Optional, Union

from tokenlogin.logging import get_logger, redact_contact

logger = get_logger(__name__)

# send(contact, token, factor, settings) -> info | awaitable info
SendCallable = Callable[[str, str, str, Optional[Mapping[str, Any]]], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class FactorSpec:
    """A named delivery channel capable of sending a token to a contact."""

    name: str
    send: SendCallable
    settings: Mapping[str, Any] = field(default_factory=dict)

    @property
    def timeout_ms(self) -> Optional[int]:
        return self.settings.get("timeout_ms")


class FactorRegistry(Mapping[str, FactorSpec]):
    """Read-only name to :class:`FactorSpec` mapping.

    Registries are never mutated in place; :meth:`with_factors` returns a new
    registry so a configuration snapshot stays stable while in use.
    """

    def __init__(self, factors: Iterable[FactorSpec] = ()) -> None:
        self._factors: Mapping[str, FactorSpec] = MappingProxyType(
            {spec.name: spec for spec in factors}
        )

    def __getitem__(self, name: str) -> FactorSpec:
        return self._factors[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._factors)

    def __len__(self) -> int:
        return len(self._factors)

    def __repr__(self) -> str:
        return f"FactorRegistry({sorted(self._factors)!r})"

    def resolve(self, name: str) -> Optional[FactorSpec]:
        return self._factors.get(name)

    def with_factors(self, specs: Iterable[FactorSpec]) -> "FactorRegistry":
        merged: Dict[str, FactorSpec] = dict(self._factors)
        for spec in specs:
            merged[spec.name] = spec
        return FactorRegistry(merged.values())


def console_send(contact: str, token: str, factor: str, settings=None) -> Dict[str, Any]:
    """Development channel: writes the token to the service log."""
    # "code" is not a redacted key, so the operator can read it back
    logger.warning(
        "token_console_delivery",
        contact=redact_contact(contact),
        factor=factor,
        code=token,
    )
    return {"channel": "console"}


def make_email_send(email_service) -> SendCallable:
    """Wrap the blocking SMTP service as a coroutine channel."""

    async def send(contact: str, token: str, factor: str, settings=None) -> Dict[str, Any]:
        await asyncio.to_thread(email_service.send_login_token, contact, token)
        return {"channel": "email"}

    return send


def make_telegram_send(telegram_service) -> SendCallable:
    async def send(contact: str, token: str, factor: str, settings=None) -> Dict[str, Any]:
        message_id = await telegram_service.send_login_token(contact, token)
        return {"channel": "telegram", "message_id": message_id}

    return send


def default_factors(
    settings,
    *,
    email_service=None,
    telegram_service=None,
) -> Dict[str, FactorSpec]:
    """Build the channels enabled by the environment settings."""
    factors: Dict[str, FactorSpec] = {}
    if settings.enable_console_factor:
        factors["console"] = FactorSpec(name="console", send=console_send)
    if email_service is not None and email_service.is_configured:
        factors["email"] = FactorSpec(
            name="email",
            send=make_email_send(email_service),
            settings={"timeout_ms": settings.email_timeout_ms},
        )
    if telegram_service is not None and telegram_service.is_configured:
        factors["telegram"] = FactorSpec(
            name="telegram",
            send=make_telegram_send(telegram_service),
            settings={"timeout_ms": settings.telegram_timeout_ms},
        )
    logger.info("token_factors_registered", factors=sorted(factors))
    return factors
