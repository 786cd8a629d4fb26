from __future__ import annotations

import os
import secrets
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tokenlogin.logging import get_logger
from tokenlogin.service.errors import InvalidConfig
from tokenlogin.service.factors import FactorRegistry, FactorSpec

logger = get_logger(__name__)

# Characters that are hard to misread when copied off a phone screen
UNMISTAKABLE_CHARS = "23456789ABCDEFGHJKLMNPQRSTWXYZabcdefghijkmnopqrstuvwxyz"

DEFAULT_TOKEN_LENGTH = 6
DEFAULT_EXPIRY_SECONDS = 5 * 60
DEFAULT_RETAIN_SECONDS = 7 * 24 * 60 * 60
DEFAULT_REQUEST_INTERVAL_SECONDS = 10
DEFAULT_REQUEST_COUNT = 1
DEFAULT_TIMEOUT_MS = 1000
DEFAULT_PROFILE = "TokenLogin"
DEFAULT_IDENTIFIER = "LoginSession"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment and an optional .env file."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokenlogin", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors for CI.",
    )

    token_identifier: str = env_field(DEFAULT_IDENTIFIER, "TOKEN_IDENTIFIER")
    token_profile: str = env_field(
        DEFAULT_PROFILE,
        "TOKEN_PROFILE",
        description="Profile key holding each principal's {contact, factor} preference",
    )
    token_length: int = env_field(DEFAULT_TOKEN_LENGTH, "TOKEN_LENGTH")
    token_expiry_seconds: int = env_field(DEFAULT_EXPIRY_SECONDS, "TOKEN_EXPIRY_SECONDS")
    token_retain_seconds: int = env_field(DEFAULT_RETAIN_SECONDS, "TOKEN_RETAIN_SECONDS")
    token_request_interval_seconds: int = env_field(
        DEFAULT_REQUEST_INTERVAL_SECONDS, "TOKEN_REQUEST_INTERVAL_SECONDS"
    )
    token_request_count: int = env_field(DEFAULT_REQUEST_COUNT, "TOKEN_REQUEST_COUNT")
    token_delivery_timeout_ms: int = env_field(DEFAULT_TIMEOUT_MS, "TOKEN_DELIVERY_TIMEOUT_MS")
    dev_token_fallback: bool = env_field(
        False,
        "DEV_TOKEN_FALLBACK",
        description="Log undeliverable tokens in plaintext. Development only.",
    )
    enable_console_factor: bool = env_field(
        False,
        "ENABLE_CONSOLE_FACTOR",
        description="Register the 'console' factor which only logs deliveries",
    )
    session_sweep_interval_seconds: int = env_field(60, "SESSION_SWEEP_INTERVAL_SECONDS")
    login_token_ttl_days: int = env_field(90, "LOGIN_TOKEN_TTL_DAYS")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Token Login", "EMAIL_FROM_NAME")
    email_timeout_ms: int = env_field(5000, "EMAIL_TIMEOUT_MS")

    telegram_bot_token: str | None = env_field(None, "TELEGRAM_BOT_TOKEN")
    telegram_api_base: str = env_field("https://api.telegram.org", "TELEGRAM_API_BASE")
    telegram_timeout_ms: int = env_field(5000, "TELEGRAM_TIMEOUT_MS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field_info in cls.model_fields.items():
            extra = field_info.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "token_length",
        "token_expiry_seconds",
        "token_retain_seconds",
        "token_request_interval_seconds",
        "token_request_count",
        "token_delivery_timeout_ms",
        "session_sweep_interval_seconds",
        "login_token_ttl_days",
        "email_timeout_ms",
        "telegram_timeout_ms",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None


def make_token_generator(length: int = DEFAULT_TOKEN_LENGTH) -> Callable[[], str]:
    if not isinstance(length, int) or isinstance(length, bool) or length <= 0:
        raise InvalidConfig("token length must be a positive integer")

    def generate() -> str:
        return "".join(secrets.choice(UNMISTAKABLE_CHARS) for _ in range(length))

    return generate


def always_rate_limit(caller: Any) -> bool:
    """Default rate-limit predicate: every caller is limited."""
    return True


@dataclass(frozen=True)
class TokenLoginConfig:
    """Immutable token login policy, built once by :func:`configure`."""

    generate: Callable[[], str] = field(default_factory=make_token_generator)
    validate: Callable[[Any], bool] = always_rate_limit
    settings: Optional[Mapping[str, Any]] = None
    factors: FactorRegistry = field(default_factory=FactorRegistry)
    expiry_seconds: int = DEFAULT_EXPIRY_SECONDS
    retain_seconds: int = DEFAULT_RETAIN_SECONDS
    request_interval_seconds: int = DEFAULT_REQUEST_INTERVAL_SECONDS
    request_count: int = DEFAULT_REQUEST_COUNT
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    profile: str = DEFAULT_PROFILE
    identifier: str = DEFAULT_IDENTIFIER
    dev_token_fallback: bool = False


_POSITIVE_INT_KEYS = (
    "expiry_seconds",
    "retain_seconds",
    "request_interval_seconds",
    "request_count",
    "timeout_ms",
)
_CALLABLE_KEYS = ("generate", "validate")
_NAME_KEYS = ("profile", "identifier")
_KNOWN_KEYS = frozenset(
    _POSITIVE_INT_KEYS + _CALLABLE_KEYS + _NAME_KEYS + ("settings", "factors", "dev_token_fallback")
)


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _coerce_factor(name: Any, raw: Any) -> FactorSpec:
    if not isinstance(name, str) or not name.strip():
        raise InvalidConfig("factor names must be non-empty strings", detail={"factor": repr(name)})
    if isinstance(raw, FactorSpec):
        spec = raw if raw.name == name else FactorSpec(name=name, send=raw.send, settings=raw.settings)
    elif isinstance(raw, Mapping):
        send = raw.get("send")
        if not callable(send):
            raise InvalidConfig(
                f"factor '{name}' must declare a callable send", detail={"factor": name}
            )
        settings = raw.get("settings")
        if settings is not None and not isinstance(settings, Mapping):
            raise InvalidConfig(
                f"factor '{name}' settings must be a mapping", detail={"factor": name}
            )
        spec = FactorSpec(name=name, send=send, settings=dict(settings or {}))
    elif callable(raw):
        spec = FactorSpec(name=name, send=raw)
    else:
        raise InvalidConfig(
            f"factor '{name}' must declare a callable send", detail={"factor": name}
        )
    timeout = spec.settings.get("timeout_ms")
    if timeout is not None and not _is_positive_int(timeout):
        raise InvalidConfig(
            f"factor '{name}' timeout_ms must be a positive integer",
            detail={"factor": name},
        )
    return spec


def configure(
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    base: Optional[TokenLoginConfig] = None,
) -> TokenLoginConfig:
    """Merge ``overrides`` over ``base`` (or the defaults) and validate the result.

    Factors given in ``overrides["factors"]`` are added to the registry of the
    base configuration; a factor with an existing name replaces it. Raises
    :class:`InvalidConfig` on any malformed key, leaving ``base`` untouched.
    """
    current = base or TokenLoginConfig()
    overrides = dict(overrides or {})

    unknown = sorted(set(overrides) - _KNOWN_KEYS)
    if unknown:
        raise InvalidConfig(
            f"unknown configuration keys: {', '.join(unknown)}", detail={"keys": unknown}
        )

    for key in _POSITIVE_INT_KEYS:
        if key in overrides and not _is_positive_int(overrides[key]):
            raise InvalidConfig(f"{key} must be a positive integer", detail={"key": key})
    for key in _CALLABLE_KEYS:
        if key in overrides and not callable(overrides[key]):
            raise InvalidConfig(f"{key} must be callable", detail={"key": key})
    for key in _NAME_KEYS:
        if key in overrides:
            value = overrides[key]
            if not isinstance(value, str) or not value.strip():
                raise InvalidConfig(f"{key} must be a non-empty string", detail={"key": key})
    if "settings" in overrides:
        value = overrides["settings"]
        if value is not None and not isinstance(value, Mapping):
            raise InvalidConfig("settings must be a mapping", detail={"key": "settings"})
        if value is not None:
            overrides["settings"] = MappingProxyType(dict(value))
    if "dev_token_fallback" in overrides and not isinstance(overrides["dev_token_fallback"], bool):
        raise InvalidConfig(
            "dev_token_fallback must be a boolean", detail={"key": "dev_token_fallback"}
        )

    if "factors" in overrides:
        raw_factors = overrides["factors"]
        if not isinstance(raw_factors, Mapping):
            raise InvalidConfig("factors must be a mapping of name to factor")
        specs = [_coerce_factor(name, raw) for name, raw in raw_factors.items()]
        overrides["factors"] = current.factors.with_factors(specs)

    config = replace(current, **overrides)
    if config.dev_token_fallback and not current.dev_token_fallback:
        logger.warning(
            "token_login_insecure_dev_fallback_enabled",
            message="undeliverable tokens will be written to the log",
        )
    return config


def build_token_login_config(
    settings: Settings,
    factors: Optional[Mapping[str, Any]] = None,
) -> TokenLoginConfig:
    """Translate environment settings into a validated :class:`TokenLoginConfig`."""
    overrides: dict[str, Any] = {
        "generate": make_token_generator(settings.token_length),
        "expiry_seconds": settings.token_expiry_seconds,
        "retain_seconds": settings.token_retain_seconds,
        "request_interval_seconds": settings.token_request_interval_seconds,
        "request_count": settings.token_request_count,
        "timeout_ms": settings.token_delivery_timeout_ms,
        "profile": settings.token_profile,
        "identifier": settings.token_identifier,
        "dev_token_fallback": settings.dev_token_fallback,
    }
    if factors:
        overrides["factors"] = factors
    return configure(overrides)
