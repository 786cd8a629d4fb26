from __future__ import annotations

import asyncio
import threading
from typing import Any, Mapping, Optional
from urllib.parse import urlparse, urlunparse

from tokenlogin.config import (
    TokenLoginConfig,
    build_token_login_config,
    configure,
    get_settings,
    reset_settings_cache,
)
from tokenlogin.logging import get_logger
from tokenlogin.service.accounts import AccountService
from tokenlogin.service.credentials import LoginTokenIssuer
from tokenlogin.service.delivery import DeliveryDispatcher
from tokenlogin.service.email import EmailService
from tokenlogin.service.factors import default_factors
from tokenlogin.service.login import TokenLoginFlow
from tokenlogin.service.ratelimit import RateLimiter
from tokenlogin.service.sessions import SessionStore
from tokenlogin.service.telegram import TelegramService
from tokenlogin.service.verification import TokenLoginService
from tokenlogin.storage.memory import MemoryStore
from tokenlogin.storage.postgres import PostgresStore
from tokenlogin.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode to avoid event loop binding
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; rate limits are per process.",
                mode=fallback_mode,
            )

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            timeout_seconds=self.settings.email_timeout_ms / 1000,
        )
        self.telegram = TelegramService(
            bot_token=self.settings.telegram_bot_token,
            api_base=self.settings.telegram_api_base,
            timeout_seconds=self.settings.telegram_timeout_ms / 1000,
        )
        factors = default_factors(
            self.settings, email_service=self.email, telegram_service=self.telegram
        )
        self.apply_config(build_token_login_config(self.settings, factors))

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            factors=sorted(self.config.factors),
            email_configured=self.email.is_configured,
            telegram_configured=self.telegram.is_configured,
            dev_token_fallback=self.config.dev_token_fallback,
        )

    def apply_config(self, config: TokenLoginConfig) -> None:
        """Rebuild every config-dependent service around ``config``."""
        self.config = config
        self.accounts = AccountService(self.store, profile_key=config.profile)
        self.sessions = SessionStore(self.store, config)
        self.dispatcher = DeliveryDispatcher(config)
        self.issuer = LoginTokenIssuer(self.store, ttl_days=self.settings.login_token_ttl_days)
        self.engine = TokenLoginService(
            self.sessions, self.dispatcher, self.accounts, config, issuer=self.issuer
        )
        self.limiter = RateLimiter(config, cache=self.cache)
        self.flow = TokenLoginFlow(self.accounts, self.engine, self.limiter)

    def reconfigure(self, overrides: Mapping[str, Any]) -> TokenLoginConfig:
        """Merge ``overrides`` into the active configuration and rewire."""
        config = configure(overrides, base=self.config)
        self.apply_config(config)
        return config

    async def close(self) -> None:
        await self.telegram.close()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache._sync_client.close()
        elif runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
