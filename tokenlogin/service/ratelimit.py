from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Tuple

from tokenlogin.logging import get_logger
from tokenlogin.service.errors import RateLimitedError

logger = get_logger(__name__)

OPERATIONS = (
    "request_token",
    "get_login_token",
    "invalidate_session",
    "verify_contact",
    "assert_open_session",
)

# Bucket count above which refilled local buckets are dropped
LOCAL_PRUNE_THRESHOLD = 1024


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


class RateLimiter:
    """Per (operation, caller) token bucket.

    ``config.request_count`` calls are allowed per
    ``config.request_interval_seconds``. Callers for which
    ``config.validate(caller)`` is false are not limited. Without a Redis
    cache, buckets live in this process only.
    """

    def __init__(self, config, cache=None) -> None:
        self.config = config
        self.cache = cache
        self._local_buckets: Dict[str, Tuple[float, datetime]] = {}
        self._local_lock = asyncio.Lock()
        self.prune_threshold = LOCAL_PRUNE_THRESHOLD

    def key_for(self, operation: str, caller: Any) -> str:
        return f"tokenlogin:{self.config.identifier}/{operation}:{caller}"

    def _prune_local(self, now: datetime, limit: int, refill_rate: float) -> None:
        """Forget buckets that have refilled completely; caller holds ``_local_lock``."""
        full = [
            key
            for key, (tokens, last_ts) in self._local_buckets.items()
            if tokens + (now - last_ts).total_seconds() * refill_rate >= limit
        ]
        for key in full:
            del self._local_buckets[key]

    async def _consume_local(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int, int]:
        now = datetime.now(timezone.utc)
        refill_rate = float(limit) / float(window_seconds)
        async with self._local_lock:
            if len(self._local_buckets) >= self.prune_threshold:
                self._prune_local(now, limit, refill_rate)
            tokens, last_ts = self._local_buckets.get(key, (float(limit), now))
            elapsed = max(0.0, (now - last_ts).total_seconds())
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= 1
            if allowed:
                tokens -= 1
            self._local_buckets[key] = (tokens, now)
            reset_seconds = 0 if allowed else max(1, int((1 - tokens) / refill_rate + 0.999))
        return allowed, int(tokens), reset_seconds

    async def check(self, operation: str, caller: Any) -> Tuple[bool, RateLimitInfo]:
        limit = self.config.request_count
        window = self.config.request_interval_seconds
        if not self.config.validate(caller):
            return True, RateLimitInfo(limit, limit, 0)
        key = self.key_for(operation, caller)
        if self.cache is not None:
            allowed, remaining, reset_seconds = await self.cache.check_rate_limit(
                key, limit, window, namespace="tokenlogin"
            )
        else:
            allowed, remaining, reset_seconds = await self._consume_local(key, limit, window)
        return allowed, RateLimitInfo(limit, remaining, reset_seconds or window)

    async def enforce(self, operation: str, caller: Any) -> RateLimitInfo:
        """Consume one call for ``caller``; raise :class:`RateLimitedError` when exhausted."""
        allowed, info = await self.check(operation, caller)
        if not allowed:
            logger.warning(
                "token_login_rate_limited",
                operation=operation,
                caller=str(caller),
                retry_after=info.reset_seconds,
            )
            raise RateLimitedError(
                "rate limit exceeded",
                detail={"operation": operation, "retry_after": info.reset_seconds},
            )
        return info
