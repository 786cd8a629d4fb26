from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tokenlogin.api.error_handling import register_exception_handlers
from tokenlogin.api.routes import router
from tokenlogin.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None


async def _run_session_sweep(interval_seconds: int) -> None:
    """Physically delete expired and retained-out login sessions on a fixed interval."""
    from tokenlogin.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            runtime = get_runtime()
            await asyncio.to_thread(runtime.sessions.purge_expired)
        except Exception as exc:
            logger.error("session_sweep_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the session sweep on startup; stop it and release connections on shutdown."""
    global _sweep_task
    from tokenlogin.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.config.dev_token_fallback:
        logger.warning(
            "insecure_dev_token_fallback_active",
            message="tokens that cannot be delivered are written to the log",
        )
    _sweep_task = asyncio.create_task(
        _run_session_sweep(runtime.settings.session_sweep_interval_seconds)
    )

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Token Login", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with X-Request-ID (client supplied or generated) for log tracing."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def healthz():
    from tokenlogin.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "ok",
        "version": __version__,
        "redis": runtime.cache is not None,
        "factors": sorted(runtime.config.factors),
    }
