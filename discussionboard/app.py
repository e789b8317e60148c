from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from discussionboard.api.error_handling import register_exception_handlers
from discussionboard.api.routes import router
from discussionboard.logging import get_logger, set_correlation_id
from discussionboard.service.sessions import AuthSessionService

logger = get_logger(__name__)

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None


async def _run_token_sweep(sessions: AuthSessionService, interval_seconds: int) -> None:
    """Background loop reaping expired tokens out of band from requests."""

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await asyncio.to_thread(sessions.sweep_expired)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort maintenance
                logger.warning("token_sweep_failed", error_type=type(exc).__name__, error=str(exc))
    except asyncio.CancelledError:
        logger.info("token_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expired-token sweep on startup and stop it on shutdown."""
    global _sweep_task
    from discussionboard.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.token_sweep_interval_seconds
    if interval > 0 and not runtime.settings.test_mode:
        _sweep_task = asyncio.create_task(_run_token_sweep(runtime.sessions, interval))
        logger.info("token_sweep_started", interval_seconds=interval)

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Discussion Board", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for log tracing.

    Taken from the X-Request-ID header when the client sends one, generated
    otherwise, and echoed back in the X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # responses may carry session cookies or account data
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store connectivity and version info."""
    from discussionboard.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        db_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="database", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        db_ok = False
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        db_ok = False

    store_type = "memory" if runtime.settings.use_memory_store else "postgres"
    return {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": {
            "database": {"status": "healthy" if db_ok else "unhealthy", "type": store_type},
            "session_cache": {"status": "healthy", "entries": len(runtime.session_cache)},
        },
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
