from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request

from ditto.api.error_handling import register_exception_handlers
from ditto.api.routes import debug_router, router
from ditto.config import Settings, get_settings
from ditto.logging import get_logger, set_correlation_id
from ditto.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
    "API-Version": __version__,
}
# Token-bearing responses must never be cached by intermediaries
_NO_STORE = "no-store, no-cache, must-revalidate, private"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the expired-state sweep for the lifetime of the app."""
    runtime = get_runtime()
    interval = runtime.settings.state_cleanup_interval_seconds
    app.state.cleanup_task = asyncio.create_task(runtime.auth.run_cleanup_loop(interval))
    logger.info("auth_state_cleanup_scheduled", interval_seconds=interval)
    try:
        yield
    finally:
        task = app.state.cleanup_task
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        try:
            await runtime.close()
        except Exception as exc:
            logger.error("runtime_close_failed", error=str(exc))
        else:
            logger.info("runtime_closed")


async def request_context(request: Request, call_next):
    """Bind a correlation id for the request and stamp response headers.

    The id is the client's X-Request-ID when present and is echoed back.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    path = request.url.path
    if path.startswith(("/v1/", "/debug/")) or path == "/healthz":
        response.headers.setdefault("Cache-Control", _NO_STORE)
    return response


async def health() -> Dict[str, Any]:
    runtime = get_runtime()
    settings = runtime.settings
    return {
        "status": "healthy",
        "version": __version__,
        "app_env": settings.app_env.value,
        "code_mode": settings.resolved_code_mode.value,
        "pending_codes": len(runtime.codes),
        "tracked_lockouts": len(runtime.lockout),
    }


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application.

    The /debug routes are only mounted when debug codes may be exposed, so
    production-like deployments answer 404 for them.
    """
    settings = settings or get_settings()
    application = FastAPI(title="Ditto Auth", version=__version__, lifespan=lifespan)
    application.middleware("http")(request_context)
    register_exception_handlers(application)
    application.include_router(router)
    application.add_api_route("/healthz", health, methods=["GET"])
    if settings.expose_debug_codes:
        application.include_router(debug_router)
        logger.warning("debug_routes_enabled", app_env=settings.app_env.value)
    return application


app = create_app()
