from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from authkernel.api.error_handling import register_exception_handlers
from authkernel.api.middleware import SanitizeInputMiddleware
from authkernel.api.routes import get_runtime, router
from authkernel.logging import get_logger, set_correlation_id
from authkernel.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _run_token_sweep(runtime: Runtime, interval_seconds: int) -> None:
    """Purge expired refresh-token rows every ``interval_seconds``."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await runtime.sessions.sweep_expired_tokens()
        except Exception as exc:
            # Keep sweeping; a transient store outage must not end the task
            logger.error("token_sweep_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime: Runtime = app.state.runtime
    sweep_task: Optional[asyncio.Task] = None
    interval = runtime.settings.token_sweep_interval_seconds
    if interval > 0:
        sweep_task = asyncio.create_task(_run_token_sweep(runtime, interval))
        logger.info("token_sweep_scheduled", interval_seconds=interval)
    yield
    if sweep_task:
        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the HTTP application around ``runtime``.

    With no runtime one is built from the environment, which raises
    ``ConfigurationError`` before the app exists if signing secrets are
    missing. Serve with ``uvicorn --factory authkernel.app:create_app``.
    """
    runtime = runtime or Runtime()
    app = FastAPI(title="authkernel", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    # Registered innermost-first: CORS must wrap the sanitizer
    app.add_middleware(
        SanitizeInputMiddleware, max_body_bytes=runtime.settings.max_body_bytes
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime.settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "RateLimit-Limit",
            "RateLimit-Remaining",
            "RateLimit-Reset",
            "Retry-After",
        ],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Bind a correlation id for logging and echo it as ``X-Request-ID``."""
        client_request_id = request.headers.get("X-Request-ID")
        if client_request_id and len(client_request_id) > 128:
            client_request_id = None
        correlation_id = set_correlation_id(client_request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/api/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        response.headers.setdefault(
            "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
        )
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request) -> Dict[str, Any]:
        """Report store and Redis reachability."""
        runtime = get_runtime(request)
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        store_ok = await _run_bounded("store", runtime.store.verify_connection)
        checks["store"] = {"status": "healthy" if store_ok else "unhealthy"}
        healthy = store_ok
        if runtime.cache is not None:
            redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
            healthy = healthy and redis_ok
        else:
            checks["redis"] = {"status": "not_configured"}
        return {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app
