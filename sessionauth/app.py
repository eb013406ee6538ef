from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sessionauth.api.error_handling import register_exception_handlers
from sessionauth.api.routes import router
from sessionauth.config import Settings
from sessionauth.logging import get_logger, set_correlation_id
from sessionauth.service.bootstrap import ensure_admin

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


_purge_task: asyncio.Task | None = None


def _seed_admin(runtime) -> None:
    settings = runtime.settings
    if not settings.admin_password:
        return
    ensure_admin(
        runtime.store,
        runtime.credentials,
        username=settings.admin_username,
        password=settings.admin_password,
        email=settings.admin_email,
        full_name=settings.admin_full_name,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _purge_task
    from sessionauth.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        _purge_task = asyncio.create_task(
            _run_refresh_purge(runtime, runtime.settings.refresh_purge_interval_seconds)
        )
        try:
            await asyncio.to_thread(_seed_admin, runtime)
        except Exception as exc:
            logger.error("admin_seed_failed", error=str(exc))
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        if _purge_task:
            _purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _purge_task
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="sessionauth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; never a wildcard because credentials are allowed
    return [
        "http://localhost",
        "http://localhost:4200",
        "http://localhost:5173",
        "http://127.0.0.1:4200",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id.

    The id comes from the X-Request-ID header when the client sends one and is
    generated otherwise. It is bound for structured logging and echoed back in
    the X-Request-ID response header.
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
    # Auth responses carry principal data and cookies; keep them out of shared caches
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


def _purge_once(runtime) -> int:
    removed = runtime.refresh_tokens.purge_expired()
    runtime.login_limiter.sweep()
    runtime.register_limiter.sweep()
    return removed


async def _run_refresh_purge(runtime, interval_seconds: int) -> None:
    """Background loop that deletes expired refresh tokens and stale attempt counters."""

    interval = max(interval_seconds, 60)
    try:
        while True:
            try:
                await asyncio.to_thread(_purge_once, runtime)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("refresh_purge_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("refresh_purge_task_cancelled")


def create_app() -> FastAPI:
    return app
