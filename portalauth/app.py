from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

from portalauth import __version__
from portalauth.api.error_handling import error_response, register_exception_handlers
from portalauth.api.routes import router, session_token_from_request
from portalauth.config import Settings
from portalauth.logging import get_logger, set_correlation_id
from portalauth.service.gate import Outcome
from portalauth.service.store_calls import call_store
from portalauth.storage.models import utcnow

logger = get_logger(__name__)

_settings = Settings.from_env()

_sweep_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expired-session sweep and close connections on shutdown."""
    global _sweep_task
    from portalauth.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.session_sweep_interval_seconds
    if interval > 0:
        _sweep_task = asyncio.create_task(_run_session_sweep(interval))

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


async def _run_session_sweep(interval_seconds: int) -> None:
    """Physically delete sessions that are already logically dead."""
    from portalauth.service.runtime import get_runtime

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            runtime = get_runtime()
            try:
                removed = await call_store(
                    runtime.store.delete_expired_sessions,
                    utcnow(),
                    timeout=runtime.settings.store_timeout_seconds,
                )
                if removed:
                    logger.info("expired_sessions_swept", removed=removed)
            except Exception as exc:
                logger.error("session_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("session_sweep_cancelled")
        raise


app = FastAPI(title="Portal Auth", version=__version__, lifespan=lifespan)


def _is_api_path(path: str) -> bool:
    return path == "/v1" or path.startswith("/v1/")


@app.middleware("http")
async def enforce_route_policy(request: Request, call_next):
    """Apply the route policy table before any handler runs.

    API callers get a 401/403 envelope. Browser routes are redirected: to
    sign-in when there is no usable session, and to the neutral home page
    when the session lacks the role, without saying which check failed.
    """
    from portalauth.service.runtime import get_runtime

    runtime = get_runtime()
    path = request.url.path
    token = session_token_from_request(request, runtime.settings.session_cookie_name)
    decision = await runtime.gate.decide(path, token)
    if decision.allowed:
        request.state.principal = decision.principal
        return await call_next(request)

    if decision.outcome == Outcome.UNAUTHENTICATED:
        if _is_api_path(path):
            return error_response(401, "authentication required", code="unauthorized")
        return RedirectResponse(runtime.settings.sign_in_path, status_code=303)

    if _is_api_path(path):
        return error_response(403, "access denied", code="forbidden")
    return RedirectResponse(runtime.settings.home_path, status_code=303)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Read X-Request-ID or mint one, bind it for logging, echo it back."""
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
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


# Added last so it is outermost and also decorates gate denials
app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)

register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Bounded dependency checks for the credential store and claim cache."""
    from portalauth.service.runtime import get_runtime

    runtime = get_runtime()

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
    cache_ok = await _run_bounded("claim_cache", runtime.cache.verify_connection)
    checks = {
        "store": {
            "status": "healthy" if store_ok else "unhealthy",
            "type": type(runtime.store).__name__,
        },
        "claim_cache": {
            "status": "healthy" if cache_ok else "unhealthy",
            "type": type(runtime.cache).__name__,
        },
    }
    return {
        "status": "healthy" if store_ok and cache_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": utcnow().isoformat(),
    }


def create_app() -> FastAPI:
    return app
