from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from antares.api.error_handling import error_response, register_exception_handlers
from antares.api.routes import router
from antares.config import Settings
from antares.logging import get_logger, set_correlation_id
from antares.service.cookies import CSRF_SAFE_METHODS
from antares.service.errors import UpstreamUnavailableError
from antares.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the runtime and the default admin on startup; release pools on shutdown."""
    runtime = get_runtime()
    try:
        runtime.auth.ensure_default_admin()
    except UpstreamUnavailableError as exc:
        logger.error("default_admin_bootstrap_failed", error=exc.message)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Antares Auth", version=__version__, lifespan=lifespan)

_API_PREFIX = _settings.api_prefix

# Endpoints reachable before a session (and its CSRF cookie) exists
_CSRF_EXEMPT_PATHS = frozenset({
    f"{_API_PREFIX}/auth/login",
    f"{_API_PREFIX}/auth/register",
    f"{_API_PREFIX}/auth/refresh-token",
    "/healthz",
})


def _response_sets_cookie(response: Response, name: str) -> bool:
    prefix = f"{name}="
    return any(
        value.startswith(prefix) for value in response.headers.getlist("set-cookie")
    )


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    """Double-submit CSRF check for state-changing requests.

    Requests that carry a bearer token and no session cookie have no ambient
    credentials and are not checked. Any response to a caller without the CSRF
    cookie gets a fresh one.
    """
    cookies = get_runtime().cookies
    bearer_only = (
        cookies.access_cookie not in request.cookies
        and cookies.refresh_cookie not in request.cookies
        and cookies.has_bearer(request)
    )
    needs_check = (
        request.method.upper() not in CSRF_SAFE_METHODS
        and request.url.path not in _CSRF_EXEMPT_PATHS
        and not bearer_only
    )
    if needs_check and not cookies.csrf_valid(request):
        logger.warning(
            "csrf_validation_failed", path=request.url.path, method=request.method
        )
        response = error_response(
            403,
            "missing or invalid CSRF token",
            code="forbidden",
            path=request.url.path,
        )
    else:
        response = await call_next(request)
    if cookies.csrf_cookie not in request.cookies and not _response_sets_cookie(
        response, cookies.csrf_cookie
    ):
        cookies.issue_csrf(response)
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # API responses carry session state and must not be cached by proxies
    if request.url.path.startswith(f"{_API_PREFIX}/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Bind X-Request-ID (or a generated id) to the logging context and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


# Outermost middleware; wraps the http middlewares above
app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        _settings.csrf_header,
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


register_exception_handlers(app)
app.include_router(router, prefix=_API_PREFIX)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health(response: Response) -> Dict[str, Any]:
    """Report credential store and key-value store reachability."""
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
    cache_ok = await _run_bounded("cache", runtime.cache.verify_connection)
    healthy = store_ok and cache_ok
    if not healthy:
        response.status_code = 503
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": {
            "store": {
                "status": "healthy" if store_ok else "unhealthy",
                "type": type(runtime.store).__name__,
            },
            "cache": {
                "status": "healthy" if cache_ok else "unhealthy",
                "type": type(runtime.cache).__name__,
            },
        },
        "version": __version__,
    }


def create_app() -> FastAPI:
    return app
