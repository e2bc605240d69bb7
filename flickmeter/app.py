from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from flickmeter.api.error_handling import register_exception_handlers
from flickmeter.api.routes import router
from flickmeter.config import Settings
from flickmeter.logging import get_logger, set_correlation_id
from flickmeter.service.cookies import REFRESH_COOKIE, SESSION_COOKIE, session_cookie
from flickmeter.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

# Paths that never need the caller's identity
_UNAUTHENTICATED_PATHS = {"/healthz"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    get_runtime()

    yield

    try:
        await get_runtime().aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Flickmeter Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; no wildcard since cookies are credentials
    return [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def authenticate_request(request: Request, call_next):
    """Resolve the session/refresh cookies once per request.

    The result lands on ``request.state.auth``; routes decide whether an
    unauthenticated caller is acceptable. A session promoted from a refresh
    token is handed back to the browser on the way out.
    """
    if request.url.path in _UNAUTHENTICATED_PATHS:
        return await call_next(request)

    runtime = get_runtime()
    auth = await runtime.auth.authenticate(
        request.cookies.get(SESSION_COOKIE),
        request.cookies.get(REFRESH_COOKIE),
    )
    request.state.auth = auth
    response = await call_next(request)
    if auth.issued_session is not None:
        session_cookie(auth.issued_session, secure=runtime.settings.cookie_secure).apply(
            response
        )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with one correlation id.

    Taken from ``X-Request-ID`` when the client sends one, generated
    otherwise, and echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    runtime = get_runtime()
    return {
        "status": "ok",
        "version": __version__,
        "store": type(runtime.store).__name__,
        "cache": type(runtime.cache).__name__,
    }
