from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from flickmeter.api.schemas import Envelope, UserResponse
from flickmeter.logging import get_logger
from flickmeter.service.auth import RequestAuth
from flickmeter.service.cookies import (
    REFRESH_COOKIE,
    SESSION_COOKIE,
    expired_cookie,
    refresh_cookie,
    session_cookie,
)
from flickmeter.service.errors import ServiceError
from flickmeter.service.runtime import get_runtime
from flickmeter.storage.errors import ConstraintViolation, StoreUnavailable
from flickmeter.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/users")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def get_request_auth(request: Request) -> RequestAuth:
    """Authentication outcome attached by the authentication middleware."""

    auth = getattr(request.state, "auth", None)
    return auth if isinstance(auth, RequestAuth) else RequestAuth()


async def require_user(auth: RequestAuth = Depends(get_request_auth)) -> User:
    if auth.user is None:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return auth.user


@router.get("/auth/{provider}", tags=["auth"])
async def oauth_start(
    provider: str = Path(..., max_length=32, description="OAuth provider (google, github)"),
    redirect: Optional[str] = Query(None, max_length=2048, description="Path to return to after login"),
    keep: bool = Query(False, description="Remember me: give the refresh cookie an expiry"),
):
    """Send the browser to the provider's consent screen."""

    runtime = get_runtime()
    authorization_url = await runtime.oauth.start(provider, redirect=redirect, keep=keep)
    return RedirectResponse(authorization_url, status_code=307)


@router.get("/auth/{provider}/callback", tags=["auth"])
async def oauth_callback(
    provider: str = Path(..., max_length=32, description="OAuth provider"),
    code: str = Query("", max_length=512, description="Authorization code from the provider"),
    state: str = Query("", max_length=128, description="State issued by the start endpoint"),
):
    """Complete the handshake, sign the user in and bounce back to the app.

    Every failure still ends in a redirect; the browser simply arrives
    without new cookies.
    """

    runtime = get_runtime()
    redirect = runtime.settings.default_redirect
    try:
        pending = await runtime.oauth.consume_state(provider, state)
        redirect = pending.redirect
        identity = await runtime.oauth.exchange(provider, code)
        result = await runtime.auth.login(identity, remember=pending.keep)
    except (ServiceError, StoreUnavailable, ConstraintViolation) as exc:
        logger.warning(
            "oauth_callback_failed",
            provider=provider,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return RedirectResponse(redirect, status_code=303)

    response = RedirectResponse(redirect, status_code=303)
    secure = runtime.settings.cookie_secure
    session_cookie(result.session, secure=secure).apply(response)
    if result.refresh_token is not None:
        refresh_cookie(result.refresh_token, secure=secure).apply(response)
    logger.info("oauth_login_completed", provider=provider, user_id=result.user.id, is_new=result.is_new)
    return response


@router.get("/me", response_model=Envelope, tags=["users"])
async def get_me(user: User = Depends(require_user)):
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/logout", tags=["auth"])
async def logout(request: Request, auth: RequestAuth = Depends(get_request_auth)):
    runtime = get_runtime()
    session_id = request.cookies.get(SESSION_COOKIE)
    refresh_id = request.cookies.get(REFRESH_COOKIE)
    failed = await runtime.auth.logout(session_id, refresh_id)
    # Drop a session the middleware may have just promoted for this request
    if auth.issued_session is not None:
        failed += await runtime.auth.logout(auth.issued_session.id, None)
        auth.issued_session = None
    if failed:
        logger.warning("logout_incomplete", failed_stores=failed)

    response = Response(status_code=200)
    secure = runtime.settings.cookie_secure
    expired_cookie(SESSION_COOKIE, secure=secure).apply(response)
    expired_cookie(REFRESH_COOKIE, secure=secure).apply(response)
    return response
