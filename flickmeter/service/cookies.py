from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import Response

from flickmeter.storage.models import RefreshToken, Session

SESSION_COOKIE = "session"
REFRESH_COOKIE = "refresh"


@dataclass(frozen=True)
class CookieSpec:
    """Attributes for one auth cookie.

    Without ``expires`` or ``max_age`` the browser treats the cookie as a
    session cookie and drops it when it closes.
    """

    name: str
    value: str
    expires: Optional[datetime] = None
    max_age: Optional[int] = None
    samesite: str = "strict"
    httponly: bool = True
    secure: bool = True
    path: str = "/"

    def apply(self, response: Response) -> None:
        expires = self.expires
        if expires is not None:
            # Starlette only formats UTC-aware datetimes
            if expires.tzinfo is None:
                expires = expires.replace(tzinfo=timezone.utc)
            else:
                expires = expires.astimezone(timezone.utc)
        response.set_cookie(
            self.name,
            self.value,
            max_age=self.max_age,
            expires=expires,
            path=self.path,
            secure=self.secure,
            httponly=self.httponly,
            samesite=self.samesite,
        )


def session_cookie(session: Session, *, secure: bool = True) -> CookieSpec:
    return CookieSpec(name=SESSION_COOKIE, value=session.id, secure=secure)


def refresh_cookie(token: RefreshToken, *, secure: bool = True) -> CookieSpec:
    return CookieSpec(
        name=REFRESH_COOKIE,
        value=token.id,
        expires=token.expires_at,
        secure=secure,
    )


def expired_cookie(name: str, *, secure: bool = True) -> CookieSpec:
    return CookieSpec(name=name, value="", max_age=0, secure=secure)
