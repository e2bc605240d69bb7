from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from flickmeter.config import Settings
from flickmeter.logging import get_logger
from flickmeter.service.identity import VerifiedIdentity, canonicalize
from flickmeter.service.users import UserDirectory, UserStore
from flickmeter.storage.errors import RecordNotFound
from flickmeter.storage.models import RefreshToken, Session, User, new_token_id

logger = get_logger(__name__)


class SessionCache(Protocol):
    async def create_session(self, session: Session) -> None: ...

    async def read_and_refresh(self, session_id: str) -> Session: ...

    async def delete_session(self, session_id: str) -> None: ...


class RefreshStore(UserStore, Protocol):
    def create_refresh_token(self, token: RefreshToken) -> None: ...

    def get_refresh_token(self, token_id: str) -> RefreshToken: ...

    def delete_refresh_token(self, token_id: str) -> None: ...


class AuthState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    SESSION_VALID = "session_valid"
    REFRESH_PROMOTED = "refresh_promoted"


@dataclass
class RequestAuth:
    """Outcome of resolving a request's cookies.

    ``issued_session`` is only set after a successful promotion; the HTTP
    layer turns it into a new session cookie.
    """

    state: AuthState = AuthState.UNAUTHENTICATED
    user: Optional[User] = None
    issued_session: Optional[Session] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None


@dataclass
class LoginResult:
    user: User
    is_new: bool
    session: Session
    refresh_token: Optional[RefreshToken] = None


class AuthService:
    """Two-tier session handling: cache-held sessions backed by durable refresh tokens."""

    def __init__(
        self,
        store: RefreshStore,
        cache: SessionCache,
        settings: Settings,
        *,
        directory: Optional[UserDirectory] = None,
        token_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.directory = directory or UserDirectory(
            store,
            retry_budget=settings.username_retry_budget,
            provisioning_attempts=settings.provisioning_attempts,
        )
        self.token_factory = token_factory or new_token_id
        self.logger = logger

    def _new_session(self, user: User) -> Session:
        return Session(id=self.token_factory(), user=user)

    def _new_refresh_token(self, user: User, *, remember: bool) -> RefreshToken:
        token = RefreshToken.new(
            user, remember=remember, remember_hours=self.settings.refresh_remember_hours
        )
        token.id = self.token_factory()
        return token

    async def authenticate(
        self, session_id: Optional[str], refresh_id: Optional[str]
    ) -> RequestAuth:
        """Resolve the caller from its session id, falling back to its refresh id.

        Never raises: a cache or store failure degrades to the next tier and,
        at worst, to an unauthenticated request.
        """

        if session_id:
            try:
                session = await self.cache.read_and_refresh(session_id)
            except RecordNotFound:
                pass
            except Exception as exc:
                self.logger.warning("session_lookup_failed", error=str(exc))
            else:
                return RequestAuth(state=AuthState.SESSION_VALID, user=session.user)

        if not refresh_id:
            return RequestAuth()

        try:
            token = self.store.get_refresh_token(refresh_id)
        except RecordNotFound:
            self.logger.debug("refresh_token_not_found")
            return RequestAuth()
        except Exception as exc:
            self.logger.warning("refresh_lookup_failed", error=str(exc))
            return RequestAuth()

        auth = RequestAuth(state=AuthState.REFRESH_PROMOTED, user=token.user)
        session = self._new_session(token.user)
        try:
            await self.cache.create_session(session)
        except Exception as exc:
            # Request still proceeds as the user; the next one promotes again.
            self.logger.warning(
                "session_promotion_failed", user_id=token.user.id, error=str(exc)
            )
        else:
            auth.issued_session = session
            self.logger.info("session_promoted", user_id=token.user.id)
        return auth

    async def login(self, identity: VerifiedIdentity, *, remember: bool = False) -> LoginResult:
        """Provision the user behind ``identity`` and open both credential tiers.

        The session write is mandatory and its failure aborts the login. The
        refresh write is best effort: without it the user simply has to sign
        in again once the session lapses.
        """

        user, is_new = self.directory.read_or_create(canonicalize(identity))

        session = self._new_session(user)
        await self.cache.create_session(session)

        refresh_token: Optional[RefreshToken] = self._new_refresh_token(
            user, remember=remember
        )
        try:
            self.store.create_refresh_token(refresh_token)
        except Exception as exc:
            self.logger.warning(
                "refresh_token_create_failed", user_id=user.id, error=str(exc)
            )
            refresh_token = None

        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            is_new=is_new,
            remember=remember,
            refresh_issued=refresh_token is not None,
        )
        return LoginResult(
            user=user, is_new=is_new, session=session, refresh_token=refresh_token
        )

    async def logout(
        self, session_id: Optional[str], refresh_id: Optional[str]
    ) -> list[str]:
        """Delete both credentials independently; return the stores that failed."""

        failed: list[str] = []
        if session_id:
            try:
                await self.cache.delete_session(session_id)
            except Exception as exc:
                self.logger.warning("session_delete_failed", error=str(exc))
                failed.append("session")
        if refresh_id:
            try:
                self.store.delete_refresh_token(refresh_id)
            except Exception as exc:
                self.logger.warning("refresh_token_delete_failed", error=str(exc))
                failed.append("refresh")
        return failed
