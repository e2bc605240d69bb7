from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Protocol
from urllib.parse import urlencode, urlparse

import httpx

from flickmeter.config import OAuthProviderConfig, Settings
from flickmeter.logging import get_logger
from flickmeter.service.errors import NotFoundError, OAuthError
from flickmeter.service.identity import VerifiedIdentity
from flickmeter.storage.models import utcnow

# OAuth provider endpoints
OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
}

logger = get_logger(__name__)


class OAuthStateCache(Protocol):
    async def set_oauth_state(self, state: str, payload: dict, expires_at) -> None: ...

    async def pop_oauth_state(self, state: str) -> Optional[dict]: ...


@dataclass(frozen=True)
class PendingLogin:
    """What the browser asked for when it started the handshake."""

    provider: str
    redirect: str
    keep: bool = False


def safe_redirect(target: Optional[str], default: str = "/") -> str:
    """Only allow same-site absolute paths as post-login destinations."""

    if not target:
        return default
    # Browsers read "\" as "/", so "/\host" would leave the site
    if "\\" in target or not target.startswith("/") or target[1:2] == "/":
        return default
    parsed = urlparse(target)
    if parsed.scheme or parsed.netloc:
        return default
    return target


class OAuthClient:
    """Provider side of the login handshake.

    Produces a ``VerifiedIdentity`` and nothing else; user provisioning and
    session issuance belong to ``AuthService``.
    """

    def __init__(
        self,
        settings: Settings,
        cache: OAuthStateCache,
        *,
        http_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.providers: dict[str, OAuthProviderConfig] = settings.oauth_providers()
        self.http_timeout = http_timeout
        self._transport = transport
        self._code_registry: dict[tuple[str, str], VerifiedIdentity] = {}
        self._registry_lock = threading.Lock()
        self.logger = logger

    def _provider(self, provider: str) -> OAuthProviderConfig:
        config = self.providers.get(provider)
        if config is None or provider not in OAUTH_PROVIDERS:
            raise NotFoundError(
                f"unsupported oauth provider: {provider}", detail={"provider": provider}
            )
        return config

    async def start(
        self, provider: str, *, redirect: Optional[str] = None, keep: bool = False
    ) -> str:
        """Persist a one-time state and return the provider's authorization URL."""

        config = self._provider(provider)
        state = secrets.token_urlsafe(32)
        expires_at = utcnow() + timedelta(minutes=self.settings.oauth_state_ttl_minutes)
        await self.cache.set_oauth_state(
            state,
            {
                "provider": provider,
                "redirect": safe_redirect(redirect, self.settings.default_redirect),
                "keep": bool(keep),
            },
            expires_at,
        )

        endpoints = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": config.client_id,
            "redirect_uri": config.callback_url,
            "response_type": "code",
            "scope": endpoints["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "online"
        return f"{endpoints['auth_url']}?{urlencode(params)}"

    async def consume_state(self, provider: str, state: str) -> PendingLogin:
        """Redeem a state issued by ``start``; each state is usable once."""

        payload = await self.cache.pop_oauth_state(state) if state else None
        if not payload or payload.get("provider") != provider:
            self.logger.warning("oauth_state_invalid", provider=provider)
            raise OAuthError("invalid or expired oauth state")
        return PendingLogin(
            provider=provider,
            redirect=safe_redirect(payload.get("redirect"), self.settings.default_redirect),
            keep=bool(payload.get("keep")),
        )

    def register_oauth_code(
        self, provider: str, code: str, identity: VerifiedIdentity
    ) -> None:
        """Record an already-exchanged identity for testing or offline flows."""

        with self._registry_lock:
            self._code_registry[(provider, code)] = identity

    async def exchange(self, provider: str, code: str) -> VerifiedIdentity:
        """Turn an authorization code into verified identity claims."""

        with self._registry_lock:
            registered = self._code_registry.pop((provider, code), None)
        if registered is not None:
            return registered

        config = self._provider(provider)
        endpoints = OAUTH_PROVIDERS[provider]
        try:
            async with httpx.AsyncClient(
                timeout=self.http_timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                token_response = await client.post(
                    endpoints["token_url"],
                    data={
                        "client_id": config.client_id,
                        "client_secret": config.client_secret,
                        "code": code,
                        "redirect_uri": config.callback_url,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    self.logger.error("oauth_no_access_token", provider=provider)
                    raise OAuthError("provider returned no access token")

                headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(endpoints["userinfo_url"], headers=headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    self.logger.error("oauth_userinfo_invalid_format", provider=provider)
                    raise OAuthError("provider returned malformed user info")

                identity = self._parse_userinfo(provider, userinfo)
                # GitHub omits private emails from /user
                if provider == "github" and not identity.email:
                    emails_response = await client.get(endpoints["emails_url"], headers=headers)
                    if emails_response.status_code == 200:
                        emails = emails_response.json()
                        primary = next(
                            (
                                e.get("email")
                                for e in emails
                                if isinstance(e, dict) and e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
                        if primary:
                            identity = VerifiedIdentity(
                                email=primary,
                                display_name=identity.display_name,
                                avatar_url=identity.avatar_url,
                            )
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise OAuthError("oauth code exchange failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            raise OAuthError("oauth code exchange failed") from exc

        if not identity.email:
            self.logger.error("oauth_identity_missing_email", provider=provider)
            raise OAuthError("provider did not return an email address")
        self.logger.info("oauth_exchange_success", provider=provider)
        return identity

    @staticmethod
    def _parse_userinfo(provider: str, userinfo: dict) -> VerifiedIdentity:
        if provider == "google":
            return VerifiedIdentity(
                email=userinfo.get("email") or "",
                display_name=userinfo.get("name") or "",
                avatar_url=userinfo.get("picture") or "",
            )
        return VerifiedIdentity(
            email=userinfo.get("email") or "",
            display_name=userinfo.get("login") or "",
            avatar_url=userinfo.get("avatar_url") or "",
        )
