from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from flickmeter.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class OAuthProviderConfig:
    """Client registration for one identity provider."""

    name: str
    client_id: str
    client_secret: str
    callback_url: str


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide configuration, constructed once at startup."""

    database_url: str = env_field(
        "postgresql://localhost:5432/flickmeter", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory fallbacks and runtime resets for the test suite.",
    )
    # Session / refresh lifetimes
    session_ttl_seconds: int = env_field(
        60 * 60,
        "SESSION_TTL_SECONDS",
        description="Sliding session lifetime, reset on every successful read",
    )
    refresh_remember_hours: int = env_field(
        720,
        "REFRESH_REMEMBER_HOURS",
        description="Absolute refresh token lifetime when remember-me was requested",
    )
    # Store timeouts
    cache_timeout_seconds: float = env_field(1.0, "CACHE_TIMEOUT_SECONDS")
    db_timeout_seconds: float = env_field(3.0, "DB_TIMEOUT_SECONDS")
    provisioning_timeout_seconds: float = env_field(
        5.0, "PROVISIONING_TIMEOUT_SECONDS"
    )
    # User provisioning
    username_retry_budget: int = env_field(
        10,
        "USERNAME_RETRY_BUDGET",
        description="Insert attempts before username generation is abandoned",
    )
    provisioning_attempts: int = env_field(
        3,
        "PROVISIONING_ATTEMPTS",
        description="Full read-or-create re-runs after losing an email race",
    )
    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(
        None, "OAUTH_GOOGLE_CLIENT_SECRET"
    )
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(
        None, "OAUTH_GITHUB_CLIENT_SECRET"
    )
    oauth_callback_base_url: str = env_field(
        "http://localhost:5173/api/users/auth", "OAUTH_CALLBACK_BASE_URL"
    )
    oauth_state_ttl_minutes: int = env_field(10, "OAUTH_STATE_TTL_MINUTES")
    # HTTP surface
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    default_redirect: str = env_field("/", "DEFAULT_REDIRECT")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("username_retry_budget", "provisioning_attempts")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("retry budgets must allow at least one attempt")
        return value

    def oauth_providers(self) -> dict[str, OAuthProviderConfig]:
        """Return the providers that have client credentials configured."""

        candidates = {
            "google": (self.oauth_google_client_id, self.oauth_google_client_secret),
            "github": (self.oauth_github_client_id, self.oauth_github_client_secret),
        }
        base = self.oauth_callback_base_url.rstrip("/")
        providers: dict[str, OAuthProviderConfig] = {}
        for name, (client_id, client_secret) in candidates.items():
            if not client_id or not client_secret:
                continue
            providers[name] = OAuthProviderConfig(
                name=name,
                client_id=client_id,
                client_secret=client_secret,
                callback_url=f"{base}/{name}/callback",
            )
        if not providers:
            logger.warning("oauth_no_providers_configured")
        return providers


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
