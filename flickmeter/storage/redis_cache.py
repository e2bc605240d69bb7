from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from flickmeter.logging import get_logger
from flickmeter.storage.errors import RecordNotFound, StoreUnavailable
from flickmeter.storage.models import Session

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper for sessions and OAuth state.

    The cache is the only authority on session validity: a key that is gone
    (expired, evicted or deleted) is a logged-out session.
    """

    DEFAULT_OPERATION_TIMEOUT = 1.0

    def __init__(
        self,
        redis_url: str,
        *,
        session_ttl_seconds: int = 3600,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.session_ttl_seconds = session_ttl_seconds
        self.operation_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Compute a TTL from an absolute expiry, clamped to at least one second."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"auth:session:{session_id}"

    async def _run(self, op: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except (RedisError, asyncio.TimeoutError, OSError) as exc:
            raise StoreUnavailable("redis", f"{op} failed: {exc}") from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.operation_timeout,
            socket_connect_timeout=self.operation_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def create_session(self, session: Session) -> None:
        await self._run(
            "create_session",
            self.client.set(
                self._session_key(session.id),
                session.to_json(),
                ex=self.session_ttl_seconds,
            ),
        )

    async def read_and_refresh(self, session_id: str) -> Session:
        """Fetch a session and push its expiry out by a full TTL in one command."""

        raw = await self._run(
            "read_and_refresh",
            self.client.getex(
                self._session_key(session_id), ex=self.session_ttl_seconds
            ),
        )
        if raw is None:
            raise RecordNotFound("session not found")
        try:
            return Session.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("session_payload_corrupt", error=str(exc))
            raise RecordNotFound("session payload unreadable") from exc

    async def delete_session(self, session_id: str) -> None:
        await self._run("delete_session", self.client.delete(self._session_key(session_id)))

    async def set_oauth_state(
        self, state: str, payload: dict, expires_at: datetime
    ) -> None:
        ttl = self._ttl_seconds(expires_at)
        await self._run(
            "set_oauth_state",
            self.client.set(f"auth:oauth:{state}", json.dumps(payload), ex=ttl),
        )

    async def pop_oauth_state(self, state: str) -> Optional[dict]:
        """Atomically get and delete OAuth state so it cannot be replayed."""

        key = f"auth:oauth:{state}"
        cached = await self._run("pop_oauth_state", self.client.getdel(key))
        if cached is None:
            return None
        try:
            data = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None
        return data if isinstance(data, dict) else None

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
