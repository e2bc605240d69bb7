from __future__ import annotations

import contextlib
import json
import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from flickmeter.logging import get_logger
from flickmeter.storage.errors import ConstraintViolation, RecordNotFound
from flickmeter.storage.models import RefreshToken, Session, User, utcnow


class _MemoryUserTransaction:
    """Staged user inserts, applied to the store only when the block exits cleanly."""

    def __init__(self, store: "MemoryStore") -> None:
        self._store = store
        self._pending: List[User] = []

    def _all_users(self) -> List[User]:
        return list(self._store.users.values()) + self._pending

    def find_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self._all_users() if u.email == email), None)

    def insert_user(
        self, email: str, username: str, avatar_url: Optional[str] = None
    ) -> User:
        for existing in self._all_users():
            if existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing.username == username:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
        now = utcnow()
        user = User(
            id=self._store._next_user_id(),
            email=email,
            username=username,
            avatar_url=avatar_url,
            created_at=now,
            updated_at=now,
        )
        self._pending.append(user)
        return user

    def _commit(self) -> None:
        for user in self._pending:
            self._store.users[user.id] = user
        self._pending = []


class MemoryStore:
    """In-process users and refresh tokens for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.refresh_tokens: Dict[str, Tuple[int, Optional[datetime], datetime]] = {}
        self._user_id_seq: int = 0
        self._seq_lock = threading.Lock()
        # RLock so provisioning blocks can call the plain getters
        self._data_lock = threading.RLock()

    def _next_user_id(self) -> int:
        with self._seq_lock:
            self._user_id_seq += 1
            return self._user_id_seq

    def ensure_schema(self) -> None:
        return None

    def close(self) -> None:
        return None

    # users
    @contextlib.contextmanager
    def provisioning(self) -> Iterator[_MemoryUserTransaction]:
        with self._data_lock:
            tx = _MemoryUserTransaction(self)
            yield tx
            tx._commit()

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> None:
        with self._data_lock:
            if token.user.id not in self.users:
                raise ConstraintViolation(
                    "refresh token user missing", {"field": "user_id"}
                )
            if token.id in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "id"}
                )
            self.refresh_tokens[token.id] = (
                token.user.id,
                token.expires_at,
                token.created_at,
            )

    def get_refresh_token(self, token_id: str) -> RefreshToken:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if record is None:
                raise RecordNotFound("refresh token not found")
            user_id, expires_at, created_at = record
            user = self.users.get(user_id)
            if user is None:
                raise RecordNotFound("refresh token user not found")
            token = RefreshToken(
                id=token_id,
                user=replace(user),
                expires_at=expires_at,
                created_at=created_at,
            )
        if token.is_expired():
            raise RecordNotFound("refresh token expired")
        return token

    def delete_refresh_token(self, token_id: str) -> None:
        with self._data_lock:
            self.refresh_tokens.pop(token_id, None)


class MemoryCache:
    """In-process stand-in for the Redis session cache.

    Entries hold the same JSON payloads RedisCache writes. Expiry uses an
    injectable monotonic clock so sliding TTLs can be exercised without
    sleeping.
    """

    def __init__(
        self,
        *,
        session_ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_ttl_seconds = session_ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def _get_live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        payload, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return payload

    async def create_session(self, session: Session) -> None:
        with self._lock:
            self._entries[f"auth:session:{session.id}"] = (
                session.to_json(),
                self._clock() + self.session_ttl_seconds,
            )

    async def read_and_refresh(self, session_id: str) -> Session:
        key = f"auth:session:{session_id}"
        with self._lock:
            payload = self._get_live(key)
            if payload is None:
                raise RecordNotFound("session not found")
            self._entries[key] = (payload, self._clock() + self.session_ttl_seconds)
        try:
            return Session.from_json(payload)
        except (ValueError, KeyError, TypeError) as exc:
            self.logger.warning("session_payload_corrupt", error=str(exc))
            raise RecordNotFound("session payload unreadable") from exc

    async def delete_session(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(f"auth:session:{session_id}", None)

    async def set_oauth_state(
        self, state: str, payload: dict, expires_at: datetime
    ) -> None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        ttl = max(1.0, (expires_at - datetime.now(timezone.utc)).total_seconds())
        with self._lock:
            self._entries[f"auth:oauth:{state}"] = (
                json.dumps(payload),
                self._clock() + ttl,
            )

    async def pop_oauth_state(self, state: str) -> Optional[dict]:
        with self._lock:
            payload = self._get_live(f"auth:oauth:{state}")
            self._entries.pop(f"auth:oauth:{state}", None)
        if payload is None:
            return None
        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, TypeError):
            return None
        return data if isinstance(data, dict) else None
