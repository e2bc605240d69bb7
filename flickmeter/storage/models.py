from __future__ import annotations

import json
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_token_id() -> str:
    """Opaque, unguessable identifier (256 bits) for sessions and refresh tokens."""
    return secrets.token_urlsafe(32)


def _parse_ts(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, str):
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            pass
    return utcnow()


@dataclass
class User:
    id: int
    email: str
    username: str
    avatar_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "avatar_url": self.avatar_url,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(
            id=int(data["id"]),
            email=data["email"],
            username=data["username"],
            avatar_url=data.get("avatar_url"),
            created_at=_parse_ts(data.get("created_at")),
            updated_at=_parse_ts(data.get("updated_at")),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "User":
        return cls(
            id=int(row["id"]),
            email=row["email"],
            username=row["username"],
            avatar_url=row.get("avatar_url"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )


@dataclass
class Session:
    """Cache-held binding of an opaque session id to a user snapshot."""

    id: str
    user: User

    @classmethod
    def new(cls, user: User) -> "Session":
        return cls(id=new_token_id(), user=user)

    def to_json(self) -> str:
        return json.dumps({"id": self.id, "user": self.user.to_dict()})

    @classmethod
    def from_json(cls, raw: str) -> "Session":
        data = json.loads(raw)
        return cls(id=data["id"], user=User.from_dict(data["user"]))


@dataclass
class RefreshToken:
    """Durable binding of an opaque refresh id to a user.

    ``expires_at`` is only set for remember-me logins; without it the token
    lives as long as the browser keeps the cookie.
    """

    id: str
    user: User
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user: User, *, remember: bool, remember_hours: int = 720) -> "RefreshToken":
        now = utcnow()
        expires_at = now + timedelta(hours=remember_hours) if remember else None
        return cls(id=new_token_id(), user=user, expires_at=expires_at, created_at=now)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= (now or utcnow())
