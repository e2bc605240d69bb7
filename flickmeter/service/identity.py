from __future__ import annotations

from dataclasses import dataclass, replace


@dataclass(frozen=True)
class VerifiedIdentity:
    """Identity claims a provider has vouched for at the end of an OAuth handshake."""

    email: str
    display_name: str = ""
    avatar_url: str = ""


def canonicalize(identity: VerifiedIdentity) -> VerifiedIdentity:
    """Drop display names containing whitespace.

    Providers often send "First Last"; usernames may not contain spaces, so
    such names are discarded rather than sanitized and an empty name tells
    the user directory to generate one.
    """
    name = identity.display_name or ""
    if any(ch.isspace() for ch in name):
        return replace(identity, display_name="")
    return identity
