from __future__ import annotations

from typing import Any, Dict, Optional


class RecordNotFound(Exception):
    """Expected absence of a session, refresh token or user row."""

    def __init__(self, message: str = "record not found", *, key: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.key = key


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def constraint(self) -> Optional[str]:
        """Logical column the violated constraint protects (``username``, ``email``)."""
        return self.detail.get("field")


class StoreUnavailable(Exception):
    """The cache or database could not be reached, or the call timed out."""

    def __init__(self, backend: str, message: str):
        super().__init__(f"{backend}: {message}")
        self.backend = backend
        self.message = message


__all__ = ["ConstraintViolation", "RecordNotFound", "StoreUnavailable"]
