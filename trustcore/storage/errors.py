from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for expiring key-value store failures."""

    def __init__(self, message: str, *, key: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.key = key


class KeyNotFound(StoreError):
    """Key is absent or its entry has expired."""

    def __init__(self, key: str):
        super().__init__("key not found", key=key)


class SerializationError(StoreError):
    """Value could not be encoded to or decoded from JSON."""


class StoreConnectionError(StoreError):
    """Backend could not be reached or timed out."""


class ConstraintViolation(Exception):
    """Raised when a user-store uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class UserNotFound(Exception):
    """Raised by user stores when no user matches the lookup."""

    def __init__(self, message: str = "user not found", detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = [
    "StoreError",
    "KeyNotFound",
    "SerializationError",
    "StoreConnectionError",
    "ConstraintViolation",
    "UserNotFound",
]
