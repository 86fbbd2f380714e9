from __future__ import annotations

import json
from typing import Any, Protocol, runtime_checkable

from trustcore.storage.errors import SerializationError


@runtime_checkable
class ExpiringStore(Protocol):
    """Key-value store whose entries disappear after a TTL.

    Entries observed after their expiry behave exactly like missing keys.
    Implementations must be safe for concurrent use.
    """

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None: ...

    async def get(self, key: str) -> Any: ...

    async def pop(self, key: str) -> Any: ...

    async def delete(self, *keys: str) -> None: ...

    async def exists(self, *keys: str) -> bool: ...

    async def close(self) -> None: ...


def encode_value(key: str, value: Any) -> bytes:
    try:
        return json.dumps(value, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"failed to serialize value: {exc}", key=key) from exc


def decode_value(key: str, raw: bytes | str) -> Any:
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError, UnicodeDecodeError) as exc:
        raise SerializationError(f"failed to deserialize value: {exc}", key=key) from exc


def validate_ttl(key: str, ttl_seconds: float) -> float:
    if ttl_seconds <= 0:
        raise ValueError(f"ttl must be positive for key {key!r}")
    return float(ttl_seconds)


__all__ = ["ExpiringStore", "encode_value", "decode_value", "validate_ttl"]
