from __future__ import annotations

import contextlib
from typing import Any, Iterator, Optional

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from trustcore.logging import get_logger
from trustcore.storage.common import decode_value, encode_value, validate_ttl
from trustcore.storage.errors import KeyNotFound, StoreConnectionError, StoreError

logger = get_logger(__name__)


class RedisStore:
    """Expiring store backed by Redis.

    Values are JSON encoded and expiry is delegated to Redis key TTLs, so
    entries are never returned once Redis has expired them.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ):
        if client is None and not redis_url:
            raise ValueError("redis URL is required")
        self.redis_url = redis_url
        if client is not None:
            self.client = client
        else:
            self.client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )

    @contextlib.contextmanager
    def _translate_errors(self, operation: str, key: Optional[str] = None) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error("redis_unavailable", operation=operation, error=str(exc))
            raise StoreConnectionError(
                f"redis {operation} failed: {exc}", key=key
            ) from exc
        except RedisError as exc:
            logger.error("redis_command_failed", operation=operation, error=str(exc))
            raise StoreError(f"redis {operation} failed: {exc}", key=key) from exc

    async def verify_connection(self) -> None:
        """Assert Redis connectivity before the store is handed out."""
        with self._translate_errors("ping"):
            await self.client.ping()

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        ttl = validate_ttl(key, ttl_seconds)
        payload = encode_value(key, value)
        with self._translate_errors("set", key):
            await self.client.set(key, payload, px=max(1, int(ttl * 1000)))

    async def get(self, key: str) -> Any:
        with self._translate_errors("get", key):
            raw = await self.client.get(key)
        if raw is None:
            raise KeyNotFound(key)
        return decode_value(key, raw)

    async def pop(self, key: str) -> Any:
        """Atomically read and delete a key using GETDEL."""
        with self._translate_errors("getdel", key):
            raw = await self.client.getdel(key)
        if raw is None:
            raise KeyNotFound(key)
        return decode_value(key, raw)

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        with self._translate_errors("delete"):
            await self.client.delete(*keys)

    async def exists(self, *keys: str) -> bool:
        if not keys:
            return False
        with self._translate_errors("exists"):
            count = await self.client.exists(*keys)
        return count > 0

    async def close(self) -> None:
        """Close the Redis connection pool. Call at shutdown."""
        await self.client.aclose()


__all__ = ["RedisStore"]
