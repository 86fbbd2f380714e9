from __future__ import annotations

import asyncio
import threading
import time
from typing import Any, Callable, Dict, NamedTuple, Optional

from trustcore.logging import get_logger
from trustcore.storage.common import decode_value, encode_value, validate_ttl
from trustcore.storage.errors import KeyNotFound

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0


class _Entry(NamedTuple):
    payload: bytes
    expires_at: float


class MemoryStore:
    """In-process expiring store for single-process deployments and tests.

    Entries hold the JSON-encoded value and an absolute expiry on the
    ``clock`` timeline. Lookups check expiry lazily, and a background sweep
    started with :meth:`start` evicts whatever lookups have not touched.
    The lock is never held across an ``await``, so the store is also safe to
    share between threads.
    """

    def __init__(
        self,
        *,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.sweep_interval = sweep_interval
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _live_entry(self, key: str, now: float) -> Optional[_Entry]:
        # Caller holds the lock
        entry = self._entries.get(key)
        if entry is None:
            return None
        if now >= entry.expires_at:
            del self._entries[key]
            return None
        return entry

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        ttl = validate_ttl(key, ttl_seconds)
        payload = encode_value(key, value)
        with self._lock:
            self._entries[key] = _Entry(payload, self._clock() + ttl)

    async def get(self, key: str) -> Any:
        with self._lock:
            entry = self._live_entry(key, self._clock())
        if entry is None:
            raise KeyNotFound(key)
        return decode_value(key, entry.payload)

    async def pop(self, key: str) -> Any:
        with self._lock:
            entry = self._live_entry(key, self._clock())
            if entry is not None:
                del self._entries[key]
        if entry is None:
            raise KeyNotFound(key)
        return decode_value(key, entry.payload)

    async def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    async def exists(self, *keys: str) -> bool:
        with self._lock:
            now = self._clock()
            return any(self._live_entry(key, now) is not None for key in keys)

    def sweep_expired(self) -> int:
        """Evict every expired entry and return how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("memory_store_swept", evicted=len(expired))
        return len(expired)

    async def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            logger.warning("memory_store_sweeper_already_running")
            return
        self._sweeper = asyncio.create_task(self._sweep_loop())
        logger.info("memory_store_sweeper_started", interval=self.sweep_interval)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep_expired()

    async def close(self) -> None:
        """Stop the sweeper and drop all entries."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
            logger.info("memory_store_sweeper_stopped")
        with self._lock:
            self._entries.clear()


__all__ = ["MemoryStore", "DEFAULT_SWEEP_INTERVAL_SECONDS"]
