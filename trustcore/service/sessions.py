from __future__ import annotations

import secrets
from datetime import timedelta

from trustcore.logging import get_logger
from trustcore.service.errors import SessionNotFoundError
from trustcore.storage.common import ExpiringStore
from trustcore.storage.errors import KeyNotFound
from trustcore.storage.models import SessionData, utcnow

logger = get_logger(__name__)

SESSION_KEY_PREFIX = "session"


class SessionTracker:
    """Server-side session records kept in an :class:`ExpiringStore`.

    The store TTL and the record's own ``expires_at`` carry the same
    deadline; whichever is observed first wins, and an expired record is
    reported exactly like a missing one.
    """

    def __init__(self, store: ExpiringStore, prefix: str = SESSION_KEY_PREFIX) -> None:
        self.store = store
        self.prefix = prefix

    def _key(self, session_id: str) -> str:
        return f"{self.prefix}:{session_id}"

    async def create(self, user_id: str, email: str, ttl_seconds: float) -> str:
        if ttl_seconds <= 0:
            raise ValueError("session TTL must be positive")
        session_id = secrets.token_urlsafe(32)
        now = utcnow()
        data = SessionData(
            user_id=user_id,
            email=email,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        await self.store.set(self._key(session_id), data.to_dict(), ttl_seconds)
        logger.info("session_created", user_id=user_id)
        return session_id

    async def get(self, session_id: str) -> SessionData:
        if not session_id:
            raise SessionNotFoundError()
        key = self._key(session_id)
        try:
            raw = await self.store.get(key)
        except KeyNotFound:
            raise SessionNotFoundError() from None
        data = SessionData.from_dict(raw)
        if data.is_expired():
            await self.store.delete(key)
            logger.info("session_expired", user_id=data.user_id)
            raise SessionNotFoundError()
        return data

    async def invalidate(self, session_id: str) -> None:
        await self.store.delete(self._key(session_id))
        logger.info("session_invalidated")


__all__ = ["SessionTracker", "SESSION_KEY_PREFIX"]
