from __future__ import annotations

from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

import httpx

from trustcore.config import Settings, get_settings
from trustcore.logging import get_logger
from trustcore.service.auth import AuthService
from trustcore.service.oauth import OAuthEngine
from trustcore.service.passwords import Argon2PasswordHasher, PasswordHasher
from trustcore.service.sessions import SessionTracker
from trustcore.service.tokens import TokenEngine
from trustcore.service.users import MemoryUserStore, UserStore
from trustcore.storage.memory import MemoryStore
from trustcore.storage.redis_cache import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class AuthRuntime:
    """Wires the store backend, hasher and services for one process.

    Build it once at startup with :meth:`create` and call :meth:`close` at
    shutdown. The expiring store is chosen by ``REDIS_URL``: Redis when set,
    the in-process store otherwise.
    """

    def __init__(
        self,
        settings: Settings,
        store: Union[RedisStore, MemoryStore],
        auth: AuthService,
    ) -> None:
        self.settings = settings
        self.store = store
        self.auth = auth

    @classmethod
    async def create(
        cls,
        settings: Optional[Settings] = None,
        *,
        users: Optional[UserStore] = None,
        hasher: Optional[PasswordHasher] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "AuthRuntime":
        settings = settings or get_settings()
        store = await _build_store(settings)
        try:
            tokens = TokenEngine(
                settings.jwt_secret or "",
                settings.jwt_issuer,
                settings.access_token_ttl_seconds,
            )
            auth = AuthService(
                users if users is not None else MemoryUserStore(),
                hasher if hasher is not None else Argon2PasswordHasher(settings.password_hash_cost),
                tokens,
                SessionTracker(store),
                OAuthEngine.from_settings(store, settings, transport=transport),
                allow_signup=settings.allow_signup,
                frontend_success_url=settings.frontend_success_url,
            )
        except Exception:
            await store.close()
            raise
        if users is None:
            logger.warning("runtime_memory_user_store", message="users are not persisted")
        logger.info(
            "runtime_initialized",
            store_type="redis" if isinstance(store, RedisStore) else "memory",
            allow_signup=settings.allow_signup,
        )
        return cls(settings, store, auth)

    async def close(self) -> None:
        await self.store.close()
        logger.info("runtime_closed")

    async def __aenter__(self) -> "AuthRuntime":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


async def _build_store(settings: Settings) -> Union[RedisStore, MemoryStore]:
    if settings.redis_url:
        store = RedisStore(
            settings.redis_url, socket_timeout=settings.redis_socket_timeout_seconds
        )
        try:
            await store.verify_connection()
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="redis",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(exc),
            )
            await store.close()
            raise
        logger.info("runtime_store_initialized", store_type="redis")
        return store

    memory = MemoryStore(sweep_interval=settings.store_sweep_interval_seconds)
    await memory.start()
    logger.info("runtime_store_initialized", store_type="memory")
    return memory


__all__ = ["AuthRuntime"]
