from __future__ import annotations

import threading
from dataclasses import replace
from typing import Dict, Protocol, Tuple

from trustcore.logging import get_logger
from trustcore.storage.errors import ConstraintViolation, UserNotFound
from trustcore.storage.models import User

logger = get_logger(__name__)


class UserStore(Protocol):
    """Persistence for users and their password hashes, owned by the caller.

    Lookups raise :class:`UserNotFound` when nothing matches; ``create_user``
    raises :class:`ConstraintViolation` for a duplicate email.
    """

    async def create_user(self, user: User, password_hash: str) -> None: ...

    async def get_user_by_email(self, email: str) -> Tuple[User, str]: ...

    async def get_user_by_id(self, user_id: str) -> User: ...

    async def update_user(self, user: User) -> None: ...

    async def user_exists(self, email: str) -> bool: ...


class MemoryUserStore:
    """Lock-guarded in-memory user store for development and tests."""

    def __init__(self) -> None:
        self._data_lock = threading.RLock()
        self.users: Dict[str, User] = {}
        self.emails: Dict[str, str] = {}
        self.credentials: Dict[str, str] = {}

    async def create_user(self, user: User, password_hash: str) -> None:
        with self._data_lock:
            if user.email in self.emails:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            self.users[user.id] = replace(user)
            self.emails[user.email] = user.id
            self.credentials[user.id] = password_hash
        logger.info("user_created", user_id=user.id, provider=user.provider)

    async def get_user_by_email(self, email: str) -> Tuple[User, str]:
        with self._data_lock:
            user_id = self.emails.get(email)
            if user_id is None:
                raise UserNotFound(detail={"field": "email"})
            return replace(self.users[user_id]), self.credentials.get(user_id, "")

    async def get_user_by_id(self, user_id: str) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                raise UserNotFound(detail={"field": "id"})
            return replace(user)

    async def update_user(self, user: User) -> None:
        with self._data_lock:
            existing = self.users.get(user.id)
            if existing is None:
                raise UserNotFound(detail={"field": "id"})
            if existing.email != user.email:
                owner = self.emails.get(user.email)
                if owner is not None and owner != user.id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                self.emails.pop(existing.email, None)
                self.emails[user.email] = user.id
            self.users[user.id] = replace(user)

    async def user_exists(self, email: str) -> bool:
        with self._data_lock:
            return email in self.emails


__all__ = ["UserStore", "MemoryUserStore"]
