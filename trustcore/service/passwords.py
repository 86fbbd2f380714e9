from __future__ import annotations

from typing import Protocol

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from trustcore.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher(Protocol):
    """Slow, salted one-way hash used for local credentials."""

    def hash(self, plaintext: str) -> str: ...

    def verify(self, hashed: str, plaintext: str) -> bool: ...


class Argon2PasswordHasher:
    """argon2id hasher; ``cost`` is the argon2 time cost (iterations)."""

    def __init__(self, cost: int = 3) -> None:
        if cost < 1:
            raise ValueError("hash cost must be at least 1")
        self.cost = cost
        self._hasher = _Argon2Hasher(time_cost=cost, type=Type.ID)

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, hashed: str, plaintext: str) -> bool:
        if not hashed:
            # OAuth-only accounts carry no usable hash
            return False
        try:
            return self._hasher.verify(hashed, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error=str(exc))
            return False


__all__ = ["PasswordHasher", "Argon2PasswordHasher"]
