from trustcore.storage.common import ExpiringStore
from trustcore.storage.errors import (
    ConstraintViolation,
    KeyNotFound,
    SerializationError,
    StoreConnectionError,
    StoreError,
    UserNotFound,
)
from trustcore.storage.memory import MemoryStore
from trustcore.storage.redis_cache import RedisStore

__all__ = [
    "ExpiringStore",
    "MemoryStore",
    "RedisStore",
    "StoreError",
    "KeyNotFound",
    "SerializationError",
    "StoreConnectionError",
    "ConstraintViolation",
    "UserNotFound",
]
