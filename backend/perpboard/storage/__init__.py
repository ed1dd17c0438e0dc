"""Storage layer: key/value stores and the indicator cache."""

from perpboard.storage.indicator_cache import KEY_PREFIX, PersistentIndicatorCache
from perpboard.storage.kv import KeyValueStore, MemoryStore, RedisStore, open_store

__all__ = [
    "KEY_PREFIX",
    "PersistentIndicatorCache",
    "KeyValueStore",
    "MemoryStore",
    "RedisStore",
    "open_store",
]
