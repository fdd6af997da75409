"""
Key-value storage for the CRM.

- base: the async store contract
- redis_store: Redis implementation (production)
- memory: in-memory test double
- keys: key layout and id normalization
"""

from .base import KVStore
from .keys import KeySpace, normalize_id, CONTACT_INDEX, DEDUPE_SET
from .memory import InMemoryKVStore
from .redis_store import RedisKVStore

__all__ = [
    "KVStore",
    "KeySpace",
    "normalize_id",
    "CONTACT_INDEX",
    "DEDUPE_SET",
    "InMemoryKVStore",
    "RedisKVStore",
]
