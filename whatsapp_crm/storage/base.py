"""
Key-value store contract.

The CRM needs hashes, lists, a sorted set and a plain set. Implementations
raise ``StorageUnavailableError`` for any transient backend failure.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence


class KVStore(ABC):
    """Async hash/list/sorted-set/set store."""

    # Hashes
    @abstractmethod
    async def hgetall(self, key: str) -> Dict[str, str]:
        """All fields of a hash, empty dict when the key is absent."""

    @abstractmethod
    async def hset(self, key: str, mapping: Dict[str, str]) -> None:
        """Set some fields of a hash, leaving the others untouched."""

    # Keys
    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""

    @abstractmethod
    async def scan_keys(self, pattern: str) -> List[str]:
        """Every key matching a glob pattern."""

    # Lists
    @abstractmethod
    async def lpush(self, key: str, value: str) -> int:
        """Prepend a value, returning the new length."""

    @abstractmethod
    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        """Inclusive range, negative indexes count from the end."""

    @abstractmethod
    async def llen(self, key: str) -> int:
        """Length of a list, 0 when absent."""

    @abstractmethod
    async def lset_if(self, key: str, index: int, expected: str, value: str) -> bool:
        """Overwrite one list slot only if it still holds ``expected``."""

    @abstractmethod
    async def replace_list(self, key: str, values: Sequence[str]) -> None:
        """Atomically replace a list's content, keeping the given order."""

    # Sorted sets
    @abstractmethod
    async def zadd(self, key: str, member: str, score: float) -> None:
        """Add a member or update its score."""

    @abstractmethod
    async def zrange(self, key: str, start: int, stop: int, rev: bool = False) -> List[str]:
        """Members by rank, inclusive; ``rev`` orders by descending score."""

    @abstractmethod
    async def zscore(self, key: str, member: str) -> Optional[float]:
        """Score of a member, None when absent."""

    @abstractmethod
    async def zrem(self, key: str, *members: str) -> int:
        """Remove members, returning how many existed."""

    # Sets
    @abstractmethod
    async def sadd(self, key: str, member: str) -> bool:
        """Atomically add a member; True only if it was not already present."""

    # Multi-key
    @abstractmethod
    async def write_hash_with_index(
        self,
        hash_key: str,
        mapping: Dict[str, str],
        index_key: str,
        member: str,
        score: float,
    ) -> None:
        """Write hash fields and a sorted-set score as one unit."""

    # Lifecycle
    @abstractmethod
    async def ping(self) -> bool:
        """Round-trip to the backend."""

    async def close(self) -> None:
        """Release connections."""
