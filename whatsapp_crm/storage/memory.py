"""
In-memory key-value store.

A process-local test double for ``KVStore``. Nothing is persisted and no
state is shared between instances, so it must never back a deployment.
"""

from fnmatch import fnmatchcase
from typing import Dict, List, Optional, Sequence, Set

from ..errors import StorageUnavailableError
from .base import KVStore


def _redis_slice(items: list, start: int, stop: int) -> list:
    """Inclusive slice with Redis negative-index semantics."""
    size = len(items)
    if start < 0:
        start = max(size + start, 0)
    if stop < 0:
        stop = size + stop
    if start >= size or start > stop:
        return []
    return items[start:stop + 1]


class InMemoryKVStore(KVStore):
    """
    Dict-backed KVStore.

    Set ``unavailable`` to make every call fail, or add keys to
    ``failing_keys`` to make calls touching those keys fail.
    """

    def __init__(self):
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.lists: Dict[str, List[str]] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.sets: Dict[str, Set[str]] = {}
        self.unavailable = False
        self.failing_keys: Set[str] = set()

    def _check(self, *keys: str) -> None:
        if self.unavailable:
            raise StorageUnavailableError(message="in-memory store marked unavailable")
        for key in keys:
            if key in self.failing_keys:
                raise StorageUnavailableError(message=f"in-memory key {key} marked failing")

    def _all_keys(self) -> Set[str]:
        return set(self.hashes) | set(self.lists) | set(self.zsets) | set(self.sets)

    # Hashes

    async def hgetall(self, key: str) -> Dict[str, str]:
        self._check(key)
        return dict(self.hashes.get(key, {}))

    async def hset(self, key: str, mapping: Dict[str, str]) -> None:
        self._check(key)
        if mapping:
            self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    # Keys

    async def delete(self, *keys: str) -> int:
        self._check(*keys)
        removed = 0
        for key in set(keys):
            existed = False
            for space in (self.hashes, self.lists, self.zsets, self.sets):
                if space.pop(key, None) is not None:
                    existed = True
            removed += int(existed)
        return removed

    async def scan_keys(self, pattern: str) -> List[str]:
        self._check()
        return sorted(key for key in self._all_keys() if fnmatchcase(key, pattern))

    # Lists

    async def lpush(self, key: str, value: str) -> int:
        self._check(key)
        items = self.lists.setdefault(key, [])
        items.insert(0, value)
        return len(items)

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        self._check(key)
        return list(_redis_slice(self.lists.get(key, []), start, stop))

    async def llen(self, key: str) -> int:
        self._check(key)
        return len(self.lists.get(key, []))

    async def lset_if(self, key: str, index: int, expected: str, value: str) -> bool:
        self._check(key)
        items = self.lists.get(key)
        if items is None or not -len(items) <= index < len(items) or items[index] != expected:
            return False
        items[index] = value
        return True

    async def replace_list(self, key: str, values: Sequence[str]) -> None:
        self._check(key)
        if values:
            self.lists[key] = list(values)
        else:
            self.lists.pop(key, None)

    # Sorted sets

    async def zadd(self, key: str, member: str, score: float) -> None:
        self._check(key)
        self.zsets.setdefault(key, {})[member] = float(score)

    async def zrange(self, key: str, start: int, stop: int, rev: bool = False) -> List[str]:
        self._check(key)
        scores = self.zsets.get(key, {})
        ordered = sorted(scores, key=lambda m: (scores[m], m), reverse=rev)
        return list(_redis_slice(ordered, start, stop))

    async def zscore(self, key: str, member: str) -> Optional[float]:
        self._check(key)
        return self.zsets.get(key, {}).get(member)

    async def zrem(self, key: str, *members: str) -> int:
        self._check(key)
        scores = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if scores.pop(member, None) is not None:
                removed += 1
        if key in self.zsets and not scores:
            del self.zsets[key]
        return removed

    # Sets

    async def sadd(self, key: str, member: str) -> bool:
        self._check(key)
        members = self.sets.setdefault(key, set())
        if member in members:
            return False
        members.add(member)
        return True

    # Multi-key

    async def write_hash_with_index(
        self,
        hash_key: str,
        mapping: Dict[str, str],
        index_key: str,
        member: str,
        score: float,
    ) -> None:
        self._check(hash_key, index_key)
        if mapping:
            self.hashes.setdefault(hash_key, {}).update({k: str(v) for k, v in mapping.items()})
        self.zsets.setdefault(index_key, {})[member] = float(score)

    async def ping(self) -> bool:
        self._check()
        return True
