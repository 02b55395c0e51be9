"""
skillport.cache

TTL cache fronting the remote content client. Values are JSON-serialised into
a key/value store with per-key expiry (the shape of an external KV service);
``MemoryKVStore`` is the in-process implementation.

Keys are namespaced by resource kind and repository. Version-keyed entries
(the skill file tree) embed the version, so a version bump misses naturally;
when the new version is unknown the whole family is dropped by prefix.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KVStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str, ttl: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list_keys(self, prefix: str) -> list[str]: ...


class MemoryKVStore:
    """In-process KV store with lazy expiry. ``clock`` returns seconds."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}

    def _live(self, key: str) -> str | None:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def put(self, key: str, value: str, ttl: int) -> None:
        self._data[key] = (value, self._clock() + ttl)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(self, prefix: str) -> list[str]:
        return [k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None]


class TTLCache:
    def __init__(self, store: KVStore) -> None:
        self.store = store

    async def get(self, key: str) -> Any | None:
        raw = await self.store.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def put(self, key: str, value: Any, ttl: int) -> None:
        await self.store.put(key, json.dumps(value, ensure_ascii=False), ttl)

    async def delete(self, key: str) -> None:
        await self.store.delete(key)

    async def delete_by_prefix(self, prefix: str) -> int:
        keys = await self.store.list_keys(prefix)
        for key in keys:
            await self.store.delete(key)
        return len(keys)

    async def get_or_fetch(
        self, key: str, ttl: int, fetcher: Callable[[], Awaitable[T]]
    ) -> T:
        """
        Read-through lookup. On a miss the fetcher runs and its result is
        stored; exceptions propagate and nothing is cached for them.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached
        logger.debug("cache miss: %s", key)
        value = await fetcher()
        await self.put(key, value, ttl)
        return value


class CacheKeys:
    """Key builder; every key carries the repository so one store can serve several."""

    def __init__(self, repo: str) -> None:
        self.repo = repo

    def registry(self) -> str:
        return f"registry:{self.repo}"

    def access_policy(self) -> str:
        return f"access:{self.repo}"

    def skill_catalog(self) -> str:
        return f"catalog:{self.repo}"

    def manifest(self, package: str) -> str:
        return f"manifest:{self.repo}:{package}"

    def skill_md(self, package: str, dir_name: str) -> str:
        return f"skillmd:{self.repo}:{package}:{dir_name}"

    def skill_files_prefix(self, package: str, dir_name: str) -> str:
        return f"skillfiles:{self.repo}:{package}:{dir_name}:"

    def skill_files(self, package: str, dir_name: str, version: str) -> str:
        return f"{self.skill_files_prefix(package, dir_name)}{version}"
