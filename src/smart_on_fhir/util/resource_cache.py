from __future__ import annotations

import copy
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal, Protocol, Union, runtime_checkable

from cachetools import TLRUCache

from ..errors import InvariantViolation

LOGGER = logging.getLogger("smart.cache")

DEFAULT_IN_MEMORY_SIZE = 1000


@runtime_checkable
class ResourceCache(Protocol):
    """Caller-supplied backing cache (Valkey, memcached, ...).

    `set` receives the TTL in milliseconds and MUST honor it.
    """

    async def set(self, key: str, value: Any, ttl_ms: int) -> None: ...

    async def get(self, key: str) -> Any | None: ...


@dataclass(frozen=True, slots=True)
class CacheItem:
    server: str
    resource: str

    @property
    def key(self) -> str:
        return f"{self.server}|{self.resource}"


@dataclass(frozen=True, slots=True)
class CacheConfig:
    """Per-request opt-in to caching."""

    ttl_ms: int


@dataclass(frozen=True, slots=True)
class _Entry:
    value: Any
    ttl_s: float


class InMemoryResourceCache:
    """Process-local LRU cache; expiry is checked against the timer on read.

    Values are copied on the way in and out, so callers may mutate what they get.
    """

    def __init__(
        self,
        *,
        maxsize: int = DEFAULT_IN_MEMORY_SIZE,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache: TLRUCache[str, _Entry] = TLRUCache(
            maxsize=maxsize,
            ttu=lambda _key, entry, now: now + entry.ttl_s,
            timer=timer,
        )

    def get(self, key: str) -> Any | None:
        entry = self._cache.get(key)
        return None if entry is None else copy.deepcopy(entry.value)

    def set(self, key: str, value: Any, ttl_ms: int) -> None:
        self._cache[key] = _Entry(value=copy.deepcopy(value), ttl_s=ttl_ms / 1000)

    def __len__(self) -> int:
        return len(self._cache)


CacheOptions = Union[Literal["disabled"], InMemoryResourceCache, ResourceCache]


async def get_cached_resource(options: CacheOptions, item: CacheItem) -> Any | None:
    if options == "disabled":
        raise InvariantViolation("attempted to get cache, but cache is disabled")

    if isinstance(options, InMemoryResourceCache):
        value = options.get(item.key)
    else:
        value = await options.get(item.key)

    LOGGER.debug("cache.get key=%s hit=%s", item.key, value is not None)
    return value


async def set_cached_resource(
    options: CacheOptions, item: CacheItem, values: Any, *, ttl_ms: int
) -> None:
    if options == "disabled":
        raise InvariantViolation("attempted to set cache, but cache is disabled")

    LOGGER.debug("cache.set key=%s ttl_ms=%s", item.key, ttl_ms)
    if isinstance(options, InMemoryResourceCache):
        options.set(item.key, values, ttl_ms)
        return

    await options.set(item.key, values, ttl_ms)
