from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from enum import StrEnum
from typing import Any, Protocol

import redis.asyncio as redis
from pydantic import BaseModel, ConfigDict, TypeAdapter, computed_field

from aggregator.schemas.listing import Listing, RateQuote
from aggregator.schemas.search import AggregatedResult

logger = logging.getLogger(__name__)


class CacheClass(StrEnum):
    search = "search"
    detail = "detail"
    availability = "availability"


DEFAULT_CODECS: dict[CacheClass, TypeAdapter] = {
    CacheClass.search: TypeAdapter(AggregatedResult),
    CacheClass.detail: TypeAdapter(Listing),
    CacheClass.availability: TypeAdapter(list[RateQuote]),
}


class CacheEntry(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    key: str
    cache_class: CacheClass
    value: Any
    cached_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class CacheBackend(Protocol):
    async def get(self, key: str) -> CacheEntry | None: ...

    async def set(self, entry: CacheEntry) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def delete_prefix(self, prefix: str) -> int: ...

    async def size(self) -> int: ...

    async def ping(self) -> bool: ...


class MemoryCacheBackend:
    """In-process LRU map. Expiry is left to the reader."""

    def __init__(self, max_entries: int = 1000) -> None:
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._max_entries = max_entries

    async def get(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is not None:
            self._entries.move_to_end(key)
        return entry

    async def set(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def delete_prefix(self, prefix: str) -> int:
        keys = [k for k in self._entries if k.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    async def size(self) -> int:
        return len(self._entries)

    async def ping(self) -> bool:
        return True


class RedisCacheBackend:
    """Redis-backed entries, JSON encoded, expiring natively via PX."""

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "hospedefacil:",
        codecs: dict[CacheClass, TypeAdapter] | None = None,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._codecs = codecs or DEFAULT_CODECS

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> CacheEntry | None:
        raw = await self._client.get(self._key(key))
        if raw is None:
            return None
        data = json.loads(raw)
        cache_class = CacheClass(data["cache_class"])
        return CacheEntry(
            key=key,
            cache_class=cache_class,
            value=self._codecs[cache_class].validate_python(data["value"]),
            cached_at=data["cached_at"],
            expires_at=data["expires_at"],
        )

    async def set(self, entry: CacheEntry) -> None:
        payload = json.dumps({
            "cache_class": entry.cache_class.value,
            "value": self._codecs[entry.cache_class].dump_python(entry.value, mode="json"),
            "cached_at": entry.cached_at,
            "expires_at": entry.expires_at,
        })
        ttl_ms = max(int((entry.expires_at - entry.cached_at) * 1000), 1)
        await self._client.set(self._key(entry.key), payload, px=ttl_ms)

    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(self._key(key)))

    async def delete_prefix(self, prefix: str) -> int:
        keys = [k async for k in self._client.scan_iter(match=f"{self._key(prefix)}*")]
        if not keys:
            return 0
        return int(await self._client.delete(*keys))

    async def size(self) -> int:
        count = 0
        async for _ in self._client.scan_iter(match=f"{self._prefix}*"):
            count += 1
        return count

    async def ping(self) -> bool:
        return bool(await self._client.ping())


class CacheStats(BaseModel):
    backend: str
    size: int | None = None
    hits: int = 0
    misses: int = 0
    errors: int = 0
    writes: int = 0

    @computed_field
    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class ResultCache:
    """TTL cache over a pluggable backend.

    Fail-open: any backend error or slow read counts as a miss. Writes run in
    the background so callers never wait on persistence.
    """

    def __init__(
        self,
        backend: CacheBackend,
        ttls: dict[CacheClass, float],
        op_timeout: float = 0.25,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._ttls = ttls
        self._op_timeout = op_timeout
        self._clock = clock
        self._pending: set[asyncio.Task] = set()
        self._hits = 0
        self._misses = 0
        self._errors = 0
        self._writes = 0

    @staticmethod
    def full_key(key: str, cache_class: CacheClass) -> str:
        return f"{cache_class.value}:{key}"

    async def get(self, key: str, cache_class: CacheClass) -> Any | None:
        full_key = self.full_key(key, cache_class)
        try:
            entry = await asyncio.wait_for(self._backend.get(full_key), self._op_timeout)
        except Exception as exc:
            self._errors += 1
            self._misses += 1
            logger.warning("Cache read failed for %s, treating as miss: %s", full_key, exc)
            return None

        if entry is None:
            self._misses += 1
            return None
        if entry.is_expired(self._clock()):
            self._misses += 1
            logger.debug("Cache entry expired: %s", full_key)
            self._spawn(self._delete(full_key))
            return None

        self._hits += 1
        return entry.value

    def put(self, key: str, cache_class: CacheClass, value: Any) -> None:
        now = self._clock()
        entry = CacheEntry(
            key=self.full_key(key, cache_class),
            cache_class=cache_class,
            value=value,
            cached_at=now,
            expires_at=now + self._ttls[cache_class],
        )
        self._spawn(self._write(entry))

    async def invalidate(self, key: str, cache_class: CacheClass | None = None) -> None:
        classes = [cache_class] if cache_class else list(CacheClass)
        for cls in classes:
            await self._delete(self.full_key(key, cls))

    async def invalidate_class(self, cache_class: CacheClass) -> int:
        try:
            return await self._backend.delete_prefix(f"{cache_class.value}:")
        except Exception:
            self._errors += 1
            logger.exception("Cache prefix invalidation failed for %s", cache_class)
            return 0

    async def drain(self) -> None:
        """Wait for background writes started so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def stats(self) -> CacheStats:
        size: int | None
        try:
            size = await asyncio.wait_for(self._backend.size(), self._op_timeout)
        except Exception:
            size = None
        return CacheStats(
            backend=type(self._backend).__name__,
            size=size,
            hits=self._hits,
            misses=self._misses,
            errors=self._errors,
            writes=self._writes,
        )

    async def ping(self) -> bool:
        try:
            return await asyncio.wait_for(self._backend.ping(), self._op_timeout)
        except Exception:
            return False

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, entry: CacheEntry) -> None:
        try:
            await self._backend.set(entry)
            self._writes += 1
        except Exception as exc:
            self._errors += 1
            logger.warning("Cache write failed for %s: %s", entry.key, exc)

    async def _delete(self, full_key: str) -> None:
        try:
            await self._backend.delete(full_key)
        except Exception as exc:
            self._errors += 1
            logger.warning("Cache delete failed for %s: %s", full_key, exc)
