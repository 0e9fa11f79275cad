"""TTL key-value stores for OAuth state and sessions.

An entry older than the store's TTL is treated as absent even while it is still held. Reads
evict expired entries lazily, and a background sweep removes the rest once per TTL period so
that abandoned logins cannot grow memory without bound.
"""

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, NoReturn, Optional

import redis.asyncio as redis
import sentry_sdk

from social.graze.handles.app.metrics import MetricsClient

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def normalize_redis_string(value: Any) -> str:
    """
    Normalize Redis value to string, handling bytes conversion.
    """
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


class TTLStore(ABC):
    """
    Expiring key-value store.

    None of the operations fail. `get` never returns an entry older than `ttl` seconds.
    """

    def __init__(self, name: str, ttl: float) -> None:
        self.name = name
        self.ttl = ttl

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Insert or overwrite the entry for key, stamping the current time."""
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the value for key, or None when absent or expired."""
        pass

    @abstractmethod
    async def pop(self, key: str) -> Optional[Any]:
        """Remove the entry for key and return its value, or None when absent or expired."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove the entry for key. Removing an absent key is not an error."""
        pass

    @abstractmethod
    async def sweep(self) -> int:
        """Remove every expired entry and return how many were removed."""
        pass


@dataclass
class TTLEntry:
    key: str
    value: Any
    created_at: float


class MemoryTTLStore(TTLStore):
    """
    In-process TTL store guarded by an asyncio lock.

    Every read and write of the entry map happens under the lock, so a reader never sees a
    half-written entry and a `set` is visible to the next `get` on the same key.
    """

    def __init__(self, name: str, ttl: float, clock: Clock = time.monotonic) -> None:
        super().__init__(name, ttl)
        self._clock = clock
        self._entries: Dict[str, TTLEntry] = {}
        self._lock = asyncio.Lock()

    def _expired(self, entry: TTLEntry, now: float) -> bool:
        return now - entry.created_at > self.ttl

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            self._entries[key] = TTLEntry(key=key, value=value, created_at=self._clock())

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key, None)
            if entry is None:
                return None
            if self._expired(entry, self._clock()):
                del self._entries[key]
                return None
            return entry.value

    async def pop(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None or self._expired(entry, self._clock()):
                return None
            return entry.value

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def sweep(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [
                key for key, entry in self._entries.items() if self._expired(entry, now)
            ]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __len__(self) -> int:
        # Physically held entries, including expired ones the sweep has not reached yet.
        return len(self._entries)


class RedisTTLStore(TTLStore):
    """
    TTL store backed by Redis key expiry.

    Lets several service instances share OAuth state. Values must be strings or bytes; they are
    returned as strings. Redis evicts expired keys itself, so `sweep` has nothing to do.
    """

    def __init__(self, name: str, ttl: float, redis_client: redis.Redis) -> None:
        super().__init__(name, ttl)
        self._redis = redis_client
        self._prefix = f"ttl_store:{name}:"

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def set(self, key: str, value: Any) -> None:
        await self._redis.set(self._key(key), value, ex=max(1, math.ceil(self.ttl)))

    async def get(self, key: str) -> Optional[Any]:
        value = await self._redis.get(self._key(key))
        if value is None:
            return None
        return normalize_redis_string(value)

    async def pop(self, key: str) -> Optional[Any]:
        value = await self._redis.getdel(self._key(key))
        if value is None:
            return None
        return normalize_redis_string(value)

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def sweep(self) -> int:
        return 0


async def ttl_sweep_task(store: TTLStore, metrics_client: MetricsClient) -> NoReturn:
    """
    Background process that sweeps expired entries out of a TTL store.

    Runs once per TTL period, which caps how long an abandoned entry stays in memory to about
    two periods.
    """
    logger.info("Starting %s sweep task (every %s seconds)", store.name, store.ttl)

    while True:
        await asyncio.sleep(store.ttl)

        try:
            removed = await store.sweep()
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("%s sweep failed", store.name)
            continue

        if removed > 0:
            logger.info("Swept %d expired entries from %s", removed, store.name)

        metrics_client.increment(
            "handles.task.ttl_sweep.removed",
            removed,
            tag_dict={"store": store.name},
        )
