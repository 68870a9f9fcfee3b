from datetime import datetime
from typing import Dict, Protocol

from redis.asyncio import Redis

from app.utils.datetime_utils import epoch_ms


class DedupCache(Protocol):
    """Time-bounded record of which ritual ids were recently notified."""

    async def contains(self, key: str, now: datetime) -> bool: ...

    async def mark(self, key: str, now: datetime) -> None: ...

    async def prune(self, now: datetime) -> int: ...

    async def clear(self) -> None: ...


class InMemoryDedupCache:
    """
    Process-local dedup window: key -> last sent epoch ms.

    Lost on restart; a restart inside the window can therefore produce one
    duplicate notification. Owned by the reminder job that constructs it.
    """

    def __init__(self, ttl_seconds: int):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_ms = ttl_seconds * 1000
        self._sent: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._sent)

    def _expired(self, sent_at_ms: int, now_ms: int) -> bool:
        return now_ms - sent_at_ms > self.ttl_ms

    async def contains(self, key: str, now: datetime) -> bool:
        sent_at_ms = self._sent.get(key)
        if sent_at_ms is None:
            return False
        if self._expired(sent_at_ms, epoch_ms(now)):
            del self._sent[key]
            return False
        return True

    async def mark(self, key: str, now: datetime) -> None:
        self._sent[key] = epoch_ms(now)

    async def prune(self, now: datetime) -> int:
        now_ms = epoch_ms(now)
        expired = [k for k, ts in self._sent.items() if self._expired(ts, now_ms)]
        for key in expired:
            del self._sent[key]
        return len(expired)

    async def clear(self) -> None:
        self._sent.clear()


class RedisDedupCache:
    """
    Dedup window shared by every process using the same Redis database.

    Used when ticks run in Celery worker processes, where a process-local
    map would not survive from one tick to the next. Expiry is delegated to
    Redis key TTLs, so ``prune`` has nothing to do.
    """

    def __init__(self, redis: Redis, ttl_seconds: int, prefix: str = "ritual-reminder"):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.redis = redis
        self.ttl_ms = ttl_seconds * 1000
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:sent:{key}"

    async def contains(self, key: str, now: datetime) -> bool:
        return bool(await self.redis.exists(self._key(key)))

    async def mark(self, key: str, now: datetime) -> None:
        await self.redis.set(self._key(key), epoch_ms(now), px=self.ttl_ms)

    async def prune(self, now: datetime) -> int:
        return 0

    async def clear(self) -> None:
        keys = [k async for k in self.redis.scan_iter(match=f"{self.prefix}:sent:*")]
        if keys:
            await self.redis.delete(*keys)
