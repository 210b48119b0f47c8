"""
Durable cursor (watermark) and seen-set storage.

The cursor says "every event with timestamp < last_ts has been durably
processed". Seen-sets record which event ids were delivered at one timestamp,
so events sharing the watermark timestamp can be told apart.

Two backends implement BaseCursorStore:
- FileCursorStore: always available, best-effort, NO dedup (is_seen is always False)
- RedisCursorStore: durable and deduplicating

Which one is active decides which delivery guarantees hold. The capability is
explicit (supports_dedup) and logged by the engine at startup.

No store method raises on storage errors: failures are logged, save() reports
them through its return value, and the engine retries on the next cycle.
"""

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Cursor:
    """
    Persisted watermark.

    last_ts: exclusive watermark — events strictly older are done.
    seen_through: highest timestamp ever marked seen; events at or below it
        (and at or above last_ts) must be checked against the seen-set.
    """

    last_ts: int = 0
    seen_through: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"lastTs": self.last_ts, "seenThrough": self.seen_through}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Cursor":
        return cls(
            last_ts=int(data.get("lastTs", 0)),
            seen_through=int(data.get("seenThrough", 0)),
        )


class BaseCursorStore(ABC):
    """Abstract async storage for the cursor and the seen-sets."""

    supports_dedup: bool = False

    @abstractmethod
    async def load(self) -> Cursor:
        """Return the persisted cursor, or Cursor() when none exists or it is unreadable."""

    @abstractmethod
    async def save(self, cursor: Cursor) -> bool:
        """
        Persist the cursor atomically.

        Returns:
            True once the value is durable, False on any storage error.
        """

    async def mark_seen(self, ts: int, event_id: str) -> None:
        """Record event_id as delivered at ts. No-op without a dedup backend."""

    async def is_seen(self, ts: int, event_id: str) -> bool:
        """Always False without a dedup backend (accept duplicates over blocking)."""
        return False

    async def rotate(self, old_ts: int, new_ts: int) -> None:
        """Drop seen buckets the watermark has moved past. No-op without a dedup backend."""

    async def close(self) -> None:
        """Release backend resources."""


class FileCursorStore(BaseCursorStore):
    """
    Best-effort cursor persisted as a small JSON file.

    Writes go to a temp file in the same directory followed by os.replace(), so a
    concurrent reader sees either the old or the new cursor, never a torn write.
    No seen-set: events at the watermark boundary may be delivered twice.
    """

    supports_dedup = False

    def __init__(self, path: str) -> None:
        self._path = path

    async def load(self) -> Cursor:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read)

    async def save(self, cursor: Cursor) -> bool:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._write, cursor)
        except OSError as exc:
            logger.error("Cursor save failed | path=%s | error=%s", self._path, exc)
            return False
        return True

    def _read(self) -> Cursor:
        try:
            with open(self._path) as f:
                data = json.load(f)
            return Cursor.from_dict(data)
        except FileNotFoundError:
            logger.info("No cursor file yet — starting from zero | path=%s", self._path)
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            logger.error("Unreadable cursor file — starting from zero | path=%s | error=%s", self._path, exc)
        return Cursor()

    def _write(self, cursor: Cursor) -> None:
        directory = os.path.dirname(os.path.abspath(self._path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".cursor-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(cursor.to_dict(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


class RedisCursorStore(BaseCursorStore):
    """
    Durable, deduplicating store backed by Redis.

    Keys (all single-key atomic operations, no MULTI needed):
        <prefix>:cursor          JSON cursor (SET)
        <prefix>:seen:<ts>       set of event ids delivered at ts (SADD/SISMEMBER)
        <prefix>:seen:index      sorted set of live bucket timestamps (ZADD)

    The index lets rotate() drop every bucket below the new watermark, not only
    the previous watermark's. Buckets also carry a TTL as a backstop.
    """

    supports_dedup = True

    def __init__(self, client: "redis.Redis", key_prefix: str, seen_ttl_seconds: int = 86_400) -> None:
        self._redis = client
        self._prefix = key_prefix
        self._seen_ttl = seen_ttl_seconds

    @classmethod
    def from_url(cls, url: str, key_prefix: str, seen_ttl_seconds: int = 86_400) -> "RedisCursorStore":
        client = redis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, key_prefix, seen_ttl_seconds)

    @property
    def _cursor_key(self) -> str:
        return f"{self._prefix}:cursor"

    @property
    def _index_key(self) -> str:
        return f"{self._prefix}:seen:index"

    def _seen_key(self, ts: int) -> str:
        return f"{self._prefix}:seen:{ts}"

    async def load(self) -> Cursor:
        try:
            raw = await self._redis.get(self._cursor_key)
        except (RedisError, OSError) as exc:
            logger.error("Cursor load failed — starting from zero | error=%s", exc)
            return Cursor()
        if raw is None:
            logger.info("No cursor in Redis yet — starting from zero | key=%s", self._cursor_key)
            return Cursor()
        try:
            return Cursor.from_dict(json.loads(raw))
        except (ValueError, TypeError, AttributeError) as exc:
            logger.error("Unparseable cursor in Redis — starting from zero | error=%s", exc)
            return Cursor()

    async def save(self, cursor: Cursor) -> bool:
        try:
            await self._redis.set(self._cursor_key, json.dumps(cursor.to_dict()))
        except (RedisError, OSError) as exc:
            logger.error("Cursor save failed | cursor=%s | error=%s", cursor, exc)
            return False
        return True

    async def mark_seen(self, ts: int, event_id: str) -> None:
        key = self._seen_key(ts)
        try:
            await self._redis.sadd(key, event_id)
            await self._redis.expire(key, self._seen_ttl)
            await self._redis.zadd(self._index_key, {str(ts): ts})
        except (RedisError, OSError) as exc:
            # Delivery already happened; the worst case is a duplicate later
            logger.error("mark_seen failed | ts=%d | id=%s | error=%s", ts, event_id, exc)

    async def is_seen(self, ts: int, event_id: str) -> bool:
        try:
            return bool(await self._redis.sismember(self._seen_key(ts), event_id))
        except (RedisError, OSError) as exc:
            logger.warning("is_seen failed — treating as unseen | ts=%d | error=%s", ts, exc)
            return False

    async def rotate(self, old_ts: int, new_ts: int) -> None:
        if new_ts <= old_ts:
            return
        try:
            stale = await self._redis.zrangebyscore(self._index_key, "-inf", f"({new_ts}")
            for member in stale:
                await self._redis.delete(self._seen_key(int(member)))
                await self._redis.zrem(self._index_key, member)
            if not stale:
                # Bucket may exist without an index entry if zadd failed earlier
                await self._redis.delete(self._seen_key(old_ts))
        except (RedisError, OSError, ValueError) as exc:
            logger.warning("Seen-set rotation failed (retried next advance) | error=%s", exc)

    async def close(self) -> None:
        await self._redis.aclose()


def build_cursor_store(path: str, redis_url: Optional[str], key_prefix: str, seen_ttl_seconds: int) -> BaseCursorStore:
    """Pick the durable dedup backend when Redis is configured, else the file backend."""
    if redis_url:
        return RedisCursorStore.from_url(redis_url, key_prefix, seen_ttl_seconds)
    return FileCursorStore(path)
