"""Window counter stores for the rate limiter.

Provides the store contract consumed by the rate limiter, a Redis
implementation for multi-instance deployments and an in-memory
implementation for single-instance deployments and tests.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Callable, Dict, Iterator, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union

import redis
import redis.asyncio as aioredis

from chatquota.app.core.config import Settings
from chatquota.app.core.logging import get_logger
from chatquota.app.core.redis_client import create_redis_client
from chatquota.app.exceptions import StoreError

logger = get_logger(__name__)

Score = Union[int, float, str]


class StoreOp(NamedTuple):
    """A single command queued in a store pipeline."""
    command: str
    args: Tuple[Any, ...]

    @classmethod
    def get(cls, key: str) -> "StoreOp":
        return cls("get", (key,))

    @classmethod
    def set_with_ttl(cls, key: str, value: Any, ttl_seconds: int) -> "StoreOp":
        return cls("set_with_ttl", (key, value, ttl_seconds))

    @classmethod
    def set_keepttl(cls, key: str, value: Any) -> "StoreOp":
        return cls("set_keepttl", (key, value))

    @classmethod
    def expire(cls, key: str, ttl_seconds: int) -> "StoreOp":
        return cls("expire", (key, ttl_seconds))

    @classmethod
    def zadd(cls, key: str, members: Mapping[str, float]) -> "StoreOp":
        """Add several members in one command, ``{member: score}``."""
        return cls("zadd", (key, dict(members)))

    @classmethod
    def zremrangebyscore(cls, key: str, min_score: Score, max_score: Score) -> "StoreOp":
        return cls("zremrangebyscore", (key, min_score, max_score))

    @classmethod
    def zcard(cls, key: str) -> "StoreOp":
        return cls("zcard", (key,))

    @classmethod
    def zrange(cls, key: str, start: int, stop: int, with_scores: bool = False) -> "StoreOp":
        return cls("zrange", (key, start, stop, with_scores))


class WindowCounterStore(ABC):
    """Abstract base class for window counter stores.

    Every operation may raise StoreError when the backing store cannot be
    reached. Pipelines run as a single round trip but are not transactions.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the string value at key, or None when absent."""

    @abstractmethod
    async def set_with_ttl(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Store value at key expiring after ttl_seconds."""

    @abstractmethod
    async def set_keepttl(self, key: str, value: Any) -> None:
        """Replace the value at key without touching its remaining TTL."""

    @abstractmethod
    async def pipeline(self, ops: Sequence[StoreOp]) -> List[Any]:
        """Execute ops in one round trip and return their results in order."""

    @abstractmethod
    async def sorted_set_add(self, key: str, score: float, member: str) -> int:
        """Add member with score, returning the number of new members."""

    @abstractmethod
    async def sorted_set_remove_range_by_score(
        self, key: str, min_score: Score, max_score: Score
    ) -> int:
        """Remove members whose score lies within [min_score, max_score]."""

    @abstractmethod
    async def sorted_set_cardinality(self, key: str) -> int:
        """Number of members in the sorted set at key."""

    @abstractmethod
    async def sorted_set_range(
        self, key: str, start: int, stop: int, with_scores: bool = False
    ) -> List[Any]:
        """Members ordered by score between rank start and stop (inclusive)."""

    async def ping(self) -> bool:
        """Check connectivity."""
        return True

    async def close(self) -> None:
        """Release connections held by the store."""


@contextmanager
def _translate_redis_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (redis.RedisError, OSError) as e:
        raise StoreError(f"Redis {operation} failed: {e}") from e


class RedisWindowStore(WindowCounterStore):
    """Redis backed window counter store.

    Uses plain keys for fixed windows and sorted sets for sliding windows.
    The client must be created with ``decode_responses=True``.

    Example:
        >>> store = RedisWindowStore(create_redis_client(settings))
        >>> await store.set_with_ttl("token_limit:user:abc", 10, ttl_seconds=60)
    """

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @property
    def client(self) -> aioredis.Redis:
        return self._client

    async def get(self, key: str) -> Optional[str]:
        with _translate_redis_errors("get"):
            return await self._client.get(key)

    async def set_with_ttl(self, key: str, value: Any, ttl_seconds: int) -> None:
        with _translate_redis_errors("set"):
            await self._client.set(key, value, ex=ttl_seconds)

    async def set_keepttl(self, key: str, value: Any) -> None:
        with _translate_redis_errors("set"):
            await self._client.set(key, value, keepttl=True)

    @staticmethod
    def _queue(pipe: Any, op: StoreOp) -> None:
        command, args = op
        if command == "get":
            pipe.get(*args)
        elif command == "set_with_ttl":
            key, value, ttl = args
            pipe.set(key, value, ex=ttl)
        elif command == "set_keepttl":
            key, value = args
            pipe.set(key, value, keepttl=True)
        elif command == "expire":
            pipe.expire(*args)
        elif command == "zadd":
            key, members = args
            pipe.zadd(key, members)
        elif command == "zremrangebyscore":
            pipe.zremrangebyscore(*args)
        elif command == "zcard":
            pipe.zcard(*args)
        elif command == "zrange":
            key, start, stop, with_scores = args
            pipe.zrange(key, start, stop, withscores=with_scores)
        else:
            raise ValueError(f"Unsupported store command: {command}")

    async def pipeline(self, ops: Sequence[StoreOp]) -> List[Any]:
        with _translate_redis_errors("pipeline"):
            pipe = self._client.pipeline(transaction=False)
            for op in ops:
                self._queue(pipe, op)
            return await pipe.execute()

    async def sorted_set_add(self, key: str, score: float, member: str) -> int:
        with _translate_redis_errors("zadd"):
            return await self._client.zadd(key, {member: score})

    async def sorted_set_remove_range_by_score(
        self, key: str, min_score: Score, max_score: Score
    ) -> int:
        with _translate_redis_errors("zremrangebyscore"):
            return await self._client.zremrangebyscore(key, min_score, max_score)

    async def sorted_set_cardinality(self, key: str) -> int:
        with _translate_redis_errors("zcard"):
            return await self._client.zcard(key)

    async def sorted_set_range(
        self, key: str, start: int, stop: int, with_scores: bool = False
    ) -> List[Any]:
        with _translate_redis_errors("zrange"):
            return await self._client.zrange(key, start, stop, withscores=with_scores)

    async def ping(self) -> bool:
        with _translate_redis_errors("ping"):
            return bool(await self._client.ping())

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Error closing Redis connection: {e}")


@dataclass
class _Entry:
    """Internal store entry with TTL tracking."""

    value: Union[str, Dict[str, float]]
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        if self.expires_at is None:
            return False
        return now >= self.expires_at


def _score_bound(bound: Score) -> Tuple[float, bool]:
    """Parse a Redis style score bound into (value, exclusive)."""
    if isinstance(bound, str):
        exclusive = bound.startswith("(")
        text = bound[1:] if exclusive else bound
        # float() understands "-inf" and "+inf" as well
        return float(text), exclusive
    return float(bound), False


class InMemoryWindowStore(WindowCounterStore):
    """In-memory window counter store with Redis-like semantics.

    Suitable for single-instance deployments and tests. Expiry is driven
    by the injected clock so tests can move time forward.

    Note: state is not shared between processes and is lost on restart.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._data[key]
            return None
        return entry

    def _zset(self, key: str, create: bool = False) -> Optional[Dict[str, float]]:
        entry = self._live(key)
        if entry is None:
            if not create:
                return None
            entry = _Entry(value={})
            self._data[key] = entry
        if not isinstance(entry.value, dict):
            raise StoreError(f"WRONGTYPE key {key} does not hold a sorted set")
        return entry.value

    def _get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        if entry is None:
            return None
        if isinstance(entry.value, dict):
            raise StoreError(f"WRONGTYPE key {key} holds a sorted set")
        return entry.value

    def _set_with_ttl(self, key: str, value: Any, ttl_seconds: int) -> bool:
        if ttl_seconds <= 0:
            raise StoreError(f"invalid expire time {ttl_seconds} for key {key}")
        self._data[key] = _Entry(value=str(value), expires_at=self._clock() + ttl_seconds)
        return True

    def _set_keepttl(self, key: str, value: Any) -> bool:
        entry = self._live(key)
        expires_at = entry.expires_at if entry is not None else None
        self._data[key] = _Entry(value=str(value), expires_at=expires_at)
        return True

    def _expire(self, key: str, ttl_seconds: int) -> int:
        entry = self._live(key)
        if entry is None:
            return 0
        entry.expires_at = self._clock() + ttl_seconds
        return 1

    def _zadd(self, key: str, mapping: Mapping[str, float]) -> int:
        members = self._zset(key, create=True)
        added = sum(1 for member in mapping if member not in members)
        for member, score in mapping.items():
            members[member] = float(score)
        return added

    def _zremrangebyscore(self, key: str, min_score: Score, max_score: Score) -> int:
        members = self._zset(key)
        if not members:
            return 0
        low, low_exclusive = _score_bound(min_score)
        high, high_exclusive = _score_bound(max_score)

        def in_range(score: float) -> bool:
            above = score > low if low_exclusive else score >= low
            below = score < high if high_exclusive else score <= high
            return above and below

        doomed = [m for m, s in members.items() if in_range(s)]
        for member in doomed:
            del members[member]
        if not members:
            del self._data[key]
        return len(doomed)

    def _zcard(self, key: str) -> int:
        members = self._zset(key)
        return len(members) if members else 0

    def _zrange(self, key: str, start: int, stop: int, with_scores: bool = False) -> List[Any]:
        members = self._zset(key)
        if not members:
            return []
        ordered = sorted(members.items(), key=lambda item: (item[1], item[0]))
        size = len(ordered)
        if start < 0:
            start = max(0, size + start)
        if stop < 0:
            stop = size + stop
        selected = ordered[start:stop + 1]
        if with_scores:
            return [(member, score) for member, score in selected]
        return [member for member, _ in selected]

    def _apply(self, op: StoreOp) -> Any:
        handler = getattr(self, f"_{op.command}", None)
        if handler is None:
            raise ValueError(f"Unsupported store command: {op.command}")
        return handler(*op.args)

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._get(key)

    async def set_with_ttl(self, key: str, value: Any, ttl_seconds: int) -> None:
        async with self._lock:
            self._set_with_ttl(key, value, ttl_seconds)

    async def set_keepttl(self, key: str, value: Any) -> None:
        async with self._lock:
            self._set_keepttl(key, value)

    async def pipeline(self, ops: Sequence[StoreOp]) -> List[Any]:
        async with self._lock:
            return [self._apply(op) for op in ops]

    async def sorted_set_add(self, key: str, score: float, member: str) -> int:
        async with self._lock:
            return self._zadd(key, {member: score})

    async def sorted_set_remove_range_by_score(
        self, key: str, min_score: Score, max_score: Score
    ) -> int:
        async with self._lock:
            return self._zremrangebyscore(key, min_score, max_score)

    async def sorted_set_cardinality(self, key: str) -> int:
        async with self._lock:
            return self._zcard(key)

    async def sorted_set_range(
        self, key: str, start: int, stop: int, with_scores: bool = False
    ) -> List[Any]:
        async with self._lock:
            return self._zrange(key, start, stop, with_scores)

    async def ttl(self, key: str) -> int:
        """Remaining TTL in whole seconds, -1 without expiry, -2 when absent."""
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            if entry.expires_at is None:
                return -1
            return max(0, round(entry.expires_at - self._clock()))

    async def clear(self) -> None:
        async with self._lock:
            self._data.clear()


def build_window_store(
    settings: Settings,
    clock: Callable[[], float] = time.time,
) -> WindowCounterStore:
    """Create the window store selected by configuration."""
    if settings.redis_enabled:
        logger.info("Using Redis window store backend")
        return RedisWindowStore(create_redis_client(settings))
    logger.info("Using in-memory window store backend")
    return InMemoryWindowStore(clock=clock)


@asynccontextmanager
async def init_window_store(
    settings: Settings,
    clock: Callable[[], float] = time.time,
) -> AsyncGenerator[WindowCounterStore, None]:
    """Create the window store for the application lifespan and close it on exit."""
    store = build_window_store(settings, clock)
    try:
        yield store
    finally:
        await store.close()
