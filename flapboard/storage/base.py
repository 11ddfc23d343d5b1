"""Score store command contract.

A `StoreBackend` hands out one `ScoreStore` connection per request; the
connection must be closed on every exit path. Commands follow Redis
semantics (hashes, sorted sets, plain sets, cursor SCAN, MULTI batches
with optional WATCH), so the in-memory and sqlite backends behave like
the production Redis one.
"""

from __future__ import annotations

import fnmatch
import logging
from typing import Any, Awaitable, Callable

from flapboard.board.errors import StoreUnavailable

logger = logging.getLogger(__name__)


class WatchError(Exception):
    """A watched key changed between WATCH and EXEC."""


def slice_range(seq: list, start: int, end: int) -> list:
    # Inclusive bounds, negative offsets count from the end (ZRANGE rules).
    n = len(seq)
    if start < 0:
        start = max(0, n + start)
    if end < 0:
        end = n + end
    if start > end or start >= n:
        return []
    return seq[start : end + 1]


def key_matches(key: str, match: str | None) -> bool:
    return match is None or fnmatch.fnmatchcase(key, match)


class Batch:
    """Queued write commands applied all-or-nothing by `execute()`."""

    def __init__(self, store: "ScoreStore"):
        self._store = store
        self.ops: list[tuple[str, tuple]] = []
        self.watched: dict[str, Any] = {}
        # Backend transaction object (a redis pipeline), if any.
        self.handle: Any = None

    def set(self, key: str, value: str) -> "Batch":
        self.ops.append(("set", (key, value)))
        return self

    def delete(self, *keys: str) -> "Batch":
        if keys:
            self.ops.append(("delete", keys))
        return self

    def hset(self, key: str, mapping: dict[str, str]) -> "Batch":
        self.ops.append(("hset", (key, dict(mapping))))
        return self

    def zadd(self, key: str, member: str, score: int) -> "Batch":
        self.ops.append(("zadd", (key, member, score)))
        return self

    def zrem(self, key: str, member: str) -> "Batch":
        self.ops.append(("zrem", (key, member)))
        return self

    def sadd(self, key: str, *members: str) -> "Batch":
        if members:
            self.ops.append(("sadd", (key, *members)))
        return self

    def srem(self, key: str, *members: str) -> "Batch":
        if members:
            self.ops.append(("srem", (key, *members)))
        return self

    async def execute(self) -> None:
        await self._store.execute_batch(self)

    async def reset(self) -> None:
        await self._store.discard_batch(self)


class ScoreStore:
    """One connection to the score store."""

    name = "base"

    async def close(self) -> None:
        raise NotImplementedError

    # Strings
    async def get(self, key: str) -> str | None:
        raise NotImplementedError

    async def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    async def delete(self, *keys: str) -> int:
        raise NotImplementedError

    # Hashes
    async def hset(self, key: str, mapping: dict[str, str]) -> None:
        raise NotImplementedError

    async def hgetall(self, key: str) -> dict[str, str]:
        raise NotImplementedError

    # Sorted sets
    async def zadd(self, key: str, member: str, score: int) -> None:
        raise NotImplementedError

    async def zrem(self, key: str, member: str) -> int:
        raise NotImplementedError

    async def zrange(self, key: str, start: int, end: int, reverse: bool = False) -> list[str]:
        raise NotImplementedError

    async def zcard(self, key: str) -> int:
        raise NotImplementedError

    # Plain sets
    async def sadd(self, key: str, *members: str) -> int:
        raise NotImplementedError

    async def srem(self, key: str, *members: str) -> int:
        raise NotImplementedError

    async def sismember(self, key: str, member: str) -> bool:
        raise NotImplementedError

    async def smembers(self, key: str) -> set[str]:
        raise NotImplementedError

    # Keyspace
    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    async def type(self, key: str) -> str:
        raise NotImplementedError

    async def scan(self, cursor: int = 0, match: str | None = None, count: int = 100) -> tuple[int, list[str]]:
        raise NotImplementedError

    # Transactions
    def batch(self) -> Batch:
        return Batch(self)

    async def watch(self, *keys: str) -> Batch:
        raise NotImplementedError

    async def execute_batch(self, batch: Batch) -> None:
        raise NotImplementedError

    async def discard_batch(self, batch: Batch) -> None:
        batch.ops.clear()

    async def transaction(self, func: Callable[[Batch], Awaitable[Any]], *watches: str, retries: int = 5) -> Any:
        """Optimistic check-and-set.

        `func` reads through the store and queues writes on the batch it is
        given; the batch is committed only if none of `watches` changed in
        the meantime, otherwise `func` runs again. A func that queues nothing
        commits nothing.
        """
        for attempt in range(retries):
            batch = await self.watch(*watches)
            try:
                result = await func(batch)
                if batch.ops:
                    await batch.execute()
                return result
            except WatchError:
                logger.info("watched keys %s changed, retrying (attempt %d)", watches, attempt + 1)
            finally:
                await batch.reset()
        raise StoreUnavailable("store is busy, try again")


class StoreBackend:
    name = "base"

    def init(self) -> None:
        pass

    async def connect(self) -> ScoreStore:
        raise NotImplementedError

    def close(self) -> None:
        pass


async def scan_keys(store: ScoreStore, match: str, *, count: int = 200, max_iterations: int = 10) -> tuple[list[str], bool]:
    """Cursor-scan the keyspace; returns (keys, complete)."""
    keys: list[str] = []
    seen: set[str] = set()
    cursor = 0
    for _ in range(max_iterations):
        cursor, batch = await store.scan(cursor, match=match, count=count)
        for k in batch:
            # SCAN may return a key more than once.
            if k not in seen:
                seen.add(k)
                keys.append(k)
        if cursor == 0:
            return keys, True
    logger.warning("scan for %s stopped after %d iterations (%d keys)", match, max_iterations, len(keys))
    return keys, False
