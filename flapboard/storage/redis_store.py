"""Redis score store (production backend)."""

from __future__ import annotations

import logging
from typing import Any, Awaitable

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError as RedisWatchError

from flapboard.board.errors import StoreUnavailable
from flapboard.storage.base import Batch, ScoreStore, StoreBackend, WatchError

logger = logging.getLogger(__name__)


class RedisBackend(StoreBackend):
    name = "redis"

    def __init__(self, url: str, timeout: float = 3.0):
        self.url = url
        self.timeout = timeout

    async def connect(self) -> "RedisStore":
        # A fresh client per request; no pooling across requests.
        client = redis.from_url(
            self.url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=self.timeout,
            socket_timeout=self.timeout,
            retry_on_timeout=False,
        )
        return RedisStore(client)


class RedisStore(ScoreStore):
    name = "redis"

    def __init__(self, client: redis.Redis):
        self._redis = client

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def _call(self, aw: Awaitable) -> Any:
        try:
            return await aw
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error("redis unavailable: %s", e)
            raise StoreUnavailable("score store unavailable, try again") from e

    async def get(self, key: str) -> str | None:
        return await self._call(self._redis.get(key))

    async def set(self, key: str, value: str) -> None:
        await self._call(self._redis.set(key, value))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._call(self._redis.delete(*keys))

    async def hset(self, key: str, mapping: dict[str, str]) -> None:
        await self._call(self._redis.hset(key, mapping=mapping))

    async def hgetall(self, key: str) -> dict[str, str]:
        return await self._call(self._redis.hgetall(key)) or {}

    async def zadd(self, key: str, member: str, score: int) -> None:
        await self._call(self._redis.zadd(key, {member: score}))

    async def zrem(self, key: str, member: str) -> int:
        return await self._call(self._redis.zrem(key, member))

    async def zrange(self, key: str, start: int, end: int, reverse: bool = False) -> list[str]:
        return await self._call(self._redis.zrange(key, start, end, desc=reverse))

    async def zcard(self, key: str) -> int:
        return await self._call(self._redis.zcard(key))

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return await self._call(self._redis.sadd(key, *members))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return await self._call(self._redis.srem(key, *members))

    async def sismember(self, key: str, member: str) -> bool:
        return bool(await self._call(self._redis.sismember(key, member)))

    async def smembers(self, key: str) -> set[str]:
        return set(await self._call(self._redis.smembers(key)))

    async def exists(self, key: str) -> bool:
        return bool(await self._call(self._redis.exists(key)))

    async def type(self, key: str) -> str:
        return await self._call(self._redis.type(key))

    async def scan(self, cursor: int = 0, match: str | None = None, count: int = 100) -> tuple[int, list[str]]:
        cursor, keys = await self._call(self._redis.scan(cursor=cursor, match=match, count=count))
        return int(cursor), list(keys)

    async def watch(self, *keys: str) -> Batch:
        batch = Batch(self)
        pipe = self._redis.pipeline(transaction=True)
        if keys:
            await self._call(pipe.watch(*keys))
        batch.handle = pipe
        return batch

    def batch(self) -> Batch:
        b = Batch(self)
        b.handle = self._redis.pipeline(transaction=True)
        return b

    async def execute_batch(self, batch: Batch) -> None:
        pipe = batch.handle
        pipe.multi()
        for op, args in batch.ops:
            if op == "hset":
                pipe.hset(args[0], mapping=args[1])
            elif op == "zadd":
                key, member, score = args
                pipe.zadd(key, {member: score})
            else:
                getattr(pipe, op)(*args)
        try:
            await self._call(pipe.execute())
        except RedisWatchError as e:
            raise WatchError(str(e)) from e
        finally:
            batch.ops.clear()
            await pipe.reset()

    async def discard_batch(self, batch: Batch) -> None:
        batch.ops.clear()
        pipe = batch.handle
        if pipe is not None:
            await pipe.reset()
