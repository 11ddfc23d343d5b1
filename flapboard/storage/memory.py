"""In-memory score store (tests, local runs)."""

from __future__ import annotations

from flapboard.board.errors import StoreUnavailable
from flapboard.storage.base import Batch, ScoreStore, StoreBackend, WatchError, key_matches, slice_range


class MemoryBackend(StoreBackend):
    name = "memory"

    def __init__(self):
        self.data: dict[str, object] = {}
        self.versions: dict[str, int] = {}
        self.available = True
        self.opened = 0
        self.closed = 0

    @property
    def open_connections(self) -> int:
        return self.opened - self.closed

    async def connect(self) -> "MemoryStore":
        if not self.available:
            raise StoreUnavailable("could not connect to score store")
        self.opened += 1
        return MemoryStore(self)


class MemoryStore(ScoreStore):
    name = "memory"

    def __init__(self, backend: MemoryBackend):
        self._b = backend
        self._open = True

    async def close(self) -> None:
        if self._open:
            self._open = False
            self._b.closed += 1

    def _check(self) -> None:
        if not self._open:
            raise StoreUnavailable("connection closed")
        if not self._b.available:
            raise StoreUnavailable("score store unreachable")

    def _typed(self, key: str, kind: type, create: bool = False):
        val = self._b.data.get(key)
        if val is None:
            if not create:
                return None
            val = kind()
            self._b.data[key] = val
        if not isinstance(val, kind):
            raise TypeError(f"WRONGTYPE operation against key {key}")
        return val

    def _touch(self, key: str) -> None:
        self._b.versions[key] = self._b.versions.get(key, 0) + 1

    def _drop_if_empty(self, key: str) -> None:
        val = self._b.data.get(key)
        if isinstance(val, (dict, set)) and not val:
            del self._b.data[key]

    # Writes (synchronous so a batch applies without yielding).
    def _apply(self, op: str, args: tuple):
        if op == "set":
            key, value = args
            self._b.data[key] = str(value)
            self._touch(key)
            return True
        if op == "delete":
            n = 0
            for key in args:
                if self._b.data.pop(key, None) is not None:
                    n += 1
                    self._touch(key)
            return n
        if op == "hset":
            key, mapping = args
            h = self._typed(key, _Hash, create=True)
            h.update({k: str(v) for k, v in mapping.items()})
            self._touch(key)
            return len(mapping)
        if op == "zadd":
            key, member, score = args
            z = self._typed(key, _ZSet, create=True)
            z[member] = score
            self._touch(key)
            return 1
        if op == "zrem":
            key, member = args
            z = self._typed(key, _ZSet)
            if z is None or member not in z:
                return 0
            del z[member]
            self._drop_if_empty(key)
            self._touch(key)
            return 1
        if op == "sadd":
            key, *members = args
            s = self._typed(key, set, create=True)
            added = len(set(members) - s)
            s.update(members)
            self._touch(key)
            return added
        if op == "srem":
            key, *members = args
            s = self._typed(key, set)
            if s is None:
                return 0
            removed = len(s & set(members))
            s.difference_update(members)
            self._drop_if_empty(key)
            self._touch(key)
            return removed
        raise ValueError(f"unknown command {op}")

    async def get(self, key: str) -> str | None:
        self._check()
        return self._typed(key, str)

    async def set(self, key: str, value: str) -> None:
        self._check()
        self._apply("set", (key, value))

    async def delete(self, *keys: str) -> int:
        self._check()
        return self._apply("delete", keys)

    async def hset(self, key: str, mapping: dict[str, str]) -> None:
        self._check()
        self._apply("hset", (key, mapping))

    async def hgetall(self, key: str) -> dict[str, str]:
        self._check()
        return dict(self._typed(key, _Hash) or {})

    async def zadd(self, key: str, member: str, score: int) -> None:
        self._check()
        self._apply("zadd", (key, member, score))

    async def zrem(self, key: str, member: str) -> int:
        self._check()
        return self._apply("zrem", (key, member))

    async def zrange(self, key: str, start: int, end: int, reverse: bool = False) -> list[str]:
        self._check()
        z = self._typed(key, _ZSet) or {}
        ordered = [m for m, _ in sorted(z.items(), key=lambda kv: (kv[1], kv[0]), reverse=reverse)]
        return slice_range(ordered, start, end)

    async def zcard(self, key: str) -> int:
        self._check()
        return len(self._typed(key, _ZSet) or {})

    async def sadd(self, key: str, *members: str) -> int:
        self._check()
        return self._apply("sadd", (key, *members)) if members else 0

    async def srem(self, key: str, *members: str) -> int:
        self._check()
        return self._apply("srem", (key, *members)) if members else 0

    async def sismember(self, key: str, member: str) -> bool:
        self._check()
        return member in (self._typed(key, set) or set())

    async def smembers(self, key: str) -> set[str]:
        self._check()
        return set(self._typed(key, set) or set())

    async def exists(self, key: str) -> bool:
        self._check()
        return key in self._b.data

    async def type(self, key: str) -> str:
        self._check()
        val = self._b.data.get(key)
        if val is None:
            return "none"
        if isinstance(val, _ZSet):
            return "zset"
        if isinstance(val, _Hash):
            return "hash"
        if isinstance(val, set):
            return "set"
        return "string"

    async def scan(self, cursor: int = 0, match: str | None = None, count: int = 100) -> tuple[int, list[str]]:
        self._check()
        keys = sorted(self._b.data)
        page = keys[cursor : cursor + count]
        nxt = cursor + count if cursor + count < len(keys) else 0
        return nxt, [k for k in page if key_matches(k, match)]

    async def watch(self, *keys: str) -> Batch:
        self._check()
        batch = Batch(self)
        batch.watched = {k: self._b.versions.get(k, 0) for k in keys}
        return batch

    async def execute_batch(self, batch: Batch) -> None:
        self._check()
        for key, version in batch.watched.items():
            if self._b.versions.get(key, 0) != version:
                raise WatchError(key)
        # Validate types up front so a bad command cannot leave half a batch applied.
        for op, args in batch.ops:
            if op in ("hset", "zadd", "zrem"):
                self._typed(args[0], _Hash if op == "hset" else _ZSet)
            elif op in ("sadd", "srem"):
                self._typed(args[0], set)
        for op, args in batch.ops:
            self._apply(op, args)
        batch.ops.clear()


class _Hash(dict):
    pass


class _ZSet(dict):
    pass
