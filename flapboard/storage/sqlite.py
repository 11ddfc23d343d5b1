"""SQLite persistence for the score store contract."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager

from flapboard.board.errors import StoreUnavailable
from flapboard.storage.base import Batch, ScoreStore, StoreBackend, WatchError, key_matches, slice_range

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS keyspace (
      key TEXT PRIMARY KEY,
      type TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS strings (
      key TEXT PRIMARY KEY,
      value TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hashes (
      key TEXT NOT NULL,
      field TEXT NOT NULL,
      value TEXT NOT NULL,
      PRIMARY KEY (key, field)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS zsets (
      key TEXT NOT NULL,
      member TEXT NOT NULL,
      score INTEGER NOT NULL,
      PRIMARY KEY (key, member)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sets (
      key TEXT NOT NULL,
      member TEXT NOT NULL,
      PRIMARY KEY (key, member)
    )
    """,
    # Versions survive deletes so WATCH sees delete-then-recreate.
    """
    CREATE TABLE IF NOT EXISTS versions (
      key TEXT PRIMARY KEY,
      version INTEGER NOT NULL
    )
    """,
)

_TABLE_FOR = {"string": "strings", "hash": "hashes", "zset": "zsets", "set": "sets"}


class SqliteBackend(StoreBackend):
    name = "sqlite"

    def __init__(self, path: str, timeout: float = 3.0):
        self.path = path
        self.timeout = timeout

    def _open(self) -> sqlite3.Connection:
        # Autocommit; every write opens its own BEGIN IMMEDIATE.
        return sqlite3.connect(self.path, timeout=self.timeout, isolation_level=None, check_same_thread=False)

    def init(self) -> None:
        conn = self._open()
        try:
            for stmt in SCHEMA:
                conn.execute(stmt)
        finally:
            conn.close()

    async def connect(self) -> "SqliteStore":
        try:
            return SqliteStore(self._open())
        except sqlite3.Error as e:
            logger.error("sqlite connect failed: %s", e)
            raise StoreUnavailable("could not connect to score store") from e


class SqliteStore(ScoreStore):
    name = "sqlite"

    def __init__(self, conn: sqlite3.Connection):
        self.conn: sqlite3.Connection | None = conn

    async def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None

    @contextmanager
    def _guard(self):
        if not self.conn:
            raise StoreUnavailable("connection closed")
        try:
            yield self.conn
        except sqlite3.Error as e:
            logger.error("sqlite error: %s", e)
            raise StoreUnavailable(f"score store error: {e}") from e

    def _type_of(self, conn: sqlite3.Connection, key: str) -> str | None:
        row = conn.execute("SELECT type FROM keyspace WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def _expect(self, conn: sqlite3.Connection, key: str, kind: str) -> bool:
        t = self._type_of(conn, key)
        if t is None:
            return False
        if t != kind:
            raise TypeError(f"WRONGTYPE operation against key {key}")
        return True

    def _version(self, conn: sqlite3.Connection, key: str) -> int:
        row = conn.execute("SELECT version FROM versions WHERE key = ?", (key,)).fetchone()
        return row[0] if row else 0

    def _touch(self, conn: sqlite3.Connection, key: str, kind: str | None) -> None:
        conn.execute(
            "INSERT INTO versions (key, version) VALUES (?, 1) ON CONFLICT(key) DO UPDATE SET version = version + 1",
            (key,),
        )
        if kind is None:
            return
        conn.execute(
            "INSERT INTO keyspace (key, type) VALUES (?, ?) ON CONFLICT(key) DO NOTHING",
            (key, kind),
        )

    def _drop_if_empty(self, conn: sqlite3.Connection, key: str, table: str) -> None:
        row = conn.execute(f"SELECT 1 FROM {table} WHERE key = ? LIMIT 1", (key,)).fetchone()
        if not row:
            conn.execute("DELETE FROM keyspace WHERE key = ?", (key,))

    def _apply(self, conn: sqlite3.Connection, op: str, args: tuple):
        if op == "set":
            key, value = args
            t = self._type_of(conn, key)
            if t not in (None, "string"):
                self._delete_key(conn, key, t)
            conn.execute(
                "INSERT INTO strings (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, str(value)),
            )
            self._touch(conn, key, "string")
            return True
        if op == "delete":
            n = 0
            for key in args:
                t = self._type_of(conn, key)
                if t is not None:
                    self._delete_key(conn, key, t)
                    self._touch(conn, key, None)
                    n += 1
            return n
        if op == "hset":
            key, mapping = args
            self._expect(conn, key, "hash")
            conn.executemany(
                "INSERT INTO hashes (key, field, value) VALUES (?, ?, ?) "
                "ON CONFLICT(key, field) DO UPDATE SET value = excluded.value",
                [(key, f, str(v)) for f, v in mapping.items()],
            )
            self._touch(conn, key, "hash")
            return len(mapping)
        if op == "zadd":
            key, member, score = args
            self._expect(conn, key, "zset")
            conn.execute(
                "INSERT INTO zsets (key, member, score) VALUES (?, ?, ?) "
                "ON CONFLICT(key, member) DO UPDATE SET score = excluded.score",
                (key, member, score),
            )
            self._touch(conn, key, "zset")
            return 1
        if op == "zrem":
            key, member = args
            if not self._expect(conn, key, "zset"):
                return 0
            cur = conn.execute("DELETE FROM zsets WHERE key = ? AND member = ?", (key, member))
            if not cur.rowcount:
                return 0
            self._drop_if_empty(conn, key, "zsets")
            self._touch(conn, key, None)
            return 1
        if op == "sadd":
            key, *members = args
            self._expect(conn, key, "set")
            added = 0
            for m in dict.fromkeys(members):
                cur = conn.execute("INSERT OR IGNORE INTO sets (key, member) VALUES (?, ?)", (key, m))
                added += cur.rowcount
            self._touch(conn, key, "set")
            return added
        if op == "srem":
            key, *members = args
            if not self._expect(conn, key, "set"):
                return 0
            removed = 0
            for m in dict.fromkeys(members):
                cur = conn.execute("DELETE FROM sets WHERE key = ? AND member = ?", (key, m))
                removed += cur.rowcount
            self._drop_if_empty(conn, key, "sets")
            self._touch(conn, key, None)
            return removed
        raise ValueError(f"unknown command {op}")

    def _delete_key(self, conn: sqlite3.Connection, key: str, kind: str) -> None:
        conn.execute(f"DELETE FROM {_TABLE_FOR[kind]} WHERE key = ?", (key,))
        conn.execute("DELETE FROM keyspace WHERE key = ?", (key,))

    def _write(self, ops: list[tuple[str, tuple]], watched: dict[str, int] | None = None) -> list:
        with self._guard() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for key, version in (watched or {}).items():
                    if self._version(conn, key) != version:
                        raise WatchError(key)
                results = [self._apply(conn, op, args) for op, args in ops]
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return results

    async def get(self, key: str) -> str | None:
        with self._guard() as conn:
            if not self._expect(conn, key, "string"):
                return None
            row = conn.execute("SELECT value FROM strings WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        self._write([("set", (key, value))])

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return self._write([("delete", keys)])[0]

    async def hset(self, key: str, mapping: dict[str, str]) -> None:
        self._write([("hset", (key, mapping))])

    async def hgetall(self, key: str) -> dict[str, str]:
        with self._guard() as conn:
            if not self._expect(conn, key, "hash"):
                return {}
            return {f: v for f, v in conn.execute("SELECT field, value FROM hashes WHERE key = ?", (key,))}

    async def zadd(self, key: str, member: str, score: int) -> None:
        self._write([("zadd", (key, member, score))])

    async def zrem(self, key: str, member: str) -> int:
        return self._write([("zrem", (key, member))])[0]

    async def zrange(self, key: str, start: int, end: int, reverse: bool = False) -> list[str]:
        order = "DESC" if reverse else "ASC"
        with self._guard() as conn:
            if not self._expect(conn, key, "zset"):
                return []
            rows = conn.execute(
                f"SELECT member FROM zsets WHERE key = ? ORDER BY score {order}, member {order}",
                (key,),
            ).fetchall()
        return slice_range([r[0] for r in rows], start, end)

    async def zcard(self, key: str) -> int:
        with self._guard() as conn:
            return conn.execute("SELECT COUNT(*) FROM zsets WHERE key = ?", (key,)).fetchone()[0]

    async def sadd(self, key: str, *members: str) -> int:
        return self._write([("sadd", (key, *members))])[0] if members else 0

    async def srem(self, key: str, *members: str) -> int:
        return self._write([("srem", (key, *members))])[0] if members else 0

    async def sismember(self, key: str, member: str) -> bool:
        with self._guard() as conn:
            row = conn.execute("SELECT 1 FROM sets WHERE key = ? AND member = ?", (key, member)).fetchone()
            return row is not None

    async def smembers(self, key: str) -> set[str]:
        with self._guard() as conn:
            return {r[0] for r in conn.execute("SELECT member FROM sets WHERE key = ?", (key,))}

    async def exists(self, key: str) -> bool:
        with self._guard() as conn:
            return self._type_of(conn, key) is not None

    async def type(self, key: str) -> str:
        with self._guard() as conn:
            return self._type_of(conn, key) or "none"

    async def scan(self, cursor: int = 0, match: str | None = None, count: int = 100) -> tuple[int, list[str]]:
        with self._guard() as conn:
            rows = conn.execute(
                "SELECT key FROM keyspace ORDER BY key LIMIT ? OFFSET ?",
                (count + 1, cursor),
            ).fetchall()
        page = [r[0] for r in rows[:count]]
        nxt = cursor + count if len(rows) > count else 0
        return nxt, [k for k in page if key_matches(k, match)]

    async def watch(self, *keys: str) -> Batch:
        batch = Batch(self)
        with self._guard() as conn:
            batch.watched = {k: self._version(conn, k) for k in keys}
        return batch

    async def execute_batch(self, batch: Batch) -> None:
        self._write(batch.ops, batch.watched)
        batch.ops.clear()
