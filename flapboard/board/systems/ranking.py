"""Composite sort keys and rank indexes."""

from __future__ import annotations

from typing import Any

from flapboard.board.errors import InvalidScore
from flapboard.board.protocol import coerce_score
from flapboard.board.records import ScoreRecord
from flapboard.storage.base import Batch, ScoreStore

# Score dominates: the time component always stays below SCORE_FACTOR.
SCORE_FACTOR = 10**10
T_MAX = SCORE_FACTOR - 1


def compute_sort_key(raw_score: Any, submitted_at_millis: int) -> int:
    """score * K + (T_MAX - seconds): higher score first, then earlier submission."""
    score = coerce_score(raw_score)
    secs = int(submitted_at_millis) // 1000
    if not 0 <= secs <= T_MAX:
        raise InvalidScore(f"timestamp out of range: {submitted_at_millis}")
    return score * SCORE_FACTOR + (T_MAX - secs)


def score_from_sort_key(sort_key: int) -> int:
    return int(sort_key) // SCORE_FACTOR


def record_sort_key(record: ScoreRecord) -> int:
    return compute_sort_key(record.rawScore, record.submittedAtMillis)


async def upsert_into_index(store: ScoreStore, index_key: str, record_id: str, sort_key: int) -> None:
    # ZADD replaces the member's previous key.
    await store.zadd(index_key, record_id, sort_key)


async def remove_from_index(store: ScoreStore, index_key: str, record_id: str) -> None:
    await store.zrem(index_key, record_id)


async def query_top_n(store: ScoreStore, index_key: str, n: int | None, descending: bool = True) -> list[str]:
    """Record ids in rank order; n=None returns the whole index."""
    if n is not None and n <= 0:
        return []
    end = -1 if n is None else n - 1
    return await store.zrange(index_key, 0, end, reverse=descending)


def queue_upsert(batch: Batch, record: ScoreRecord) -> None:
    key = record_sort_key(record)
    for index_key in record.index_keys():
        batch.zadd(index_key, record.id, key)


def queue_remove(batch: Batch, record: ScoreRecord) -> None:
    for index_key in record.index_keys():
        batch.zrem(index_key, record.id)
