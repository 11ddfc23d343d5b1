"""Leaderboard reads: public top-N, paginated admin view, qualification."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable

from flapboard.board.protocol import LeaderboardQuery, Mode, SortBy
from flapboard.board.records import DATE_INDEX_PATTERN, ScoreRecord, date_index_key, mode_index_key, record_key
from flapboard.board.systems.ranking import query_top_n
from flapboard.storage.base import ScoreStore, scan_keys


@dataclass
class Page:
    records: list[ScoreRecord]
    totalCount: int
    totalPages: int
    page: int
    pageSize: int

    def to_json(self) -> dict:
        return {
            "data": [r.admin() for r in self.records],
            "pagination": {
                "totalRecords": self.totalCount,
                "totalPages": self.totalPages,
                "currentPage": self.page,
                "pageSize": self.pageSize,
            },
        }


def scope_index_key(mode: Mode, date: str | None) -> str:
    if mode is Mode.CHALLENGE and date:
        return date_index_key(date)
    return mode_index_key(mode)


async def date_index_keys(store: ScoreStore, *, scan_count: int = 200, scan_max_iterations: int = 10) -> list[str]:
    keys, _ = await scan_keys(store, DATE_INDEX_PATTERN, count=scan_count, max_iterations=scan_max_iterations)
    # Newest challenge day first.
    return sorted(keys, reverse=True)


async def index_keys_for(
    store: ScoreStore,
    mode: Mode | None,
    date: str | None,
    *,
    scan_count: int = 200,
    scan_max_iterations: int = 10,
) -> list[str]:
    if mode is not None:
        return [scope_index_key(mode, date)]
    keys = [mode_index_key(Mode.ENDLESS)]
    keys += await date_index_keys(store, scan_count=scan_count, scan_max_iterations=scan_max_iterations)
    # Catch-all for challenge records whose date index is gone.
    keys.append(mode_index_key(Mode.CHALLENGE))
    return keys


async def load_records(store: ScoreStore, ids: Iterable[str]) -> list[ScoreRecord]:
    out = []
    for record_id in ids:
        h = await store.hgetall(record_key(record_id))
        # Index entries without a record hash are skipped.
        if h:
            out.append(ScoreRecord.from_hash(record_id, h))
    return out


async def merged_records(store: ScoreStore, index_keys: list[str], per_index: int | None = None) -> list[ScoreRecord]:
    seen: set[str] = set()
    ids: list[str] = []
    for key in index_keys:
        for record_id in await query_top_n(store, key, per_index):
            if record_id not in seen:
                seen.add(record_id)
                ids.append(record_id)
    return await load_records(store, ids)


def sort_records(records: list[ScoreRecord], sort_by: SortBy) -> list[ScoreRecord]:
    # Stable: equal values keep merge (rank) order.
    if sort_by is SortBy.SCORE:
        return sorted(records, key=lambda r: r.rawScore, reverse=True)
    return sorted(records, key=lambda r: r.submittedAtMillis, reverse=True)


async def query(store: ScoreStore, q: LeaderboardQuery, *, scan_count: int = 200, scan_max_iterations: int = 10) -> Page:
    keys = await index_keys_for(store, q.mode, q.date, scan_count=scan_count, scan_max_iterations=scan_max_iterations)
    # Materialize the whole filtered set before paging.
    records = sort_records(await merged_records(store, keys), q.sortBy)
    total = len(records)
    start = (q.page - 1) * q.pageSize
    return Page(
        records=records[start : start + q.pageSize],
        totalCount=total,
        totalPages=math.ceil(total / q.pageSize),
        page=q.page,
        pageSize=q.pageSize,
    )


async def top_scores(store: ScoreStore, mode: Mode, date: str | None, n: int | None) -> list[ScoreRecord]:
    return await load_records(store, await query_top_n(store, scope_index_key(mode, date), n))


async def public_board(
    store: ScoreStore,
    mode: Mode | None,
    date: str | None,
    n: int = 20,
    *,
    scan_count: int = 200,
    scan_max_iterations: int = 10,
) -> list[ScoreRecord]:
    """Top n of one scope, or of every scope back to back when mode is None."""
    if mode is not None:
        return await top_scores(store, mode, date, n)
    out = await top_scores(store, Mode.ENDLESS, None, n)
    for key in await date_index_keys(store, scan_count=scan_count, scan_max_iterations=scan_max_iterations):
        out += await load_records(store, await query_top_n(store, key, n))
    return out


async def top_n_qualifies(store: ScoreStore, score: int, mode: Mode, date: str | None, n: int = 20) -> bool:
    if score <= 0:
        return False
    scores = [r.rawScore for r in await top_scores(store, mode, date, None)]
    if len(set(scores)) < n:
        return True
    return score > scores[n - 1]
