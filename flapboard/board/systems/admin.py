"""Admin maintenance: delete, clear, raw dump."""

from __future__ import annotations

import logging

from flapboard.board.errors import NotFoundError
from flapboard.board.protocol import Mode
from flapboard.board.records import (
    DATE_INDEX_PATTERN,
    INDEX_PREFIX,
    RECORD_PREFIX,
    ScoreRecord,
    mode_index_key,
    record_key,
)
from flapboard.board.systems.query import index_keys_for, merged_records, scope_index_key
from flapboard.board.systems.ranking import queue_remove
from flapboard.storage.base import Batch, ScoreStore, scan_keys

logger = logging.getLogger(__name__)

# Global index written by older deployments; cleared along with everything else.
LEGACY_INDEX_KEY = "scores"


async def delete_record(store: ScoreStore, record_id: str, *, retries: int = 5) -> ScoreRecord:
    h = await store.hgetall(record_key(record_id))
    if not h:
        raise NotFoundError("record not found")
    record = ScoreRecord.from_hash(record_id, h)

    async def apply(batch: Batch) -> None:
        queue_remove(batch, record)
        batch.zrem(LEGACY_INDEX_KEY, record_id)
        batch.delete(record_key(record_id))
        # The lookup may already point at a newer record for the same player.
        if await store.get(record.lookup_key()) == record_id:
            batch.delete(record.lookup_key())

    await store.transaction(apply, record.lookup_key(), retries=retries)
    logger.info("admin deleted record id=%s name=%s score=%d", record_id, record.playerName, record.rawScore)
    return record


async def clear_leaderboard(
    store: ScoreStore,
    mode: Mode | None = None,
    date: str | None = None,
    *,
    scan_count: int = 200,
    scan_max_iterations: int = 10,
) -> int:
    """Delete every record in scope (all scopes when mode is None); returns the count."""
    if mode is None:
        index_keys = await index_keys_for(store, None, None, scan_count=scan_count, scan_max_iterations=scan_max_iterations)
        index_keys.append(LEGACY_INDEX_KEY)
    elif mode is Mode.CHALLENGE and not date:
        index_keys, _ = await scan_keys(store, DATE_INDEX_PATTERN, count=scan_count, max_iterations=scan_max_iterations)
        index_keys.append(mode_index_key(Mode.CHALLENGE))
    else:
        index_keys = [scope_index_key(mode, date)]

    records = await merged_records(store, index_keys)
    batch = store.batch()
    for record in records:
        queue_remove(batch, record)
        batch.zrem(LEGACY_INDEX_KEY, record.id)
        batch.delete(record_key(record.id), record.lookup_key())

    # Every collected index lies wholly inside the scope.
    batch.delete(*index_keys)
    await batch.execute()
    logger.info("admin cleared %d records (mode=%s date=%s)", len(records), mode.value if mode else None, date)
    return len(records)


async def dump_records(store: ScoreStore, limit: int = 100, *, scan_count: int = 200, scan_max_iterations: int = 10) -> dict:
    keys, complete = await scan_keys(store, f"{RECORD_PREFIX}*", count=scan_count, max_iterations=scan_max_iterations)
    records = []
    for key in keys:
        if len(records) >= limit:
            break
        if await store.type(key) != "hash":
            continue
        h = await store.hgetall(key)
        if h:
            records.append(ScoreRecord.from_hash(key[len(RECORD_PREFIX) :], h).admin())
    records.sort(key=lambda r: r["timestamp"], reverse=True)
    index_keys, _ = await scan_keys(store, f"{INDEX_PREFIX}*", count=scan_count, max_iterations=scan_max_iterations)
    indexes = [{"key": k, "count": await store.zcard(k)} for k in sorted(index_keys)]
    return {
        "records": records,
        "indexes": indexes,
        "totalCount": len(records),
        "limitReached": len(records) >= limit,
        "scanComplete": complete,
    }
