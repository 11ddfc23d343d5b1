"""Origin blocklist.

Current layout: `blocked:index` (set of origins) + one `blocked:ip:{origin}`
hash per BlockEntry. Older deployments kept a bare set under `blocked:ips`;
`migrate_legacy` folds it into the current layout. Until that has run
against a store, `is_blocked` keeps honoring the legacy set too.

An empty origin is never blocked; `block` rejects it.
"""

from __future__ import annotations

import logging

from flapboard.board.errors import ValidationError
from flapboard.board.protocol import Mode
from flapboard.board.records import (
    AUTOMATIC,
    BLOCK_INDEX_KEY,
    LEGACY_BLOCK_KEY,
    MANUAL,
    BlockEntry,
    block_key,
    now_ms,
)
from flapboard.storage.base import ScoreStore

logger = logging.getLogger(__name__)


async def is_blocked(store: ScoreStore, origin: str) -> bool:
    if not origin:
        return False
    if await store.sismember(BLOCK_INDEX_KEY, origin):
        return True
    return await store.sismember(LEGACY_BLOCK_KEY, origin)


async def block(
    store: ScoreStore,
    origin: str,
    reason: str = "",
    block_type: str = MANUAL,
    context: dict | None = None,
    *,
    ts_ms: int | None = None,
) -> BlockEntry:
    if not origin or not origin.strip():
        raise ValidationError("cannot block an empty origin")
    context = context or {}
    entry = BlockEntry(
        originAddress=origin,
        reason=reason,
        blockedAtMillis=ts_ms if ts_ms is not None else now_ms(),
        blockType=block_type,
        score=context.get("score"),
        date=context.get("date"),
        playerName=context.get("playerName"),
    )
    batch = store.batch()
    batch.hset(block_key(origin), entry.to_hash())
    batch.sadd(BLOCK_INDEX_KEY, origin)
    await batch.execute()
    logger.warning("blocked origin %s (%s): %s", origin, block_type, reason)
    return entry


async def unblock(store: ScoreStore, origin: str) -> bool:
    was_blocked = await is_blocked(store, origin)
    batch = store.batch()
    batch.srem(BLOCK_INDEX_KEY, origin)
    batch.srem(LEGACY_BLOCK_KEY, origin)
    batch.delete(block_key(origin))
    await batch.execute()
    logger.info("unblocked origin %s (was blocked: %s)", origin, was_blocked)
    return was_blocked


async def get_entry(store: ScoreStore, origin: str) -> BlockEntry | None:
    h = await store.hgetall(block_key(origin))
    if h:
        return BlockEntry.from_hash(origin, h)
    if await is_blocked(store, origin):
        return BlockEntry(originAddress=origin, reason="legacy", blockedAtMillis=0)
    return None


async def list_blocked(store: ScoreStore) -> list[BlockEntry]:
    origins = await store.smembers(BLOCK_INDEX_KEY) | await store.smembers(LEGACY_BLOCK_KEY)
    out = []
    for origin in sorted(origins):
        entry = await get_entry(store, origin)
        if entry is not None:
            out.append(entry)
    out.sort(key=lambda e: e.blockedAtMillis, reverse=True)
    return out


async def migrate_legacy(store: ScoreStore, *, ts_ms: int | None = None) -> int:
    """Move `blocked:ips` members into BlockEntry records; returns how many moved."""
    legacy = await store.smembers(LEGACY_BLOCK_KEY)
    if not legacy:
        return 0
    ts = ts_ms if ts_ms is not None else now_ms()
    batch = store.batch()
    moved = 0
    for origin in sorted(legacy):
        if not await store.hgetall(block_key(origin)):
            entry = BlockEntry(originAddress=origin, reason="migrated from legacy blocklist", blockedAtMillis=ts)
            batch.hset(block_key(origin), entry.to_hash())
            moved += 1
        batch.sadd(BLOCK_INDEX_KEY, origin)
    batch.delete(LEGACY_BLOCK_KEY)
    await batch.execute()
    logger.info("migrated %d legacy blocklist entries (%d already present)", moved, len(legacy) - moved)
    return moved


def should_auto_block(mode: Mode, score: int, threshold: int) -> bool:
    return mode is Mode.CHALLENGE and score > threshold


async def auto_block(store: ScoreStore, origin: str, name: str, score: int, date: str | None, threshold: int) -> BlockEntry | None:
    if not origin.strip() or await is_blocked(store, origin):
        return None
    return await block(
        store,
        origin,
        reason=f"daily challenge score {score} exceeds {threshold}",
        block_type=AUTOMATIC,
        context={"score": score, "date": date, "playerName": name},
    )
