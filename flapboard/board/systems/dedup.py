"""One retained record per (player, mode, date), keeping the best score."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flapboard.board.errors import ValidationError
from flapboard.board.protocol import Mode, coerce_score
from flapboard.board.records import ScoreRecord, new_record_id, now_ms, player_key, record_key
from flapboard.board.systems.ranking import queue_remove, queue_upsert
from flapboard.storage.base import Batch, ScoreStore

logger = logging.getLogger(__name__)

CREATED = "created"
REPLACED = "replaced"
IGNORED = "ignored"
BLOCKED = "blocked"


@dataclass
class SubmitResult:
    accepted: bool
    recordId: str | None
    # Internal only; clients always see plain success.
    status: str


async def find_existing(store: ScoreStore, name: str, mode: Mode, date: str | None) -> ScoreRecord | None:
    record_id = await store.get(player_key(name, mode, date))
    if not record_id:
        return None
    h = await store.hgetall(record_key(record_id))
    if not h:
        return None
    return ScoreRecord.from_hash(record_id, h)


async def submit(
    store: ScoreStore,
    name: str,
    raw_score,
    mode: Mode,
    challenge_date: str | None,
    origin: str,
    *,
    ts_ms: int | None = None,
    retries: int = 5,
) -> SubmitResult:
    score = coerce_score(raw_score)
    if mode is Mode.CHALLENGE and not challenge_date:
        raise ValidationError("challenge submissions need a date")
    if mode is Mode.ENDLESS:
        challenge_date = None

    async def apply(batch: Batch) -> SubmitResult:
        existing = await find_existing(store, name, mode, challenge_date)
        if existing is not None and score <= existing.rawScore:
            return SubmitResult(accepted=True, recordId=existing.id, status=IGNORED)

        ts = ts_ms if ts_ms is not None else now_ms()
        record = ScoreRecord(
            id=new_record_id(ts),
            playerName=name,
            rawScore=score,
            submittedAtMillis=ts,
            mode=mode,
            challengeDate=challenge_date,
            originAddress=origin,
        )
        if existing is not None:
            queue_remove(batch, existing)
            batch.delete(record_key(existing.id))
        batch.hset(record_key(record.id), record.to_hash())
        queue_upsert(batch, record)
        batch.set(record.lookup_key(), record.id)
        return SubmitResult(accepted=True, recordId=record.id, status=REPLACED if existing else CREATED)

    result = await store.transaction(apply, player_key(name, mode, challenge_date), retries=retries)
    logger.info(
        "submission %s: name=%s score=%d mode=%s date=%s id=%s",
        result.status,
        name,
        score,
        mode.value,
        challenge_date,
        result.recordId,
    )
    return result
