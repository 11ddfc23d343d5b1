import asyncio

import pytest

from flapboard.board.errors import InvalidScore, StoreUnavailable, ValidationError
from flapboard.board.protocol import MAX_SCORE, Mode
from flapboard.board.records import player_key, record_key
from flapboard.board.systems import dedup
from flapboard.board.systems.query import load_records
from flapboard.board.systems.ranking import query_top_n

T0 = 1_760_000_000_000


async def _records_for(store, name, index="scores:endless"):
    recs = await load_records(store, await query_top_n(store, index, None))
    return [r for r in recs if r.playerName == name]


@pytest.mark.asyncio
async def test_lower_score_is_ignored(any_backend):
    store = await any_backend.connect()
    try:
        first = await dedup.submit(store, "A", 10, Mode.ENDLESS, None, "1.1.1.1", ts_ms=T0)
        second = await dedup.submit(store, "A", 7, Mode.ENDLESS, None, "1.1.1.1", ts_ms=T0 + 5000)

        assert first.status == dedup.CREATED
        assert second.accepted is True
        assert second.status == dedup.IGNORED
        recs = await _records_for(store, "A")
        assert [r.rawScore for r in recs] == [10]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_equal_score_keeps_original_record(any_backend):
    store = await any_backend.connect()
    try:
        first = await dedup.submit(store, "A", 10, Mode.ENDLESS, None, "", ts_ms=T0)
        again = await dedup.submit(store, "A", 10, Mode.ENDLESS, None, "", ts_ms=T0 + 5000)
        assert again.status == dedup.IGNORED
        assert again.recordId == first.recordId
        recs = await _records_for(store, "A")
        assert recs[0].submittedAtMillis == T0
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_higher_score_replaces_record(any_backend):
    store = await any_backend.connect()
    try:
        first = await dedup.submit(store, "A", 10, Mode.ENDLESS, None, "", ts_ms=T0)
        second = await dedup.submit(store, "A", 15, Mode.ENDLESS, None, "", ts_ms=T0 + 5000)

        assert second.status == dedup.REPLACED
        recs = await _records_for(store, "A")
        assert [(r.id, r.rawScore) for r in recs] == [(second.recordId, 15)]
        assert await store.hgetall(record_key(first.recordId)) == {}
        assert await store.get(player_key("A", Mode.ENDLESS, None)) == second.recordId
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_retained_score_is_running_maximum(backend):
    store = await backend.connect()
    seq = [3, 8, 2, 8, 11, 4, 11, 1]
    for i, s in enumerate(seq):
        await dedup.submit(store, "P", s, Mode.ENDLESS, None, "", ts_ms=T0 + i * 1000)
        recs = await _records_for(store, "P")
        assert len(recs) == 1
        assert recs[0].rawScore == max(seq[: i + 1])
    await store.close()


@pytest.mark.asyncio
async def test_challenge_scopes_are_per_date(backend):
    store = await backend.connect()
    await dedup.submit(store, "A", 10, Mode.CHALLENGE, "2026-10-18", "", ts_ms=T0)
    await dedup.submit(store, "A", 4, Mode.CHALLENGE, "2026-10-19", "", ts_ms=T0)
    await dedup.submit(store, "A", 30, Mode.ENDLESS, None, "", ts_ms=T0)

    d18 = await _records_for(store, "A", "scores:challenge:2026-10-18")
    d19 = await _records_for(store, "A", "scores:challenge:2026-10-19")
    assert [r.rawScore for r in d18] == [10]
    assert [r.rawScore for r in d19] == [4]
    assert await store.zcard("scores:challenge") == 2
    assert await store.zcard("scores:endless") == 1


@pytest.mark.asyncio
async def test_replacement_rekeys_both_challenge_indexes(backend):
    store = await backend.connect()
    first = await dedup.submit(store, "A", 10, Mode.CHALLENGE, "2026-10-19", "", ts_ms=T0)
    second = await dedup.submit(store, "A", 20, Mode.CHALLENGE, "2026-10-19", "", ts_ms=T0 + 1000)
    for idx in ("scores:challenge", "scores:challenge:2026-10-19"):
        assert await query_top_n(store, idx, None) == [second.recordId]
    assert first.recordId != second.recordId


@pytest.mark.asyncio
async def test_challenge_without_date_is_rejected(backend):
    store = await backend.connect()
    with pytest.raises(ValidationError):
        await dedup.submit(store, "A", 10, Mode.CHALLENGE, None, "")


@pytest.mark.asyncio
async def test_bad_score_mutates_nothing(backend):
    store = await backend.connect()
    with pytest.raises(InvalidScore):
        await dedup.submit(store, "A", "lots", Mode.ENDLESS, None, "")
    assert backend.data == {}


@pytest.mark.asyncio
async def test_score_ceiling_on_every_backend(any_backend):
    store = await any_backend.connect()
    try:
        top = await dedup.submit(store, "A", MAX_SCORE, Mode.ENDLESS, None, "", ts_ms=T0)
        assert top.status == dedup.CREATED
        with pytest.raises(InvalidScore):
            await dedup.submit(store, "B", 10**9, Mode.ENDLESS, None, "", ts_ms=T0)
        assert await query_top_n(store, "scores:endless", None) == [top.recordId]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_concurrent_submissions_leave_one_record(backend):
    stores = [await backend.connect() for _ in range(6)]
    scores = [5, 17, 9, 17, 3, 12]
    await asyncio.gather(
        *(dedup.submit(s, "Racer", sc, Mode.ENDLESS, None, "", ts_ms=T0 + i) for i, (s, sc) in enumerate(zip(stores, scores)))
    )
    recs = await _records_for(stores[0], "Racer")
    assert len(recs) == 1
    assert recs[0].rawScore == 17
    assert await stores[0].zcard("scores:endless") == 1


@pytest.mark.asyncio
async def test_store_outage_fails_without_mutation(backend):
    store = await backend.connect()
    backend.available = False
    with pytest.raises(StoreUnavailable):
        await dedup.submit(store, "A", 10, Mode.ENDLESS, None, "")
    backend.available = True
    assert backend.data == {}
