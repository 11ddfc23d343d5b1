import pytest

from flapboard.board.protocol import LeaderboardQuery, Mode, SortBy
from flapboard.board.systems import dedup, query

T0 = 1_760_000_000_000


async def _seed(store, rows):
    ids = {}
    for name, score, mode, date, ts in rows:
        res = await dedup.submit(store, name, score, mode, date, "", ts_ms=ts)
        ids[name, mode, date] = res.recordId
    return ids


def _q(**kw):
    base = dict(mode=None, date=None, sortBy=SortBy.SCORE, page=1, pageSize=10)
    base.update(kw)
    return LeaderboardQuery(**base)


@pytest.mark.asyncio
async def test_query_merges_all_scopes_without_duplicates(backend):
    store = await backend.connect()
    await _seed(
        store,
        [
            ("e1", 30, Mode.ENDLESS, None, T0),
            ("c1", 20, Mode.CHALLENGE, "2026-10-18", T0 + 1000),
            ("c2", 25, Mode.CHALLENGE, "2026-10-19", T0 + 2000),
        ],
    )
    page = await query.query(store, _q())
    assert [r.playerName for r in page.records] == ["e1", "c2", "c1"]
    assert page.totalCount == 3
    assert page.totalPages == 1


@pytest.mark.asyncio
async def test_query_sorts_by_recency(backend):
    store = await backend.connect()
    await _seed(
        store,
        [
            ("old", 90, Mode.ENDLESS, None, T0),
            ("new", 10, Mode.ENDLESS, None, T0 + 50_000),
            ("mid", 50, Mode.ENDLESS, None, T0 + 20_000),
        ],
    )
    page = await query.query(store, _q(mode=Mode.ENDLESS, sortBy=SortBy.RECENCY))
    assert [r.playerName for r in page.records] == ["new", "mid", "old"]


@pytest.mark.asyncio
async def test_query_filters_by_date(backend):
    store = await backend.connect()
    await _seed(
        store,
        [
            ("a", 5, Mode.CHALLENGE, "2026-10-18", T0),
            ("b", 6, Mode.CHALLENGE, "2026-10-19", T0),
            ("c", 7, Mode.ENDLESS, None, T0),
        ],
    )
    page = await query.query(store, _q(mode=Mode.CHALLENGE, date="2026-10-19"))
    assert [r.playerName for r in page.records] == ["b"]
    page = await query.query(store, _q(mode=Mode.CHALLENGE))
    assert [r.playerName for r in page.records] == ["b", "a"]


@pytest.mark.asyncio
async def test_pagination_after_full_sort(backend):
    store = await backend.connect()
    await _seed(store, [(f"p{i}", i + 1, Mode.ENDLESS, None, T0 + i) for i in range(23)])

    p1 = await query.query(store, _q(pageSize=10))
    p3 = await query.query(store, _q(pageSize=10, page=3))
    p9 = await query.query(store, _q(pageSize=10, page=9))

    assert p1.totalCount == 23
    assert p1.totalPages == 3
    assert [r.rawScore for r in p1.records] == list(range(23, 13, -1))
    assert [r.rawScore for r in p3.records] == [3, 2, 1]
    assert p9.records == []


@pytest.mark.asyncio
async def test_equal_scores_keep_rank_order(backend):
    store = await backend.connect()
    await _seed(
        store,
        [
            ("late", 10, Mode.ENDLESS, None, T0 + 60_000),
            ("early", 10, Mode.ENDLESS, None, T0),
        ],
    )
    page = await query.query(store, _q(mode=Mode.ENDLESS))
    assert [r.playerName for r in page.records] == ["early", "late"]


@pytest.mark.asyncio
async def test_public_board_per_scope(backend):
    store = await backend.connect()
    await _seed(store, [(f"e{i}", i + 1, Mode.ENDLESS, None, T0) for i in range(25)])
    await _seed(store, [("c", 9, Mode.CHALLENGE, "2026-10-19", T0)])

    endless = await query.public_board(store, Mode.ENDLESS, None, 20)
    assert len(endless) == 20
    assert endless[0].rawScore == 25

    everything = await query.public_board(store, None, None, 20)
    assert len(everything) == 21
    assert everything[-1].playerName == "c"


@pytest.mark.asyncio
async def test_qualifies_with_sparse_scope(backend):
    store = await backend.connect()
    # 25 records but only five distinct scores.
    await _seed(store, [(f"p{i}", 10 + i % 5, Mode.ENDLESS, None, T0) for i in range(25)])
    assert await query.top_n_qualifies(store, 1, Mode.ENDLESS, None) is True
    assert await query.top_n_qualifies(store, 0, Mode.ENDLESS, None) is False


@pytest.mark.asyncio
async def test_qualifies_with_full_scope(backend):
    store = await backend.connect()
    # Scores 1..25; 20th highest is 6, 21st is 5.
    await _seed(store, [(f"p{i}", i, Mode.ENDLESS, None, T0) for i in range(1, 26)])
    assert await query.top_n_qualifies(store, 5, Mode.ENDLESS, None) is False
    assert await query.top_n_qualifies(store, 6, Mode.ENDLESS, None) is False
    assert await query.top_n_qualifies(store, 7, Mode.ENDLESS, None) is True


@pytest.mark.asyncio
async def test_qualifies_empty_challenge_day(backend):
    store = await backend.connect()
    await _seed(store, [(f"p{i}", i, Mode.CHALLENGE, "2026-10-18", T0) for i in range(1, 26)])
    assert await query.top_n_qualifies(store, 1, Mode.CHALLENGE, "2026-10-19") is True
    assert await query.top_n_qualifies(store, 1, Mode.CHALLENGE, "2026-10-18") is False
