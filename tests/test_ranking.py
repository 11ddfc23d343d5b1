import pytest

from flapboard.board.errors import InvalidScore
from flapboard.board.protocol import MAX_SCORE
from flapboard.board.systems.ranking import (
    SCORE_FACTOR,
    compute_sort_key,
    query_top_n,
    remove_from_index,
    score_from_sort_key,
    upsert_into_index,
)

T0 = 1_760_000_000_000


def test_score_dominates_timestamp():
    # Lowest score at the earliest time still loses to one point more at the latest time.
    assert compute_sort_key(11, (SCORE_FACTOR - 1) * 1000) > compute_sort_key(10, 0)
    for t in (0, T0, 9_999_999_999_000):
        assert compute_sort_key(7, t) > compute_sort_key(6, t)


def test_earlier_submission_ranks_higher_on_ties():
    assert compute_sort_key(10, T0) > compute_sort_key(10, T0 + 1000)
    # Same second: equal keys.
    assert compute_sort_key(10, T0) == compute_sort_key(10, T0 + 999)


def test_score_round_trips_out_of_key():
    assert score_from_sort_key(compute_sort_key(42, T0)) == 42


@pytest.mark.parametrize("bad", ["abc", None, 1.5, True, -3, [1], "--5", "²", "٣", float("inf")])
def test_non_numeric_score_is_invalid(bad):
    with pytest.raises(InvalidScore):
        compute_sort_key(bad, T0)


def test_numeric_strings_are_accepted():
    assert compute_sort_key("12", T0) == compute_sort_key(12, T0)


def test_score_ceiling_keeps_keys_exact():
    top = compute_sort_key(MAX_SCORE, 0)
    assert top < 2**53
    assert float(top) == top
    assert float(compute_sort_key(MAX_SCORE, T0)) > float(compute_sort_key(MAX_SCORE, T0 + 1000))
    with pytest.raises(InvalidScore):
        compute_sort_key(MAX_SCORE + 1, T0)
    with pytest.raises(InvalidScore):
        compute_sort_key(10**9, T0)


def test_timestamp_out_of_range():
    with pytest.raises(InvalidScore):
        compute_sort_key(1, -5000)


@pytest.mark.asyncio
async def test_query_top_n_orders_and_is_repeatable(any_backend):
    store = await any_backend.connect()
    try:
        for i, (score, t) in enumerate([(5, T0), (9, T0), (5, T0 - 60_000), (1, T0)]):
            await upsert_into_index(store, "scores:endless", f"r{i}", compute_sort_key(score, t))

        top = await query_top_n(store, "scores:endless", 3)
        assert top == ["r1", "r2", "r0"]
        assert await query_top_n(store, "scores:endless", 3) == top
        assert await query_top_n(store, "scores:endless", 10) == ["r1", "r2", "r0", "r3"]
        assert await query_top_n(store, "scores:endless", 0) == []
        assert await query_top_n(store, "scores:endless", None, descending=False) == ["r3", "r0", "r2", "r1"]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_upsert_replaces_and_remove_drops(any_backend):
    store = await any_backend.connect()
    try:
        await upsert_into_index(store, "idx", "a", compute_sort_key(1, T0))
        await upsert_into_index(store, "idx", "b", compute_sort_key(2, T0))
        await upsert_into_index(store, "idx", "a", compute_sort_key(3, T0))
        assert await store.zcard("idx") == 2
        assert await query_top_n(store, "idx", 5) == ["a", "b"]

        await remove_from_index(store, "idx", "a")
        assert await query_top_n(store, "idx", 5) == ["b"]
    finally:
        await store.close()
