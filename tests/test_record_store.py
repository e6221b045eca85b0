"""
Tests for the indexed record store.

Tests cover:
- Bulk load replace semantics, duplicates and malformed rows
- Cooperative yielding between batches
- Incremental merge (first-seen wins)
- Index-backed lookups and access metadata
- Weighted eviction and index consistency
- COLD/HOT/WARM validity transitions
- Statistics and snapshot export/restore
"""

from datetime import date, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from freezegun import freeze_time

from tradedash.cache.models import TradeKind
from tradedash.cache.record_store import CacheState, RecordStore, StoreConfig

from conftest import BASE_TIME


def _assert_indexes_consistent(store: RecordStore) -> None:
    """Every live id sits in exactly one bucket per index, and nothing else does."""
    live = set(store._entries)
    for index in (store._by_symbol, store._by_day, store._by_kind):
        seen = [trade_id for bucket in index.values() for trade_id in bucket]
        assert sorted(seen) == sorted(live)
    for trade_id, entry in store._entries.items():
        assert trade_id in store._by_symbol[entry.record.symbol]
        assert trade_id in store._by_day[entry.record.day]
        assert trade_id in store._by_kind[entry.record.kind]


def _rows(completed_row, ids, **kwargs):
    return [{**completed_row(i, **kwargs), "kind": "completed"} for i in ids]


# ============================================================================
# Bulk load
# ============================================================================

@pytest.mark.asyncio
async def test_bulk_load_round_trip_partitions_by_kind(store, completed_row, active_row):
    rows = _rows(completed_row, [1, 2, 3]) + [{**active_row(10), "kind": "active"}]

    report = await store.bulk_load(rows)

    assert report.added == 4
    grouped = store.all_records()
    assert [r.id for r in grouped[TradeKind.COMPLETED]] == [1, 2, 3]
    assert [r.id for r in grouped[TradeKind.ACTIVE]] == [10]
    _assert_indexes_consistent(store)


@pytest.mark.asyncio
async def test_bulk_load_duplicate_ids_keep_first(store, completed_row):
    rows = [
        {**completed_row(1, symbol="AAPL"), "kind": "completed"},
        {**completed_row(1, symbol="TSLA"), "kind": "completed"},
    ]

    report = await store.bulk_load(rows)

    assert report.added == 1
    assert report.duplicates == 1
    assert store.get(1).symbol == "AAPL"


@pytest.mark.asyncio
async def test_bulk_load_skips_malformed_rows(store, completed_row):
    rows = _rows(completed_row, [1, 2]) + [
        {"id": 3, "kind": "completed", "symbol": "AAPL"},  # missing prices
        "not a row",
    ]

    report = await store.bulk_load(rows)

    assert report.added == 2
    assert report.rejected == 2
    assert store.rejected_records == 2
    assert len(store) == 2


@pytest.mark.asyncio
async def test_bulk_load_replaces_previous_contents(store, completed_row):
    await store.bulk_load(_rows(completed_row, [1, 2]))
    await store.bulk_load(_rows(completed_row, [3]))

    assert 1 not in store
    assert [r.id for r in store.lookup_by_kind(TradeKind.COMPLETED)] == [3]
    _assert_indexes_consistent(store)


@pytest.mark.asyncio
async def test_bulk_load_yields_between_batches(store, completed_row):
    # batch_size is 10 in the fixture
    with patch("tradedash.cache.record_store.asyncio.sleep", new=AsyncMock()) as mock_sleep:
        await store.bulk_load(_rows(completed_row, range(1, 26)))

    assert mock_sleep.await_count == 2
    mock_sleep.assert_awaited_with(0)


@pytest.mark.asyncio
async def test_bulk_load_propagates_source_failure(store):
    def broken_rows():
        yield {"id": 1}
        raise RuntimeError("stream broke")

    with pytest.raises(RuntimeError):
        await store.bulk_load(broken_rows())


@pytest.mark.asyncio
async def test_bulk_load_bumps_version(store, completed_row):
    before = store.version
    await store.bulk_load(_rows(completed_row, [1]))
    assert store.version > before


# ============================================================================
# Incremental merge
# ============================================================================

@pytest.mark.asyncio
async def test_merge_never_overwrites_existing_id(store, completed_row):
    await store.bulk_load(_rows(completed_row, [1], symbol="AAPL"))

    report = await store.merge_incremental(_rows(completed_row, [1], symbol="TSLA"))

    assert report.added == 0
    assert report.duplicates == 1
    assert store.get(1).symbol == "AAPL"
    assert store.lookup_by_symbol("TSLA") == []


@pytest.mark.asyncio
async def test_merging_same_record_twice_keeps_size(store, completed_row):
    await store.bulk_load(_rows(completed_row, [1, 2]))
    new_rows = _rows(completed_row, [3])

    await store.merge_incremental(new_rows)
    await store.merge_incremental(new_rows)

    assert len(store) == 3
    _assert_indexes_consistent(store)


@pytest.mark.asyncio
async def test_merge_advances_incremental_timestamp_with_nothing_new(store, completed_row):
    with freeze_time(BASE_TIME, real_asyncio=True) as frozen:
        await store.bulk_load(_rows(completed_row, [1]))
        frozen.tick(timedelta(minutes=2))

        await store.merge_incremental([])

        assert store.last_incremental_update == BASE_TIME + timedelta(minutes=2)
        assert store.last_full_update == BASE_TIME


@pytest.mark.asyncio
async def test_merge_updates_indexes_incrementally(store, completed_row):
    later = BASE_TIME + timedelta(days=1)
    await store.bulk_load(_rows(completed_row, [1]))

    await store.merge_incremental(_rows(completed_row, [2], symbol="NVDA", when=later))

    assert [r.id for r in store.lookup_by_symbol("NVDA")] == [2]
    assert [r.id for r in store.lookup_by_day(later.date())] == [2]
    _assert_indexes_consistent(store)


def _active(active_row, trade_id, **kwargs):
    return {**active_row(trade_id, **kwargs), "kind": "active"}


@pytest.mark.asyncio
async def test_merge_newer_active_replaces_held_position(store, completed_row, active_row):
    await store.bulk_load(_rows(completed_row, [1], symbol="MSFT") + [_active(active_row, 10)])

    report = await store.merge_incremental([_active(active_row, 11, when=BASE_TIME + timedelta(hours=1))])

    assert report.added == 1
    assert report.superseded == 1
    assert [r.id for r in store.lookup_by_kind(TradeKind.ACTIVE)] == [11]
    assert sorted(r.id for r in store.lookup_by_symbol("MSFT")) == [1, 11]  # closed trades untouched
    _assert_indexes_consistent(store)


@pytest.mark.asyncio
async def test_merge_older_active_is_skipped(store, active_row):
    await store.bulk_load([_active(active_row, 11, when=BASE_TIME + timedelta(hours=1))])

    report = await store.merge_incremental([_active(active_row, 10)])

    assert report.added == 0
    assert report.duplicates == 1
    assert [r.id for r in store.lookup_by_kind(TradeKind.ACTIVE)] == [11]


@pytest.mark.asyncio
async def test_merge_as_of_sets_watermark(store, completed_row):
    with freeze_time(BASE_TIME, real_asyncio=True) as frozen:
        await store.bulk_load(_rows(completed_row, [1]), as_of=BASE_TIME - timedelta(seconds=3))
        assert store.last_incremental_update == BASE_TIME - timedelta(seconds=3)

        frozen.tick(timedelta(minutes=2))
        await store.merge_incremental([], as_of=BASE_TIME + timedelta(minutes=1))

        assert store.last_incremental_update == BASE_TIME + timedelta(minutes=1)
        assert store.state == CacheState.HOT


# ============================================================================
# Lookups
# ============================================================================

@pytest.mark.asyncio
async def test_lookups_update_access_metadata_and_hit_rate(store, completed_row):
    await store.bulk_load(_rows(completed_row, [1, 2]))

    store.lookup_by_symbol("AAPL")
    store.lookup_by_symbol("AAPL")
    store.lookup_by_symbol("NOPE")

    assert store._entries[1].access_count == 2
    stats = store.statistics()
    assert stats.hits == 2
    assert stats.misses == 1
    assert stats.cache_hit_rate == pytest.approx(66.67)


@pytest.mark.asyncio
async def test_lookup_by_date_range(store, completed_row):
    days = [BASE_TIME + timedelta(days=n) for n in range(5)]
    rows = [{**completed_row(i + 1, when=when), "kind": "completed"} for i, when in enumerate(days)]
    await store.bulk_load(rows)

    found = store.lookup_by_date_range(days[1].date(), days[3].date())

    assert [r.id for r in found] == [2, 3, 4]
    assert store.data_date_range() == (days[0].date(), days[4].date())


@pytest.mark.asyncio
async def test_unique_symbols_sorted(store, completed_row):
    rows = [
        {**completed_row(1, symbol="TSLA"), "kind": "completed"},
        {**completed_row(2, symbol="AAPL"), "kind": "completed"},
        {**completed_row(3, symbol="TSLA"), "kind": "completed"},
    ]
    await store.bulk_load(rows)
    assert store.unique_symbols() == ["AAPL", "TSLA"]


def test_empty_store_lookups(store):
    assert store.lookup_by_kind(TradeKind.COMPLETED) == []
    assert store.lookup_by_day(date(2024, 1, 1)) == []
    assert store.data_date_range() is None


# ============================================================================
# Eviction
# ============================================================================

@pytest.mark.asyncio
async def test_eviction_not_triggered_at_threshold(store, completed_row):
    await store.bulk_load(_rows(completed_row, range(1, 80)))

    report = await store.merge_incremental(_rows(completed_row, [80]))

    assert report.evicted == 0
    assert len(store) == 80


@pytest.mark.asyncio
async def test_eviction_removes_lowest_scored_fifth(store, completed_row):
    with freeze_time(BASE_TIME, real_asyncio=True):
        await store.bulk_load(_rows(completed_row, range(1, 81)))
        # Make ids 1-20 the most frequently accessed
        for trade_id in range(1, 21):
            store._collect({trade_id})

        report = await store.merge_incremental(_rows(completed_row, [81]))

    assert report.evicted == 16  # floor(81 * 0.2)
    assert len(store) == 65
    for trade_id in range(1, 21):
        assert trade_id in store
    _assert_indexes_consistent(store)


@pytest.mark.asyncio
async def test_eviction_drops_emptied_buckets(completed_row):
    store = RecordStore(StoreConfig(max_size=10, cleanup_threshold=0.5, eviction_fraction=0.5))
    rows = [{**completed_row(i, symbol=f"S{i}"), "kind": "completed"} for i in range(1, 7)]
    await store.bulk_load(rows)

    removed = store.evict()

    assert removed == 3
    assert len(store.unique_symbols()) == 3
    _assert_indexes_consistent(store)


def test_evict_on_empty_store_is_noop(store):
    assert store.evict() == 0


# ============================================================================
# Validity state
# ============================================================================

@pytest.mark.asyncio
async def test_state_transitions(store, completed_row):
    assert store.state == CacheState.COLD

    with freeze_time(BASE_TIME, real_asyncio=True) as frozen:
        await store.bulk_load(_rows(completed_row, [1]))
        assert store.state == CacheState.HOT
        assert store.is_valid

        frozen.tick(timedelta(minutes=5))
        assert store.state == CacheState.WARM
        assert len(store) == 1  # data kept for fallback

        await store.merge_incremental([])
        assert store.state == CacheState.HOT

    store.clear()
    assert store.state == CacheState.COLD
    assert len(store) == 0


@pytest.mark.asyncio
async def test_invalidate_forces_warm(store, completed_row):
    await store.bulk_load(_rows(completed_row, [1]))

    store.invalidate()

    assert store.state == CacheState.WARM
    assert store.get(1) is not None


def test_invalidate_cold_store_stays_cold(store):
    store.invalidate()
    assert store.state == CacheState.COLD


# ============================================================================
# Statistics and snapshots
# ============================================================================

@pytest.mark.asyncio
async def test_statistics(store, completed_row, active_row):
    with freeze_time(BASE_TIME, real_asyncio=True) as frozen:
        await store.bulk_load(_rows(completed_row, range(1, 10)) + [{**active_row(50), "kind": "active"}])
        frozen.tick(timedelta(seconds=30))

        stats = store.statistics()

    assert stats.total_trades == 10
    assert stats.completed_trades == 9
    assert stats.active_trades == 1
    assert stats.occupancy == 0.1
    assert stats.memory_usage_kb == pytest.approx(4.88)
    assert stats.age_seconds == pytest.approx(30.0)
    assert stats.state == CacheState.HOT
    assert stats.cache_hit_rate == 0.0


@pytest.mark.asyncio
async def test_snapshot_export_restore(store, completed_row, active_row):
    await store.bulk_load(_rows(completed_row, [1, 2]) + [{**active_row(3), "kind": "active"}])
    snapshot = store.export_snapshot()

    restored = RecordStore(store.config)
    report = await restored.restore_snapshot(snapshot)

    assert report.added == 3
    assert restored.get(1) == store.get(1)
    assert restored.get(3) == store.get(3)
    assert restored.last_full_update == store.last_full_update
    assert restored.state == CacheState.HOT


@pytest.mark.asyncio
async def test_restore_invalid_snapshot_raises(store):
    with pytest.raises(KeyError):
        await store.restore_snapshot({"records": []})
