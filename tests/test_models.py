"""Tests for trade record parsing and invariants."""

from datetime import datetime, timezone

import pytest

from tradedash.cache.models import (
    CacheEntry,
    TradeKind,
    TradeOutcome,
    TradeRecord,
    parse_timestamp,
)
from tradedash.errors.classifier import DataValidationError

from conftest import BASE_TIME


# ============================================================================
# Timestamps
# ============================================================================

class TestParseTimestamp:
    def test_zulu_suffix(self):
        assert parse_timestamp("2024-03-15T12:00:00Z") == BASE_TIME

    def test_naive_is_utc(self):
        assert parse_timestamp("2024-03-15T12:00:00") == BASE_TIME

    def test_offset_converted_to_utc(self):
        assert parse_timestamp("2024-03-15T14:00:00+02:00") == BASE_TIME

    def test_date_only(self):
        assert parse_timestamp("2024-03-15") == datetime(2024, 3, 15, tzinfo=timezone.utc)

    def test_empty_is_none(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None

    def test_garbage_raises(self):
        with pytest.raises(DataValidationError):
            parse_timestamp("yesterday")

    def test_wrong_type_raises(self):
        with pytest.raises(DataValidationError):
            parse_timestamp(12345)


# ============================================================================
# from_row
# ============================================================================

class TestFromRow:
    def test_completed_row_with_legacy_columns(self, completed_row):
        record = TradeRecord.from_row(completed_row(1, pnl=10.0), kind=TradeKind.COMPLETED)

        assert record.kind == TradeKind.COMPLETED
        assert record.quantity == 1.0  # from sold_quantity
        assert record.outcome == TradeOutcome.WIN  # from win_loss
        assert record.exit_price == 110.0
        assert record.exit_date == BASE_TIME

    def test_kind_read_from_row(self, completed_row):
        record = TradeRecord.from_row({**completed_row(1), "kind": "completed"})
        assert record.kind == TradeKind.COMPLETED

    def test_unknown_kind_rejected(self, completed_row):
        with pytest.raises(DataValidationError):
            TradeRecord.from_row({**completed_row(1), "kind": "pending"})

    def test_exit_date_defaults_to_trade_date(self, completed_row):
        row = completed_row(1)
        del row["exit_date"]
        record = TradeRecord.from_row(row, kind=TradeKind.COMPLETED)
        assert record.exit_date == record.trade_date

    def test_outcome_derived_from_pnl_when_missing(self, completed_row):
        row = completed_row(1, pnl=-3.0)
        del row["win_loss"]
        assert TradeRecord.from_row(row, kind=TradeKind.COMPLETED).outcome == TradeOutcome.LOSS

    def test_completed_tagged_open_rejected(self, completed_row):
        with pytest.raises(DataValidationError):
            TradeRecord.from_row(completed_row(1, win_loss="open"), kind=TradeKind.COMPLETED)

    def test_completed_without_exit_price_rejected(self, completed_row):
        with pytest.raises(DataValidationError):
            TradeRecord.from_row(completed_row(1, exit_price=None), kind=TradeKind.COMPLETED)

    def test_active_row(self, active_row):
        record = TradeRecord.from_row(active_row(7), kind=TradeKind.ACTIVE)

        assert record.outcome == TradeOutcome.OPEN
        assert record.exit_price is None
        assert record.exit_date is None
        assert record.quantity == 2.0  # from position_size
        assert record.unrealized_pnl == 4.0  # from unrealized_pl
        assert record.confidence == 72.0

    def test_active_confidence_clamped(self, active_row):
        record = TradeRecord.from_row(active_row(7, ai_confidence=140), kind=TradeKind.ACTIVE)
        assert record.confidence == 100.0

    def test_numeric_strings_accepted(self, completed_row):
        record = TradeRecord.from_row(
            completed_row(1, entry_price="100.5", realized_pnl="2.5"), kind=TradeKind.COMPLETED
        )
        assert record.entry_price == 100.5
        assert record.realized_pnl == 2.5

    @pytest.mark.parametrize("field,value", [
        ("sold_quantity", 0),
        ("sold_quantity", -1),
        ("entry_price", 0),
        ("entry_price", "abc"),
        ("realized_pnl", float("nan")),
        ("id", "x1"),
        ("trade_date", None),
        ("symbol", ""),
    ])
    def test_invalid_fields_rejected(self, completed_row, field, value):
        with pytest.raises(DataValidationError):
            TradeRecord.from_row(completed_row(1, **{field: value}), kind=TradeKind.COMPLETED)

    def test_non_mapping_rejected(self):
        with pytest.raises(DataValidationError):
            TradeRecord.from_row(["not", "a", "row"], kind=TradeKind.COMPLETED)


# ============================================================================
# Record invariants and helpers
# ============================================================================

class TestRecordInvariants:
    def test_active_with_exit_fields_rejected(self):
        with pytest.raises(DataValidationError):
            TradeRecord(
                id=1,
                symbol="AAPL",
                entry_price=10.0,
                quantity=1.0,
                kind=TradeKind.ACTIVE,
                outcome=TradeOutcome.OPEN,
                trade_date=BASE_TIME,
                exit_price=11.0,
            )

    def test_active_with_win_outcome_rejected(self):
        with pytest.raises(DataValidationError):
            TradeRecord(
                id=1,
                symbol="AAPL",
                entry_price=10.0,
                quantity=1.0,
                kind=TradeKind.ACTIVE,
                outcome=TradeOutcome.WIN,
                trade_date=BASE_TIME,
            )

    def test_to_row_reads_back_equal(self, make_record):
        record = make_record(5, kind=TradeKind.COMPLETED, pnl=-2.0, exit=98.0)
        assert TradeRecord.from_row(record.to_row()) == record

    def test_pnl_property(self, make_record):
        assert make_record(1, pnl=7.0).pnl == 7.0
        assert make_record(2, kind=TradeKind.ACTIVE).pnl == 4.0

    def test_cache_entry_touch(self, make_record):
        entry = CacheEntry(record=make_record(1), last_accessed=BASE_TIME)
        later = datetime(2024, 3, 16, tzinfo=timezone.utc)

        entry.touch(later)

        assert entry.access_count == 1
        assert entry.last_accessed == later
