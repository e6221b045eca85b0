"""
Pytest configuration and shared fixtures for tradedash tests.
"""

import sys
from pathlib import Path

# Add project root to path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from unittest.mock import MagicMock

import pytest

# Silence structlog during tests
import structlog

from tradedash.cache.models import TradeKind, TradeRecord
from tradedash.cache.record_store import RecordStore, StoreConfig


def _mock_logger_factory(*args):
    """Factory that creates mock loggers for testing."""
    mock = MagicMock()
    # Configure mock methods to return the mock itself (for chaining)
    mock.bind.return_value = mock
    return mock


structlog.configure(
    processors=[],
    logger_factory=_mock_logger_factory,
)


BASE_TIME = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Row and record factories
# ============================================================================

@pytest.fixture
def completed_row():
    """Raw completed_trades row as returned by the datastore."""
    def _create(
        trade_id: int,
        symbol: str = "AAPL",
        entry: float = 100.0,
        exit: float = 110.0,
        pnl: Optional[float] = 10.0,
        quantity: float = 1.0,
        when: datetime = BASE_TIME,
        **extra,
    ) -> dict:
        row = {
            "id": trade_id,
            "symbol": symbol,
            "entry_price": entry,
            "exit_price": exit,
            "sold_quantity": quantity,
            "realized_pnl": pnl,
            "profit_percentage": (exit - entry) / entry * 100,
            "win_loss": "win" if (pnl or 0) > 0 else "loss",
            "trade_date": when.isoformat(),
            "exit_date": when.isoformat(),
            "created_at": when.isoformat(),
        }
        row.update(extra)
        return row
    return _create


@pytest.fixture
def active_row():
    """Raw trading_history row (open position)."""
    def _create(
        trade_id: int,
        symbol: str = "MSFT",
        entry: float = 300.0,
        size: float = 2.0,
        when: datetime = BASE_TIME,
        **extra,
    ) -> dict:
        row = {
            "id": trade_id,
            "symbol": symbol,
            "entry_price": entry,
            "position_size": size,
            "unrealized_pl": 4.0,
            "ai_confidence": 72,
            "trade_date": when.isoformat(),
            "created_at": when.isoformat(),
        }
        row.update(extra)
        return row
    return _create


@pytest.fixture
def make_record(completed_row, active_row):
    """Build validated TradeRecords from row factory arguments."""
    def _create(trade_id: int, kind: TradeKind = TradeKind.COMPLETED, **kwargs) -> TradeRecord:
        factory = completed_row if kind == TradeKind.COMPLETED else active_row
        return TradeRecord.from_row(factory(trade_id, **kwargs), kind=kind)
    return _create


@pytest.fixture
def store():
    """Empty store with a small capacity."""
    return RecordStore(StoreConfig(max_size=100, batch_size=10))


class FakeTradeSource:
    """In-memory TradeDataSource with scriptable failures."""

    def __init__(self, completed=None, active=None):
        self.completed = list(completed or [])
        self.active = list(active or [])
        self.errors: list[Exception] = []
        self.calls: list[tuple[str, Optional[datetime]]] = []
        # One-shot hook run after the completed rows are read, before they are returned
        self.during_fetch: Optional[Callable[[], None]] = None

    def _maybe_fail(self) -> None:
        if self.errors:
            raise self.errors.pop(0)

    async def fetch_completed(self, since=None):
        self.calls.append(("completed", since))
        self._maybe_fail()
        rows = list(self.completed)
        if self.during_fetch is not None:
            hook, self.during_fetch = self.during_fetch, None
            hook()
        return rows

    async def fetch_active(self, since=None):
        self.calls.append(("active", since))
        return list(self.active)


@pytest.fixture
def fake_source():
    return FakeTradeSource()


def minutes(n: float) -> timedelta:
    return timedelta(minutes=n)
