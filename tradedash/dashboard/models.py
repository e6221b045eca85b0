"""Pydantic models for dashboard API responses."""

import math
from datetime import date, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel

from tradedash.analytics.metrics import MetricsSnapshot
from tradedash.cache.models import TradeRecord
from tradedash.cache.record_store import CacheStatistics
from tradedash.service import RefreshResult


class TradeInfo(BaseModel):
    """One cached trade."""

    id: int
    symbol: str
    kind: Literal["completed", "active"]
    outcome: Literal["win", "loss", "open"]
    entry_price: float
    exit_price: Optional[float] = None
    quantity: float
    realized_pnl: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    profit_percentage: Optional[float] = None
    confidence: Optional[float] = None
    current_price: Optional[float] = None
    trade_date: datetime
    exit_date: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: TradeRecord) -> "TradeInfo":
        return cls(
            id=record.id,
            symbol=record.symbol,
            kind=record.kind.value,
            outcome=record.outcome.value,
            entry_price=record.entry_price,
            exit_price=record.exit_price,
            quantity=record.quantity,
            realized_pnl=record.realized_pnl,
            unrealized_pnl=record.unrealized_pnl,
            profit_percentage=record.profit_percentage,
            confidence=record.confidence,
            current_price=record.current_price,
            trade_date=record.trade_date,
            exit_date=record.exit_date,
        )


class MetricsInfo(BaseModel):
    """Aggregate metrics for a filter. ``profit_factor`` is None when unbounded (no losses)."""

    total_investment: float
    total_recovery: float
    net_pnl: float
    total_trades: int
    win_rate: float
    total_wins: int
    total_losses: int
    active_positions: int
    average_return: float
    best_trade: float
    worst_trade: float
    profit_factor: Optional[float]
    sharpe_ratio: float
    max_drawdown: float
    filtered_period: str

    @classmethod
    def from_snapshot(cls, snapshot: MetricsSnapshot) -> "MetricsInfo":
        values = snapshot.to_dict()
        if math.isinf(values["profit_factor"]):
            values["profit_factor"] = None
        return cls(**values)


class DailyPnLPoint(BaseModel):
    """Realized P&L for one day."""

    date: date
    pnl: float
    cumulative_pnl: float


class SymbolPerformance(BaseModel):
    """Per-symbol closed-trade totals."""

    symbol: str
    total_trades: int
    total_pnl: float
    win_rate: float
    average_return: float
    best_trade: float
    worst_trade: float


class SymbolsResponse(BaseModel):
    symbols: list[str]
    performance: list[SymbolPerformance]
    first_day: Optional[date] = None
    last_day: Optional[date] = None


class CacheStatisticsInfo(BaseModel):
    """Record store statistics."""

    total_trades: int
    completed_trades: int
    active_trades: int
    max_size: int
    occupancy: float
    cache_hit_rate: float
    hits: int
    misses: int
    last_full_update: Optional[datetime] = None
    last_incremental_update: Optional[datetime] = None
    memory_usage_kb: float
    state: Literal["cold", "hot", "warm"]
    is_valid: bool
    age_seconds: Optional[float] = None
    rejected_records: int
    version: int

    @classmethod
    def from_statistics(cls, stats: CacheStatistics) -> "CacheStatisticsInfo":
        return cls(**{**vars(stats), "state": stats.state.value})


class ErrorAnalytics(BaseModel):
    """Error and recovery counters."""

    error_counts: dict[str, int]
    recent_errors: list[dict[str, Any]]
    recovery_success: dict[str, int]
    recovery_failures: dict[str, int]
    last_error_time: Optional[datetime] = None
    notifications: list[str] = []


class RefreshResponse(BaseModel):
    """Result of a refresh request."""

    action: Literal["full", "incremental", "none"]
    state: Literal["cold", "hot", "warm"]
    added: int = 0
    rejected: int = 0
    evicted: int = 0
    dropped: bool = False
    discarded: bool = False
    strategy: Optional[str] = None
    warning: Optional[str] = None
    version: int = 0

    @classmethod
    def from_result(cls, result: RefreshResult, version: int) -> "RefreshResponse":
        sync = result.sync
        report = sync.report if sync else None
        return cls(
            action=result.action.value,
            state=result.state.value,
            added=report.added if report else 0,
            rejected=report.rejected if report else 0,
            evicted=report.evicted if report else 0,
            dropped=sync.dropped if sync else False,
            discarded=sync.discarded if sync else False,
            strategy=result.strategy.value if result.strategy else None,
            warning=result.warning.user_message if result.warning else None,
            version=version,
        )
