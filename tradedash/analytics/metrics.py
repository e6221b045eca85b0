"""
Financial metrics over filtered trade records.

All sums run unrounded; values are rounded to 2 decimals only when the
snapshot is built. Every empty or divide-by-zero case yields 0, with one
exception: profit factor is +inf when there are profits and no losses.

Effective quantity:
    Recorded quantities can be partial fills, so the traded quantity is
    back-solved as |realized_pnl / (exit_price - entry_price)| whenever the
    price delta exceeds QUANTITY_DERIVATION_THRESHOLD; otherwise the
    recorded quantity is used.
"""

import math
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Sequence

import numpy as np
import pandas as pd

from tradedash.analytics.filters import group_by_symbol
from tradedash.cache.models import TradeKind, TradeOutcome, TradeRecord

# Minimum |exit - entry| for back-solving the quantity from realized P&L
QUANTITY_DERIVATION_THRESHOLD = 1e-3


@dataclass(frozen=True)
class MetricsSnapshot:
    """Aggregate statistics for one filtered record set."""

    total_investment: float = 0.0
    total_recovery: float = 0.0
    net_pnl: float = 0.0
    total_trades: int = 0
    win_rate: float = 0.0  # Percent
    total_wins: int = 0
    total_losses: int = 0
    active_positions: int = 0
    average_return: float = 0.0  # Percent
    best_trade: float = 0.0  # Percent
    worst_trade: float = 0.0  # Percent
    profit_factor: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0  # Percent of peak cumulative P&L
    filtered_period: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def effective_quantity(record: TradeRecord) -> float:
    """Traded quantity, back-solved from realized P&L when possible."""
    if record.exit_price is not None and record.realized_pnl is not None:
        delta = record.exit_price - record.entry_price
        if abs(delta) > QUANTITY_DERIVATION_THRESHOLD:
            return abs(record.realized_pnl / delta)
    return record.quantity


def _round(value: float) -> float:
    if math.isnan(value):
        return 0.0
    if math.isinf(value):
        return value
    return round(value, 2)


def profit_factor(completed: Sequence[TradeRecord]) -> float:
    """Gross profit of wins over gross loss magnitude of losses."""
    gross_profit = sum(r.realized_pnl or 0.0 for r in completed if r.outcome == TradeOutcome.WIN)
    gross_loss = abs(sum(r.realized_pnl or 0.0 for r in completed if r.outcome == TradeOutcome.LOSS))
    if gross_loss > 0:
        return gross_profit / gross_loss
    return math.inf if gross_profit > 0 else 0.0


def sharpe_ratio(returns: Sequence[float]) -> float:
    """Simplified Sharpe: mean / population std of per-trade returns."""
    if len(returns) < 2:
        return 0.0
    values = np.asarray(returns, dtype=float)
    std = float(values.std())
    if std <= 0:
        return 0.0
    return float(values.mean()) / std


def max_drawdown(completed: Iterable[TradeRecord]) -> float:
    """
    Largest drop of cumulative realized P&L from its running peak, in
    percent of the peak. Steps while the peak is still <= 0 are skipped.
    """
    cumulative = 0.0
    peak = 0.0
    worst = 0.0
    for record in sorted(completed, key=lambda r: (r.effective_date, r.id)):
        cumulative += record.realized_pnl or 0.0
        peak = max(peak, cumulative)
        if peak <= 0:
            continue
        worst = max(worst, (peak - cumulative) / abs(peak) * 100)
    return worst


def compute_metrics(
    completed: Sequence[TradeRecord],
    active_count: int = 0,
    period: str = "",
) -> MetricsSnapshot:
    """
    Build a MetricsSnapshot.

    Args:
        completed: Filtered records; only COMPLETED ones are counted
        active_count: Number of open positions in the same filter
        period: Display label of the filter period
    """
    completed = [r for r in completed if r.kind == TradeKind.COMPLETED]
    if not completed:
        return MetricsSnapshot(active_positions=active_count, filtered_period=period)

    total_investment = 0.0
    total_recovery = 0.0
    for record in completed:
        quantity = effective_quantity(record)
        total_investment += record.entry_price * quantity
        total_recovery += record.exit_price * quantity

    net_pnl = sum(r.realized_pnl or 0.0 for r in completed)
    wins = sum(1 for r in completed if r.outcome == TradeOutcome.WIN)
    losses = sum(1 for r in completed if r.outcome == TradeOutcome.LOSS)
    returns = [r.profit_percentage or 0.0 for r in completed]

    return MetricsSnapshot(
        total_investment=_round(total_investment),
        total_recovery=_round(total_recovery),
        net_pnl=_round(net_pnl),
        total_trades=len(completed),
        win_rate=_round(wins / len(completed) * 100),
        total_wins=wins,
        total_losses=losses,
        active_positions=active_count,
        average_return=_round(sum(returns) / len(returns)),
        best_trade=_round(max(returns)),
        worst_trade=_round(min(returns)),
        profit_factor=_round(profit_factor(completed)),
        sharpe_ratio=_round(sharpe_ratio(returns)),
        max_drawdown=_round(max_drawdown(completed)),
        filtered_period=period,
    )


# ============================================================================
# Chart series
# ============================================================================


def daily_pnl(records: Iterable[TradeRecord]) -> pd.DataFrame:
    """
    Realized P&L per exit day with a running total.

    Returns:
        DataFrame with columns date, pnl, cumulative_pnl sorted by date
        (empty frame with those columns when there is nothing to show)
    """
    rows = [
        {"date": r.effective_date.date(), "pnl": r.realized_pnl}
        for r in records
        if r.kind == TradeKind.COMPLETED and r.realized_pnl is not None
    ]
    if not rows:
        return pd.DataFrame(columns=["date", "pnl", "cumulative_pnl"])

    df = pd.DataFrame(rows).groupby("date", as_index=False)["pnl"].sum().sort_values("date")
    df["cumulative_pnl"] = df["pnl"].cumsum()
    df[["pnl", "cumulative_pnl"]] = df[["pnl", "cumulative_pnl"]].round(2)
    return df.reset_index(drop=True)


def symbol_performance(records: Iterable[TradeRecord]) -> list[dict[str, Any]]:
    """Per-symbol totals for closed trades, best total P&L first."""
    groups = group_by_symbol(r for r in records if r.kind == TradeKind.COMPLETED)

    rows = []
    for symbol, trades in groups.items():
        returns = [t.profit_percentage or 0.0 for t in trades]
        wins = sum(1 for t in trades if t.outcome == TradeOutcome.WIN)
        rows.append(
            {
                "symbol": symbol,
                "total_trades": len(trades),
                "total_pnl": _round(sum(t.realized_pnl or 0.0 for t in trades)),
                "win_rate": _round(wins / len(trades) * 100),
                "average_return": _round(sum(returns) / len(returns)),
                "best_trade": _round(max(returns)),
                "worst_trade": _round(min(returns)),
            }
        )
    return sorted(rows, key=lambda row: (-row["total_pnl"], row["symbol"]))
