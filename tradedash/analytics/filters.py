"""
Filter engine over cached trade records.

A FilterSpec resolves to a concrete [start, end] day interval (UTC,
both ends inclusive) and up to three predicates applied in fixed order:

1. date: exit date for closed trades, trade date otherwise
2. symbol: case-insensitive equality
3. outcome: exact equality

Filtering is synchronous and read-only. A custom range with start > end
yields an empty result rather than an error.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, Optional

from tradedash.cache.models import TradeOutcome, TradeRecord
from tradedash.errors.classifier import DataValidationError


class Period(str, Enum):
    """Period selector."""

    TODAY = "today"
    DAYS_7 = "7days"
    DAYS_30 = "30days"
    CUSTOM = "custom"


PERIOD_LABELS = {
    Period.TODAY: "Today",
    Period.DAYS_7: "Last 7 days",
    Period.DAYS_30: "Last 30 days",
    Period.CUSTOM: "Custom range",
}

_ROLLING_DAYS = {Period.DAYS_7: 7, Period.DAYS_30: 30}


@dataclass(frozen=True)
class DateRange:
    """Inclusive day interval."""

    start: date
    end: date

    @property
    def is_empty(self) -> bool:
        return self.start > self.end

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


@dataclass(frozen=True)
class FilterSpec:
    """
    Which records to include.

    ``date_range`` is required when ``period`` is CUSTOM and ignored
    otherwise. ``symbol`` and ``outcome`` are optional; None matches all.
    """

    period: Period = Period.DAYS_30
    date_range: Optional[DateRange] = None
    symbol: Optional[str] = None
    outcome: Optional[TradeOutcome] = None

    def __post_init__(self) -> None:
        if self.period == Period.CUSTOM and self.date_range is None:
            raise DataValidationError("Custom period requires a date range")


def _today(now: Optional[datetime]) -> datetime:
    return (now or datetime.now(timezone.utc)).astimezone(timezone.utc)


def resolve_period(spec: FilterSpec, now: Optional[datetime] = None) -> DateRange:
    """
    Concrete day interval for ``spec``.

    today = the current UTC day; 7/30 days = the window ending today,
    starting on the day N*24h ago; custom = the caller's range as given.
    """
    if spec.period == Period.CUSTOM:
        return spec.date_range

    current = _today(now)
    days = _ROLLING_DAYS.get(spec.period)
    if days is None:
        return DateRange(current.date(), current.date())
    return DateRange((current - timedelta(days=days)).date(), current.date())


def period_label(spec: FilterSpec) -> str:
    """Display label for the spec's period."""
    if spec.period == Period.CUSTOM and spec.date_range is not None:
        return f"{spec.date_range.start.isoformat()} ~ {spec.date_range.end.isoformat()}"
    return PERIOD_LABELS[spec.period]


def validate_filter_spec(spec: FilterSpec) -> bool:
    """True when the spec can match anything (custom ranges must be ordered)."""
    if spec.period == Period.CUSTOM:
        return spec.date_range is not None and not spec.date_range.is_empty
    return True


def apply_filter(
    records: Iterable[TradeRecord],
    spec: FilterSpec,
    now: Optional[datetime] = None,
) -> list[TradeRecord]:
    """
    Records matching every active predicate of ``spec``, in input order.

    Args:
        records: Candidate records
        spec: Filter specification
        now: Reference time for rolling periods (defaults to now, UTC)
    """
    window = resolve_period(spec, now)
    if window.is_empty:
        return []

    symbol = spec.symbol.casefold() if spec.symbol else None

    matched = []
    for record in records:
        if not window.contains(record.effective_date.date()):
            continue
        if symbol is not None and record.symbol.casefold() != symbol:
            continue
        if spec.outcome is not None and record.outcome != spec.outcome:
            continue
        matched.append(record)
    return matched


# ============================================================================
# Ordering and grouping helpers
# ============================================================================


def sort_by_date(records: Iterable[TradeRecord], ascending: bool = False) -> list[TradeRecord]:
    """Sort by effective date, newest first unless ``ascending``; ties by id."""
    return sorted(records, key=lambda r: (r.effective_date, r.id), reverse=not ascending)


def sort_by_pnl(records: Iterable[TradeRecord], ascending: bool = False) -> list[TradeRecord]:
    """Sort by realized (or unrealized) P&L, largest first unless ``ascending``."""
    return sorted(records, key=lambda r: (r.pnl, r.id), reverse=not ascending)


def group_by_symbol(records: Iterable[TradeRecord]) -> dict[str, list[TradeRecord]]:
    groups: dict[str, list[TradeRecord]] = {}
    for record in records:
        groups.setdefault(record.symbol, []).append(record)
    return groups


def unique_symbols(records: Iterable[TradeRecord]) -> list[str]:
    return sorted({record.symbol for record in records})
