"""
Trade record model shared by the cache, filters and metrics.

Raw rows from the datastore are loosely typed (numbers as strings, legacy
column names, optional exit fields). ``TradeRecord.from_row`` normalizes
them and enforces the record invariants; anything that cannot be
normalized raises DataValidationError.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from tradedash.errors.classifier import DataValidationError


class TradeKind(str, Enum):
    """Record kind: closed trade or open position."""

    COMPLETED = "completed"
    ACTIVE = "active"


class TradeOutcome(str, Enum):
    """Trade result tag."""

    WIN = "win"
    LOSS = "loss"
    OPEN = "open"


# Column aliases used by older datastore schemas, first match wins
_QUANTITY_KEYS = ("quantity", "sold_quantity", "position_size")
_OUTCOME_KEYS = ("outcome", "win_loss")
_CONFIDENCE_KEYS = ("confidence", "ai_confidence")
_UNREALIZED_KEYS = ("unrealized_pnl", "unrealized_pl")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO timestamp or date into an aware UTC datetime.

    Naive values are assumed to be UTC. Returns None for empty input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise DataValidationError(f"Invalid timestamp: {value!r}")
    else:
        raise DataValidationError(f"Invalid timestamp type: {type(value).__name__}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _number(value: Any, name: str, required: bool = False) -> Optional[float]:
    if value is None or value == "":
        if required:
            raise DataValidationError(f"Missing required field: {name}")
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise DataValidationError(f"Invalid number for {name}: {value!r}")
    if not math.isfinite(number):
        raise DataValidationError(f"Non-finite number for {name}: {value!r}")
    return number


def _first(row: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = row.get(key)
        if value is not None and value != "":
            return value
    return None


@dataclass(frozen=True)
class TradeRecord:
    """
    Immutable trade record.

    Invariants (checked on construction):
    - quantity > 0 and entry_price > 0
    - exit_price/exit_date present if and only if kind is COMPLETED
    - outcome is OPEN if and only if kind is ACTIVE
    """

    id: int
    symbol: str
    entry_price: float
    quantity: float
    kind: TradeKind
    outcome: TradeOutcome
    trade_date: datetime
    exit_price: Optional[float] = None
    exit_date: Optional[datetime] = None
    realized_pnl: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    profit_percentage: Optional[float] = None
    confidence: Optional[float] = None
    current_price: Optional[float] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.symbol:
            raise DataValidationError(f"Trade {self.id}: empty symbol")
        if self.quantity <= 0:
            raise DataValidationError(f"Trade {self.id}: quantity must be positive, got {self.quantity}")
        if self.entry_price <= 0:
            raise DataValidationError(f"Trade {self.id}: entry price must be positive, got {self.entry_price}")

        has_exit = self.exit_price is not None and self.exit_date is not None
        if self.kind == TradeKind.COMPLETED and not has_exit:
            raise DataValidationError(f"Trade {self.id}: completed trade without exit price/date")
        if self.kind == TradeKind.ACTIVE and (self.exit_price is not None or self.exit_date is not None):
            raise DataValidationError(f"Trade {self.id}: active trade with exit fields")
        if (self.kind == TradeKind.ACTIVE) != (self.outcome == TradeOutcome.OPEN):
            raise DataValidationError(f"Trade {self.id}: outcome {self.outcome.value} invalid for {self.kind.value}")

    @property
    def day(self) -> date:
        """Calendar day (UTC) used by the day index."""
        return self.trade_date.date()

    @property
    def effective_date(self) -> datetime:
        """Exit time for closed trades, entry time otherwise."""
        return self.exit_date or self.trade_date

    @property
    def pnl(self) -> float:
        """Realized P&L if closed, unrealized otherwise (0 when unknown)."""
        value = self.realized_pnl if self.kind == TradeKind.COMPLETED else self.unrealized_pnl
        return value or 0.0

    @classmethod
    def from_row(cls, row: Mapping[str, Any], kind: Optional[TradeKind] = None) -> "TradeRecord":
        """
        Build a record from a raw datastore row.

        Args:
            row: Raw row; must contain id, symbol, entry_price, a quantity
                column and trade_date. ``kind`` may come from the row.
            kind: Record kind, overriding ``row["kind"]``

        Raises:
            DataValidationError: If the row cannot be normalized
        """
        if not isinstance(row, Mapping):
            raise DataValidationError(f"Row must be a mapping, got {type(row).__name__}")

        try:
            kind = TradeKind(kind or row.get("kind"))
        except ValueError:
            raise DataValidationError(f"Unknown trade kind: {row.get('kind')!r}")

        raw_id = row.get("id")
        try:
            trade_id = int(raw_id)
        except (TypeError, ValueError):
            raise DataValidationError(f"Invalid trade id: {raw_id!r}")

        trade_date = parse_timestamp(row.get("trade_date"))
        if trade_date is None:
            raise DataValidationError(f"Trade {trade_id}: missing trade_date")

        realized_pnl = _number(row.get("realized_pnl"), "realized_pnl")
        confidence = _number(_first(row, _CONFIDENCE_KEYS), "confidence")

        if kind == TradeKind.COMPLETED:
            exit_price = _number(row.get("exit_price"), "exit_price", required=True)
            exit_date = parse_timestamp(row.get("exit_date")) or trade_date
            outcome = _completed_outcome(_first(row, _OUTCOME_KEYS), realized_pnl, trade_id)
            unrealized_pnl = None
        else:
            exit_price = None
            exit_date = None
            outcome = TradeOutcome.OPEN
            unrealized_pnl = _number(_first(row, _UNREALIZED_KEYS), "unrealized_pnl")
            if confidence is not None:
                confidence = min(max(confidence, 0.0), 100.0)

        return cls(
            id=trade_id,
            symbol=str(row.get("symbol") or "").strip(),
            entry_price=_number(row.get("entry_price"), "entry_price", required=True),
            quantity=_number(_first(row, _QUANTITY_KEYS), "quantity", required=True),
            kind=kind,
            outcome=outcome,
            trade_date=trade_date,
            exit_price=exit_price,
            exit_date=exit_date,
            realized_pnl=realized_pnl,
            unrealized_pnl=unrealized_pnl,
            profit_percentage=_number(row.get("profit_percentage"), "profit_percentage"),
            confidence=confidence,
            current_price=_number(row.get("current_price"), "current_price"),
            created_at=parse_timestamp(row.get("created_at")),
        )

    def to_row(self) -> dict[str, Any]:
        """JSON-serializable row that ``from_row`` reads back unchanged."""
        return {
            "id": self.id,
            "symbol": self.symbol,
            "entry_price": self.entry_price,
            "quantity": self.quantity,
            "kind": self.kind.value,
            "outcome": self.outcome.value,
            "trade_date": self.trade_date.isoformat(),
            "exit_price": self.exit_price,
            "exit_date": self.exit_date.isoformat() if self.exit_date else None,
            "realized_pnl": self.realized_pnl,
            "unrealized_pnl": self.unrealized_pnl,
            "profit_percentage": self.profit_percentage,
            "confidence": self.confidence,
            "current_price": self.current_price,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


def _completed_outcome(raw: Any, realized_pnl: Optional[float], trade_id: int) -> TradeOutcome:
    if raw is not None:
        try:
            outcome = TradeOutcome(str(raw).strip().lower())
        except ValueError:
            raise DataValidationError(f"Trade {trade_id}: unknown outcome {raw!r}")
        if outcome == TradeOutcome.OPEN:
            raise DataValidationError(f"Trade {trade_id}: completed trade tagged open")
        return outcome
    # Untagged rows: derive from the sign of realized P&L
    return TradeOutcome.WIN if (realized_pnl or 0.0) > 0 else TradeOutcome.LOSS


@dataclass
class CacheEntry:
    """A stored record plus access metadata (eviction scoring only)."""

    record: TradeRecord
    last_accessed: datetime
    access_count: int = 0

    def touch(self, now: datetime) -> None:
        self.last_accessed = now
        self.access_count += 1
