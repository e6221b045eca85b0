"""
Trade data source protocol.

Defines the read interface the synchronizer consumes, so the hosted
datastore client can be swapped for any other source (fixtures, replay).
"""

from datetime import datetime
from typing import Any, Optional, Protocol

RawRow = dict[str, Any]


class TradeDataSource(Protocol):
    """
    Read-only source of raw trade rows.

    Rows minimally contain ``id, symbol, entry_price, quantity (or
    sold_quantity/position_size), trade_date`` plus the optional
    ``exit_price, realized_pnl, profit_percentage, outcome (or win_loss),
    exit_date, created_at`` columns.
    """

    async def fetch_completed(self, since: Optional[datetime] = None) -> list[RawRow]:
        """
        Closed trades, newest first.

        Args:
            since: Hint to return only rows created/traded after this time.
                Sources may ignore it; callers filter again locally.
        """
        ...

    async def fetch_active(self, since: Optional[datetime] = None) -> list[RawRow]:
        """Open positions (trading history rows), newest first."""
        ...
