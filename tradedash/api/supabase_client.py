"""
Async client for the hosted PostgREST (Supabase) trade datastore.

Implements the TradeDataSource protocol over two tables:
- completed_trades: closed trades
- trading_history: open positions

Failures are raised as-is (httpx exceptions); classification and retry
belong to the recovery orchestrator, not to this client.
"""

from datetime import datetime
from typing import Any, Optional

import httpx
import structlog

from tradedash.api.data_source import RawRow
from tradedash.errors.classifier import DataValidationError

logger = structlog.get_logger(__name__)

COMPLETED_TABLE = "completed_trades"
ACTIVE_TABLE = "trading_history"


class SupabaseTradeSource:
    """
    PostgREST trade source.

    Example:
        async with SupabaseTradeSource(url, key) as source:
            rows = await source.fetch_completed()
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 15.0,
        user_id: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Project URL (e.g. https://xyz.supabase.co)
            api_key: Anonymous API key
            timeout: Request timeout in seconds
            user_id: Restrict rows to one user when set
            client: Pre-built httpx client (tests)
        """
        if not base_url or not api_key:
            raise ValueError("base_url and api_key are required")

        self.user_id = user_id
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/rest/v1",
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/json",
            },
            timeout=timeout,
        )
        logger.info("supabase_source_initialized", base_url=base_url)

    async def __aenter__(self) -> "SupabaseTradeSource":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _params(self, since: Optional[datetime]) -> dict[str, str]:
        params = {"select": "*", "order": "trade_date.desc"}
        if self.user_id:
            params["user_id"] = f"eq.{self.user_id}"
        if since is not None:
            stamp = since.isoformat()
            params["or"] = f"(created_at.gt.{stamp},trade_date.gt.{stamp})"
        return params

    async def _select(self, table: str, since: Optional[datetime]) -> list[RawRow]:
        response = await self._client.get(f"/{table}", params=self._params(since))
        response.raise_for_status()

        rows = response.json()
        if not isinstance(rows, list):
            raise DataValidationError(f"Invalid payload from {table}: expected a list")

        logger.debug("supabase_rows_fetched", table=table, count=len(rows), since=since.isoformat() if since else None)
        return rows

    async def fetch_completed(self, since: Optional[datetime] = None) -> list[RawRow]:
        """Closed trades, newest first."""
        return await self._select(COMPLETED_TABLE, since)

    async def fetch_active(self, since: Optional[datetime] = None) -> list[RawRow]:
        """Open positions, newest first."""
        return await self._select(ACTIVE_TABLE, since)
