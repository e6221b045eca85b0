"""
Incremental synchronizer between the trade datastore and the record store.

Decision per check:
- FULL: store is COLD
- INCREMENTAL: store loaded and the incremental interval has elapsed
- NONE: otherwise

Only one load (full or incremental) may be in flight per store; a trigger
arriving while one runs is dropped, not queued. A load whose fetch
completes after the store version moved on (e.g. a clear) is discarded.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable, Optional

import structlog

from tradedash.api.data_source import RawRow, TradeDataSource
from tradedash.cache.models import TradeKind, parse_timestamp
from tradedash.cache.record_store import CacheState, LoadReport, RecordStore
from tradedash.errors.classifier import DataValidationError

logger = structlog.get_logger(__name__)


class SyncAction(str, Enum):
    """What a sync check decided to do."""

    FULL = "full"
    INCREMENTAL = "incremental"
    NONE = "none"


@dataclass
class SyncConfig:
    """Synchronizer timing."""

    incremental_interval: timedelta = timedelta(minutes=5)


@dataclass
class SyncResult:
    """Result of one sync trigger."""

    action: SyncAction
    fetched: int = 0
    report: Optional[LoadReport] = None
    dropped: bool = False  # Another load was in flight
    discarded: bool = False  # Store version advanced during fetch
    version: int = 0

    @property
    def applied(self) -> bool:
        return self.report is not None


def dedupe_active_rows(rows: Iterable[RawRow]) -> list[RawRow]:
    """
    Keep the newest open-position row per symbol.

    Rows with a non-positive size are dropped. Rows with an unparsable
    trade date are passed through untouched so the store can reject and
    count them.
    """
    latest: dict[str, tuple[datetime, RawRow]] = {}
    passthrough: list[RawRow] = []

    for row in rows:
        size = row.get("quantity", row.get("position_size"))
        try:
            if size is None or float(size) <= 0:
                continue
        except (TypeError, ValueError):
            passthrough.append(row)
            continue

        try:
            traded = parse_timestamp(row.get("trade_date"))
        except DataValidationError:
            traded = None
        symbol = row.get("symbol")
        if traded is None or not symbol:
            passthrough.append(row)
            continue

        current = latest.get(symbol)
        if current is None or traded > current[0]:
            latest[symbol] = (traded, row)

    return [row for _, row in latest.values()] + passthrough


def _newer_than(row: RawRow, since: datetime) -> bool:
    try:
        stamp = parse_timestamp(row.get("created_at") or row.get("trade_date"))
    except DataValidationError:
        return True  # Let the store count it as malformed
    return stamp is None or stamp > since


def _tag(rows: Iterable[RawRow], kind: TradeKind) -> list[RawRow]:
    return [{**row, "kind": kind.value} for row in rows]


class IncrementalSynchronizer:
    """
    Feeds the record store from a trade data source.

    Args:
        store: Record store to write into
        source: Remote trade source
        config: Timing configuration
        on_loaded: Called with the store after every applied load
    """

    def __init__(
        self,
        store: RecordStore,
        source: TradeDataSource,
        config: Optional[SyncConfig] = None,
        on_loaded: Optional[Callable[[RecordStore], None]] = None,
    ):
        self.store = store
        self.source = source
        self.config = config or SyncConfig()
        self._on_loaded = on_loaded
        self._in_flight: Optional[SyncAction] = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None

    def decide(self) -> SyncAction:
        """Choose the action for a periodic check."""
        if self.store.state == CacheState.COLD:
            return SyncAction.FULL

        last = self.store.last_incremental_update
        if last is None or datetime.now(timezone.utc) - last >= self.config.incremental_interval:
            return SyncAction.INCREMENTAL
        return SyncAction.NONE

    async def check(self) -> SyncResult:
        """Run whatever ``decide`` picks."""
        action = self.decide()
        if action == SyncAction.FULL:
            return await self.full_load()
        if action == SyncAction.INCREMENTAL:
            return await self.incremental_load()
        return SyncResult(action=SyncAction.NONE, version=self.store.version)

    def _begin(self, action: SyncAction) -> bool:
        if self._in_flight is not None:
            logger.info("sync_dropped_in_flight", requested=action.value, running=self._in_flight.value)
            return False
        self._in_flight = action
        return True

    def _finish(self) -> None:
        self._in_flight = None

    async def full_load(self) -> SyncResult:
        """
        Replace the store contents with a fresh fetch of both tables.

        Raises:
            Exception: Whatever the source raises (classified upstream)
        """
        if not self._begin(SyncAction.FULL):
            return SyncResult(action=SyncAction.FULL, dropped=True, version=self.store.version)

        try:
            start_version = self.store.version
            # Rows committed while the fetch is in flight must stay newer than the watermark
            fetched_at = datetime.now(timezone.utc)
            completed, active = await asyncio.gather(
                self.source.fetch_completed(),
                self.source.fetch_active(),
            )
            rows = _tag(completed, TradeKind.COMPLETED) + _tag(dedupe_active_rows(active), TradeKind.ACTIVE)

            if self.store.version != start_version:
                logger.warning(
                    "sync_result_discarded",
                    action=SyncAction.FULL.value,
                    started_at_version=start_version,
                    current_version=self.store.version,
                )
                return SyncResult(action=SyncAction.FULL, fetched=len(rows), discarded=True, version=self.store.version)

            report = await self.store.bulk_load(rows, as_of=fetched_at)
            self._loaded()
            logger.info(
                "sync_full_completed",
                fetched_completed=len(completed),
                fetched_active=len(active),
                added=report.added,
                rejected=report.rejected,
            )
            return SyncResult(action=SyncAction.FULL, fetched=len(rows), report=report, version=self.store.version)
        finally:
            self._finish()

    async def incremental_load(self) -> SyncResult:
        """
        Merge rows newer than the last incremental update.

        Falls back to a full load when the store is COLD.
        """
        if self.store.state == CacheState.COLD:
            return await self.full_load()
        if not self._begin(SyncAction.INCREMENTAL):
            return SyncResult(action=SyncAction.INCREMENTAL, dropped=True, version=self.store.version)

        try:
            start_version = self.store.version
            fetched_at = datetime.now(timezone.utc)
            since = self.store.last_incremental_update or fetched_at
            completed, active = await asyncio.gather(
                self.source.fetch_completed(since=since),
                self.source.fetch_active(since=since),
            )
            new_completed = [row for row in completed if _newer_than(row, since)]
            new_active = dedupe_active_rows(row for row in active if _newer_than(row, since))
            rows = _tag(new_completed, TradeKind.COMPLETED) + _tag(new_active, TradeKind.ACTIVE)

            if self.store.version != start_version:
                logger.warning(
                    "sync_result_discarded",
                    action=SyncAction.INCREMENTAL.value,
                    started_at_version=start_version,
                    current_version=self.store.version,
                )
                return SyncResult(
                    action=SyncAction.INCREMENTAL, fetched=len(rows), discarded=True, version=self.store.version
                )

            report = await self.store.merge_incremental(rows, as_of=fetched_at)
            self._loaded()
            logger.info(
                "sync_incremental_completed",
                since=since.isoformat(),
                fetched=len(rows),
                added=report.added,
                evicted=report.evicted,
                superseded=report.superseded,
            )
            return SyncResult(
                action=SyncAction.INCREMENTAL, fetched=len(rows), report=report, version=self.store.version
            )
        finally:
            self._finish()

    def _loaded(self) -> None:
        if self._on_loaded:
            try:
                self._on_loaded(self.store)
            except Exception as e:
                logger.error("sync_on_loaded_callback_failed", error=str(e))
