"""
Indexed in-memory trade record store.

Records live in an id-keyed arena with three secondary indexes
(symbol, calendar day, kind). Index maintenance goes exclusively through
``_index_insert`` / ``_index_remove`` so the arena and indexes cannot drift.

Validity states:
- COLD: never loaded (or cleared)
- HOT: loaded and refreshed within the freshness window
- WARM: loaded but stale; data kept for fallback

HOT -> WARM is evaluated lazily from elapsed time whenever state is read.
"""

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Union

import structlog

from tradedash.cache.models import CacheEntry, TradeKind, TradeRecord
from tradedash.errors.classifier import DataValidationError

logger = structlog.get_logger(__name__)

# Rough per-entry footprint used for the memory estimate
BYTES_PER_ENTRY = 500


class CacheState(str, Enum):
    """Store validity state."""

    COLD = "cold"
    HOT = "hot"
    WARM = "warm"


@dataclass
class StoreConfig:
    """Record store limits and tuning."""

    max_size: int = 10000
    cleanup_threshold: float = 0.8  # Evict once occupancy exceeds this share of max_size
    eviction_fraction: float = 0.2  # Share of entries removed per eviction
    batch_size: int = 1000  # Records processed between cooperative yields
    freshness: timedelta = timedelta(minutes=5)
    frequency_weight: float = 0.7
    recency_weight: float = 0.3


@dataclass
class CacheStatistics:
    """Point-in-time store statistics."""

    total_trades: int
    completed_trades: int
    active_trades: int
    max_size: int
    occupancy: float  # 0..1 share of max_size
    cache_hit_rate: float  # Percent
    hits: int
    misses: int
    last_full_update: Optional[datetime]
    last_incremental_update: Optional[datetime]
    memory_usage_kb: float
    state: CacheState
    is_valid: bool
    age_seconds: Optional[float]
    rejected_records: int
    version: int


@dataclass
class LoadReport:
    """Outcome of a bulk load or incremental merge."""

    added: int
    rejected: int
    duplicates: int
    evicted: int = 0
    superseded: int = 0


RecordInput = Union[TradeRecord, Mapping[str, Any]]


class RecordStore:
    """
    Multi-index trade record store.

    Single-threaded, cooperative: writers (bulk_load, merge_incremental,
    evict) must not run concurrently with each other; readers may
    interleave with a load in progress.
    """

    def __init__(self, config: Optional[StoreConfig] = None):
        """
        Initialize an empty (COLD) store.

        Args:
            config: Store configuration
        """
        self.config = config or StoreConfig()
        self.version = 0
        self._reset()

    def _reset(self) -> None:
        self._drop_records()

        self._loaded = False
        self._invalidated = False
        self._last_full_update: Optional[datetime] = None
        self._last_incremental_update: Optional[datetime] = None
        self._last_refreshed: Optional[datetime] = None
        self._hits = 0
        self._misses = 0
        self._rejected = 0

    # ------------------------------------------------------------------
    # Index maintenance (the only code paths touching the indexes)
    # ------------------------------------------------------------------

    def _drop_records(self) -> None:
        self._entries: dict[int, CacheEntry] = {}
        self._by_symbol: dict[str, set[int]] = {}
        self._by_day: dict[date, set[int]] = {}
        self._by_kind: dict[TradeKind, set[int]] = {kind: set() for kind in TradeKind}

    def _index_insert(self, record: TradeRecord, now: datetime) -> None:
        self._entries[record.id] = CacheEntry(record=record, last_accessed=now)
        self._by_symbol.setdefault(record.symbol, set()).add(record.id)
        self._by_day.setdefault(record.day, set()).add(record.id)
        self._by_kind[record.kind].add(record.id)

    def _index_remove(self, trade_id: int) -> None:
        entry = self._entries.pop(trade_id)
        record = entry.record

        for index, key in ((self._by_symbol, record.symbol), (self._by_day, record.day)):
            bucket = index.get(key)
            if bucket is not None:
                bucket.discard(trade_id)
                if not bucket:
                    del index[key]
        self._by_kind[record.kind].discard(trade_id)

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def _coerce(self, item: RecordInput) -> Optional[TradeRecord]:
        """Normalize one input item; malformed items are counted and skipped."""
        if isinstance(item, TradeRecord):
            return item
        try:
            return TradeRecord.from_row(item)
        except DataValidationError as e:
            self._rejected += 1
            logger.warning(
                "store_record_rejected",
                trade_id=item.get("id") if isinstance(item, Mapping) else None,
                reason=str(e),
            )
            return None

    async def bulk_load(self, records: Iterable[RecordInput], as_of: Optional[datetime] = None) -> LoadReport:
        """
        Replace all contents with ``records``.

        Processes input in batches of ``config.batch_size`` and yields to
        the event loop between batches. Malformed items are skipped and
        counted; only a failure of the input iterable itself propagates.
        Duplicate ids within the input keep the first occurrence.

        Args:
            records: TradeRecord instances or raw rows carrying ``kind``
            as_of: When the rows were read from the datastore; becomes the
                watermark for the next incremental fetch (defaults to now)

        Returns:
            LoadReport with added/rejected/duplicate counts
        """
        rejected_before = self._rejected
        now = datetime.now(timezone.utc)

        self._drop_records()
        self.version += 1

        added = duplicates = 0
        processed = 0
        for item in records:
            record = self._coerce(item)
            if record is not None:
                if record.id in self._entries:
                    duplicates += 1
                    logger.warning("store_duplicate_id", trade_id=record.id, kind=record.kind.value)
                else:
                    self._index_insert(record, now)
                    added += 1

            processed += 1
            if processed % self.config.batch_size == 0:
                await asyncio.sleep(0)

        self._loaded = True
        self._invalidated = False
        self._last_full_update = as_of or now
        self._last_incremental_update = as_of or now
        self._last_refreshed = now

        if len(self._entries) > self.config.max_size:
            logger.warning(
                "store_over_capacity",
                size=len(self._entries),
                max_size=self.config.max_size,
            )

        report = LoadReport(added=added, rejected=self._rejected - rejected_before, duplicates=duplicates)
        logger.info(
            "store_bulk_loaded",
            added=report.added,
            rejected=report.rejected,
            duplicates=report.duplicates,
            completed=len(self._by_kind[TradeKind.COMPLETED]),
            active=len(self._by_kind[TradeKind.ACTIVE]),
            version=self.version,
        )
        return report

    async def merge_incremental(self, records: Iterable[RecordInput], as_of: Optional[datetime] = None) -> LoadReport:
        """
        Insert records whose ids are not already stored (first-seen wins).

        A symbol holds one active position: a new active record replaces
        older active records for its symbol, and is skipped when a newer
        one is already stored.

        Indexes are updated per record. The last-incremental timestamp
        advances even when nothing new was added. Runs eviction afterwards
        if occupancy crossed the cleanup threshold.

        Args:
            records: TradeRecord instances or raw rows carrying ``kind``
            as_of: When the rows were read from the datastore (defaults to now)

        Returns:
            LoadReport with added/rejected/duplicate/evicted counts
        """
        rejected_before = self._rejected
        now = datetime.now(timezone.utc)

        added = duplicates = superseded = 0
        processed = 0
        for item in records:
            record = self._coerce(item)
            if record is not None:
                if record.id in self._entries:
                    duplicates += 1
                elif record.kind == TradeKind.ACTIVE and self._has_newer_active(record):
                    duplicates += 1
                else:
                    if record.kind == TradeKind.ACTIVE:
                        superseded += self._drop_older_active(record)
                    self._index_insert(record, now)
                    added += 1

            processed += 1
            if processed % self.config.batch_size == 0:
                await asyncio.sleep(0)

        self.version += 1
        self._last_incremental_update = as_of or now
        if self._loaded:
            self._last_refreshed = now
            self._invalidated = False

        evicted = self.evict()
        report = LoadReport(
            added=added,
            rejected=self._rejected - rejected_before,
            duplicates=duplicates,
            evicted=evicted,
            superseded=superseded,
        )
        logger.info(
            "store_incremental_merged",
            added=report.added,
            rejected=report.rejected,
            skipped_existing=report.duplicates,
            superseded=report.superseded,
            evicted=report.evicted,
            size=len(self._entries),
            version=self.version,
        )
        return report

    def _active_for_symbol(self, symbol: str) -> list[TradeRecord]:
        ids = self._by_symbol.get(symbol, ())
        return [self._entries[i].record for i in ids if self._entries[i].record.kind == TradeKind.ACTIVE]

    def _has_newer_active(self, record: TradeRecord) -> bool:
        return any(held.trade_date > record.trade_date for held in self._active_for_symbol(record.symbol))

    def _drop_older_active(self, record: TradeRecord) -> int:
        """Remove stored active records for the symbol that ``record`` replaces."""
        stale = self._active_for_symbol(record.symbol)
        for held in stale:
            self._index_remove(held.id)
            logger.info("store_active_superseded", symbol=record.symbol, trade_id=held.id, replaced_by=record.id)
        return len(stale)

    def _score(self, entry: CacheEntry, now: datetime) -> float:
        """Eviction score: higher means more worth keeping."""
        idle_seconds = max((now - entry.last_accessed).total_seconds(), 0.0)
        recency = 1.0 / (1.0 + idle_seconds)
        return entry.access_count * self.config.frequency_weight + recency * self.config.recency_weight

    def evict(self) -> int:
        """
        Remove the lowest-scoring entries once occupancy passes the threshold.

        Removes ``floor(size * eviction_fraction)`` entries when
        ``size > max_size * cleanup_threshold``; no-op otherwise.

        Returns:
            Number of entries removed
        """
        size = len(self._entries)
        if size <= self.config.max_size * self.config.cleanup_threshold:
            return 0

        now = datetime.now(timezone.utc)
        ranked = sorted(
            self._entries.values(),
            key=lambda e: (self._score(e, now), e.record.effective_date, e.record.id),
        )
        remove_count = int(size * self.config.eviction_fraction)
        for entry in ranked[:remove_count]:
            self._index_remove(entry.record.id)

        self.version += 1
        logger.info(
            "store_evicted",
            removed=remove_count,
            size_before=size,
            size_after=len(self._entries),
            max_size=self.config.max_size,
        )
        return remove_count

    def clear(self) -> None:
        """Drop all records and metadata; the store becomes COLD."""
        self._reset()
        self.version += 1
        logger.info("store_cleared", version=self.version)

    def invalidate(self) -> None:
        """Mark the data stale (WARM) while keeping it for fallback."""
        if self._loaded:
            self._invalidated = True
            logger.info("store_invalidated", size=len(self._entries))

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def _collect(self, ids: Optional[set[int]]) -> list[TradeRecord]:
        if not ids:
            self._misses += 1
            return []

        self._hits += 1
        now = datetime.now(timezone.utc)
        records = []
        # Snapshot the id set; a concurrent writer may replace buckets
        for trade_id in sorted(ids):
            entry = self._entries.get(trade_id)
            if entry is not None:
                entry.touch(now)
                records.append(entry.record)
        return records

    def lookup_by_symbol(self, symbol: str) -> list[TradeRecord]:
        """Records for an exact symbol, ordered by id."""
        return self._collect(self._by_symbol.get(symbol))

    def lookup_by_day(self, day: date) -> list[TradeRecord]:
        """Records whose trade date falls on ``day`` (UTC), ordered by id."""
        return self._collect(self._by_day.get(day))

    def lookup_by_kind(self, kind: TradeKind) -> list[TradeRecord]:
        """Records of one kind, ordered by id."""
        return self._collect(self._by_kind.get(kind))

    def lookup_by_date_range(self, start: date, end: date) -> list[TradeRecord]:
        """Records whose trade day is within [start, end], ordered by id."""
        ids: set[int] = set()
        for day, bucket in list(self._by_day.items()):
            if start <= day <= end:
                ids.update(bucket)
        return self._collect(ids)

    def all_records(self) -> dict[TradeKind, list[TradeRecord]]:
        """Every record, partitioned by kind."""
        return {kind: self.lookup_by_kind(kind) for kind in TradeKind}

    def get(self, trade_id: int) -> Optional[TradeRecord]:
        entry = self._entries.get(trade_id)
        return entry.record if entry else None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, trade_id: object) -> bool:
        return trade_id in self._entries

    def unique_symbols(self) -> list[str]:
        """Sorted symbols currently indexed."""
        return sorted(self._by_symbol)

    def data_date_range(self) -> Optional[tuple[date, date]]:
        """First and last indexed trade day, or None when empty."""
        if not self._by_day:
            return None
        days = sorted(self._by_day)
        return days[0], days[-1]

    # ------------------------------------------------------------------
    # State & statistics
    # ------------------------------------------------------------------

    @property
    def state(self) -> CacheState:
        """Current validity state (HOT -> WARM evaluated lazily)."""
        if not self._loaded:
            return CacheState.COLD
        if self._invalidated or self._last_refreshed is None:
            return CacheState.WARM
        if datetime.now(timezone.utc) - self._last_refreshed < self.config.freshness:
            return CacheState.HOT
        return CacheState.WARM

    @property
    def is_valid(self) -> bool:
        return self.state == CacheState.HOT

    @property
    def last_full_update(self) -> Optional[datetime]:
        return self._last_full_update

    @property
    def last_incremental_update(self) -> Optional[datetime]:
        return self._last_incremental_update

    @property
    def rejected_records(self) -> int:
        return self._rejected

    def statistics(self) -> CacheStatistics:
        """Occupancy, hit rate, freshness and memory estimate."""
        total = len(self._entries)
        requests = self._hits + self._misses
        hit_rate = (self._hits / requests * 100) if requests else 0.0
        age = None
        if self._last_full_update is not None:
            age = (datetime.now(timezone.utc) - self._last_full_update).total_seconds()
        state = self.state

        return CacheStatistics(
            total_trades=total,
            completed_trades=len(self._by_kind[TradeKind.COMPLETED]),
            active_trades=len(self._by_kind[TradeKind.ACTIVE]),
            max_size=self.config.max_size,
            occupancy=round(total / self.config.max_size, 4) if self.config.max_size else 0.0,
            cache_hit_rate=round(hit_rate, 2),
            hits=self._hits,
            misses=self._misses,
            last_full_update=self._last_full_update,
            last_incremental_update=self._last_incremental_update,
            memory_usage_kb=round(total * BYTES_PER_ENTRY / 1024, 2),
            state=state,
            is_valid=state == CacheState.HOT,
            age_seconds=age,
            rejected_records=self._rejected,
            version=self.version,
        )

    # ------------------------------------------------------------------
    # Snapshot support
    # ------------------------------------------------------------------

    def export_snapshot(self) -> dict[str, Any]:
        """Serializable ``{records, metadata, timestamp}`` (no access metadata)."""
        return {
            "records": [entry.record.to_row() for entry in self._entries.values()],
            "metadata": {
                "last_full_update": _iso(self._last_full_update),
                "last_incremental_update": _iso(self._last_incremental_update),
                "last_refreshed": _iso(self._last_refreshed),
                "version": self.version,
            },
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def restore_snapshot(self, snapshot: Mapping[str, Any]) -> LoadReport:
        """
        Seed the store from ``export_snapshot`` output.

        A snapshot whose records do not all load back is corrupt; the
        store is left partially loaded and the caller must clear it.

        Raises:
            KeyError, TypeError, ValueError: If the snapshot is structurally invalid
        """
        records = snapshot["records"]
        if not isinstance(records, list):
            raise TypeError(f"snapshot records must be a list, got {type(records).__name__}")
        metadata = snapshot["metadata"]
        timestamps = {
            key: _parse_iso(metadata.get(key))
            for key in ("last_full_update", "last_incremental_update", "last_refreshed")
        }
        report = await self.bulk_load(records)
        if report.rejected or report.added != len(records):
            raise ValueError(
                f"snapshot restored {report.added} of {len(records)} records ({report.rejected} rejected)"
            )

        self._last_full_update = timestamps["last_full_update"] or self._last_full_update
        self._last_incremental_update = timestamps["last_incremental_update"] or self._last_incremental_update
        self._last_refreshed = timestamps["last_refreshed"] or self._last_refreshed
        return report


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)
