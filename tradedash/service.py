"""
Trading data service: the application context for the dashboard core.

Owns exactly one record store, synchronizer and recovery orchestrator
(plus an optional snapshot slot) and exposes the read/refresh operations
the dashboard and CLI use. Reads are synchronous and never touch the
network; refreshes run through the recovery orchestrator.
"""

from dataclasses import dataclass
from typing import Any, Optional

import pandas as pd
import structlog

from config.settings import Settings
from tradedash.analytics.filters import FilterSpec, apply_filter, period_label
from tradedash.analytics.metrics import MetricsSnapshot, compute_metrics, daily_pnl, symbol_performance
from tradedash.api.data_source import TradeDataSource
from tradedash.api.supabase_client import SupabaseTradeSource
from tradedash.cache.models import TradeKind, TradeRecord
from tradedash.cache.record_store import CacheState, CacheStatistics, RecordStore
from tradedash.cache.snapshot import SnapshotStore
from tradedash.cache.synchronizer import IncrementalSynchronizer, SyncAction, SyncConfig, SyncResult
from tradedash.errors.classifier import CacheError, EnhancedError
from tradedash.errors.recovery import RecoveryOrchestrator, StrategyKind
from tradedash.state.database import Database

logger = structlog.get_logger(__name__)


@dataclass
class RefreshResult:
    """
    Outcome of a refresh request.

    ``sync`` is None when the data came from a fallback or placeholder;
    ``warning`` then carries the classified failure.
    """

    action: SyncAction
    state: CacheState
    sync: Optional[SyncResult] = None
    strategy: Optional[StrategyKind] = None
    warning: Optional[EnhancedError] = None

    @property
    def served_from_cache(self) -> bool:
        return self.strategy == StrategyKind.CACHE_FALLBACK

    @property
    def degraded(self) -> bool:
        return self.strategy == StrategyKind.GRACEFUL_DEGRADATION


class TradingDataService:
    """
    Cached trade data with filtering, metrics and recoverable refreshes.

    Example:
        service = build_service(get_settings())
        await service.start()
        metrics = service.get_metrics(FilterSpec(period=Period.DAYS_7))
    """

    def __init__(
        self,
        store: RecordStore,
        source: TradeDataSource,
        orchestrator: Optional[RecoveryOrchestrator] = None,
        snapshots: Optional[SnapshotStore] = None,
        sync_config: Optional[SyncConfig] = None,
        database: Optional[Database] = None,
    ):
        self.store = store
        self.source = source
        self.orchestrator = orchestrator or RecoveryOrchestrator()
        self.snapshots = snapshots
        self.database = database
        self.synchronizer = IncrementalSynchronizer(
            store,
            source,
            config=sync_config,
            on_loaded=self._save_snapshot if snapshots else None,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "TradingDataService":
        """
        Build the service from settings.

        Raises:
            ValueError: If the datastore URL or key is missing
        """
        if not settings.is_datastore_configured:
            raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY must be set")

        source = SupabaseTradeSource(
            base_url=settings.supabase_url,
            api_key=settings.supabase_anon_key.get_secret_value(),
            timeout=settings.request_timeout_seconds,
            user_id=settings.supabase_user_id,
        )
        store = RecordStore(settings.store_config())

        database = snapshots = None
        if settings.snapshot_enabled:
            database = Database(settings.database_path)
            snapshots = SnapshotStore(database, max_age=store.config.freshness)

        return cls(
            store=store,
            source=source,
            orchestrator=RecoveryOrchestrator(recent_errors_limit=settings.recent_errors_limit),
            snapshots=snapshots,
            sync_config=settings.sync_config(),
            database=database,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Seed the store from a fresh snapshot; True if it was seeded."""
        if self.snapshots is None:
            return False
        return await self.snapshots.seed(self.store)

    async def close(self) -> None:
        aclose = getattr(self.source, "aclose", None)
        if aclose is not None:
            await aclose()
        if self.database is not None:
            self.database.close()

    def clear(self) -> None:
        """Reset the store to COLD and drop the persisted snapshot."""
        self.store.clear()
        if self.snapshots is not None:
            self.snapshots.discard()

    def _save_snapshot(self, store: RecordStore) -> None:
        self.snapshots.save(store)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _records(self, kind: Optional[TradeKind]) -> list[TradeRecord]:
        if kind is not None:
            return self.store.lookup_by_kind(kind)
        grouped = self.store.all_records()
        return grouped[TradeKind.COMPLETED] + grouped[TradeKind.ACTIVE]

    def apply_filter(self, spec: FilterSpec, kind: Optional[TradeKind] = None) -> list[TradeRecord]:
        """Cached records matching ``spec`` (completed first, then active)."""
        return apply_filter(self._records(kind), spec)

    def get_metrics(self, spec: FilterSpec) -> MetricsSnapshot:
        completed = self.apply_filter(spec, TradeKind.COMPLETED)
        active = self.apply_filter(spec, TradeKind.ACTIVE)
        return compute_metrics(completed, active_count=len(active), period=period_label(spec))

    def get_daily_pnl(self, spec: FilterSpec) -> pd.DataFrame:
        return daily_pnl(self.apply_filter(spec, TradeKind.COMPLETED))

    def get_symbol_performance(self, spec: FilterSpec) -> list[dict[str, Any]]:
        return symbol_performance(self.apply_filter(spec, TradeKind.COMPLETED))

    def get_statistics(self) -> CacheStatistics:
        return self.store.statistics()

    def error_analytics(self) -> dict[str, Any]:
        return self.orchestrator.analytics()

    # ------------------------------------------------------------------
    # Refreshes
    # ------------------------------------------------------------------

    def _cached_result(self) -> None:
        if len(self.store) == 0:
            raise CacheError("No cached data available for fallback")
        logger.warning("serving_cached_data", size=len(self.store), state=self.store.state.value)
        return None

    def _degraded_result(self, error: EnhancedError) -> None:
        logger.warning("serving_degraded_data", kind=error.kind.value, size=len(self.store))
        return None

    async def _refresh(self, action: SyncAction, operation_name: str, load) -> RefreshResult:
        outcome = await self.orchestrator.execute(
            operation_name,
            load,
            fallback=self._cached_result,
            degraded=self._degraded_result,
        )
        return RefreshResult(
            action=action,
            state=self.store.state,
            sync=outcome.value,
            strategy=outcome.strategy,
            warning=outcome.error,
        )

    async def refresh_full(self) -> RefreshResult:
        """
        Reload everything from the datastore.

        Raises:
            EnhancedError: When no recovery strategy could serve a result
        """
        return await self._refresh(SyncAction.FULL, "refresh_full", self.synchronizer.full_load)

    async def refresh_incremental(self) -> RefreshResult:
        """Merge rows newer than the last incremental update (full load when COLD)."""
        return await self._refresh(SyncAction.INCREMENTAL, "refresh_incremental", self.synchronizer.incremental_load)

    async def check_for_updates(self) -> RefreshResult:
        """Periodic check: full, incremental, or nothing depending on store state."""
        action = self.synchronizer.decide()
        if action == SyncAction.NONE:
            return RefreshResult(
                action=action,
                state=self.store.state,
                sync=SyncResult(action=action, version=self.store.version),
            )
        return await self._refresh(action, "check_for_updates", self.synchronizer.check)


def build_service(settings: Settings) -> TradingDataService:
    """Service wired to the configured datastore."""
    return TradingDataService.from_settings(settings)
