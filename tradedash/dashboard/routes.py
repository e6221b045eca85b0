"""REST API routes for the dashboard."""

from datetime import date
from typing import Literal, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from tradedash.analytics.filters import DateRange, FilterSpec, Period, sort_by_date, sort_by_pnl
from tradedash.cache.models import TradeKind, TradeOutcome
from tradedash.errors.classifier import DataValidationError, EnhancedError
from tradedash.service import TradingDataService

from .models import (
    CacheStatisticsInfo,
    DailyPnLPoint,
    ErrorAnalytics,
    MetricsInfo,
    RefreshResponse,
    SymbolPerformance,
    SymbolsResponse,
    TradeInfo,
)

logger = structlog.get_logger(__name__)

router = APIRouter()

# Reads are cheap (in-memory); refresh and clear hit the datastore or drop state.
limiter = Limiter(key_func=get_remote_address)


def get_service(request: Request) -> TradingDataService:
    """Service owned by the running app (built in the lifespan handler)."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Trading data service not available")
    return service


def get_filter_spec(
    period: Period = Query(default=Period.DAYS_30),
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    symbol: Optional[str] = Query(default=None, max_length=20),
    outcome: Optional[Literal["win", "loss"]] = Query(default=None),
) -> FilterSpec:
    """Build a FilterSpec from query parameters."""
    date_range = None
    if start is not None or end is not None:
        if start is None or end is None:
            raise HTTPException(status_code=422, detail="Both start and end are required for a date range")
        date_range = DateRange(start, end)
    try:
        return FilterSpec(
            period=period,
            date_range=date_range,
            symbol=symbol or None,
            outcome=TradeOutcome(outcome) if outcome else None,
        )
    except DataValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/api/trades")
@limiter.limit("30/minute")
async def get_trades(
    request: Request,
    kind: Optional[Literal["completed", "active"]] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    sort: Literal["date", "pnl"] = Query(default="date"),
    spec: FilterSpec = Depends(get_filter_spec),
    service: TradingDataService = Depends(get_service),
) -> list[TradeInfo]:
    """Filtered trades, newest first or largest P&L first."""
    records = service.apply_filter(spec, TradeKind(kind) if kind else None)
    ordered = sort_by_pnl(records) if sort == "pnl" else sort_by_date(records)
    return [TradeInfo.from_record(r) for r in ordered[:limit]]


@router.get("/api/metrics")
@limiter.limit("30/minute")
async def get_metrics(
    request: Request,
    spec: FilterSpec = Depends(get_filter_spec),
    service: TradingDataService = Depends(get_service),
) -> MetricsInfo:
    """Aggregate metrics for the filter."""
    return MetricsInfo.from_snapshot(service.get_metrics(spec))


@router.get("/api/daily-pnl")
@limiter.limit("30/minute")
async def get_daily_pnl(
    request: Request,
    spec: FilterSpec = Depends(get_filter_spec),
    service: TradingDataService = Depends(get_service),
) -> list[DailyPnLPoint]:
    """Realized P&L per day, oldest first."""
    df = service.get_daily_pnl(spec)
    return [
        DailyPnLPoint(date=row.date, pnl=row.pnl, cumulative_pnl=row.cumulative_pnl)
        for row in df.itertuples(index=False)
    ]


@router.get("/api/symbols")
@limiter.limit("30/minute")
async def get_symbols(
    request: Request,
    spec: FilterSpec = Depends(get_filter_spec),
    service: TradingDataService = Depends(get_service),
) -> SymbolsResponse:
    """Cached symbols plus per-symbol performance for the filter."""
    date_range = service.store.data_date_range()
    return SymbolsResponse(
        symbols=service.store.unique_symbols(),
        performance=[SymbolPerformance(**row) for row in service.get_symbol_performance(spec)],
        first_day=date_range[0] if date_range else None,
        last_day=date_range[1] if date_range else None,
    )


@router.get("/api/cache/statistics")
@limiter.limit("30/minute")
async def get_cache_statistics(
    request: Request,
    service: TradingDataService = Depends(get_service),
) -> CacheStatisticsInfo:
    return CacheStatisticsInfo.from_statistics(service.get_statistics())


@router.get("/api/errors")
@limiter.limit("10/minute")
async def get_errors(
    request: Request,
    service: TradingDataService = Depends(get_service),
) -> ErrorAnalytics:
    """Error counts, recent classified errors and recovery counters."""
    analytics = service.error_analytics()
    return ErrorAnalytics(
        error_counts=analytics["error_counts"],
        recent_errors=[e.to_dict() for e in analytics["recent_errors"]],
        recovery_success=analytics["recovery_success"],
        recovery_failures=analytics["recovery_failures"],
        last_error_time=analytics["last_error_time"],
        notifications=[n.message for n in service.orchestrator.notifications],
    )


@router.post("/api/refresh")
@limiter.limit("5/minute")
async def refresh(
    request: Request,
    mode: Literal["full", "incremental"] = Query(default="incremental"),
    service: TradingDataService = Depends(get_service),
) -> RefreshResponse:
    """Refresh the cache from the datastore."""
    try:
        if mode == "full":
            result = await service.refresh_full()
        else:
            result = await service.refresh_incremental()
    except EnhancedError as e:
        logger.error("refresh_failed", mode=mode, kind=e.kind.value, correlation_id=e.context.correlation_id)
        raise HTTPException(status_code=503, detail=e.to_dict())
    return RefreshResponse.from_result(result, version=service.store.version)


@router.delete("/api/cache")
@limiter.limit("5/minute")
async def clear_cache(
    request: Request,
    service: TradingDataService = Depends(get_service),
) -> dict[str, str]:
    """Drop all cached records (the store becomes cold)."""
    service.clear()
    return {"status": "cleared", "state": service.store.state.value}
