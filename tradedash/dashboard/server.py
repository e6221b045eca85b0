"""FastAPI dashboard server with a periodic cache sync task."""

import asyncio
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from config.logging_config import setup_logging
from config.settings import get_settings
from tradedash.errors.classifier import EnhancedError
from tradedash.service import TradingDataService, build_service
from tradedash.version import __version__

from .routes import limiter, router


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    """Handle rate limit exceeded errors."""
    return JSONResponse(
        status_code=429,
        content={"detail": f"Rate limit exceeded: {exc.detail}"},
    )

logger = structlog.get_logger(__name__)

# Background task handle
_sync_task = None
_sync_healthy = True  # Track sync loop health for /health endpoint


async def sync_loop(service: TradingDataService, interval: float):
    """Background task running the synchronizer check on a fixed interval."""
    global _sync_healthy
    error_count = 0
    max_backoff = 300

    logger.info("sync_loop_started", interval=interval)

    while True:
        try:
            result = await service.check_for_updates()
            if result.warning is not None:
                logger.warning(
                    "sync_check_recovered",
                    strategy=result.strategy.value if result.strategy else None,
                    kind=result.warning.kind.value,
                )
            error_count = 0
            _sync_healthy = True
            await asyncio.sleep(interval)

        except EnhancedError as e:
            # Every recovery strategy failed; keep serving cached data
            error_count += 1
            _sync_healthy = error_count < 5
            backoff = min(interval * (2 ** error_count), max_backoff)
            logger.error("sync_check_failed", kind=e.kind.value, backoff=backoff, error_count=error_count)
            await asyncio.sleep(backoff)
        except Exception as e:
            error_count += 1
            _sync_healthy = error_count < 5
            backoff = min(interval * (2 ** error_count), max_backoff)
            logger.error("sync_check_unexpected_error", error=str(e), exc_info=True, backoff=backoff)
            await asyncio.sleep(backoff)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    global _sync_task

    settings = get_settings()
    logger.info("dashboard_starting")
    service = build_service(settings)
    app.state.service = service
    await service.start()
    _sync_task = asyncio.create_task(sync_loop(service, settings.sync_check_interval_seconds))

    yield

    logger.info("dashboard_stopping")
    if _sync_task:
        _sync_task.cancel()
        try:
            await _sync_task
        except asyncio.CancelledError:
            pass
    await service.close()
    app.state.service = None


app = FastAPI(
    title="Trading Data Dashboard",
    description="Cached trade history, filters and performance metrics",
    version=__version__,
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

app.include_router(router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    service = getattr(app.state, "service", None)
    cache_state = service.store.state.value if service else "unavailable"
    status = "ok" if _sync_healthy and service else "degraded"
    return {
        "status": status,
        "cache": cache_state,
        "sync": "healthy" if _sync_healthy else "unhealthy",
        "version": __version__,
    }


def main():
    """Run the dashboard server."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file, settings.log_json)

    logger.info(
        "starting_dashboard_server",
        host=settings.dashboard_host,
        port=settings.dashboard_port,
    )

    uvicorn.run(
        app,
        host=settings.dashboard_host,
        port=settings.dashboard_port,
        log_config=None,  # Keep the structlog pipeline from setup_logging
    )


if __name__ == "__main__":
    main()
