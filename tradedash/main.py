"""
Trading Data Dashboard - Command Line Report

Loads trades from the configured datastore (or a fresh local snapshot),
then prints cache state and performance metrics for one filter.

Usage:
    python -m tradedash.main --period 7days
    python -m tradedash.main --period custom --start 2024-01-01 --end 2024-01-31 --symbol AAPL

Configuration:
    Set SUPABASE_URL and SUPABASE_ANON_KEY in the environment or a .env file.
"""

import argparse
import asyncio
import sys
from datetime import date
from typing import Optional

from config.logging_config import get_logger, setup_logging
from config.settings import get_settings
from tradedash.analytics.filters import DateRange, FilterSpec, Period
from tradedash.cache.models import TradeOutcome
from tradedash.errors.classifier import DataValidationError, EnhancedError
from tradedash.service import TradingDataService, build_service
from tradedash.version import __version__


def create_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Print cached trade metrics for a period",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--period",
        choices=[p.value for p in Period],
        default=Period.DAYS_30.value,
        help="Period selector (default: 30days)",
    )
    parser.add_argument("--start", type=date.fromisoformat, help="Custom range start (YYYY-MM-DD)")
    parser.add_argument("--end", type=date.fromisoformat, help="Custom range end (YYYY-MM-DD)")
    parser.add_argument("--symbol", help="Only this symbol (case-insensitive)")
    parser.add_argument("--outcome", choices=["win", "loss"], help="Only wins or losses")
    parser.add_argument("--full", action="store_true", help="Force a full reload instead of a sync check")
    return parser


def build_filter(args: argparse.Namespace) -> FilterSpec:
    """
    FilterSpec from parsed arguments.

    Raises:
        DataValidationError: If a custom period lacks a start or end
    """
    date_range = None
    if args.start or args.end:
        if not (args.start and args.end):
            raise DataValidationError("--start and --end must be given together")
        date_range = DateRange(args.start, args.end)
    return FilterSpec(
        period=Period(args.period),
        date_range=date_range,
        symbol=args.symbol,
        outcome=TradeOutcome(args.outcome) if args.outcome else None,
    )


def print_report(service: TradingDataService, spec: FilterSpec) -> None:
    stats = service.get_statistics()
    metrics = service.get_metrics(spec)

    print("\n" + "=" * 50)
    print(f"  Trading Data Report v{__version__}")
    print("=" * 50)
    print(f"  Period: {metrics.filtered_period}")
    print(f"  Cache: {stats.state.value} ({stats.total_trades} records, {stats.memory_usage_kb} KB)")
    print("-" * 50)
    print(f"  Trades:          {metrics.total_trades} ({metrics.total_wins}W / {metrics.total_losses}L)")
    print(f"  Win rate:        {metrics.win_rate:.2f}%")
    print(f"  Net P&L:         {metrics.net_pnl:,.2f}")
    print(f"  Invested:        {metrics.total_investment:,.2f}")
    print(f"  Recovered:       {metrics.total_recovery:,.2f}")
    print(f"  Avg return:      {metrics.average_return:.2f}%")
    print(f"  Best / worst:    {metrics.best_trade:.2f}% / {metrics.worst_trade:.2f}%")
    print(f"  Profit factor:   {metrics.profit_factor:.2f}")
    print(f"  Sharpe (simple): {metrics.sharpe_ratio:.2f}")
    print(f"  Max drawdown:    {metrics.max_drawdown:.2f}%")
    print(f"  Open positions:  {metrics.active_positions}")
    print("=" * 50)


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    logger = get_logger(__name__)
    spec = build_filter(args)

    service = build_service(settings)
    try:
        await service.start()
        result = await (service.refresh_full() if args.full else service.check_for_updates())
        if result.warning is not None:
            print(f"\nWarning: {result.warning.user_message}")
        print_report(service, spec)
        return 0
    except EnhancedError as e:
        logger.error("report_failed", kind=e.kind.value, correlation_id=e.context.correlation_id)
        print(f"\nError: {e.user_message}", file=sys.stderr)
        return 1
    finally:
        await service.close()


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the report CLI.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = create_parser().parse_args(argv)
    try:
        settings = get_settings()
        setup_logging(
            log_level=settings.log_level,
            log_file=settings.log_file,
            json_format=settings.log_json,
        )
        return asyncio.run(run(args))

    except KeyboardInterrupt:
        print("\n\nInterrupted. Exiting...")
        return 0

    except (ValueError, DataValidationError) as e:
        print(f"\nConfiguration error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
