import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import List, Optional

from candle_pipeline.catalog import export_swings, list_symbols, scan_data_status
from candle_pipeline.config import Config
from candle_pipeline.models import DataStatus, JobProgress, JobState
from candle_pipeline.orchestrator import JobKind, JobOrchestrator
from candle_pipeline.utils import setup_logging, timeframe_to_ms

log: Optional[logging.Logger] = None


def print_banner(config: Config, command: str) -> None:
    """Print startup banner"""
    print("╔══════════════════════════════════════════════════════════════╗")
    print("║                Candle Pipeline Maintenance                   ║")
    print("╠══════════════════════════════════════════════════════════════╣")
    print(f"║ Command:      {command:<46} ║")
    print(f"║ Exchange:     {config.EXCHANGE:<46} ║")
    print(f"║ Symbol:       {config.SYMBOL:<46} ║")
    print(f"║ Interval:     {config.INTERVAL:<46} ║")
    print(f"║ Pivot:        {config.PIVOT_LEN:<46} ║")
    print(f"║ Data dir:     {str(config.DATA_DIR):<46} ║")
    print("╚══════════════════════════════════════════════════════════════╝")
    print()


def create_cli() -> argparse.ArgumentParser:
    """Create command-line interface"""
    parser = argparse.ArgumentParser(
        description="Candle store maintenance: backfill, reconcile, rebuild, status and export"
    )

    parser.add_argument("--exchange", choices=["binance", "binance_us"], help="Exchange id")
    parser.add_argument("--symbol", help="Trading symbol (default: BTCUSDT)")
    parser.add_argument("--interval", help="Base candle interval (default: 1m)")
    parser.add_argument("--pivot", type=int, help="Swing pivot length (default: 3)")
    parser.add_argument("--data-dir", type=Path, help="Root directory of the stores")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    commands = parser.add_subparsers(dest="command", required=True)

    backfill = commands.add_parser("backfill", help="Download monthly archives backwards in time")
    backfill.add_argument("--max-months", type=int, help="Stop after this many months")
    backfill.add_argument(
        "--no-rebuild", action="store_true", help="Skip the derived rebuild after backfill"
    )

    reconcile = commands.add_parser("reconcile", help="Find and repair gaps in the candle store")
    reconcile.add_argument("--max-days", type=int, help="Only scan the newest N days")
    reconcile.add_argument(
        "--repair-limit", type=int, help="Largest gap (in candles) to repair; 0 disables"
    )

    rebuild = commands.add_parser("rebuild", help="Regenerate aggregates and swings")
    rebuild.add_argument("--max-days", type=int, help="Only replay the newest N days")

    commands.add_parser("status", help="Show the stored data inventory")

    export = commands.add_parser("export", help="Export swings to CSV or Parquet")
    export.add_argument("--format", choices=["csv", "parquet"], default="csv")
    export.add_argument("--output", type=Path, help="Destination file")

    return parser


def apply_args(config: Config, args: argparse.Namespace) -> Config:
    if args.exchange:
        config.EXCHANGE = args.exchange
    if args.symbol:
        config.SYMBOL = args.symbol.upper()
    if args.interval:
        timeframe_to_ms(args.interval)
        config.INTERVAL = args.interval
    if args.pivot:
        config.PIVOT_LEN = max(1, args.pivot)
    if args.data_dir:
        config.DATA_DIR = args.data_dir
    if getattr(args, "repair_limit", None) is not None:
        config.GAP_REPAIR_MAX_CANDLES = max(0, args.repair_limit)
    if getattr(args, "no_rebuild", False):
        config.REBUILD_AFTER_BACKFILL = False
    if args.debug:
        config.LOG_LEVEL = logging.DEBUG
    return config


def print_status(config: Config) -> None:
    statuses: List[DataStatus] = scan_data_status(config)
    symbols: List[str] = list_symbols(config.DATA_DIR, config.EXCHANGE)

    print(f"Symbols on disk: {', '.join(symbols) or '-'}")
    print(f"{'TF':<5} {'Days':>6} {'Candles':>10} {'Swings':>8}  {'Oldest':<10}  {'Newest':<10}  {'Size':>10}")
    print("-" * 72)
    for s in statuses:
        note: str = "  (insufficient data)" if s.insufficient_data else ""
        print(
            f"{s.timeframe:<5} {s.candle_files:>6} {s.total_candles:>10} {s.total_swings:>8}  "
            f"{s.oldest_day or '-':<10}  {s.newest_day or '-':<10}  "
            f"{s.size_bytes / 1024:>8.1f}KB{note}"
        )


async def watch_progress(orchestrator: JobOrchestrator) -> None:
    queue = orchestrator.subscribe()
    try:
        while True:
            kind, progress = await queue.get()
            if progress.message:
                log.info(f"[{kind.value}] {progress.state.value}: {progress.message}")
    finally:
        orchestrator.unsubscribe(queue)


async def run_job(config: Config, command: str, args: argparse.Namespace) -> JobProgress:
    orchestrator = JobOrchestrator(config)
    kind = JobKind(command)

    loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, orchestrator.shutdown)

    watcher: asyncio.Task = asyncio.create_task(watch_progress(orchestrator))
    try:
        if kind == JobKind.BACKFILL:
            result: JobProgress = await orchestrator.start_backfill(args.max_months)
        elif kind == JobKind.RECONCILE:
            result = await orchestrator.start_reconcile(args.max_days)
        else:
            result = await orchestrator.start_rebuild(args.max_days)
    finally:
        # Let the last queued updates drain before stopping the watcher
        await asyncio.sleep(0)
        watcher.cancel()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    log.info(f"Result: {result.model_dump_json(exclude={'gaps'})}")
    return result


async def main_cli() -> int:
    """CLI entry point"""
    parser: argparse.ArgumentParser = create_cli()
    args: argparse.Namespace = parser.parse_args()

    try:
        config: Config = apply_args(Config.from_env(), args)
    except ValueError as e:
        parser.error(str(e))

    global log
    log = setup_logging(config.LOG_LEVEL, config.LOG_DIR)

    if args.command == "status":
        print_status(config)
        return 0

    if args.command == "export":
        path: Optional[Path] = export_swings(config, args.format, args.output)
        print(path if path else "No swings to export")
        return 0

    print_banner(config, args.command)
    result: JobProgress = await run_job(config, args.command, args)
    return 0 if result.state == JobState.DONE else 1


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main_cli()))
