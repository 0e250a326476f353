# Netatmo Crawler - Main entry point
# Runs the acquisition pipeline once or on a fixed cadence.

# Load environment variables FIRST (before any other imports)
from dotenv import load_dotenv
load_dotenv()

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

import schedule

from config import load_config_from_env
from core.coordinator import RunCoordinator
from database import MemoryStateStore, StateStore

logger = logging.getLogger("main")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Republish public Netatmo weathermap stations")
    parser.add_argument("--once", action="store_true", help="Run a single acquisition cycle and exit")
    parser.add_argument("--loop", action="store_true", help="Run continuously (default)")
    parser.add_argument("--dry-run", action="store_true", help="Keep state in memory instead of SQLite")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


async def run_single(coordinator: RunCoordinator) -> int:
    result = await coordinator.run_once()
    for error in result.errors:
        logger.warning(f"{error.station_id}: {error.kind.value} {error.message}")
    # Exit status only; the caller owns the process.
    return 0 if result.connected else 1


async def run_scheduled(coordinator: RunCoordinator) -> None:
    """One scheduled cycle; the environment is re-read so edits apply without a restart."""
    coordinator.reconfigure(load_config_from_env())
    await coordinator.run_once()


async def run_forever(coordinator: RunCoordinator, interval_minutes: int) -> None:
    due: List[bool] = []
    schedule.every(interval_minutes).minutes.do(due.append, True)

    await coordinator.run_once()
    logger.info(f"Collection scheduled every {interval_minutes} minutes")
    try:
        while True:
            schedule.run_pending()
            if due:
                due.clear()
                await run_scheduled(coordinator)
            await asyncio.sleep(1)
    finally:
        schedule.clear()


async def _main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    config = load_config_from_env()
    store = MemoryStateStore() if args.dry_run else StateStore.from_config(config)
    coordinator = RunCoordinator(config, store)
    try:
        if args.once and not args.loop:
            return await run_single(coordinator)
        await run_forever(coordinator, config.interval_minutes)
        return 0
    except asyncio.CancelledError:
        coordinator.shutdown()
        raise
    finally:
        await coordinator.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    try:
        return asyncio.run(_main(argv))
    except KeyboardInterrupt:
        logger.info("Stopping crawler")
        return 0


if __name__ == "__main__":
    sys.exit(main())
