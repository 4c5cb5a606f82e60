# SG Weather Pipeline - Main Orchestrator
# Wires registry, synthesizer, cache and scheduler; one-shot or polling CLI.

# Load environment variables FIRST (before any other imports)
from dotenv import load_dotenv
load_dotenv()

import argparse
import asyncio
import logging
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from config import CACHE_DIR, STATIONS_DATABASE_PATH, SchedulerConfig, get_regions
from collector import NEAFetcher, run_discovery
from core.cache import CacheStore
from core.errors import FetchError
from core.registry import StationRegistry
from core.scheduler import AdaptiveFetchScheduler, FetchResult
from synthesizer import RegionalSynthesizer

logger = logging.getLogger("main")


@dataclass
class Pipeline:
    registry: StationRegistry
    synthesizer: RegionalSynthesizer
    cache: CacheStore
    scheduler: AdaptiveFetchScheduler


def build_pipeline(
    fetcher=None,
    registry: Optional[StationRegistry] = None,
    cache: Optional[CacheStore] = None,
    config: Optional[SchedulerConfig] = None,
    clock=time.time,
) -> Pipeline:
    """Build one owned pipeline instance (no module-level singletons)."""
    config = config or SchedulerConfig()
    if registry is None:
        registry = StationRegistry()
        registry.load_stations_database()
    synthesizer = RegionalSynthesizer(
        get_regions(),
        registry=registry,
        now=lambda: datetime.fromtimestamp(clock(), tz=timezone.utc),
    )
    cache = cache or CacheStore.from_config(config.cache_namespaces, CACHE_DIR, clock=clock)
    scheduler = AdaptiveFetchScheduler(
        fetcher or NEAFetcher(),
        synthesizer=synthesizer,
        cache=cache,
        config=config,
        clock=clock,
    )
    return Pipeline(registry=registry, synthesizer=synthesizer, cache=cache, scheduler=scheduler)


def _fmt(value: Optional[float], unit: str) -> str:
    return "--" if value is None else f"{value:.1f}{unit}"


def format_composites(pipeline: Pipeline, result: FetchResult) -> List[str]:
    lines = [f"{'─' * 70}"]
    status = result.status.upper()
    if result.stale:
        status += f" ({result.age_minutes}m old)"
    lines.append(f"  Singapore regional weather - {status}")
    lines.append(f"{'─' * 70}")
    if not result.ok:
        lines.append(f"  ✗ Data unavailable: {result.error}")
        return lines
    for row in pipeline.synthesizer.outbound():
        lines.append(
            f"  {row['display_name']:<12} "
            f"T {_fmt(row['temperature'], '°C'):>8}  "
            f"RH {_fmt(row['humidity'], '%'):>7}  "
            f"Rain {_fmt(row['rainfall'], 'mm'):>7}  "
            f"[{row['quality']}, {row['age_minutes']}m]"
        )
    summary = pipeline.synthesizer.island_summary()
    if summary:
        lines.append(
            f"  {'Island':<12} T {_fmt(summary['temperature'], '°C'):>8}  "
            f"({summary['station_count']} stations)"
        )
    return lines


async def run_once(force: bool = False) -> int:
    pipeline = build_pipeline()
    scheduler = pipeline.scheduler
    try:
        result = await (scheduler.force_refresh() if force else scheduler.refresh())
        print("\n".join(format_composites(pipeline, result)))
        return 0 if result.ok else 1
    finally:
        scheduler.close()


async def run_loop() -> int:
    pipeline = build_pipeline()
    scheduler = pipeline.scheduler
    scheduler.start(run_immediately=True)
    try:
        while True:
            await asyncio.sleep(60)
            pipeline.synthesizer.refresh_ages()
            for row in pipeline.synthesizer.outbound():
                logger.info(
                    f"{row['region']}: T={row['temperature']} RH={row['humidity']} "
                    f"rain={row['rainfall']} quality={row['quality']}"
                )
    finally:
        scheduler.close()


async def run_discover(path: str) -> int:
    try:
        database = await run_discovery(path)
    except FetchError as e:
        logger.error(f"Station discovery failed: {e}")
        return 1
    stats = database["statistics"]
    print(f"✓ {stats['total_stations']} stations written to {path}")
    print(f"  Priority levels: {stats['priority_levels']}")
    print(f"  Coordinate sources: {stats['coordinate_sources']}")
    if stats["skipped_stations"]:
        print(f"  Skipped (no coordinates): {', '.join(stats['skipped_stations'])}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Singapore regional weather pipeline")
    parser.add_argument("--loop", action="store_true", help="keep polling on the adaptive interval")
    parser.add_argument("--force", action="store_true", help="bypass the cache for the first fetch")
    parser.add_argument(
        "--discover",
        nargs="?",
        const=STATIONS_DATABASE_PATH,
        metavar="PATH",
        help="rebuild the stations database from the live NEA API and exit",
    )
    parser.add_argument("--debug", action="store_true", help="verbose logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(name)s | %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    try:
        if args.discover:
            return asyncio.run(run_discover(args.discover))
        if args.loop:
            return asyncio.run(run_loop())
        return asyncio.run(run_once(force=args.force))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
