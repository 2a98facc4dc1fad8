#!/usr/bin/env python3
"""
Feed ingestion entry point.

Single-run CLI: loads the feed configuration, fetches and parses every feed,
optionally extracts full article content, and writes the snapshot files.
Invocation timing is left to an external trigger (cron, CI schedule, etc.).

Exit status is 1 only when the configuration cannot be read or the output
cannot be written; per-feed and per-article failures are recorded in the
snapshot instead.
"""

import argparse
import asyncio
import sys
import time
from typing import List, Optional

from config import Config, get_logger, load_feeds_config, setup_logging
from errors import ConfigError, OutputError
from models import ExtractionStats, FeedOutcome
from publisher import SnapshotPublisher, load_index
from scheduler import FeedScheduler
from telemetry import get_tracer, init_telemetry
from utils import format_duration

# Module-specific logger
logger = get_logger("main")
init_telemetry("feed-ingest-main")
_tracer = get_tracer("main")


def log_run_summary(outcomes: List[FeedOutcome], stats: ExtractionStats, elapsed: float) -> None:
    ok = sum(1 for outcome in outcomes if not outcome.error)
    failed = len(outcomes) - ok
    total_items = sum(len(outcome.items) for outcome in outcomes)
    with_full_content = sum(outcome.full_content_count for outcome in outcomes)
    logger.info(f"📊 Feeds: {ok} ok, {failed} failed")
    if stats.total:
        logger.info(
            f"📰 Extraction: {stats.extracted} extracted, {stats.failed} failed, {stats.skipped} skipped of {stats.total}"
        )
    logger.info(
        f"🎉 Done in {format_duration(elapsed)}! {total_items} articles saved ({with_full_content} with full content)"
    )


async def run_pipeline(
    settings: Config,
    config_path: str,
    output_dir: str,
    only_titles: Optional[List[str]] = None,
    full_text: Optional[bool] = None,
) -> bool:
    """Run one ingestion pass and write the snapshot."""
    start_time = time.time()
    try:
        feeds_config = load_feeds_config(config_path)
    except ConfigError as e:
        logger.error(f"❌ Configuration error: {e}")
        return False

    scheduler = FeedScheduler(settings)
    outcomes, stats = await scheduler.run(feeds_config, only_titles=only_titles, full_text=full_text)

    # Partial runs merge into the previous snapshot and keep every other shard
    publisher = SnapshotPublisher(output_dir, prune_stale=settings.PRUNE_STALE_SHARDS)
    try:
        publisher.write_snapshot(outcomes, feeds_config, merge=bool(only_titles))
    except OutputError as e:
        logger.error(f"❌ Output error: {e}")
        return False

    log_run_summary(outcomes, stats, time.time() - start_time)
    return True


def print_status(output_dir: str) -> bool:
    """Print a summary of the last written snapshot."""
    try:
        index = load_index(output_dir)
    except OutputError as e:
        logger.error(f"❌ {e}")
        return False
    if index is None:
        print(f"\n📭 No snapshot found in {output_dir}")
        return False

    print(f"\n📊 Feed Snapshot Status")
    print(f"⏰ Last updated: {index.get('lastUpdated')}")
    for category in index.get('categories', []):
        feeds = category.get('feeds', [])
        items = sum(feed.get('count', 0) for feed in feeds)
        print(f"\n📁 {category.get('name')}: {len(feeds)} feeds, {items} items")
        for feed in feeds:
            marker = f"❌ {feed['error']}" if feed.get('error') else f"{feed.get('count', 0)} items"
            print(f"   • {feed.get('title')}: {marker}")
    return True


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='Feed Ingestion Pipeline')
    parser.add_argument('mode', nargs='?', default='run', choices=['run', 'status'],
                        help='Operation mode (default: run)')
    parser.add_argument('--config', type=str,
                        help='Path to the feed configuration file (default: FEEDS_CONFIG_PATH)')
    parser.add_argument('--output', type=str,
                        help='Output directory for the snapshot (default: DATA_PATH)')
    parser.add_argument('--only', action='append', metavar='TITLE',
                        help='Only process the feed with this title (repeatable)')
    parser.add_argument('--no-full-text', action='store_true',
                        help='Skip full article extraction regardless of fetchFullText')

    args = parser.parse_args()

    setup_logging()
    settings = Config()
    output_dir = args.output or settings.DATA_PATH
    logger.debug(f"Configuration: {settings.get_config_summary()}")

    try:
        if args.mode == 'run':
            logger.info("🚀 Starting feed ingestion")
            success = asyncio.run(run_pipeline(
                settings,
                args.config or settings.FEEDS_CONFIG_PATH,
                output_dir,
                only_titles=args.only,
                full_text=False if args.no_full_text else None,
            ))
            sys.exit(0 if success else 1)

        elif args.mode == 'status':
            success = print_status(output_dir)
            sys.exit(0 if success else 1)

    except KeyboardInterrupt:
        logger.info("👋 Feed ingestion interrupted")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
