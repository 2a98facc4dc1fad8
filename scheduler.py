#!/usr/bin/env python3
"""
Pipeline scheduler.

Runs a single ingestion pass in two phases:

- Phase A: one fetch+parse task per configured feed, all launched at once.
  A failing feed is recorded in its FetchResult and never affects the others.
- Phase B (only when full-text extraction is enabled): every parsed item goes
  into one work queue drained by a fixed pool of extraction workers, which
  bounds the number of article fetches in flight regardless of item volume.

Phase B never starts before Phase A has finished for every feed.
"""

import asyncio
from typing import Iterable, List, Optional, Sequence, Tuple

from aiohttp import ClientSession

from config import Config, get_logger
from errors import FeedIngestError
from extractor import ContentExtractor
from feed_parser import FeedParser
from fetcher import HttpFetcher
from models import (
    EnrichedItem,
    ExtractionStats,
    FeedOutcome,
    FeedsConfig,
    FeedSource,
    FetchResult,
    ParsedItem,
)
from telemetry import get_tracer, init_telemetry, trace_span
from utils import validate_url

# Module-specific logger
logger = get_logger("scheduler")

# Initialize telemetry for the scheduler subsystem
init_telemetry("feed-ingest-scheduler")
_tracer = get_tracer("scheduler")

PROGRESS_INTERVAL = 10


class FeedScheduler:
    """Coordinates the fetch and extraction phases of a run."""

    def __init__(self, settings: Optional[Config] = None) -> None:
        self.settings = settings or Config()

    def select_feeds(self, feeds_config: FeedsConfig, only_titles: Optional[Iterable[str]] = None) -> List[FeedSource]:
        """Return configured feeds, optionally restricted to the given titles (case-insensitive)."""
        feeds = feeds_config.all_feeds()
        if not only_titles:
            return feeds
        wanted = {title.strip().lower() for title in only_titles if title and title.strip()}
        selected = [feed for feed in feeds if feed.title.lower() in wanted]
        missing = wanted - {feed.title.lower() for feed in selected}
        if missing:
            logger.warning(f"Unknown feed titles ignored: {', '.join(sorted(missing))}")
        return selected

    @trace_span(
        "fetch_feed",
        tracer_name="scheduler",
        attr_from_args=lambda self, source, fetcher, parser, default_limit: {"feed.title": source.title, "feed.url": source.url},
    )
    async def fetch_feed(self, source: FeedSource, fetcher: HttpFetcher, parser: FeedParser, default_limit: int) -> FetchResult:
        """Fetch and parse one feed, capturing any failure in the result."""
        if not validate_url(source.url):
            logger.warning(f"  ✗ {source.title}: invalid feed URL {source.url!r}")
            return FetchResult(feed=source, items=[], error="Invalid feed URL")
        try:
            document = await fetcher.fetch_with_retry(source.url)
            items = parser.parse(document, source.title, limit=source.item_limit(default_limit))
        except FeedIngestError as e:
            logger.warning(f"  ✗ {source.title}: {e}")
            return FetchResult(feed=source, items=[], error=str(e))
        except Exception as e:
            logger.error(f"  ✗ {source.title}: unexpected error: {e}", exc_info=True)
            return FetchResult(feed=source, items=[], error=str(e) or e.__class__.__name__)
        logger.info(f"  ✓ {source.title}: {len(items)} items")
        return FetchResult(feed=source, items=items)

    async def fetch_all_feeds(
        self,
        feeds: Sequence[FeedSource],
        fetcher: HttpFetcher,
        parser: FeedParser,
        default_limit: int,
    ) -> List[FetchResult]:
        """Phase A: fetch every feed concurrently; one FetchResult per feed, in input order."""
        logger.info(f"📡 Fetching {len(feeds)} feeds")
        return list(await asyncio.gather(
            *(self.fetch_feed(source, fetcher, parser, default_limit) for source in feeds)
        ))

    @trace_span(
        "extract_items",
        tracer_name="scheduler",
        attr_from_args=lambda self, items, extractor: {"extraction.total": len(items)},
    )
    async def extract_items(self, items: Sequence[ParsedItem], extractor: ContentExtractor) -> Tuple[List[EnrichedItem], ExtractionStats]:
        """Phase B: enrich items with a bounded worker pool.

        Returns enriched items in the same order as ``items`` plus counters.
        Items without a link are skipped; an item whose extraction raises or
        returns nothing counts as failed and keeps its feed summary.
        """
        stats = ExtractionStats(total=len(items))
        results: List[Optional[EnrichedItem]] = [None] * len(items)
        if not items:
            return [], stats

        queue: asyncio.Queue = asyncio.Queue()
        for index, item in enumerate(items):
            queue.put_nowait((index, item))

        def record(outcome: str) -> None:
            setattr(stats, outcome, getattr(stats, outcome) + 1)
            if stats.completed % PROGRESS_INTERVAL == 0 or stats.completed == stats.total:
                logger.info(
                    f"  Progress: {stats.completed}/{stats.total} "
                    f"({stats.extracted} extracted, {stats.failed} failed, {stats.skipped} skipped)"
                )

        async def worker() -> None:
            while True:
                try:
                    index, item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if not item.link:
                    results[index] = EnrichedItem.unenriched(item)
                    record('skipped')
                    continue
                try:
                    enriched = await extractor.enrich(item)
                except Exception as e:
                    logger.debug(f"Extraction error for {item.link}: {e}")
                    results[index] = EnrichedItem.unenriched(item)
                    record('failed')
                    continue
                results[index] = enriched
                record('extracted' if enriched.full_content else 'failed')

        pool_size = min(self.settings.EXTRACTION_CONCURRENCY, len(items))
        logger.info(f"📰 Extracting full content for {len(items)} articles with {pool_size} workers")
        await asyncio.gather(*(worker() for _ in range(pool_size)))

        logger.info(f"  ✓ Successfully extracted {stats.extracted}/{stats.total} articles")
        if stats.failed:
            logger.info(f"  ⚠ {stats.failed} articles will use the feed summary")
        return [result for result in results if result is not None], stats

    async def process(
        self,
        feeds: Sequence[FeedSource],
        fetcher: HttpFetcher,
        parser: FeedParser,
        extractor: Optional[ContentExtractor],
        default_limit: int,
        full_text: bool,
    ) -> Tuple[List[FeedOutcome], ExtractionStats]:
        """Run both phases with the given collaborators."""
        fetch_results = await self.fetch_all_feeds(feeds, fetcher, parser, default_limit)

        if not full_text or extractor is None:
            outcomes = [
                FeedOutcome(
                    feed=result.feed,
                    items=[EnrichedItem.unenriched(item) for item in result.items],
                    error=result.error,
                )
                for result in fetch_results
            ]
            return outcomes, ExtractionStats()

        worklist = [item for result in fetch_results for item in result.items]
        enriched, stats = await self.extract_items(worklist, extractor)

        outcomes = []
        offset = 0
        for result in fetch_results:
            count = len(result.items)
            outcomes.append(FeedOutcome(feed=result.feed, items=enriched[offset:offset + count], error=result.error))
            offset += count
        return outcomes, stats

    @trace_span("run_pipeline", tracer_name="scheduler")
    async def run(
        self,
        feeds_config: FeedsConfig,
        only_titles: Optional[Iterable[str]] = None,
        full_text: Optional[bool] = None,
    ) -> Tuple[List[FeedOutcome], ExtractionStats]:
        """Run one ingestion pass over a shared HTTP session."""
        feeds = self.select_feeds(feeds_config, only_titles)
        use_full_text = feeds_config.fetch_full_text if full_text is None else full_text
        logger.info(f"Total feeds: {len(feeds)}")
        logger.info(f"Full text extraction: {'enabled' if use_full_text else 'disabled'}")

        async with ClientSession() as session:
            fetcher = HttpFetcher(session, self.settings)
            parser = FeedParser(self.settings)
            extractor = ContentExtractor(fetcher, self.settings) if use_full_text else None
            try:
                return await self.process(
                    feeds,
                    fetcher,
                    parser,
                    extractor,
                    feeds_config.articles_per_feed,
                    use_full_text,
                )
            finally:
                if extractor is not None:
                    await extractor.close()
