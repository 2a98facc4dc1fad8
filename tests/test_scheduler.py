import asyncio

import pytest

from config import Config
from errors import ExtractionFailed, HttpError
from feed_parser import FeedParser
from models import EnrichedItem, FeedsConfig, Category, FeedSource, ParsedItem, RawDocument
from scheduler import FeedScheduler


def rss(count, prefix):
    items = "".join(
        f"<item><guid>{prefix}-{i}</guid><title>{prefix} {i}</title>"
        f"<link>https://example.com/{prefix}/{i}</link><description>Summary {i}</description></item>"
        for i in range(count)
    )
    return (
        '<?xml version="1.0"?><rss version="2.0"><channel><title>Feed</title>'
        f"<link>https://example.com/</link><description>d</description>{items}</channel></rss>"
    ).encode("utf-8")


class FakeFetcher:
    def __init__(self, documents, failures=None, events=None):
        self.documents = documents
        self.failures = failures or {}
        self.events = events if events is not None else []

    async def fetch_with_retry(self, url):
        await asyncio.sleep(0)
        self.events.append(("fetch", url))
        if url in self.failures:
            raise self.failures[url]
        return RawDocument(url=url, body=self.documents[url])


class FakeExtractor:
    """Tracks how many enrich() calls are in flight at once."""

    def __init__(self, events=None):
        self.active = 0
        self.peak = 0
        self.events = events if events is not None else []

    async def enrich(self, item):
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.events.append(("extract", item.link))
        try:
            await asyncio.sleep(0.001)
            n = int(item.id)
            if n % 7 == 0:
                raise ExtractionFailed("boom")
            if n % 5 == 0:
                return EnrichedItem(item=item, link=item.link)
            return EnrichedItem(item=item, link=item.link, full_content=f"<p>Article {n}</p>")
        finally:
            self.active -= 1


def make_items(count):
    return [
        ParsedItem(
            id=str(i),
            title=f"Item {i}",
            link=None if i % 20 == 19 else f"https://example.com/{i}",
            content=f"Summary {i}",
            published_at=0,
            feed_title="Example",
        )
        for i in range(count)
    ]


@pytest.fixture
def settings():
    settings = Config()
    settings.EXTRACTION_CONCURRENCY = 10
    return settings


@pytest.mark.asyncio
async def test_worker_pool_processes_every_item_with_bounded_concurrency(settings):
    items = make_items(237)
    extractor = FakeExtractor()

    enriched, stats = await FeedScheduler(settings).extract_items(items, extractor)

    skipped = sum(1 for item in items if item.link is None)
    linked = [int(item.id) for item in items if item.link]
    extracted = sum(1 for n in linked if n % 7 != 0 and n % 5 != 0)

    assert stats.total == 237
    assert stats.extracted + stats.failed + stats.skipped == 237
    assert stats.skipped == skipped
    assert stats.extracted == extracted
    assert stats.failed == len(linked) - extracted
    assert extractor.peak == 10
    assert [e.item.id for e in enriched] == [item.id for item in items]


@pytest.mark.asyncio
async def test_failed_and_skipped_items_keep_feed_summary(settings):
    items = make_items(20)

    enriched, _ = await FeedScheduler(settings).extract_items(items, FakeExtractor())

    by_id = {e.item.id: e for e in enriched}
    assert by_id["7"].full_content is None
    assert by_id["7"].to_dict()["content"] == "Summary 7"
    assert "fullContent" not in by_id["7"].to_dict()
    assert by_id["19"].link is None
    assert by_id["1"].full_content == "<p>Article 1</p>"


@pytest.mark.asyncio
async def test_pool_is_not_larger_than_worklist(settings):
    extractor = FakeExtractor()

    enriched, stats = await FeedScheduler(settings).extract_items(make_items(3), extractor)

    assert len(enriched) == 3
    assert stats.completed == 3
    assert extractor.peak <= 3


@pytest.mark.asyncio
async def test_empty_worklist(settings):
    enriched, stats = await FeedScheduler(settings).extract_items([], FakeExtractor())

    assert enriched == []
    assert stats.total == 0


@pytest.mark.asyncio
async def test_feed_failures_are_isolated(settings):
    good = FeedSource(title="Good", url="https://good.example/feed", category="News")
    missing = FeedSource(title="Missing", url="https://missing.example/feed", category="News")
    broken = FeedSource(title="Broken", url="https://broken.example/feed", category="News", articles_per_feed=2)
    fetcher = FakeFetcher(
        documents={
            good.url: rss(5, "good"),
            broken.url: b"<html><body>not a feed</body></html>",
        },
        failures={missing.url: HttpError(404, missing.url)},
    )

    results = await FeedScheduler(settings).fetch_all_feeds(
        [good, missing, broken], fetcher, FeedParser(settings), default_limit=3
    )

    assert [r.feed.title for r in results] == ["Good", "Missing", "Broken"]
    assert len(results[0].items) == 3
    assert results[0].error is None
    assert results[1].items == []
    assert results[1].error == "HTTP 404"
    assert results[2].items == []
    assert results[2].error == "Unparseable feed document"


@pytest.mark.asyncio
async def test_extraction_starts_after_all_feeds_are_fetched(settings):
    events = []
    feeds = [
        FeedSource(title=f"Feed {n}", url=f"https://feed{n}.example/rss", category="News")
        for n in range(4)
    ]
    fetcher = FakeFetcher({feed.url: rss(2, str(n)) for n, feed in enumerate(feeds)}, events=events)

    class OrderedExtractor(FakeExtractor):
        async def enrich(self, item):
            self.events.append(("extract", item.link))
            return EnrichedItem(item=item, link=item.link, full_content="<p>x</p>")

    outcomes, stats = await FeedScheduler(settings).process(
        feeds, fetcher, FeedParser(settings), OrderedExtractor(events), default_limit=20, full_text=True
    )

    kinds = [kind for kind, _ in events]
    assert kinds == ["fetch"] * 4 + ["extract"] * 8
    assert [len(o.items) for o in outcomes] == [2, 2, 2, 2]
    assert [o.items[0].item.id for o in outcomes] == ["0-0", "1-0", "2-0", "3-0"]
    assert stats.extracted == 8


@pytest.mark.asyncio
async def test_full_text_disabled_skips_extraction(settings):
    feed = FeedSource(title="Only", url="https://only.example/rss", category="News")
    fetcher = FakeFetcher({feed.url: rss(2, "only")})
    extractor = FakeExtractor()

    outcomes, stats = await FeedScheduler(settings).process(
        [feed], fetcher, FeedParser(settings), extractor, default_limit=20, full_text=False
    )

    assert extractor.events == []
    assert stats.total == 0
    assert [e.link for e in outcomes[0].items] == ["https://example.com/only/0", "https://example.com/only/1"]
    assert all(e.full_content is None for e in outcomes[0].items)


def test_select_feeds_by_title(settings):
    feeds_config = FeedsConfig(categories=(
        Category(name="Tech", feeds=(
            FeedSource(title="Hacker News", url="https://hn.example/rss", category="Tech"),
            FeedSource(title="Golem", url="https://golem.example/rss", category="Tech"),
        )),
    ))
    scheduler = FeedScheduler(settings)

    assert [f.title for f in scheduler.select_feeds(feeds_config)] == ["Hacker News", "Golem"]
    assert [f.title for f in scheduler.select_feeds(feeds_config, ["golem", "unknown"])] == ["Golem"]


@pytest.mark.asyncio
async def test_invalid_feed_url_is_reported_without_fetching(settings):
    feed = FeedSource(title="Typo", url="htp:/broken", category="News")
    fetcher = FakeFetcher({})

    result = await FeedScheduler(settings).fetch_feed(feed, fetcher, FeedParser(settings), 20)

    assert result.error == "Invalid feed URL"
    assert result.items == []
    assert fetcher.events == []
