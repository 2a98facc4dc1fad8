#!/usr/bin/env python3
"""
Data model for the feed ingestion pipeline.

Configuration objects are read-only for the duration of a run. Items are
produced in two phases: the feed parser builds immutable ``ParsedItem``
records, and the extraction phase wraps each of them in an ``EnrichedItem``
carrying the resolved link and the optional full article content.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import re


@dataclass(frozen=True)
class FeedSource:
    """A single configured feed."""
    title: str
    url: str
    category: str
    articles_per_feed: Optional[int] = None

    def item_limit(self, default: int) -> int:
        """Return the per-source item cap, falling back to the global default."""
        if self.articles_per_feed is not None and self.articles_per_feed > 0:
            return self.articles_per_feed
        return default


@dataclass(frozen=True)
class Category:
    name: str
    feeds: Tuple[FeedSource, ...] = ()


@dataclass(frozen=True)
class FeedsConfig:
    """The feed configuration consumed by a run (``articlesPerFeed``, ``fetchFullText``, ``categories``)."""
    articles_per_feed: int = 20
    fetch_full_text: bool = False
    categories: Tuple[Category, ...] = ()

    def all_feeds(self) -> List[FeedSource]:
        """Flatten categories into feeds, preserving configuration order."""
        return [feed for category in self.categories for feed in category.feeds]


@dataclass(frozen=True)
class RawDocument:
    """Response body as received, plus what is needed to decode it."""
    url: str
    body: bytes
    encoding: str = "utf-8"
    content_type: str = ""
    status: int = 200

    @property
    def text(self) -> str:
        return self.body.decode(self.encoding, errors="replace")

    @property
    def declares_charset(self) -> bool:
        return bool(re.search(r"charset=", self.content_type or "", re.I))

    @property
    def is_pdf(self) -> bool:
        return "application/pdf" in (self.content_type or "").lower()


@dataclass(frozen=True)
class ParsedItem:
    """A normalized feed entry as produced by the feed parser.

    ``published_at`` is epoch milliseconds, ``0`` when the entry carries no
    usable date.
    """
    id: str
    title: str
    link: Optional[str]
    content: str
    published_at: int
    feed_title: str
    is_aggregator_source: bool = False
    is_discussion_source: bool = False
    discussion_url: Optional[str] = None


@dataclass(frozen=True)
class EnrichedItem:
    """A parsed item after the extraction phase.

    ``link`` is the resolved article URL (the aggregator wrapper replaced by
    the publisher URL where applicable). ``full_content`` is None when
    extraction was not attempted or did not produce anything.
    """
    item: ParsedItem
    link: Optional[str] = None
    full_content: Optional[str] = None

    @classmethod
    def unenriched(cls, item: ParsedItem) -> "EnrichedItem":
        return cls(item=item, link=item.link)

    def header(self) -> Dict[str, Any]:
        """Index projection: item metadata without any body content."""
        return {
            'id': self.item.id,
            'title': self.item.title,
            'date': self.item.published_at,
            'link': self.link,
            'discussionUrl': self.item.discussion_url,
            'isDiscussionSource': self.item.is_discussion_source,
            'isAggregatorSource': self.item.is_aggregator_source,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Full shard representation (a superset of ``header()``)."""
        data = self.header()
        data['content'] = self.item.content
        if self.full_content is not None:
            data['fullContent'] = self.full_content
        data['feedTitle'] = self.item.feed_title
        return data


@dataclass
class FetchResult:
    """Outcome of fetching and parsing one feed (Phase A)."""
    feed: FeedSource
    items: List[ParsedItem] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class FeedOutcome:
    """A feed with its final items, ready for output assembly."""
    feed: FeedSource
    items: List[EnrichedItem] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def full_content_count(self) -> int:
        return sum(1 for item in self.items if item.full_content)


@dataclass
class ExtractionStats:
    """Counters for the extraction worklist."""
    total: int = 0
    extracted: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def completed(self) -> int:
        return self.extracted + self.failed + self.skipped
