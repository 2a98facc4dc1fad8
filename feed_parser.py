#!/usr/bin/env python3
"""
Feed parsing and normalization.

Turns a fetched feed document into a list of ParsedItem records. feedparser
does the XML work; the format it reports is then decoded explicitly into one
of three shapes (RSS 2.0, Atom, RDF/RSS 1.0), each with its own rules for
links and dates. Anything else is rejected as UnparseableDocument.
"""

from calendar import timegm
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import uuid4

import feedparser
from feedparser.datetimes import _parse_date

from config import Config, get_logger
from errors import UnparseableDocument
from models import ParsedItem, RawDocument
from utils import decode_html_entities

logger = get_logger("feed_parser")

UNTITLED = "Untitled"

FORMAT_RSS20 = "rss20"
FORMAT_ATOM = "atom"
FORMAT_RDF = "rdf"

# feedparser version strings for RSS 0.90 and 1.0, both RDF-based
RDF_VERSIONS = {"rss090", "rss10"}

CUSTOM_DATE_FORMATS = [
    "%d %b %Y %H:%M:%S %z",
    "%d %b %Y %H:%M:%S %Z",
    "%d %b %Y %H:%M:%S",
    "%d.%m.%Y %H:%M",
    "%d.%m.%Y",
]


def detect_format(version: Optional[str]) -> Optional[str]:
    """Map a feedparser version string onto one of the supported formats."""
    if not version:
        return None
    if version in RDF_VERSIONS:
        return FORMAT_RDF
    if version.startswith("atom"):
        return FORMAT_ATOM
    if version.startswith("rss"):
        return FORMAT_RSS20
    return None


def _struct_to_ms(value: Any) -> Optional[int]:
    try:
        return int(timegm(tuple(value)[:9])) * 1000
    except (OverflowError, ValueError, TypeError):
        return None


def _parse_with_feedparser(date_str: str) -> Optional[int]:
    try:
        time_struct = _parse_date(date_str)
    except (ValueError, TypeError, AttributeError, OSError):
        return None
    if time_struct:
        return _struct_to_ms(time_struct)
    return None


def _parse_with_email_utils(date_str: str) -> Optional[int]:
    try:
        dt = parsedate_to_datetime(date_str)
    except (TypeError, ValueError, OverflowError, IndexError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _parse_with_custom_formats(date_str: str) -> Optional[int]:
    for fmt in CUSTOM_DATE_FORMATS:
        try:
            dt = datetime.strptime(date_str, fmt)
        except (ValueError, TypeError):
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    return None


def parse_date_ms(value: Any) -> int:
    """Convert a feed date (string or time struct) to epoch milliseconds.

    Returns 0 when the value is missing or cannot be parsed.
    """
    if value in (None, ''):
        return 0
    if isinstance(value, str):
        date_str = value.strip()
        parsers: List[Callable[[str], Optional[int]]] = [
            _parse_with_feedparser,
            _parse_with_email_utils,
            _parse_with_custom_formats,
        ]
        for parser in parsers:
            timestamp = parser(date_str)
            if timestamp is not None and timestamp > 0:
                return timestamp
        return 0
    timestamp = _struct_to_ms(value)
    return timestamp if timestamp and timestamp > 0 else 0


class FeedParser:
    """Parses RSS 2.0, Atom and RDF documents into ParsedItem lists."""

    def __init__(self, settings: Optional[Config] = None) -> None:
        self.settings = settings or Config()

    def is_aggregator_feed(self, feed_title: str) -> bool:
        lowered = (feed_title or "").lower()
        return any(marker in lowered for marker in self.settings.AGGREGATOR_MARKERS)

    def is_discussion_feed(self, feed_title: str) -> bool:
        lowered = (feed_title or "").lower()
        return any(marker in lowered for marker in self.settings.DISCUSSION_MARKERS)

    def parse(self, document: Union[RawDocument, bytes, str], feed_title: str, limit: Optional[int] = None) -> List[ParsedItem]:
        """Parse a feed document and return at most ``limit`` normalized items.

        Raises:
            UnparseableDocument: when the document is not one of the supported formats.
        """
        parsed = self._run_feedparser(document)
        feed_format = detect_format(parsed.get('version'))
        if feed_format is None:
            detail = parsed.get('bozo_exception')
            logger.debug(f"Unrecognized feed document for {feed_title}: {detail}")
            raise UnparseableDocument()
        if parsed.get('bozo'):
            logger.debug(f"Feed parsing warning for {feed_title}: {parsed.get('bozo_exception')}")

        entries = list(parsed.get('entries') or [])
        if limit is not None:
            entries = entries[:max(limit, 0)]

        decoder = {
            FORMAT_RSS20: self._decode_rss20,
            FORMAT_ATOM: self._decode_atom,
            FORMAT_RDF: self._decode_rdf,
        }[feed_format]

        is_aggregator = self.is_aggregator_feed(feed_title)
        is_discussion = self.is_discussion_feed(feed_title)
        items = [decoder(entry, feed_title, is_aggregator, is_discussion) for entry in entries]
        logger.debug(f"Parsed {len(items)} {feed_format} items from {feed_title}")
        return items

    def _run_feedparser(self, document: Union[RawDocument, bytes, str]) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            'sanitize_html': True,
            'resolve_relative_uris': True,
        }
        if isinstance(document, RawDocument):
            # Only pass the HTTP charset along when one was declared, otherwise
            # feedparser sniffs the XML declaration itself
            if document.declares_charset:
                options['response_headers'] = {'content-type': document.content_type}
            payload: Union[bytes, str] = document.body
        elif isinstance(document, str):
            payload = document.encode('utf-8')
        else:
            payload = document
        return feedparser.parse(payload, **options)

    # ------------------------------------------------------------------
    # Per-format decoders
    # ------------------------------------------------------------------
    def _decode_rss20(self, entry: Dict[str, Any], feed_title: str, is_aggregator: bool, is_discussion: bool) -> ParsedItem:
        link = self._text(entry.get('link'))
        discussion_url = self._text(entry.get('comments')) if is_discussion else None
        return self._build_item(
            entry,
            feed_title,
            link=link or discussion_url,
            published_at=self._entry_date(entry, 'published', 'updated'),
            is_aggregator=is_aggregator,
            is_discussion=is_discussion,
            discussion_url=discussion_url,
        )

    def _decode_atom(self, entry: Dict[str, Any], feed_title: str, is_aggregator: bool, is_discussion: bool) -> ParsedItem:
        return self._build_item(
            entry,
            feed_title,
            link=self._atom_link(entry),
            published_at=self._entry_date(entry, 'updated', 'published'),
            is_aggregator=is_aggregator,
            is_discussion=is_discussion,
        )

    def _decode_rdf(self, entry: Dict[str, Any], feed_title: str, is_aggregator: bool, is_discussion: bool) -> ParsedItem:
        # feedparser exposes dc:date as ``updated``
        return self._build_item(
            entry,
            feed_title,
            link=self._text(entry.get('link')),
            published_at=self._entry_date(entry, 'updated', 'date', 'published'),
            is_aggregator=is_aggregator,
            is_discussion=is_discussion,
        )

    # ------------------------------------------------------------------
    # Field helpers
    # ------------------------------------------------------------------
    def _build_item(
        self,
        entry: Dict[str, Any],
        feed_title: str,
        link: Optional[str],
        published_at: int,
        is_aggregator: bool,
        is_discussion: bool,
        discussion_url: Optional[str] = None,
    ) -> ParsedItem:
        return ParsedItem(
            id=self._entry_id(entry, link),
            title=self._entry_title(entry),
            link=link,
            content=self._entry_content(entry),
            published_at=published_at,
            feed_title=feed_title,
            is_aggregator_source=is_aggregator,
            is_discussion_source=is_discussion,
            discussion_url=discussion_url,
        )

    def _text(self, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def _atom_link(self, entry: Dict[str, Any]) -> Optional[str]:
        """Pick the rel=alternate link, else the first link with an href."""
        links = [link for link in (entry.get('links') or []) if link.get('href')]
        for link in links:
            if link.get('rel', 'alternate') == 'alternate':
                return self._text(link.get('href'))
        if links:
            return self._text(links[0].get('href'))
        return self._text(entry.get('link'))

    def _entry_id(self, entry: Dict[str, Any], link: Optional[str]) -> str:
        return self._text(entry.get('id')) or link or uuid4().hex[:12]

    def _entry_title(self, entry: Dict[str, Any]) -> str:
        title = self._text(entry.get('title'))
        if not title:
            return UNTITLED
        return decode_html_entities(title)

    def _entry_content(self, entry: Dict[str, Any]) -> str:
        """First non-empty of encoded content, content, description, summary."""
        for content_item in entry.get('content') or []:
            value = content_item.get('value')
            if value and value.strip():
                return decode_html_entities(value)
        for field_name in ('description', 'summary'):
            value = entry.get(field_name)
            if value and str(value).strip():
                return decode_html_entities(str(value))
        return ""

    def _entry_date(self, entry: Dict[str, Any], *fields: str) -> int:
        """Epoch milliseconds from the first usable field in ``fields``; 0 otherwise."""
        for field_name in fields:
            parsed_value = entry.get(f"{field_name}_parsed")
            if parsed_value:
                timestamp = parse_date_ms(parsed_value)
                if timestamp:
                    return timestamp
            timestamp = parse_date_ms(entry.get(field_name))
            if timestamp:
                return timestamp
        return 0
