#!/usr/bin/env python3
"""
Article content extraction.

Given an article URL, fetches the page, rejects consent/cookie walls, strips
boilerplate, runs readability to find the main content and turns the result
into either sanitized HTML (with images and video embeds normalized) or, when
no usable markup survives, a set of cleaned plain-text paragraphs.

Extraction never fails an item: any error is retried once and then reported
as ``None``, meaning "keep the feed-provided summary".
"""

from asyncio import get_event_loop
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, List, Optional
from urllib.parse import urljoin
import html
import io
import re

from bs4 import BeautifulSoup
from pypdf import PdfReader
from readability import Document

from config import Config, get_logger
from errors import ExtractionFailed
from fetcher import HttpFetcher, is_on_domain
from models import EnrichedItem, ParsedItem
from telemetry import get_tracer, init_telemetry, trace_span
from utils import RetryHelper

logger = get_logger("extractor")
init_telemetry("feed-ingest-extractor")
_tracer = get_tracer("extractor")

CONSENT_WALL_PATTERNS = [
    re.compile(r'cookies?\s*(zustimmen|akzeptieren|accept)', re.I),
    re.compile(r'cookie\s*consent', re.I),
    re.compile(r'datenschutz.*?zustimm', re.I),
    re.compile(r'privacy.*?consent', re.I),
    re.compile(r'golem\s*pur', re.I),
    re.compile(r'ohne\s*werbung', re.I),
]

# Removed from the raw page before readability scores it
BOILERPLATE_SELECTORS = [
    'script', 'style', 'nav', 'footer', 'aside',
    '.ad', '.advertisement', '.comments', '.social',
]

# Removed from the readability result before it is served as HTML
CONTENT_NOISE_SELECTORS = [
    'script', 'style', 'nav', 'footer', 'aside', 'header', 'noscript',
    '.advertisement', '.ad', '.ads', '.social-share', '.comments',
    '.related', '.sidebar', '.newsletter', '.popup', '.modal',
    '[class*="cookie"]', '[class*="consent"]', '[class*="banner"]',
    '[class*="promo"]', '[class*="subscribe"]', '[class*="share"]',
    '[class*="social"]', '[class*="author"]', '[class*="meta"]',
    '[class*="byline"]', '[class*="timestamp"]', '[class*="date"]',
]

EXCLUDED_IMAGE_MARKERS = ('avatar', 'icon', 'logo', 'pixel', 'tracking')
IMAGE_STYLE = 'max-width: 100%; height: auto; max-height: 300px; object-fit: contain; border-radius: 6px; margin: 10px 0;'
EMBED_STYLE = 'width: 100%; max-width: 560px; height: 315px; border: none; border-radius: 6px; margin: 10px 0;'
VIDEO_STYLE = 'max-width: 100%; height: auto; border-radius: 6px; margin: 10px 0;'

MEDIA_TAGS = ['img', 'iframe', 'video', 'audio', 'picture', 'source', 'embed']
VOID_TAGS = {'br', 'hr', 'wbr'}

MIN_LINE_LENGTH = 20
ALWAYS_KEEP_LINE_LENGTH = 500
DEDUP_PREFIX_LENGTH = 60

JUNK_LINE_PATTERNS = [
    re.compile(r'^https?://', re.I),                        # URLs
    re.compile(r'[\w.-]+@[\w.-]+\.\w{2,}'),                 # Email addresses
    re.compile(r'^\+?\d[\d\s\-()]{6,}$'),                   # Phone numbers
    re.compile(r'^\d{4}-\d{2}-\d{2}'),                      # ISO dates
    re.compile(r'^\d{2}\.\d{2}\.\d{4}'),                    # European dates
    re.compile(r'^\d{2}:\d{2}.*?(GMT|UTC|MSK|\+\d{2})', re.I),
    re.compile(r'^(Updated|Published|Опубликовано|Обновлено):', re.I),
    re.compile(r'Sputnik International', re.I),
    re.compile(r'Rossiya Segodnya', re.I),
    re.compile(r'РИА Новости', re.I),
    re.compile(r'ТАСС', re.I),
    re.compile(r'feedback@|internet-group@', re.I),
    re.compile(r'MIA\s*[„"«»]', re.I),
    re.compile(r'ФГУП\s', re.I),
    re.compile(r'^[a-z]{2}[-_][A-Z]{2}$'),                  # Locale codes
    re.compile(r'^(News|Новости|World|В мире)$', re.I),
    re.compile(r'^\d{4}$'),                                 # Just a year
    re.compile(r'^(world|russia|ukraine|usa|europe|россия|украина|мир)$', re.I),
    re.compile(r'xn--.*?\.xn--', re.I),                     # Punycode domains
    re.compile(r'\.jpg|\.png|\.gif|\.webp', re.I),
    re.compile(r'awards?/?$', re.I),
    re.compile(r'^Copyright\s|©\s?\d{4}', re.I),
    re.compile(r'All rights reserved', re.I),
    re.compile(r'Все права защищены', re.I),
    re.compile(r'Cookie|Datenschutz|Privacy', re.I),
    re.compile(r'Cookies zustimmen', re.I),
    re.compile(r'Golem pur', re.I),
    re.compile(r'^Zu Golem|^Hier anmelden', re.I),
]


def is_consent_wall(text: Optional[str]) -> bool:
    """Check whether a page (or its extracted text) is a cookie/consent wall."""
    if not text:
        return False
    return any(pattern.search(text) for pattern in CONSENT_WALL_PATTERNS)


def _remove_selectors(soup: Any, selectors: List[str]) -> None:
    for selector in selectors:
        for tag in soup.select(selector):
            if not getattr(tag, 'decomposed', False):
                tag.decompose()


def strip_boilerplate(html_content: str) -> str:
    """Drop scripts, navigation, ads, social widgets and comments from a page."""
    soup = BeautifulSoup(html_content, 'html.parser')
    _remove_selectors(soup, BOILERPLATE_SELECTORS)
    return str(soup)


def _strip_unsafe_attributes(root: Any) -> None:
    """Remove on* handlers and javascript: URLs."""
    for tag in root.find_all(True):
        for attr in list(tag.attrs):
            if attr.lower().startswith('on'):
                del tag[attr]
            elif attr.lower() in ('href', 'src') and str(tag[attr]).strip().lower().startswith('javascript:'):
                del tag[attr]


def _normalize_images(root: Any, base_url: Optional[str]) -> bool:
    has_media = False
    for img in root.find_all('img'):
        src = img.get('src') or img.get('data-src') or img.get('data-lazy-src')
        if src and base_url:
            src = urljoin(base_url, src)
        if src and src.startswith('http') and not any(marker in src.lower() for marker in EXCLUDED_IMAGE_MARKERS):
            img['src'] = src
            img['style'] = IMAGE_STYLE
            for attr in ('srcset', 'data-src', 'data-lazy-src', 'width', 'height'):
                img.attrs.pop(attr, None)
            has_media = True
        else:
            img.decompose()
    return has_media


def _normalize_embeds(root: Any) -> bool:
    has_media = False
    for iframe in root.find_all('iframe'):
        src = iframe.get('src') or iframe.get('data-src') or ''
        lowered = src.lower()
        if 'youtube' in lowered or 'youtu.be' in lowered:
            iframe['src'] = re.sub(r'^http:', 'https:', src)
            iframe['style'] = EMBED_STYLE
            iframe['allowfullscreen'] = 'true'
            has_media = True
        elif 'vimeo' in lowered:
            iframe['style'] = EMBED_STYLE
            has_media = True
    for video in root.find_all('video'):
        video['style'] = VIDEO_STYLE
        video['controls'] = 'true'
        has_media = True
    return has_media


def _prune_empty_elements(root: Any) -> None:
    """Repeatedly remove elements with neither text nor media until stable."""
    changed = True
    while changed:
        changed = False
        for tag in root.find_all(True):
            if getattr(tag, 'decomposed', False):
                continue
            if tag.name in MEDIA_TAGS or tag.name in VOID_TAGS:
                continue
            if tag.get_text(strip=True) or tag.find(MEDIA_TAGS):
                continue
            tag.decompose()
            changed = True


def clean_html_content(html_content: Optional[str], base_url: Optional[str] = None, min_text_length: int = 100) -> Optional[str]:
    """Sanitize readability output into presentable HTML.

    Behavior:
    - Removes noise blocks (share widgets, bylines, cookie banners, related links)
    - Keeps images with absolute http(s) sources and a bounded display size,
      dropping avatars, icons, logos and tracking pixels
    - Normalizes YouTube/Vimeo embeds and native video to a fixed size
    - Prunes empty elements and collapses whitespace

    Returns the HTML when it carries more than ``min_text_length`` characters
    of text or any embedded media, otherwise None.
    """
    if not html_content:
        return None

    soup = BeautifulSoup(html_content, 'html.parser')
    _remove_selectors(soup, CONTENT_NOISE_SELECTORS)

    root = soup.find('article') or soup.find('main') or soup.body or soup
    _strip_unsafe_attributes(root)
    has_images = _normalize_images(root, base_url)
    has_embeds = _normalize_embeds(root)
    _prune_empty_elements(root)

    inner = root.decode_contents() if root is not soup else str(soup)
    content = re.sub(r'\s+', ' ', inner).strip()
    text_length = len(re.sub(r'\s+', ' ', root.get_text(' ')).strip())

    if text_length > min_text_length or has_images or has_embeds:
        return content
    return None


def _is_content_line(line: str, normalized_title: str, title_words: List[str]) -> bool:
    if len(line) < MIN_LINE_LENGTH:
        return False
    if len(line) > ALWAYS_KEEP_LINE_LENGTH:
        return True

    if any(pattern.search(line) for pattern in JUNK_LINE_PATTERNS):
        return False

    line_lower = line.lower()
    if line_lower == normalized_title:
        return False

    # Near-verbatim repetitions of the title
    if len(title_words) >= 3:
        matching = [word for word in title_words if word in line_lower]
        if len(matching) >= len(title_words) * 0.8 and len(line) < 150:
            return False

    # Tag lists
    if line.count(',') > 3 and len(line) < 200 and '.' not in line:
        return False

    # Low letter density usually means metadata
    letters = sum(1 for ch in line if ch.isalpha())
    if letters / len(line) < 0.5 and len(line) < 100:
        return False

    return True


def clean_text_content(text: Optional[str], title: str = '', min_length: int = 100) -> Optional[str]:
    """Reduce extracted plain text to paragraphs of real article content.

    Drops short lines, junk (URLs, emails, phone numbers, dates, copyright
    and wire-service boilerplate, title repetitions, tag lists), low letter
    density lines, and duplicates by prefix. Returns ``<p>`` blocks, or None
    when less than ``min_length`` characters survive.
    """
    if not text:
        return None

    normalized_title = (title or '').lower().strip()
    title_words = [word for word in normalized_title.split() if len(word) > 3]

    lines = [line.strip() for line in text.split('\n')]
    lines = [line for line in lines if line and _is_content_line(line, normalized_title, title_words)]

    seen = set()
    unique_lines = []
    for line in lines:
        key = line[:DEDUP_PREFIX_LENGTH].lower()
        if key in seen:
            continue
        seen.add(key)
        unique_lines.append(line)

    cleaned = '\n\n'.join(unique_lines).strip()
    cleaned = re.sub(r'\n{3,}', '\n\n', cleaned)
    cleaned = re.sub(r'[ \t]+', ' ', cleaned)

    if len(cleaned) < min_length:
        return None

    paragraphs = [p.strip() for p in cleaned.split('\n\n')]
    return '\n'.join(f"<p>{html.escape(p, quote=False)}</p>" for p in paragraphs if len(p) > MIN_LINE_LENGTH)


class ContentExtractor:
    """Resolves item links and extracts full article content."""

    def __init__(self, fetcher: HttpFetcher, settings: Optional[Config] = None) -> None:
        self.fetcher = fetcher
        self.settings = settings or fetcher.settings
        self.executor = ThreadPoolExecutor()
        self.retry_helper = RetryHelper(max_retries=1, base_delay=self.settings.EXTRACTION_RETRY_DELAY)

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in a thread pool executor."""
        loop = get_event_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    async def resolve_link(self, item: ParsedItem) -> Optional[str]:
        """Return the article URL for an item, unwrapping aggregator redirects."""
        link = item.link
        domain = self.settings.AGGREGATOR_DOMAIN
        if not link or not item.is_aggregator_source or not is_on_domain(link, domain):
            return link
        resolved = await self.fetcher.resolve_aggregator_redirect(link)
        if resolved and not is_on_domain(resolved, domain):
            logger.debug(f"Resolved aggregator link {link} -> {resolved}")
            return resolved
        return link

    async def enrich(self, item: ParsedItem) -> EnrichedItem:
        """Resolve the item's link and attach its full content when extraction succeeds."""
        link = await self.resolve_link(item)
        if not link:
            return EnrichedItem(item=item, link=None)
        full_content = await self.extract(link, item.title)
        return EnrichedItem(item=item, link=link, full_content=full_content)

    @trace_span(
        "extract_article",
        tracer_name="extractor",
        attr_from_args=lambda self, url, title='': {"entry.url": url},
    )
    async def extract(self, url: str, title: str = '') -> Optional[str]:
        """Extract article content from ``url``; None means "use the feed summary"."""
        try:
            return await self.retry_helper.run(lambda: self._extract_once(url, title), label=url)
        except Exception as e:
            logger.debug(f"Extraction failed for {url}: {e}")
            return None

    async def _extract_once(self, url: str, title: str) -> Optional[str]:
        document = await self.fetcher.fetch(url)
        if document.is_pdf:
            text = await self.run_in_executor(self._pdf_text, document.body, url)
            return clean_text_content(text, title, self.settings.MIN_ARTICLE_LENGTH)

        page = document.text
        if is_consent_wall(page):
            logger.debug(f"Consent wall detected at {url}")
            return None
        return await self.run_in_executor(self._extract_from_html, page, document.url, title)

    def _extract_from_html(self, page: str, url: str, title: str) -> Optional[str]:
        """Readability pass plus cleaning (runs in executor)."""
        try:
            article_html = Document(
                strip_boilerplate(page),
                url=url,
                retry_length=self.settings.READABILITY_CHAR_THRESHOLD,
            ).summary(html_partial=True)
        except (ValueError, RuntimeError) as e:
            raise ExtractionFailed(f"Readability failed for {url}: {e}") from e

        if not article_html:
            return None

        text = BeautifulSoup(article_html, 'html.parser').get_text('\n')
        if is_consent_wall(text):
            logger.debug(f"Consent wall detected in extracted text of {url}")
            return None

        content = clean_html_content(article_html, base_url=url, min_text_length=self.settings.MIN_ARTICLE_LENGTH)
        if content:
            return content
        return clean_text_content(text, title, self.settings.MIN_ARTICLE_LENGTH)

    def _pdf_text(self, data: bytes, url: str) -> str:
        """Extract text from a PDF document (runs in executor)."""
        try:
            reader = PdfReader(io.BytesIO(data))
            return "\n".join(text for text in (page.extract_text() for page in reader.pages) if text)
        except Exception as e:
            raise ExtractionFailed(f"PDF extraction failed for {url}: {e}") from e

    async def close(self) -> None:
        """Shut down the extraction thread pool."""
        self.executor.shutdown(wait=True)
        logger.debug("ContentExtractor closed")
