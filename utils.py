#!/usr/bin/env python3
"""
Utility classes and functions for the feed ingestion pipeline.

This module contains helpers shared by the fetcher, parser, extractor and
publisher: the single-retry helper, HTML entity decoding, filename slugs and
small formatting/validation functions.
"""

from asyncio import sleep
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar
import html
import re

from config import get_logger

logger = get_logger("utils")

T = TypeVar("T")

# Transliterations applied before slugging; everything else non-alphanumeric becomes a separator
SLUG_TRANSLITERATIONS = {
    'ä': 'ae', 'ö': 'oe', 'ü': 'ue', 'ß': 'ss',
    'à': 'a', 'á': 'a', 'â': 'a', 'å': 'a', 'æ': 'ae',
    'ç': 'c',
    'è': 'e', 'é': 'e', 'ê': 'e', 'ë': 'e',
    'ì': 'i', 'í': 'i', 'î': 'i', 'ï': 'i',
    'ñ': 'n',
    'ò': 'o', 'ó': 'o', 'ô': 'o', 'õ': 'o', 'ø': 'o',
    'ù': 'u', 'ú': 'u', 'û': 'u',
}


class RetryHelper:
    """Helper class for retrying an async operation after a delay.

    The pipeline uses a single retry with a flat delay; ``backoff`` > 1
    turns the delay into an exponential one.
    """

    def __init__(self, max_retries: int = 1, base_delay: float = 1.0, backoff: float = 1.0, max_delay: float = 60.0):
        """Initialize the retry helper.

        Args:
            max_retries: Number of retries after the first attempt
            base_delay: Delay in seconds before the first retry
            backoff: Multiplier applied to the delay for each further retry
            max_delay: Maximum delay in seconds between retries
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.backoff = backoff
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay before retrying after the given (0-based) attempt."""
        delay = self.base_delay * (self.backoff ** attempt)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        """Sleep for the calculated delay for the given attempt."""
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        label: str = "",
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    ) -> T:
        """Run ``operation``, retrying on ``retry_on`` errors; the last error propagates."""
        for attempt in range(self.max_retries + 1):
            try:
                return await operation()
            except retry_on as e:
                if attempt >= self.max_retries:
                    raise
                logger.debug(f"Retry {attempt + 1}/{self.max_retries} for {label or 'operation'} after error: {e}")
                await self.sleep_for_attempt(attempt)
        raise RuntimeError("unreachable")


def decode_html_entities(text: Optional[str]) -> Optional[str]:
    """Decode named, decimal and hexadecimal HTML entity references.

    Feed producers frequently double-encode text, so this runs on top of
    whatever decoding the XML layer already did. Non-breaking spaces are
    flattened to plain spaces.
    """
    if not text or not isinstance(text, str):
        return text
    if '&' not in text:
        return text
    return html.unescape(text).replace('\xa0', ' ')


def slugify(text: Optional[str], fallback: str = "untitled") -> str:
    """Turn a title into a stable filename fragment.

    Lowercases, transliterates common accented characters, collapses runs of
    anything that is not [a-z0-9] into a single '-', and trims separators.
    """
    if not text:
        return fallback
    lowered = text.lower()
    transliterated = "".join(SLUG_TRANSLITERATIONS.get(ch, ch) for ch in lowered)
    slug = re.sub(r'[^a-z0-9]+', '-', transliterated).strip('-')
    return slug or fallback


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    return url.startswith(('http://', 'https://')) and '.' in url


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)
