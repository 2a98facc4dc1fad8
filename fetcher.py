#!/usr/bin/env python3
"""
HTTP fetcher for feeds and article pages.

Performs one outbound request at a time per call, following redirects
manually so the hop count is bounded and relative Location headers are
resolved against the current URL. Response bodies are kept as bytes together
with the charset declared by the server, so non-ASCII article text is decoded
exactly once with the right codec.
"""

from asyncio import TimeoutError
from typing import Dict, List, Optional
from urllib.parse import urljoin, urlparse
import codecs
import re

from aiohttp import ClientSession, ClientError, ClientTimeout

from config import Config, get_logger
from errors import FetchTimeout, HttpError, NetworkError, TooManyRedirects
from models import RawDocument
from telemetry import get_tracer, init_telemetry, trace_span
from utils import RetryHelper

# Module-specific logger
logger = get_logger("fetcher")
init_telemetry("feed-ingest-fetcher")
_tracer = get_tracer("fetcher")

# HTTP status codes
HTTP_REDIRECT_MIN = 300
HTTP_ERROR_MIN = 400

CHARSET_RE = re.compile(r'charset\s*=\s*["\']?([^\s;"\']+)', re.I)
LATIN1_CHARSETS = {'iso-8859-1', 'iso8859-1', 'latin1', 'latin-1'}


def detect_encoding(content_type: Optional[str]) -> str:
    """Return the codec for a Content-Type header, defaulting to UTF-8."""
    match = CHARSET_RE.search(content_type or '')
    if not match:
        return 'utf-8'
    charset = match.group(1).strip().lower()
    if charset in LATIN1_CHARSETS:
        return 'latin-1'
    try:
        return codecs.lookup(charset).name
    except LookupError:
        logger.debug(f"Unknown charset '{charset}', decoding as utf-8")
        return 'utf-8'


def is_on_domain(url: Optional[str], domain: str) -> bool:
    """True when the URL's host is ``domain`` or one of its subdomains."""
    if not url or not domain:
        return False
    try:
        host = (urlparse(url).hostname or '').lower()
    except ValueError:
        return False
    return host == domain or host.endswith('.' + domain)


class HttpFetcher:
    """Fetches documents over a shared aiohttp session."""

    def __init__(self, session: ClientSession, settings: Optional[Config] = None) -> None:
        self.session = session
        self.settings = settings or Config()
        self.retry_helper = RetryHelper(max_retries=1, base_delay=self.settings.FEED_RETRY_DELAY)

    def _headers(self) -> Dict[str, str]:
        return {
            'User-Agent': self.settings.USER_AGENT,
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
            'Accept-Language': 'en-US,en;q=0.9,de;q=0.8,ru;q=0.7',
        }

    @trace_span(
        "http_fetch",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, **kwargs: {"http.url": url},
    )
    async def fetch(self, url: str, max_redirects: Optional[int] = None, timeout: Optional[int] = None) -> RawDocument:
        """Fetch a URL, following up to ``max_redirects`` redirect responses.

        Raises:
            TooManyRedirects: when the redirect bound is reached
            HttpError: for status codes >= 400
            FetchTimeout: when the request exceeds its deadline
            NetworkError: for transport-level failures
        """
        limit = self.settings.MAX_REDIRECTS if max_redirects is None else max_redirects
        client_timeout = ClientTimeout(total=timeout or self.settings.HTTP_TIMEOUT)
        current_url = url
        hops = 0

        while True:
            next_url = None
            try:
                async with self.session.get(
                    current_url,
                    headers=self._headers(),
                    timeout=client_timeout,
                    allow_redirects=False,
                ) as response:
                    location = response.headers.get('Location')
                    if HTTP_REDIRECT_MIN <= response.status < HTTP_ERROR_MIN and location:
                        next_url = urljoin(current_url, location)
                    elif response.status >= HTTP_ERROR_MIN:
                        raise HttpError(response.status, current_url)
                    else:
                        body = await response.read()
                        content_type = response.headers.get('Content-Type', '')
                        return RawDocument(
                            url=current_url,
                            body=body,
                            encoding=detect_encoding(content_type),
                            content_type=content_type,
                            status=response.status,
                        )
            except TimeoutError as e:
                raise FetchTimeout(url=current_url) from e
            except ClientError as e:
                raise NetworkError(self._format_client_error(e), url=current_url) from e
            except ValueError as e:
                raise NetworkError(f"Invalid URL: {e}", url=current_url) from e

            hops += 1
            if hops >= limit:
                raise TooManyRedirects(url=current_url)
            logger.debug(f"Redirect {hops}/{limit}: {current_url} -> {next_url}")
            current_url = next_url

    async def fetch_with_retry(self, url: str) -> RawDocument:
        """Fetch a URL, retrying exactly once after a flat delay on any failure."""
        return await self.retry_helper.run(lambda: self.fetch(url), label=url)

    @trace_span(
        "resolve_aggregator_redirect",
        tracer_name="fetcher",
        attr_from_args=lambda self, url: {"http.url": url},
    )
    async def resolve_aggregator_redirect(self, url: str) -> str:
        """Follow aggregator redirects until the target leaves the aggregator domain.

        Best effort: stops at the first off-domain hop, at a non-redirect
        response, after AGGREGATOR_MAX_REDIRECTS requests, or on any error, and
        returns the last URL known at that point.
        """
        domain = self.settings.AGGREGATOR_DOMAIN
        headers = {'User-Agent': self.settings.AGGREGATOR_USER_AGENT, 'Accept': 'text/html'}
        client_timeout = ClientTimeout(total=self.settings.REDIRECT_TIMEOUT)
        current_url = url

        for _ in range(self.settings.AGGREGATOR_MAX_REDIRECTS):
            try:
                async with self.session.get(
                    current_url,
                    headers=headers,
                    timeout=client_timeout,
                    allow_redirects=False,
                ) as response:
                    location = response.headers.get('Location')
                    if not (HTTP_REDIRECT_MIN <= response.status < HTTP_ERROR_MIN and location):
                        return current_url
                    target = urljoin(current_url, location)
            except (TimeoutError, ClientError, ValueError) as e:
                logger.debug(f"Aggregator redirect lookup failed for {current_url}: {e}")
                return current_url

            if not is_on_domain(target, domain):
                return target
            current_url = target

        return current_url

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)
