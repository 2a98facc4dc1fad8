#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class FeedIngestError(Exception):
    """Base class for all pipeline errors."""


class FetchError(FeedIngestError):
    """Raised by the fetch layer.

    Attributes:
        url: The URL being fetched when the failure happened.
    """

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class NetworkError(FetchError):
    """Transport-level failure (DNS, connection reset, TLS, bad URL)."""


class FetchTimeout(FetchError):
    """The request did not complete before its deadline."""

    def __init__(self, message: str = "Timeout", url: Optional[str] = None):
        super().__init__(message, url)


class HttpError(FetchError):
    """The server answered with a status code >= 400."""

    def __init__(self, status: int, url: Optional[str] = None):
        super().__init__(f"HTTP {status}", url)
        self.status = status


class TooManyRedirects(FetchError):
    """The redirect chain exceeded the configured bound."""

    def __init__(self, message: str = "Too many redirects", url: Optional[str] = None):
        super().__init__(message, url)


class UnparseableDocument(FeedIngestError):
    """The feed document is not RSS 2.0, Atom or RDF."""

    def __init__(self, message: str = "Unparseable feed document"):
        super().__init__(message)


class ExtractionFailed(FeedIngestError):
    """Article extraction failed; always absorbed by the extractor."""


class ConfigError(FeedIngestError):
    """The feed configuration could not be read. Fatal for the run."""


class OutputError(FeedIngestError):
    """The snapshot could not be written. Fatal for the run."""


__all__ = [
    "FeedIngestError",
    "FetchError",
    "NetworkError",
    "FetchTimeout",
    "HttpError",
    "TooManyRedirects",
    "UnparseableDocument",
    "ExtractionFailed",
    "ConfigError",
    "OutputError",
]
