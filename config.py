#!/usr/bin/env python3
"""
Configuration management for the feed ingestion pipeline.

This module centralizes logging setup, runtime settings and loading of the
feed configuration file. Settings are read from the environment (optionally
seeded from a .env file and a YAML secrets file); the feed configuration
describes categories and feeds. Both are built once at the entry point and
passed explicitly to the components that need them.
"""

from os import environ, path, access, R_OK
from typing import Any, Dict, List, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

from errors import ConfigError
from models import Category, FeedSource, FeedsConfig

BASE_DIR = path.dirname(path.abspath(__file__))

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_AGGREGATOR_USER_AGENT = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"

FEEDS_FILE_SIZE_LIMIT = 5 * 1024 * 1024
SECRETS_FILE_SIZE_LIMIT = 2 * 1024 * 1024
DEFAULT_ARTICLES_PER_FEED = 20


def setup_logging() -> None:
    """Configure the single global logger for the whole application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    Output goes to stdout with line buffering. Modules use get_logger() to
    obtain loggers that inherit this configuration.
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"
    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True
    )

    reconfigure = getattr(sys.stdout, "reconfigure", None)
    if callable(reconfigure):
        reconfigure(line_buffering=True)

    # aiohttp access/client chatter is rarely useful at INFO
    getLogger("aiohttp").setLevel(max(level, WARNING))


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "extractor", "publisher")

    Returns:
        A logger named "FeedIngest.{name}"
    """
    return getLogger(f"FeedIngest.{name}")


logger = get_logger("config")


class Config:
    """Runtime settings for a pipeline run.

    Values are loaded from, in increasing precedence:
    1. Environment variables
    2. .env file next to the code (if present)
    3. YAML secrets file named by SECRETS_FILE (if set)

    Example secrets.yaml format:
    ```yaml
    USER_AGENT: "MyReader/1.0"
    DATA_PATH: "/srv/reader/data"
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(BASE_DIR, '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")
        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.0) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _parse_markers(self, env_var: str, default: str) -> List[str]:
        raw = environ.get(env_var, default)
        return [marker.strip().lower() for marker in raw.split(',') if marker.strip()]

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Paths
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(BASE_DIR, "feeds.yaml"))
        self.DATA_PATH = environ.get("DATA_PATH", "data")
        self.PRUNE_STALE_SHARDS = environ.get("PRUNE_STALE_SHARDS", "true").lower() == "true"

        # HTTP request configuration
        self.USER_AGENT = environ.get("USER_AGENT", DEFAULT_USER_AGENT)
        self.AGGREGATOR_USER_AGENT = environ.get("AGGREGATOR_USER_AGENT", DEFAULT_AGGREGATOR_USER_AGENT)
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 15, 1)
        self.REDIRECT_TIMEOUT = self._validate_positive_int("REDIRECT_TIMEOUT", 10, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)
        self.AGGREGATOR_MAX_REDIRECTS = self._validate_positive_int("AGGREGATOR_MAX_REDIRECTS", 3, 0)

        # Retry configuration (one retry, flat delay)
        self.FEED_RETRY_DELAY = self._validate_positive_float("FEED_RETRY_DELAY", 1.0)
        self.EXTRACTION_RETRY_DELAY = self._validate_positive_float("EXTRACTION_RETRY_DELAY", 0.5)

        # Extraction configuration
        self.EXTRACTION_CONCURRENCY = self._validate_positive_int("EXTRACTION_CONCURRENCY", 10, 1)
        self.READABILITY_CHAR_THRESHOLD = self._validate_positive_int("READABILITY_CHAR_THRESHOLD", 50, 1)
        self.MIN_ARTICLE_LENGTH = self._validate_positive_int("MIN_ARTICLE_LENGTH", 100, 1)

        # Source markers
        self.AGGREGATOR_MARKERS = self._parse_markers("AGGREGATOR_MARKERS", "google news")
        self.AGGREGATOR_DOMAIN = environ.get("AGGREGATOR_DOMAIN", "news.google.com").strip().lower()
        self.DISCUSSION_MARKERS = self._parse_markers("DISCUSSION_MARKERS", "hacker news")

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Expected YAML formats (both supported):
        ```yaml
        # Preferred: top-level mapping
        USER_AGENT: "MyReader/1.0"

        # Backward-compatible: nested under `environment`
        # environment:
        #   USER_AGENT: "MyReader/1.0"
        ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        try:
            secrets_config = _read_yaml(secrets_file_path, SECRETS_FILE_SIZE_LIMIT, 'secrets')
        except ConfigError as e:
            logger.error(str(e))
            return

        if isinstance(secrets_config.get('environment') if isinstance(secrets_config, dict) else None, dict):
            env_vars = secrets_config['environment']
        elif isinstance(secrets_config, dict):
            env_vars = secrets_config
        else:
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "feeds_config_path": self.FEEDS_CONFIG_PATH,
            "data_path": self.DATA_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_redirects": self.MAX_REDIRECTS,
            "extraction_concurrency": self.EXTRACTION_CONCURRENCY,
            "aggregator_markers": ",".join(self.AGGREGATOR_MARKERS),
            "discussion_markers": ",".join(self.DISCUSSION_MARKERS),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


def _read_yaml(file_path: str, max_size: int, kind: str) -> Any:
    """Safely read a YAML file with consistent validation.

    Args:
        file_path: Path to the YAML file
        max_size: Maximum allowed file size in bytes
        kind: Short label for error context (e.g. 'secrets', 'feeds')

    Returns:
        Parsed YAML (mapping/list/primitive).

    Raises:
        ConfigError: when the file is missing, unreadable, too large, empty or invalid.
    """
    if not path.isfile(file_path):
        raise ConfigError(f"{kind.capitalize()} file not found at {file_path}")
    if not access(file_path, R_OK):
        raise ConfigError(f"No read permission for {kind} file at {file_path}")
    size = path.getsize(file_path)
    if size > max_size:
        raise ConfigError(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing YAML in {kind} file {file_path}: {e}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Error loading {kind} file {file_path}: {e}") from e
    if not data:
        raise ConfigError(f"Empty or invalid YAML in {kind} file {file_path}")
    return data


def _optional_positive_int(value: Any, label: str) -> Optional[int]:
    if value is None:
        return None
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        logger.warning(f"Invalid articlesPerFeed value '{value}' for {label}; ignoring")
        return None
    if parsed < 1:
        logger.warning(f"articlesPerFeed must be >=1 for {label}; ignoring (got {value})")
        return None
    return parsed


def parse_feeds_config(data: Any, source: str = "<memory>") -> FeedsConfig:
    """Build a FeedsConfig from an already-parsed mapping.

    Invalid feed entries are skipped with a warning; a document that is not a
    mapping or has no ``categories`` list raises ConfigError.
    """
    if not isinstance(data, dict):
        raise ConfigError(f"Feed configuration in {source} must be a mapping")

    raw_categories = data.get('categories')
    if not isinstance(raw_categories, list):
        raise ConfigError(f"Feed configuration in {source} has no 'categories' list")

    articles_per_feed = _optional_positive_int(data.get('articlesPerFeed'), 'articlesPerFeed') or DEFAULT_ARTICLES_PER_FEED
    fetch_full_text = bool(data.get('fetchFullText', False))

    categories: List[Category] = []
    for index, raw_category in enumerate(raw_categories):
        if not isinstance(raw_category, dict) or not raw_category.get('name'):
            logger.warning(f"Skipping category #{index} without a name in {source}")
            continue
        name = str(raw_category['name'])
        feeds: List[FeedSource] = []
        for raw_feed in raw_category.get('feeds') or []:
            if not isinstance(raw_feed, dict) or not raw_feed.get('url') or not raw_feed.get('title'):
                logger.warning(f"Skipping invalid feed configuration in category '{name}': {raw_feed}")
                continue
            feeds.append(FeedSource(
                title=str(raw_feed['title']),
                url=str(raw_feed['url']).strip(),
                category=name,
                articles_per_feed=_optional_positive_int(raw_feed.get('articlesPerFeed'), str(raw_feed['title'])),
            ))
        categories.append(Category(name=name, feeds=tuple(feeds)))

    feeds_config = FeedsConfig(
        articles_per_feed=articles_per_feed,
        fetch_full_text=fetch_full_text,
        categories=tuple(categories),
    )
    logger.info(
        "Loaded %d feeds in %d categories from %s (articlesPerFeed=%d, fetchFullText=%s)",
        len(feeds_config.all_feeds()),
        len(feeds_config.categories),
        source,
        feeds_config.articles_per_feed,
        feeds_config.fetch_full_text,
    )
    return feeds_config


def load_feeds_config(file_path: str) -> FeedsConfig:
    """Load the feed configuration file (YAML, or JSON as a YAML subset)."""
    data = _read_yaml(file_path, FEEDS_FILE_SIZE_LIMIT, 'feeds')
    return parse_feeds_config(data, file_path)
