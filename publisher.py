#!/usr/bin/env python3
"""
Snapshot publisher.

Writes the result of a run as:

- ``feeds-index.json``: categories -> feeds -> item headers (no bodies), for fast initial load
- ``feeds/<category>--<feed>.json``: one shard per feed with full items
- ``feeds.json``: the legacy monolithic snapshot with everything inline

Every file is replaced whole via a temporary file in the same directory.
There is no atomicity across files; a crash between writes can leave the
index and the shards out of step until the next run.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
import json
import os
import shutil
import tempfile

from config import get_logger
from errors import OutputError
from models import FeedOutcome, FeedsConfig, FeedSource
from telemetry import get_tracer, init_telemetry, trace_span
from utils import slugify

logger = get_logger("publisher")
init_telemetry("feed-ingest-publisher")
_tracer = get_tracer("publisher")

INDEX_FILENAME = "feeds-index.json"
LEGACY_FILENAME = "feeds.json"
SHARD_DIR_NAME = "feeds"

# (category, title, url) of a feed entry in a written snapshot
FeedKey = Tuple[str, str, str]


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a trailing Z."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def write_json_atomic(target: Path, data: Any) -> None:
    """Write JSON to ``target`` through a fsynced temporary file and a move."""
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_path = None
    try:
        with tempfile.NamedTemporaryFile(
            mode='w',
            encoding='utf-8',
            suffix='.json',
            dir=target.parent,
            delete=False,
        ) as temp_file:
            temp_path = temp_file.name
            json.dump(data, temp_file, ensure_ascii=False, indent=2)
            temp_file.flush()
            os.fsync(temp_file.fileno())
        shutil.move(temp_path, target)
    except (OSError, TypeError, ValueError) as e:
        if temp_path and os.path.exists(temp_path):
            os.unlink(temp_path)
        raise OutputError(f"Failed to write {target}: {e}") from e


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise OutputError(f"Failed to read {path}: {e}") from e


def load_index(output_dir: str) -> Optional[Dict[str, Any]]:
    """Read a previously written index; None when there is none yet."""
    return _read_json(Path(output_dir) / INDEX_FILENAME)


def _entries_by_feed(document: Optional[Dict[str, Any]]) -> Dict[FeedKey, Dict[str, Any]]:
    """Index the feed entries of an index or legacy document by (category, title, url)."""
    entries = {}
    for category in (document or {}).get('categories', []):
        for feed in category.get('feeds', []):
            entries[(category.get('name'), feed.get('title'), feed.get('url'))] = feed
    return entries


class SnapshotPublisher:
    """Partitions run outcomes into index, shards and the legacy snapshot."""

    def __init__(self, output_dir: str, prune_stale: bool = True) -> None:
        self.output_dir = Path(output_dir)
        self.shard_dir = self.output_dir / SHARD_DIR_NAME
        self.prune_stale = prune_stale

    def shard_filenames(
        self,
        outcomes: Sequence[FeedOutcome],
        feeds_config: Optional[FeedsConfig] = None,
    ) -> List[str]:
        """Deterministic shard file names, aligned with ``outcomes``.

        Feeds whose slugs coincide get ``-2``, ``-3``... in configuration
        order, then in the order given for feeds missing from the
        configuration, so a run over a subset of feeds maps each feed to
        the same file as a full run.
        """
        configured = feeds_config.all_feeds() if feeds_config else []
        used = set()
        names: Dict[FeedSource, str] = {}
        for feed in [*configured, *(outcome.feed for outcome in outcomes)]:
            if feed in names:
                continue
            base = f"{slugify(feed.category)}--{slugify(feed.title)}"
            candidate = base
            suffix = 1
            while candidate in used:
                suffix += 1
                candidate = f"{base}-{suffix}"
            used.add(candidate)
            names[feed] = f"{candidate}.json"
        return [names[outcome.feed] for outcome in outcomes]

    def _group(
        self,
        fresh: Dict[FeedSource, Dict[str, Any]],
        feeds_config: Optional[FeedsConfig],
        previous: Optional[Dict[FeedKey, Dict[str, Any]]] = None,
    ) -> List[Dict[str, Any]]:
        """Group feed entries by category in configuration order.

        Configured feeds without a fresh entry keep their ``previous`` one.
        """
        configured = feeds_config.all_feeds() if feeds_config else []
        names = [category.name for category in feeds_config.categories] if feeds_config else []
        categories: Dict[str, List[Dict[str, Any]]] = {name: [] for name in names}

        for feed in configured:
            key = (feed.category, feed.title, feed.url)
            if feed in fresh:
                categories[feed.category].append(fresh[feed])
            elif previous and key in previous:
                categories[feed.category].append(previous[key])

        known = set(configured)
        for feed, entry in fresh.items():
            if feed not in known:
                categories.setdefault(feed.category, []).append(entry)

        return [{'name': name, 'feeds': feeds} for name, feeds in categories.items()]

    def build_index(
        self,
        outcomes: Sequence[FeedOutcome],
        filenames: Sequence[str],
        last_updated: str,
        feeds_config: Optional[FeedsConfig] = None,
        previous: Optional[Dict[FeedKey, Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        fresh = {}
        for outcome, filename in zip(outcomes, filenames):
            count = len(outcome.items)
            fresh[outcome.feed] = {
                'title': outcome.feed.title,
                'url': outcome.feed.url,
                'file': f"{SHARD_DIR_NAME}/{filename}",
                'count': count,
                'unreadCount': count,
                'error': outcome.error,
                'items': [item.header() for item in outcome.items],
            }
        return {
            'lastUpdated': last_updated,
            'categories': self._group(fresh, feeds_config, previous),
        }

    def build_shard(self, outcome: FeedOutcome, last_updated: str) -> Dict[str, Any]:
        return {
            'title': outcome.feed.title,
            'url': outcome.feed.url,
            'category': outcome.feed.category,
            'lastUpdated': last_updated,
            'error': outcome.error,
            'items': [item.to_dict() for item in outcome.items],
        }

    def build_legacy(
        self,
        outcomes: Sequence[FeedOutcome],
        last_updated: str,
        feeds_config: Optional[FeedsConfig] = None,
        previous: Optional[Dict[FeedKey, Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """The pre-index snapshot layout: everything inline."""
        fresh = {
            outcome.feed: {
                'title': outcome.feed.title,
                'url': outcome.feed.url,
                'items': [item.to_dict() for item in outcome.items],
                'error': outcome.error,
            }
            for outcome in outcomes
        }
        return {
            'lastUpdated': last_updated,
            'categories': self._group(fresh, feeds_config, previous),
        }

    @trace_span(
        "write_snapshot",
        tracer_name="publisher",
        attr_from_args=lambda self, outcomes, feeds_config=None, last_updated=None, merge=False: {
            "snapshot.feeds": len(outcomes),
            "snapshot.merge": merge,
        },
    )
    def write_snapshot(
        self,
        outcomes: Sequence[FeedOutcome],
        feeds_config: Optional[FeedsConfig] = None,
        last_updated: Optional[str] = None,
        merge: bool = False,
    ) -> Dict[str, Any]:
        """Write shards, index and legacy snapshot; returns the index document.

        With ``merge``, configured feeds absent from ``outcomes`` keep their
        entries from the previous index and legacy snapshot, and no shard is
        pruned.

        Raises:
            OutputError: when any file cannot be written, or a previous
                snapshot to merge into cannot be read.
        """
        last_updated = last_updated or utc_timestamp()
        filenames = self.shard_filenames(outcomes, feeds_config)

        previous_index = previous_legacy = None
        if merge:
            previous_index = _entries_by_feed(_read_json(self.output_dir / INDEX_FILENAME))
            previous_legacy = _entries_by_feed(_read_json(self.output_dir / LEGACY_FILENAME))

        try:
            self.shard_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OutputError(f"Cannot create output directory {self.shard_dir}: {e}") from e

        for outcome, filename in zip(outcomes, filenames):
            write_json_atomic(self.shard_dir / filename, self.build_shard(outcome, last_updated))
        logger.info(f"Wrote {len(filenames)} feed shards to {self.shard_dir}")

        index = self.build_index(outcomes, filenames, last_updated, feeds_config, previous_index)
        write_json_atomic(self.output_dir / INDEX_FILENAME, index)
        write_json_atomic(
            self.output_dir / LEGACY_FILENAME,
            self.build_legacy(outcomes, last_updated, feeds_config, previous_legacy),
        )
        logger.info(f"Wrote {INDEX_FILENAME} and {LEGACY_FILENAME} to {self.output_dir}")

        if self.prune_stale and not merge:
            self.prune_stale_shards(filenames)
        return index

    def prune_stale_shards(self, keep: Sequence[str]) -> int:
        """Delete shard files not produced by this run."""
        keep_set = set(keep)
        removed = 0
        for shard in self.shard_dir.glob('*.json'):
            if shard.name in keep_set:
                continue
            try:
                shard.unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"Could not remove stale shard {shard}: {e}")
        if removed:
            logger.info(f"Removed {removed} stale shard(s)")
        return removed
