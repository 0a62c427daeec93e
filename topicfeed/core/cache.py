"""
Feed snapshot cache for topicfeed.

A snapshot holds the topic and its newest stories so a feed can render
instantly on a cold start while fresh data loads. Snapshots are always
overwritten whole, never patched.
"""
import json
import logging
import sqlite3
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Dict, Iterable, Optional, Union

from topicfeed.config import get_config
from topicfeed.core.models import CachedFeedEntry, Story, Topic

logger = logging.getLogger(__name__)

# Cache configuration
CACHE_VERSION = 1
FRESH_TTL = 15 * 60  # seconds
STALE_MAX_AGE = 24 * 60 * 60  # seconds
MAX_TOPICS_CACHED = 5
MAX_STORIES_PER_TOPIC = 20


def cache_key(topic_key: str) -> str:
    return topic_key.strip().lower()


def entry_age(entry: CachedFeedEntry, now: Optional[float] = None) -> float:
    """Age of a snapshot in seconds."""
    return (now if now is not None else time.time()) - entry.timestamp


def is_fresh(entry: CachedFeedEntry, now: Optional[float] = None, fresh_ttl: Optional[float] = None) -> bool:
    """Whether a snapshot is recent enough to skip showing a refresh state."""
    if fresh_ttl is None:
        fresh_ttl = get_config('cache.fresh_minutes', FRESH_TTL // 60) * 60
    return entry_age(entry, now) < fresh_ttl


def is_usable(entry: CachedFeedEntry, now: Optional[float] = None, stale_max_age: Optional[float] = None) -> bool:
    """Whether a snapshot may still be rendered at all."""
    if stale_max_age is None:
        stale_max_age = get_config('cache.stale_hours', STALE_MAX_AGE // 3600) * 3600
    return entry.version == CACHE_VERSION and entry_age(entry, now) < stale_max_age


def build_snapshot(
    topic_slug: str,
    topic: Topic,
    stories: Iterable[Story],
    max_stories: Optional[int] = None,
    now: Optional[float] = None,
) -> CachedFeedEntry:
    """
    Build a snapshot from the newest stories of a feed.

    Stories without slides are left out.

    Args:
        topic_slug: Topic identifier the snapshot is stored under
        topic: Topic to store
        stories: Stories in feed order
        max_stories: Maximum number of stories kept
        now: Snapshot timestamp, defaults to the current time

    Returns:
        The snapshot
    """
    if max_stories is None:
        max_stories = get_config('cache.max_stories', MAX_STORIES_PER_TOPIC)
    kept = [story for story in stories if story.slides][:max_stories]
    return CachedFeedEntry(
        topic_slug=cache_key(topic_slug),
        topic=topic,
        stories=kept,
        timestamp=now if now is not None else time.time(),
        version=CACHE_VERSION,
    )


def _decode(payload: Union[str, Dict]) -> Optional[CachedFeedEntry]:
    """Decode a stored snapshot, returning None for anything malformed."""
    try:
        data = json.loads(payload) if isinstance(payload, str) else payload
        if not isinstance(data, dict) or not isinstance(data.get('stories'), list) or not data.get('topic'):
            return None
        return CachedFeedEntry.from_dict(data)
    except (ValueError, KeyError, TypeError) as e:
        logger.warning(f"Discarding malformed feed snapshot: {e}")
        return None


class CacheStore(ABC):
    """
    Key/value port for feed snapshots.

    Reads never raise: a missing, corrupt, outdated or expired snapshot reads
    as None. Writes never raise either; a failed write only costs freshness.
    """
    def __init__(self, max_topics: Optional[int] = None, stale_max_age: Optional[float] = None):
        self.max_topics = max_topics or get_config('cache.max_topics', MAX_TOPICS_CACHED)
        if stale_max_age is None:
            stale_max_age = get_config('cache.stale_hours', STALE_MAX_AGE // 3600) * 3600
        self.stale_max_age = stale_max_age

    @abstractmethod
    def get(self, topic_key: str) -> Optional[CachedFeedEntry]:
        """Usable snapshot for a topic, or None."""

    @abstractmethod
    def set(self, topic_key: str, entry: CachedFeedEntry) -> None:
        """Overwrite a topic's snapshot."""

    @abstractmethod
    def delete(self, topic_key: str) -> None:
        """Drop a topic's snapshot."""

    @abstractmethod
    def clear(self) -> None:
        """Drop every snapshot."""

    def _check(self, entry: Optional[CachedFeedEntry]) -> Optional[CachedFeedEntry]:
        if entry is None:
            return None
        if not is_usable(entry, stale_max_age=self.stale_max_age):
            logger.info(f"Dropping expired feed snapshot for {entry.topic_slug}")
            return None
        return entry


class MemoryCacheStore(CacheStore):
    """
    In-process snapshot store, least recently written topics evicted first.
    """
    def __init__(self, max_topics: Optional[int] = None, stale_max_age: Optional[float] = None):
        super().__init__(max_topics, stale_max_age)
        self._entries: 'OrderedDict[str, str]' = OrderedDict()

    def get(self, topic_key: str) -> Optional[CachedFeedEntry]:
        key = cache_key(topic_key)
        payload = self._entries.get(key)
        if payload is None:
            return None
        entry = self._check(_decode(payload))
        if entry is None:
            self._entries.pop(key, None)
        return entry

    def set(self, topic_key: str, entry: CachedFeedEntry) -> None:
        key = cache_key(topic_key)
        self._entries.pop(key, None)
        self._entries[key] = json.dumps(entry.to_dict())
        while len(self._entries) > self.max_topics:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted feed snapshot for {evicted}")

    def delete(self, topic_key: str) -> None:
        self._entries.pop(cache_key(topic_key), None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class SQLiteCacheStore(CacheStore):
    """
    On-disk snapshot store backed by SQLite.
    """
    def __init__(self, path: Optional[Union[str, Path]] = None,
                 max_topics: Optional[int] = None, stale_max_age: Optional[float] = None):
        super().__init__(max_topics, stale_max_age)
        self.path = Path(path or get_config('cache.path', 'cache/feed_cache.db'))
        self._init_cache_dir()
        self._init_db()

    def _init_cache_dir(self):
        """Initialize the cache directory."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _init_db(self):
        """Initialize the SQLite database for caching."""
        with sqlite3.connect(self.path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS feed_snapshots (
                    topic_key TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    timestamp REAL NOT NULL
                )
            """)

    def get(self, topic_key: str) -> Optional[CachedFeedEntry]:
        """
        Get the cached snapshot for a topic if it is still usable.

        Args:
            topic_key: Topic slug

        Returns:
            The snapshot, or None
        """
        key = cache_key(topic_key)
        try:
            with sqlite3.connect(self.path) as conn:
                row = conn.execute(
                    "SELECT payload FROM feed_snapshots WHERE topic_key = ?",
                    (key,)
                ).fetchone()
                if not row:
                    return None

                entry = self._check(_decode(row[0]))
                if entry is None:
                    # Clean up unusable cache entry
                    conn.execute("DELETE FROM feed_snapshots WHERE topic_key = ?", (key,))
                    conn.commit()
                return entry
        except sqlite3.Error as e:
            logger.warning(f"Feed cache read error for {key}: {e}")
            return None

    def set(self, topic_key: str, entry: CachedFeedEntry) -> None:
        """
        Overwrite the snapshot for a topic and evict the oldest topics.

        Args:
            topic_key: Topic slug
            entry: Snapshot to store
        """
        key = cache_key(topic_key)
        try:
            with sqlite3.connect(self.path) as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO feed_snapshots (topic_key, payload, version, timestamp)
                    VALUES (?, ?, ?, ?)
                    """,
                    (key, json.dumps(entry.to_dict()), entry.version, entry.timestamp)
                )
                conn.execute(
                    """
                    DELETE FROM feed_snapshots WHERE topic_key NOT IN (
                        SELECT topic_key FROM feed_snapshots ORDER BY timestamp DESC LIMIT ?
                    )
                    """,
                    (self.max_topics,)
                )
        except sqlite3.Error as e:
            logger.warning(f"Feed cache write error for {key}: {e}")

    def delete(self, topic_key: str) -> None:
        try:
            with sqlite3.connect(self.path) as conn:
                conn.execute("DELETE FROM feed_snapshots WHERE topic_key = ?", (cache_key(topic_key),))
        except sqlite3.Error as e:
            logger.warning(f"Feed cache delete error: {e}")

    def clear(self) -> None:
        try:
            with sqlite3.connect(self.path) as conn:
                conn.execute("DELETE FROM feed_snapshots")
        except sqlite3.Error as e:
            logger.warning(f"Feed cache clear error: {e}")
