import sqlite3
import time

import pytest

from topicfeed.core.cache import (
    CACHE_VERSION,
    CacheStore,
    MemoryCacheStore,
    SQLiteCacheStore,
    build_snapshot,
    is_fresh,
    is_usable,
)
from topicfeed.core.models import Story

from tests.conftest import make_story


def _stories(count=3):
    return [Story.from_dict(make_story(n)) for n in range(1, count + 1)]


def test_snapshot_keeps_only_stories_with_slides(topic):
    stories = _stories(2)
    stories.append(Story(id="s10", title="No slides"))
    entry = build_snapshot("Eastbourne", topic, stories, max_stories=20)
    assert [story.id for story in entry.stories] == ["s1", "s2"]
    assert entry.topic_slug == "eastbourne"
    assert entry.version == CACHE_VERSION


def test_snapshot_is_capped(topic):
    entry = build_snapshot("eastbourne", topic, _stories(5), max_stories=3)
    assert len(entry.stories) == 3


def test_freshness_helpers(topic):
    now = time.time()
    entry = build_snapshot("eastbourne", topic, _stories(1), now=now - 20 * 60)
    assert not is_fresh(entry, now=now, fresh_ttl=15 * 60)
    assert is_usable(entry, now=now, stale_max_age=24 * 3600)
    assert not is_usable(entry, now=now + 25 * 3600, stale_max_age=24 * 3600)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryCacheStore(max_topics=2, stale_max_age=3600)
    return SQLiteCacheStore(tmp_path / "cache" / "feed.db", max_topics=2, stale_max_age=3600)


def test_store_round_trip(store, topic):
    entry = build_snapshot("eastbourne", topic, _stories(2))
    store.set("eastbourne", entry)
    loaded = store.get("EASTBOURNE")
    assert loaded.topic.keywords == topic.keywords
    assert [story.id for story in loaded.stories] == ["s1", "s2"]
    assert [slide.slide_number for slide in loaded.stories[0].slides] == [1, 2, 3]


def test_store_drops_expired_and_outdated_entries(store, topic):
    store.set("old", build_snapshot("old", topic, _stories(1), now=time.time() - 7200))
    assert store.get("old") is None

    outdated = build_snapshot("outdated", topic, _stories(1))
    outdated.version = CACHE_VERSION + 1
    store.set("outdated", outdated)
    assert store.get("outdated") is None


def test_store_evicts_least_recently_written(store, topic):
    now = time.time()
    for offset, key in enumerate(["a", "b", "c"]):
        store.set(key, build_snapshot(key, topic, _stories(1), now=now + offset))
    assert store.get("a") is None
    assert store.get("b") is not None
    assert store.get("c") is not None


def test_store_delete_and_clear(store, topic):
    store.set("a", build_snapshot("a", topic, _stories(1)))
    store.set("b", build_snapshot("b", topic, _stories(1)))
    store.delete("a")
    assert store.get("a") is None
    store.clear()
    assert store.get("b") is None


def test_sqlite_store_treats_corrupt_payload_as_missing(tmp_path):
    path = tmp_path / "feed.db"
    store = SQLiteCacheStore(path)
    with sqlite3.connect(path) as conn:
        conn.execute(
            "INSERT INTO feed_snapshots (topic_key, payload, version, timestamp) VALUES (?, ?, ?, ?)",
            ("broken", "{not json", 1, time.time()),
        )
    assert store.get("broken") is None


def test_sqlite_store_errors_never_propagate(tmp_path, topic):
    path = tmp_path / "feed.db"
    store = SQLiteCacheStore(path)
    with sqlite3.connect(path) as conn:
        conn.execute("DROP TABLE feed_snapshots")
    store.set("eastbourne", build_snapshot("eastbourne", topic, _stories(1)))
    assert store.get("eastbourne") is None


def test_store_port_requires_every_operation():
    class ReadOnlyStore(CacheStore):
        def get(self, topic_key):
            return None

    with pytest.raises(TypeError):
        ReadOnlyStore()
