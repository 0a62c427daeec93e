import asyncio
import time

import pytest

from topicfeed.core.cache import MemoryCacheStore
from topicfeed.core.fallback import FILTERED_COLD_START, LEGACY, LOCAL, FallbackChain
from topicfeed.core.feed import TopicFeed
from topicfeed.core.merger import ContentMerger, group_rows, to_items
from topicfeed.core.models import CachedFeedEntry, FilterSelection, Story, Topic
from topicfeed.errors import FeedUnavailableError, RemoteQueryError, RemoteTimeoutError

from tests.conftest import TOPIC, FakeContentSource, make_story, story_rows

HARBOR = FilterSelection(keywords=("harbor",))


def _merger(source, stories=()):
    merger = ContentMerger(source)
    rows = [row for story in stories for row in story_rows(story)]
    merger.replace(to_items(group_rows(rows)))
    return merger


def test_applicable_strategies_depend_on_context(source, stories):
    empty = FallbackChain(source, _merger(source))
    loaded = FallbackChain(source, _merger(source, stories))
    assert empty.applicable(FilterSelection()) == [LEGACY]
    assert empty.applicable(HARBOR) == [FILTERED_COLD_START]
    assert loaded.applicable(FilterSelection()) == [LEGACY, LOCAL]
    assert loaded.applicable(HARBOR) == [LOCAL]


def test_legacy_strategy_adopts_unfiltered_rows(source):
    chain = FallbackChain(source, _merger(source), page_size=6)
    result = asyncio.run(chain.recover(RemoteQueryError("rpc down"), FilterSelection(), "eastbourne"))
    assert result.strategy == LEGACY
    assert [item.id for item in result.baseline] == ["s1", "s2"]
    assert result.has_more and not result.pagination_disabled
    assert source.calls_to("fetch_legacy_page") == [{"topic_slug": "eastbourne", "limit": 6, "offset": 0}]


def test_failing_strategy_falls_through_to_local(source, stories):
    source.break_method("fetch_legacy_page", RemoteTimeoutError("slow"))
    chain = FallbackChain(source, _merger(source, stories[:2]))
    result = asyncio.run(chain.recover(RemoteQueryError("rpc down"), FilterSelection(), "eastbourne"))
    assert result.strategy == LOCAL
    assert [item.id for item in result.filtered] == ["s1", "s2"]
    assert result.baseline is None and result.pagination_disabled
    assert len(source.calls_to("fetch_legacy_page")) == 1


def test_filtered_cold_start_filters_fresh_legacy_baseline(source):
    chain = FallbackChain(source, _merger(source), page_size=50)
    result = asyncio.run(chain.recover(RemoteQueryError("rpc down"), HARBOR, "eastbourne"))
    assert result.strategy == FILTERED_COLD_START
    assert [item.id for item in result.filtered] == ["s1"]
    assert len(result.baseline) == 5
    assert result.pagination_disabled


def test_exhausted_chain_raises_with_original_error(source):
    source.break_method("fetch_legacy_page", RemoteQueryError("legacy down"))
    chain = FallbackChain(source, _merger(source))
    original = RemoteTimeoutError("first page timed out")
    with pytest.raises(FeedUnavailableError) as excinfo:
        asyncio.run(chain.recover(original, FilterSelection(), "eastbourne"))
    assert excinfo.value.__cause__ is original
    assert len(source.calls_to("fetch_legacy_page")) == 1


def test_failed_filter_query_over_cached_baseline_filters_locally():
    stories = [make_story(n, f"Harbor update {n}" if n % 5 == 0 else None) for n in range(1, 51)]
    cache = MemoryCacheStore()
    cache.set("eastbourne", CachedFeedEntry(
        topic_slug="eastbourne",
        topic=Topic.from_dict(TOPIC),
        stories=[Story.from_dict(dict(story, published_at=story["article_published_at"])) for story in stories],
        timestamp=time.time(),
    ))
    source = FakeContentSource(stories)
    source.break_method("fetch_page", RemoteQueryError("filtered rpc failing"))
    source.break_method("fetch_legacy_page", RemoteQueryError("legacy failing"))
    feed = TopicFeed("eastbourne", source, cache=cache, debounce=0, init_retries=1)

    async def scenario():
        await feed.start()
        baseline = len(feed.items)
        feed.toggle_keyword("harbor")
        await feed.wait_idle()
        return baseline

    assert asyncio.run(scenario()) == 50
    assert [item.id for item in feed.items] == [f"s{n}" for n in range(5, 51, 5)]
    status = feed.status
    assert status.pagination_disabled
    assert not status.has_more
    assert not status.server_confirmed
    assert status.load_error is None
    assert asyncio.run(feed.load_more()) == 0
