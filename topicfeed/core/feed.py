"""
Topic feed session for topicfeed.

TopicFeed keeps a client-held view of one topic's stories consistent with the
remote source: it renders the cached snapshot on a cold start, loads and
paginates the baseline, runs hybrid filtering, recovers through the fallback
chain and reacts to change notifications.

All methods must be used from within a running event loop.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

import backoff

from topicfeed.config import get_config
from topicfeed.core.cache import CacheStore, build_snapshot, is_fresh
from topicfeed.core.fallback import LEGACY, FallbackChain, FallbackResult
from topicfeed.core.filters import FilterOrchestrator, FilterPage, story_filter_matches
from topicfeed.core.index import FilterIndexBuilder, index_stories, term_counts
from topicfeed.core.merger import ContentMerger, to_items
from topicfeed.core.models import (
    FILTER_CATEGORIES,
    FeedContentItem,
    FilterSelection,
    KEYWORD,
    LANDMARK,
    ORGANIZATION,
    SOURCE,
    Story,
    Topic,
)
from topicfeed.core.realtime import ChangeChannel, RealtimeReconciler
from topicfeed.errors import FeedUnavailableError, RemoteError, RemoteTimeoutError, TopicNotFoundError
from topicfeed.utils.http import NetworkClassifier, request_timeout, with_ceiling
from topicfeed.utils.tasks import DebouncedTask
from topicfeed.utils.text import normalize_domain

logger = logging.getLogger(__name__)

PAGE_SIZE = 10


@dataclass
class FeedStatus:
    """Snapshot of a feed session's loading, filtering and error state."""
    topic_loading: bool = False
    stories_loading: bool = False
    loading_more: bool = False
    is_refreshing: bool = False
    is_server_filtering: bool = False
    using_cached_content: bool = False
    has_more: bool = False
    server_confirmed: bool = False
    pagination_disabled: bool = False
    load_error: Optional[Exception] = None
    retry_count: int = 0
    filter_index_loading: bool = False
    filter_options_ready: bool = False
    is_live: bool = False


class TopicFeed:
    """
    Feed synchronization and hybrid filtering for one topic.
    """
    def __init__(
        self,
        slug: str,
        source,
        cache: Optional[CacheStore] = None,
        channel: Optional[ChangeChannel] = None,
        network: Optional[NetworkClassifier] = None,
        page_size: Optional[int] = None,
        debounce: Optional[float] = None,
        reload_debounce: Optional[float] = None,
        init_retries: Optional[int] = None,
        backoff_factor: Optional[float] = None,
        index_progress=None,
    ):
        """
        Initialize the TopicFeed.

        Args:
            slug: Topic slug
            source: ContentSource to synchronize against
            cache: Snapshot store for cold starts, or None to run uncached
            channel: Change channel for real-time updates, or None
            network: Network class or classifier picking the request ceilings
            page_size: Rows per page; defaults to feed.page_size
            debounce: Filter debounce in seconds; defaults to feed.debounce_ms
            reload_debounce: Real-time reload debounce in seconds
            init_retries: Session initialization attempts on timeouts
            backoff_factor: Base delay of the initialization backoff, in seconds
            index_progress: Optional tqdm-style bar for filter index builds
        """
        self.slug = slug
        self.source = source
        self.cache = cache
        self.network = network
        self.page_size = page_size or get_config('feed.page_size', PAGE_SIZE)
        if debounce is None:
            debounce = get_config('feed.debounce_ms', 500) / 1000
        if reload_debounce is None:
            reload_debounce = get_config('realtime.debounce_ms', 1000) / 1000
        if init_retries is None:
            init_retries = get_config('feed.init_retries', 3)
        self.init_retries = init_retries
        self.backoff_factor = backoff_factor if backoff_factor is not None else get_config('feed.init_backoff_factor', 0.5)

        self.topic: Optional[Topic] = None
        self.merger = ContentMerger(source, min_complete_slides=get_config('feed.min_complete_slides', 3))
        self.filters = FilterOrchestrator(self.merger, self._fetch_filtered, self._recover_filtered, debounce)
        self.fallback = FallbackChain(source, self.merger, self.page_size)
        self.index = FilterIndexBuilder(
            source,
            page_size=get_config('index.page_size', 500),
            ceiling=get_config('index.ceiling_seconds', 8.0),
            progress=index_progress,
        )
        self.realtime = None
        if channel is not None:
            self.realtime = RealtimeReconciler(
                source,
                channel,
                known_ids=self._known_ids,
                on_reload=self.refresh,
                on_topic_change=self.reload_topic,
                on_new_story=self._note_new_story,
                debounce=reload_debounce,
            )

        # Unfiltered pagination
        self._offset = 0
        self._has_more = False
        self._legacy = False
        self._pagination_disabled = False

        self._prefetch: Optional[Tuple[Tuple, FilterPage]] = None
        self._new_story_ids: Set[str] = set()
        self._reload_slot = DebouncedTask(0, name="baseline reload")
        self._index_requested = False
        self._index_waited = False

        self.topic_loading = False
        self.stories_loading = False
        self.loading_more = False
        self.is_refreshing = False
        self.using_cached_content = False
        self.load_error: Optional[Exception] = None
        self.retry_count = 0

    async def __aenter__(self):
        return await self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # Session lifecycle

    async def start(self) -> 'TopicFeed':
        """
        Start the session.

        Renders the cached snapshot when there is one, then loads the topic
        and the first page. A failure that survives retries and the fallback
        chain is recorded in ``load_error`` rather than raised.

        Raises:
            TopicNotFoundError: The topic does not exist or is not public
        """
        logger.info(f"Starting feed for {self.slug}")
        self._apply_timeouts()
        await self._restore_snapshot()
        await self._initialize()
        if self.realtime is not None and self.topic is not None:
            await self.realtime.start(self.topic)
        return self

    async def close(self):
        """Cancel pending work, unsubscribe and release the source."""
        self.filters.cancel()
        self._reload_slot.cancel()
        if self.realtime is not None:
            await self.realtime.stop()
        await self.source.close()

    async def retry_load(self):
        """Manual retry after the feed became unavailable."""
        self.retry_count += 1
        self.load_error = None
        self.filters.last_error = None
        logger.info(f"Retrying feed load for {self.slug} (attempt {self.retry_count})")
        self._apply_timeouts()
        await self._initialize()
        if self.realtime is not None and self.topic is not None and not self.realtime.is_live:
            await self.realtime.start(self.topic)
        if not self.filters.selection.is_empty:
            self.filters.refilter()

    async def wait_idle(self):
        """Wait until no debounced filter query or reload is pending."""
        while True:
            await self.filters.wait()
            await self._reload_slot.wait()
            if self.realtime is not None:
                await self.realtime.wait()
            if not self._busy():
                return

    def _busy(self) -> bool:
        if self.filters.pending or self._reload_slot.pending:
            return True
        return self.realtime is not None and self.realtime.pending

    def _apply_timeouts(self):
        timeout = request_timeout(self.network)
        self.merger.timeout = timeout
        self.fallback.timeout = timeout
        self.index.timeout = timeout
        if self.realtime is not None:
            self.realtime.timeout = timeout

    async def _call(self, awaitable, what: str):
        return await with_ceiling(awaitable, request_timeout(self.network), what)

    async def _restore_snapshot(self):
        if self.cache is None:
            return
        entry = await asyncio.to_thread(self.cache.get, self.slug)
        if entry is None:
            logger.debug(f"No cached snapshot for {self.slug}")
            return
        self.topic = entry.topic
        self.merger.replace(to_items(entry.stories))
        self.filters.baseline_changed()
        self.using_cached_content = True
        self.is_refreshing = True
        state = 'fresh' if is_fresh(entry) else 'stale'
        logger.info(f"Rendering {len(entry.stories)} cached stories for {self.slug} ({state})")

    async def _initialize(self):
        self.topic_loading = self.topic is None
        self.stories_loading = True
        load = backoff.on_exception(
            backoff.expo,
            RemoteTimeoutError,
            max_tries=max(self.init_retries, 1),
            factor=self.backoff_factor,
        )(self._load_session)
        try:
            await load()
        except TopicNotFoundError:
            logger.error(f"Topic {self.slug} not found")
            raise
        except RemoteError as e:
            logger.error(f"Initialization of {self.slug} failed: {e}")
            await self._recover_baseline(e)
        finally:
            self.topic_loading = False
            self.stories_loading = False
            self.is_refreshing = False

    async def _load_session(self):
        data = await self._call(self.source.fetch_topic(self.slug), "topic load")
        self.topic = Topic.from_dict(data)
        self.topic_loading = False
        await self._load_first_page()

    # Baseline loading

    @property
    def _region(self) -> Optional[str]:
        return self.topic.region if self.topic is not None else None

    async def _load_first_page(self):
        rows = await self._call(self.source.fetch_page(self.slug, None, None, self.page_size, 0), "first page")
        stories = await self.merger.build(rows, region=self._region)
        self.merger.replace(to_items(stories))
        self._offset = len(rows)
        self._has_more = len(rows) >= self.page_size
        self._legacy = False
        self._pagination_disabled = False
        self.using_cached_content = False
        self.load_error = None
        self.filters.baseline_changed()
        logger.info(f"Loaded {len(self.merger)} stories for {self.slug}")
        await self._write_snapshot()

    async def load_more(self) -> int:
        """
        Load the next page of whatever view is showing.

        Returns:
            Number of stories added
        """
        if self.loading_more:
            return 0
        self.loading_more = True
        try:
            if not self.filters.selection.is_empty:
                return await self.filters.load_more()
            if not self.has_more:
                return 0
            return await self._load_next_page()
        finally:
            self.loading_more = False

    async def _load_next_page(self) -> int:
        offset = self._offset
        try:
            if self._legacy:
                rows = await self._call(
                    self.source.fetch_legacy_page(self.slug, self.page_size, offset), "legacy page")
            else:
                rows = await self._call(
                    self.source.fetch_page(self.slug, None, None, self.page_size, offset), "page")
        except RemoteError as e:
            logger.warning(f"Loading page at offset {offset} failed: {e}")
            before = len(self.merger)
            await self._recover_baseline(e, offset)
            return len(self.merger) - before

        stories = await self.merger.build(rows, region=self._region)
        added = self.merger.merge(to_items(stories))
        self._offset = offset + len(rows)
        self._has_more = len(rows) >= self.page_size
        self.filters.baseline_changed()
        logger.debug(f"Page at offset {offset}: {len(rows)} rows, {added} new stories")
        await self._write_snapshot()
        return added

    async def refresh(self):
        """Full unfiltered reload; active filters are re-run remotely afterwards."""
        logger.info(f"Reloading feed for {self.slug}")
        self.is_refreshing = True
        self._prefetch = None
        self._new_story_ids.clear()
        self._apply_timeouts()
        try:
            await self._load_first_page()
        except RemoteError as e:
            logger.warning(f"Reload of {self.slug} failed: {e}")
            await self._recover_baseline(e)
        finally:
            self.is_refreshing = False
        if not self.filters.selection.is_empty:
            self.filters.refilter()

    async def refresh_from_new_stories(self):
        """Apply the new-content notice: reload and drop the notice."""
        await self.refresh()

    async def reload_topic(self):
        """Reload the topic entity; a material vocabulary change rebuilds the index."""
        try:
            data = await self._call(self.source.fetch_topic(self.slug), "topic reload")
        except RemoteError as e:
            logger.warning(f"Topic reload for {self.slug} failed: {e}")
            return
        topic = Topic.from_dict(data)
        material = self.topic is None or topic.vocabulary_signature() != self.topic.vocabulary_signature()
        self.topic = topic
        if not material:
            logger.debug(f"Topic {self.slug} reloaded, vocabulary unchanged")
            return
        logger.info(f"Filter vocabulary of {self.slug} changed")
        self.index.invalidate()
        if self._index_requested:
            await self.index.ensure(topic)

    async def _write_snapshot(self):
        if self.cache is None or self.topic is None:
            return
        entry = build_snapshot(self.slug, self.topic, self.merger.stories)
        if not entry.stories:
            return
        await asyncio.to_thread(self.cache.set, self.slug, entry)
        logger.info(f"Cached {len(entry.stories)} stories for {self.slug}")

    # Fallback

    async def _recover_baseline(self, error: Exception, offset: int = 0):
        try:
            result = await self.fallback.recover(error, self.filters.selection, self.slug, offset, self._region)
        except FeedUnavailableError as e:
            self.load_error = e
            logger.error(f"{e}")
            return
        self._adopt(result, offset)

    def _adopt(self, result: FallbackResult, offset: int):
        if result.baseline is not None:
            if offset:
                self.merger.merge(result.baseline)
            else:
                self.merger.replace(result.baseline)
        if result.strategy == LEGACY:
            self._legacy = True
            self._offset = offset + result.row_count
            self._has_more = result.has_more
            self._pagination_disabled = False
            self.filters.baseline_changed()
        else:
            self._has_more = False
            self._pagination_disabled = True
            self.filters.adopt_fallback(result.filtered)

    async def _recover_filtered(self, selection: FilterSelection, error: Exception) -> List[FeedContentItem]:
        result = await self.fallback.recover(error, selection, self.slug, region=self._region)
        if result.baseline is not None and not len(self.merger):
            self.merger.replace(result.baseline)
        return result.filtered

    # Filtering

    async def _fetch_filtered(self, selection: FilterSelection, offset: int) -> FilterPage:
        if offset == 0 and self._prefetch is not None and self._prefetch[0] == selection.cache_key():
            page = self._prefetch[1]
            self._prefetch = None
            logger.debug(f"Using prefetched filter results for {self.slug}")
            return page
        return await self._filtered_page(selection, offset)

    async def _filtered_page(self, selection: FilterSelection, offset: int) -> FilterPage:
        rows = await self._call(
            self.source.fetch_page(
                self.slug,
                list(selection.terms) or None,
                list(selection.sources) or None,
                self.page_size,
                offset,
            ),
            "filtered page",
        )
        stories = await self.merger.build(rows, filters_active=True, region=self._region)
        items = [
            item for item in to_items(stories)
            if not (selection.terms and item.story.is_parliamentary)
        ]
        return FilterPage(items=items, row_count=len(rows), has_more=len(rows) >= self.page_size)

    def toggle(self, category: str, value: str):
        """Toggle a filter value in a category."""
        was_confirmed = self.filters.state.server_confirmed
        state = self.filters.toggle(category, value)
        if state.selection.is_empty and was_confirmed:
            self._reload_slot.schedule(self.refresh)
        return state

    def toggle_keyword(self, value: str):
        return self.toggle(KEYWORD, value)

    def toggle_landmark(self, value: str):
        return self.toggle(LANDMARK, value)

    def toggle_organization(self, value: str):
        return self.toggle(ORGANIZATION, value)

    def toggle_source(self, value: str):
        return self.toggle(SOURCE, value)

    def remove(self, category: str, value: str):
        """Remove a filter value if it is selected."""
        if category == SOURCE:
            present = normalize_domain(value) in self.filters.selection.sources
        else:
            present = value.strip().lower() in {term.lower() for term in self.filters.selection.get(category)}
        if present:
            return self.toggle(category, value)
        return self.filters.state

    def remove_keyword(self, value: str):
        return self.remove(KEYWORD, value)

    def remove_landmark(self, value: str):
        return self.remove(LANDMARK, value)

    def remove_organization(self, value: str):
        return self.remove(ORGANIZATION, value)

    def remove_source(self, value: str):
        return self.remove(SOURCE, value)

    def clear_all_filters(self) -> bool:
        """
        Clear every filter and show the baseline.

        A server-confirmed filtered view is followed by a full unfiltered
        reload instead of trusting the loaded baseline.

        Returns:
            True if a reload was scheduled
        """
        was_confirmed = self.filters.clear()
        if was_confirmed:
            self._reload_slot.schedule(self.refresh)
        return was_confirmed

    def story_filter_matches(self, story: Story, limit: int = 2) -> List[Tuple[str, str]]:
        if self.topic is None:
            return []
        return story_filter_matches(story, self.topic, limit)

    def more_like_this(self, story: Story, limit: int = 2) -> List[Tuple[str, str]]:
        """
        Replace the selection with the terms a story mentions.

        Returns:
            The applied (category, term) pairs; empty when nothing matched
        """
        matches = self.story_filter_matches(story, limit)
        if not matches:
            return []
        self.filters.clear()
        for category, term in matches:
            self.filters.toggle(category, term)
        logger.info(f"More like {story.id}: {', '.join(term for _, term in matches)}")
        return matches

    async def prefetch_filter(self, keywords: Iterable[str] = (), sources: Iterable[str] = ()) -> bool:
        """
        Warm the prefetch slot with the first page of a filter combination.

        Returns:
            True if the slot now holds that page
        """
        selection = FilterSelection(
            keywords=tuple(keywords),
            sources=tuple(normalize_domain(source) for source in sources),
        )
        if selection.is_empty:
            return False
        try:
            page = await self._filtered_page(selection, 0)
        except RemoteError as e:
            logger.debug(f"Filter prefetch for {self.slug} failed: {e}")
            return False
        self._prefetch = (selection.cache_key(), page)
        return True

    # Filter options

    async def ensure_filter_index(self) -> bool:
        """
        Build the filter index for the current vocabulary if needed.

        Returns:
            True when the index is current
        """
        if self.topic is None:
            return False
        self._index_requested = True
        try:
            return await self.index.ensure(self.topic)
        finally:
            self._index_waited = True

    @property
    def filter_options_ready(self) -> bool:
        if self.topic is not None and self.index.is_current(self.topic):
            return True
        return self._index_waited

    def available_options(self) -> Dict[str, List[Tuple[str, int]]]:
        """Filter options with story counts per category."""
        if self.topic is None:
            return {category: [] for category in FILTER_CATEGORIES}
        if self.index.is_current(self.topic):
            entries = self.index.entries.values()
        else:
            entries = index_stories(self.merger.stories, self.topic.vocabulary).values()
        return term_counts(entries, self.topic)

    @property
    def available_keywords(self) -> List[Tuple[str, int]]:
        return self.available_options()[KEYWORD]

    @property
    def available_landmarks(self) -> List[Tuple[str, int]]:
        return self.available_options()[LANDMARK]

    @property
    def available_organizations(self) -> List[Tuple[str, int]]:
        return self.available_options()[ORGANIZATION]

    @property
    def available_sources(self) -> List[Tuple[str, int]]:
        return self.available_options()[SOURCE]

    # New-content notices

    def _known_ids(self) -> Set[str]:
        return self.merger.ids() | self.filters.ids()

    def _note_new_story(self, story_id: str) -> bool:
        if self.filters.selection.is_empty:
            return False
        if story_id not in self.merger.ids() and story_id not in self._new_story_ids:
            self._new_story_ids.add(story_id)
            logger.info(f"New story {story_id} for {self.slug} held back while filtering")
        return True

    @property
    def has_new_stories(self) -> bool:
        return bool(self._new_story_ids)

    @property
    def new_story_count(self) -> int:
        return len(self._new_story_ids)

    # Views

    @property
    def selection(self) -> FilterSelection:
        return self.filters.selection

    @property
    def items(self) -> List[FeedContentItem]:
        """What the user sees: the baseline, or the filtered collection."""
        if self.filters.selection.is_empty:
            return self.merger.items
        return self.filters.items

    @property
    def stories(self) -> List[Story]:
        return [item.story for item in self.items]

    @property
    def has_more(self) -> bool:
        if not self.filters.selection.is_empty:
            return self.filters.has_more
        return self._has_more and not self._pagination_disabled

    @property
    def status(self) -> FeedStatus:
        state = self.filters.state
        return FeedStatus(
            topic_loading=self.topic_loading,
            stories_loading=self.stories_loading,
            loading_more=self.loading_more,
            is_refreshing=self.is_refreshing,
            is_server_filtering=state.server_filtering,
            using_cached_content=self.using_cached_content,
            has_more=self.has_more,
            server_confirmed=state.server_confirmed,
            pagination_disabled=self._pagination_disabled or state.pagination_disabled,
            load_error=self.load_error or self.filters.last_error,
            retry_count=self.retry_count,
            filter_index_loading=self.index.building,
            filter_options_ready=self.filter_options_ready,
            is_live=self.realtime is not None and self.realtime.is_live,
        )
