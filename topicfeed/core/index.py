"""
Filter index for topicfeed.

Maps every story of a topic to the vocabulary terms it mentions and its
source domain, so filter options can show counts for stories that have not
been paged into the feed yet.
"""
import asyncio
import logging
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Tuple

from topicfeed.core.merger import row_value, row_story_id
from topicfeed.core.models import (
    FilterIndexEntry,
    SOURCE,
    Story,
    TERM_CATEGORIES,
    Topic,
)
from topicfeed.errors import RemoteError
from topicfeed.utils.http import with_ceiling
from topicfeed.utils.text import combined_text, extract_domain, matched_terms, normalize_term

logger = logging.getLogger(__name__)

INDEX_PAGE_SIZE = 500
INDEX_CEILING = 8.0  # seconds


def flatten_stories(stories: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Flatten nested story records into joined rows.

    A story without slides becomes one placeholder row with no slide columns.
    """
    rows = []
    for story in stories:
        base = {
            'story_id': story.get('id'),
            'story_title': story.get('title'),
            'story_created_at': story.get('created_at'),
            'article_source_url': story.get('article_source_url') or story.get('source_url'),
            'article_published_at': story.get('article_published_at') or story.get('published_at'),
        }
        slides = story.get('slides') or []
        if not slides:
            rows.append(dict(base, slide_id=None, slide_number=None, slide_content=None))
            continue
        for slide in slides:
            rows.append(dict(
                base,
                slide_id=slide.get('id'),
                slide_number=slide.get('slide_number'),
                slide_content=slide.get('content'),
            ))
    return rows


def index_rows(rows: Iterable[Dict[str, Any]], vocabulary: Iterable[str]) -> Dict[str, FilterIndexEntry]:
    """
    Build index entries from joined rows.

    Args:
        rows: Joined (story, slide) rows, any order
        vocabulary: Terms to match

    Returns:
        Entries keyed by story id
    """
    vocabulary = list(vocabulary)
    titles: Dict[str, str] = {}
    contents: Dict[str, List[str]] = {}
    domains: Dict[str, Optional[str]] = {}
    for row in rows:
        story_id = row_story_id(row)
        if story_id is None:
            continue
        if story_id not in titles:
            titles[story_id] = row_value(row, 'story_title', 'title', default='')
            contents[story_id] = []
            domains[story_id] = extract_domain(row_value(row, 'article_source_url', 'source_url'))
        content = row.get('slide_content')
        if content:
            contents[story_id].append(content)

    return {
        story_id: FilterIndexEntry(
            story_id=story_id,
            source_domain=domains[story_id],
            terms=frozenset(matched_terms(combined_text(titles[story_id], contents[story_id]), vocabulary)),
        )
        for story_id in titles
    }


def index_stories(stories: Iterable[Story], vocabulary: Iterable[str]) -> Dict[str, FilterIndexEntry]:
    """Build index entries from already loaded stories."""
    vocabulary = list(vocabulary)
    return {
        story.id: FilterIndexEntry(
            story_id=story.id,
            source_domain=story.source_domain,
            terms=frozenset(matched_terms(story.text, vocabulary)),
        )
        for story in stories
    }


def term_counts(entries: Iterable[FilterIndexEntry], topic: Topic) -> Dict[str, List[Tuple[str, int]]]:
    """
    Count matching stories per vocabulary term, grouped by category.

    Args:
        entries: Index entries
        topic: Topic supplying the vocabulary

    Returns:
        Category -> [(term, count)], zero counts omitted, most common first,
        plus the SOURCE category with domain counts
    """
    entries = list(entries)
    matched = Counter(term for entry in entries for term in entry.terms)
    options = {}
    for category in TERM_CATEGORIES:
        counts = [(term, matched[normalize_term(term)]) for term in topic.terms(category)]
        options[category] = sorted(
            [(term, count) for term, count in counts if count > 0],
            key=lambda pair: (-pair[1], pair[0].lower()),
        )
    domains = Counter(entry.source_domain for entry in entries if entry.source_domain)
    options[SOURCE] = sorted(domains.items(), key=lambda pair: (-pair[1], pair[0]))
    return options


class FilterIndexBuilder:
    """
    Pages through a topic's stories once per vocabulary and indexes them.
    """
    def __init__(self, source, page_size: int = INDEX_PAGE_SIZE, ceiling: float = INDEX_CEILING,
                 timeout: Optional[float] = None, progress=None):
        """
        Initialize the FilterIndexBuilder.

        Args:
            source: ContentSource to page through
            page_size: Rows requested per page
            ceiling: Seconds ensure() waits before giving up on a build
            timeout: Ceiling for each remote call, in seconds
            progress: Optional tqdm-style bar updated with indexed story counts
        """
        self.source = source
        self.page_size = page_size
        self.ceiling = ceiling
        self.timeout = timeout
        self.progress = progress
        self.building = False
        self._entries: Dict[str, FilterIndexEntry] = {}
        self._signature = None
        self._task: Optional[asyncio.Task] = None
        self._task_signature = None

    @property
    def entries(self) -> Dict[str, FilterIndexEntry]:
        return dict(self._entries)

    def get(self, story_id: str) -> Optional[FilterIndexEntry]:
        return self._entries.get(story_id)

    def is_current(self, topic: Topic) -> bool:
        """Whether the index was built for the topic's current vocabulary."""
        return self._signature is not None and self._signature == (topic.id, topic.vocabulary_signature())

    def invalidate(self):
        """Forget the index; it is rebuilt on the next ensure()."""
        self._signature = None

    async def build(self, topic: Topic) -> Dict[str, FilterIndexEntry]:
        """
        Rebuild the index for a topic.

        A build already in progress is not restarted; the current entries are
        returned instead.

        Args:
            topic: Topic whose stories and vocabulary are indexed

        Returns:
            Entries keyed by story id
        """
        if self.building:
            logger.debug(f"Index build already running for {topic.slug}")
            return self.entries

        self.building = True
        try:
            rows = await self._collect_rows(topic)
            entries = index_rows(rows, topic.vocabulary)
            self._entries = entries
            self._signature = (topic.id, topic.vocabulary_signature())
            logger.info(f"Indexed {len(entries)} stories for {topic.slug}")
            return self.entries
        finally:
            self.building = False

    async def ensure(self, topic: Topic) -> bool:
        """
        Make sure the index is current, waiting at most the ceiling.

        A build that outlives the ceiling keeps running in the background. A
        build still running for an older vocabulary is awaited first, then a
        build for the topic's vocabulary is started.

        Args:
            topic: Topic to index

        Returns:
            True when the index is current, False on timeout or failure
        """
        wanted = (topic.id, topic.vocabulary_signature())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ceiling
        while not self.is_current(topic):
            if self._task is None or self._task.done():
                self._task = loop.create_task(self.build(topic))
                self._task_signature = wanted
                self._task.add_done_callback(self._build_done)
            task, signature = self._task, self._task_signature
            try:
                await asyncio.wait_for(asyncio.shield(task), max(deadline - loop.time(), 0))
            except asyncio.TimeoutError:
                logger.warning(f"Filter index for {topic.slug} not ready after {self.ceiling}s, continuing without it")
                return False
            except RemoteError as e:
                if signature == wanted:
                    logger.warning(f"Filter index build failed for {topic.slug}: {e}")
                    return False
                continue
            if signature == wanted:
                break
            logger.debug(f"Outdated index build finished for {topic.slug}, rebuilding")
        return self.is_current(topic)

    @staticmethod
    def _build_done(task: asyncio.Task):
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Background index build ended with {task.exception()!r}")

    async def _collect_rows(self, topic: Topic) -> List[Dict[str, Any]]:
        try:
            rows = await self._page_rows(topic)
            if rows:
                return rows
            logger.info(f"Paged index query returned nothing for {topic.slug}, using direct query")
        except RemoteError as e:
            logger.warning(f"Paged index query failed for {topic.slug}: {e}; using direct query")

        stories = await with_ceiling(self.source.fetch_topic_stories(topic.id), self.timeout, "topic stories query")
        rows = flatten_stories(stories)
        if self.progress is not None:
            self.progress.update(len(stories))
        return rows

    async def _page_rows(self, topic: Topic) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        offset = 0
        while True:
            page = await with_ceiling(
                self.source.fetch_page(topic.slug, None, None, self.page_size, offset),
                self.timeout,
                "index page",
            )
            rows.extend(page)
            if self.progress is not None:
                self.progress.update(len({row_story_id(row) for row in page}))
            if len(page) < self.page_size:
                return rows
            offset += len(page)
