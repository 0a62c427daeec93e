"""
Content merging for topicfeed.

Turns denormalized (story, slide) rows into stories, repairs incomplete slide
runs and owns the baseline collection: the deduplicated, newest-first set of
every story loaded for the topic.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from topicfeed.core.models import FeedContentItem, Slide, Story
from topicfeed.errors import RemoteError
from topicfeed.utils.http import with_ceiling
from topicfeed.utils.text import parse_date, sort_timestamp

logger = logging.getLogger(__name__)

MIN_COMPLETE_SLIDES = 3


def row_value(row: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = row.get(key)
        if value is not None:
            return value
    return default


def row_story_id(row: Dict[str, Any]) -> Optional[str]:
    story_id = row_value(row, 'story_id', 'id')
    return str(story_id) if story_id is not None else None


def story_from_row(row: Dict[str, Any], region: Optional[str] = None) -> Story:
    """Build a story (without slides) from the story columns of a row."""
    return Story(
        id=row_story_id(row),
        title=row_value(row, 'story_title', 'title', default=''),
        created_at=row_value(row, 'story_created_at', 'created_at'),
        updated_at=row_value(row, 'story_updated_at', 'updated_at'),
        author=row_value(row, 'story_author', 'author', default='Unknown'),
        publication_name=row_value(row, 'story_publication_name', 'publication_name', default=''),
        source_url=row_value(row, 'article_source_url', 'source_url'),
        published_at=row_value(row, 'article_published_at', 'published_at'),
        region=row_value(row, 'article_region', 'region', default=region),
        cover_illustration_url=row_value(row, 'story_cover_url', 'cover_illustration_url'),
        is_parliamentary=bool(row_value(row, 'story_is_parliamentary', 'is_parliamentary', default=False)),
        mp_names=list(row_value(row, 'story_mp_names', 'mp_names', default=[]) or []),
        popularity=row.get('popularity_data'),
    )


def slide_from_row(row: Dict[str, Any], story_id: str) -> Optional[Slide]:
    """Build the slide of a joined row, or None for a slide-less story row."""
    slide_id = row.get('slide_id')
    if slide_id is None:
        return None
    return Slide(
        id=str(slide_id),
        story_id=story_id,
        slide_number=int(row_value(row, 'slide_number', default=0)),
        content=row_value(row, 'slide_content', default=''),
        word_count=int(row_value(row, 'slide_word_count', default=0)),
        links=row.get('slide_links'),
    )


def group_rows(rows: Iterable[Dict[str, Any]], region: Optional[str] = None) -> List[Story]:
    """
    Group joined rows into stories in a single left-to-right pass.

    Stories keep the order of their first row. A slide id already attached
    to its story is skipped, and each story's slides are re-sorted by
    sequence index after every insertion.

    Args:
        rows: Joined (story, slide) rows
        region: Region applied when rows carry none

    Returns:
        Stories in first-seen order
    """
    stories: Dict[str, Story] = {}
    slide_ids: Dict[str, Set[str]] = {}

    for row in rows:
        story_id = row_story_id(row)
        if story_id is None:
            logger.warning(f"Skipping row without story id: {sorted(row)}")
            continue

        story = stories.get(story_id)
        if story is None:
            story = story_from_row(row, region)
            stories[story_id] = story
            slide_ids[story_id] = set()

        slide = slide_from_row(row, story_id)
        if slide is None:
            continue
        if slide.id in slide_ids[story_id]:
            logger.debug(f"Skipping repeated slide {slide.id} of story {story_id}")
            continue
        slide_ids[story_id].add(slide.id)
        story.slides.append(slide)
        story.slides.sort(key=lambda s: s.slide_number)

    return list(stories.values())


def validate_slides(slides: Sequence[Slide]) -> List[str]:
    """
    Check that slide numbers are unique and form 1..N.

    Args:
        slides: Slides sorted by slide number

    Returns:
        Human-readable defects, empty when the run is complete
    """
    if not slides:
        return ['no slides']

    defects = []
    numbers = [slide.slide_number for slide in slides]
    duplicates = sorted({n for n in numbers if numbers.count(n) > 1})
    if duplicates:
        defects.append(f"duplicate slide numbers {duplicates}")
    if numbers[0] != 1:
        defects.append(f"first slide is {numbers[0]}, expected 1")
    distinct = sorted(set(numbers))
    missing = sorted(set(range(1, distinct[-1] + 1)) - set(distinct))
    if missing:
        defects.append(f"missing slide numbers {missing}")
    return defects


def sort_items(items: Iterable[FeedContentItem]) -> List[FeedContentItem]:
    """Newest first by content date; unparsable dates last, ties by id."""
    return sorted(items, key=lambda item: (sort_timestamp(item.content_date), item.id), reverse=True)


def to_items(stories: Iterable[Story], now: Optional[datetime] = None) -> List[FeedContentItem]:
    """
    Wrap stories as feed items, deduplicated and sorted.

    The first story with a given id wins. Stories dated in the future are
    left out.

    Args:
        stories: Stories to wrap
        now: Reference time for the future-date check

    Returns:
        Sorted feed items
    """
    now = now or datetime.now(timezone.utc)
    items: Dict[str, FeedContentItem] = {}
    for story in stories:
        if story.id in items:
            logger.warning(f"Dropping duplicate story {story.id}")
            continue
        date = parse_date(story.content_date)
        if date is not None and date > now:
            logger.debug(f"Excluding future-dated story {story.id} ({story.content_date})")
            continue
        items[story.id] = FeedContentItem.from_story(story)
    return sort_items(items.values())


class ContentMerger:
    """
    Builds stories from rows and owns the baseline collection.
    """
    def __init__(self, source=None, min_complete_slides: int = MIN_COMPLETE_SLIDES,
                 timeout: Optional[float] = None):
        """
        Initialize the ContentMerger.

        Args:
            source: ContentSource used for slide repair fetches
            min_complete_slides: Below this many slides an unfiltered story is
                assumed to be split across pages and is re-fetched
            timeout: Ceiling for repair fetches, in seconds
        """
        self.source = source
        self.min_complete_slides = min_complete_slides
        self.timeout = timeout
        self._items: Dict[str, FeedContentItem] = {}
        self._sorted: List[FeedContentItem] = []

    def needs_repair(self, story: Story, filters_active: bool = False) -> bool:
        """Whether a story's slides must be re-fetched before it is complete."""
        if story.slides and validate_slides(story.slides):
            return True
        return not filters_active and len(story.slides) < self.min_complete_slides

    async def build(self, rows: Sequence[Dict[str, Any]], filters_active: bool = False,
                    region: Optional[str] = None) -> List[Story]:
        """
        Turn joined rows into validated stories.

        Stories whose slide runs look incomplete get their full slide set
        re-fetched first. Defects that remain are logged and recorded on the
        story; they never fail the build.

        Args:
            rows: Joined (story, slide) rows of one page
            filters_active: Whether the rows came from a filtered query
            region: Region applied when rows carry none

        Returns:
            Stories in row order
        """
        stories = group_rows(rows, region)
        suspects = [story for story in stories if self.needs_repair(story, filters_active)]
        if suspects:
            await self._repair(suspects)

        for story in stories:
            story.defects = validate_slides(story.slides) if story.slides else []
            if story.defects:
                logger.warning(f"Story {story.id} has slide defects: {'; '.join(story.defects)}")
        return stories

    async def _repair(self, stories: List[Story]):
        if self.source is None:
            return
        story_ids = [story.id for story in stories]
        logger.debug(f"Re-fetching slides for {len(story_ids)} incomplete stories")
        try:
            rows = await with_ceiling(self.source.fetch_full_slides(story_ids), self.timeout, "slide backfill")
        except RemoteError as e:
            logger.warning(f"Slide backfill failed for {len(story_ids)} stories: {e}")
            return

        by_story: Dict[str, Dict[str, Slide]] = {}
        for row in rows:
            story_id = str(row.get('story_id'))
            if row.get('id') is None:
                continue
            slide = Slide.from_dict(row, story_id)
            by_story.setdefault(story_id, {}).setdefault(slide.id, slide)

        for story in stories:
            slides = by_story.get(story.id)
            if slides and len(slides) >= len(story.slides):
                story.slides = sorted(slides.values(), key=lambda s: s.slide_number)

    # Baseline collection

    @property
    def items(self) -> List[FeedContentItem]:
        """The baseline collection, newest first."""
        return list(self._sorted)

    @property
    def stories(self) -> List[Story]:
        return [item.story for item in self._sorted]

    def ids(self) -> Set[str]:
        return set(self._items)

    def get(self, story_id: str) -> Optional[FeedContentItem]:
        return self._items.get(story_id)

    def __len__(self) -> int:
        return len(self._items)

    def replace(self, items: Iterable[FeedContentItem]):
        """Replace the baseline wholesale; first occurrence of an id wins."""
        self._items = {}
        for item in items:
            if item.id in self._items:
                logger.warning(f"Dropping duplicate story {item.id}")
                continue
            self._items[item.id] = item
        self._sorted = sort_items(self._items.values())

    def merge(self, items: Iterable[FeedContentItem]) -> int:
        """
        Union items into the baseline by id and re-sort everything.

        A known id keeps its item and position. Its story is swapped only for
        a version carrying more slides, such as the continuation of a story
        split across pages.

        Args:
            items: Items of a newly loaded page

        Returns:
            Number of new stories
        """
        added = 0
        for item in items:
            existing = self._items.get(item.id)
            if existing is None:
                self._items[item.id] = item
                added += 1
            elif len(item.story.slides) > len(existing.story.slides):
                logger.debug(f"Completing story {item.id} with {len(item.story.slides)} slides")
                existing.story = item.story
            else:
                logger.debug(f"Ignoring repeated story {item.id}")
        self._sorted = sort_items(self._items.values())
        return added

    def clear(self):
        self._items = {}
        self._sorted = []
