"""
Hybrid filtering for topicfeed.

Filtering happens twice: immediately against the loaded baseline for instant
feedback, then, after a debounce, through the remote filtered query whose
result replaces the local approximation. Every selection change bumps a
version token; a remote answer is applied only if the token it was
dispatched with is still current.
"""
import logging
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Iterable, List, Optional, Set, Tuple

from topicfeed.core.merger import ContentMerger, sort_items
from topicfeed.core.models import (
    FeedContentItem,
    FilterSelection,
    KEYWORD,
    LANDMARK,
    ORGANIZATION,
    Story,
    Topic,
)
from topicfeed.errors import FeedUnavailableError, RemoteError
from topicfeed.utils.tasks import DebouncedTask
from topicfeed.utils.text import matches_term

logger = logging.getLogger(__name__)

DEBOUNCE_DELAY = 0.5  # seconds

# Filter state actions
TOGGLE = 'toggle'
CLEAR = 'clear'
CONFIRM = 'confirm'
FAIL = 'fail'
LOCAL_ONLY = 'local_only'
ACTIONS = (TOGGLE, CLEAR, CONFIRM, FAIL, LOCAL_ONLY)


@dataclass(frozen=True)
class FilterState:
    """
    Everything that decides how the filtered collection is derived.

    ``server_confirmed`` means the filtered collection came from a successful
    remote filtered query for the current ``version``. ``pagination_disabled``
    marks a locally derived view produced by the fallback chain.
    """
    selection: FilterSelection = field(default_factory=FilterSelection)
    version: int = 0
    server_confirmed: bool = False
    server_filtering: bool = False
    pagination_disabled: bool = False


def reduce_filter_state(state: FilterState, action: str, **payload) -> FilterState:
    """
    Apply one action to the filter state.

    Selection changes always produce a new version. Outcome actions
    (confirm, fail, local_only) carry the version they belong to and are
    ignored when it is no longer current.

    Args:
        state: Current state
        action: One of TOGGLE, CLEAR, CONFIRM, FAIL, LOCAL_ONLY
        **payload: ``category`` and ``value`` for TOGGLE, ``version`` for outcomes

    Returns:
        The new state
    """
    if action not in ACTIONS:
        raise ValueError(f"Unknown filter action: {action}")
    if action == TOGGLE:
        selection = state.selection.toggled(payload['category'], payload['value'])
        return FilterState(
            selection=selection,
            version=state.version + 1,
            server_filtering=not selection.is_empty,
        )
    if action == CLEAR:
        return FilterState(version=state.version + 1)

    if payload.get('version') != state.version:
        return state
    if action == CONFIRM:
        return replace(state, server_confirmed=True, server_filtering=False, pagination_disabled=False)
    if action == FAIL:
        return replace(state, server_filtering=False)
    return replace(state, server_confirmed=False, server_filtering=False, pagination_disabled=True)


def local_filter(items: Iterable[FeedContentItem], selection: FilterSelection) -> List[FeedContentItem]:
    """
    Evaluate the selection locally against every item.

    Args:
        items: Items in feed order
        selection: Active selection

    Returns:
        Matching items, newest first
    """
    if selection.is_empty:
        return sort_items(items)
    return sort_items(
        item for item in items
        if selection.matches(item.story.text, item.story.source_domain, item.story.is_parliamentary)
    )


def story_filter_matches(story: Story, topic: Topic, limit: int = 2) -> List[Tuple[str, str]]:
    """
    Vocabulary terms a story mentions, for "more like this".

    Landmarks are preferred, then organizations, then keywords. Boundary
    matches are collected first and plain substring matches only fill the
    remaining slots. Very short terms and the topic's own name are skipped.

    Args:
        story: Story to inspect
        topic: Topic supplying the vocabulary
        limit: Maximum number of terms

    Returns:
        (category, term) pairs
    """
    text = story.text
    topic_name = topic.name.strip().lower()
    candidates = [
        (category, term)
        for category in (LANDMARK, ORGANIZATION, KEYWORD)
        for term in topic.terms(category)
        if len(term.strip()) > 2 and term.strip().lower() != topic_name
    ]

    found: List[Tuple[str, str]] = []
    seen: Set[str] = set()
    for boundary in (True, False):
        for category, term in candidates:
            if len(found) >= limit:
                return found
            key = term.strip().lower()
            if key in seen:
                continue
            if matches_term(text, term) if boundary else key in text:
                seen.add(key)
                found.append((category, term))
    return found


@dataclass
class FilterPage:
    """One page of a remote filtered query."""
    items: List[FeedContentItem]
    row_count: int
    has_more: bool


FetchFiltered = Callable[[FilterSelection, int], Awaitable[FilterPage]]
Recover = Callable[[FilterSelection, Exception], Awaitable[List[FeedContentItem]]]


class FilterOrchestrator:
    """
    Owns the filter selection and the filtered collection.
    """
    def __init__(self, merger: ContentMerger, fetch_filtered: FetchFiltered, recover: Recover,
                 debounce: float = DEBOUNCE_DELAY):
        """
        Initialize the FilterOrchestrator.

        Args:
            merger: Owner of the baseline collection, read only here
            fetch_filtered: Runs the remote filtered query for (selection, offset)
            recover: Fallback chain entry point for a failed filtered query;
                returns the items to show or raises FeedUnavailableError
            debounce: Seconds between the last selection change and dispatch
        """
        self.merger = merger
        self._fetch_filtered = fetch_filtered
        self._recover = recover
        self._state = FilterState()
        self._filtered: List[FeedContentItem] = []
        self._offset = 0
        self._has_more = False
        self._slot = DebouncedTask(debounce, name="filter dispatch")
        self.last_error: Optional[FeedUnavailableError] = None

    @property
    def state(self) -> FilterState:
        return self._state

    @property
    def selection(self) -> FilterSelection:
        return self._state.selection

    @property
    def version(self) -> int:
        return self._state.version

    @property
    def items(self) -> List[FeedContentItem]:
        """The filtered collection, newest first."""
        return list(self._filtered)

    @property
    def has_more(self) -> bool:
        """Whether the server-confirmed filtered view has further pages."""
        return self._state.server_confirmed and self._has_more

    def ids(self) -> Set[str]:
        return {item.id for item in self._filtered}

    def toggle(self, category: str, value: str) -> FilterState:
        """
        Toggle a filter value and refresh the view locally right away.

        The remote filtered query is (re)scheduled after the debounce delay.
        Must be called from a running event loop.

        Args:
            category: KEYWORD, LANDMARK, ORGANIZATION or SOURCE
            value: Term or source domain

        Returns:
            The new state
        """
        self._state = reduce_filter_state(self._state, TOGGLE, category=category, value=value)
        self._offset = 0
        self._has_more = False
        if self._state.selection.is_empty:
            self._slot.cancel()
            self._filtered = self.merger.items
            return self._state

        self._filtered = local_filter(self.merger.items, self._state.selection)
        logger.debug(f"Local filter v{self._state.version}: {len(self._filtered)} of {len(self.merger)} stories")
        self._slot.schedule(self.dispatch)
        return self._state

    def clear(self) -> bool:
        """
        Drop every selection and show the baseline as it is.

        Returns:
            True if the view being cleared was server-confirmed
        """
        was_confirmed = self._state.server_confirmed
        self._slot.cancel()
        self._state = reduce_filter_state(self._state, CLEAR)
        self._filtered = self.merger.items
        self._offset = 0
        self._has_more = False
        return was_confirmed

    def refilter(self):
        """Re-run the remote filtered query for the current selection."""
        if not self._state.selection.is_empty:
            self._slot.schedule(self.dispatch)

    def baseline_changed(self):
        """Re-derive the view after the baseline collection changed."""
        if self._state.selection.is_empty:
            self._filtered = self.merger.items
        elif not self._state.server_confirmed:
            self._filtered = local_filter(self.merger.items, self._state.selection)

    def adopt_fallback(self, items: List[FeedContentItem]):
        """Show a view derived by the fallback chain; pagination stops."""
        self._filtered = sort_items(items)
        self._has_more = False
        self._state = reduce_filter_state(self._state, LOCAL_ONLY, version=self._state.version)

    async def dispatch(self):
        """
        Run the remote filtered query for the current selection.

        The answer replaces the filtered collection only if no selection
        change happened while it was in flight.
        """
        expected = self._state.version
        selection = self._state.selection
        if selection.is_empty:
            return

        logger.debug(f"Dispatching remote filter v{expected}: terms={list(selection.terms)} "
                     f"sources={list(selection.sources)}")
        try:
            page = await self._fetch_filtered(selection, 0)
        except RemoteError as e:
            if expected != self._state.version:
                logger.debug(f"Ignoring failure of superseded filter v{expected}: {e}")
                return
            self._state = reduce_filter_state(self._state, FAIL, version=expected)
            await self._fall_back(selection, expected, e)
            return

        if expected != self._state.version:
            logger.debug(f"Discarding stale filter response v{expected} (current v{self._state.version})")
            return

        self._filtered = sort_items(page.items)
        self._offset = page.row_count
        self._has_more = page.has_more
        self._state = reduce_filter_state(self._state, CONFIRM, version=expected)
        self.last_error = None
        logger.debug(f"Server confirmed filter v{expected}: {len(self._filtered)} stories")

    async def load_more(self) -> int:
        """
        Load the next page of a server-confirmed filtered view.

        Returns:
            Number of stories added to the view
        """
        if not self.has_more or self._state.pagination_disabled:
            return 0
        expected = self._state.version
        selection = self._state.selection
        try:
            page = await self._fetch_filtered(selection, self._offset)
        except RemoteError as e:
            if expected == self._state.version:
                await self._fall_back(selection, expected, e)
            return 0

        if expected != self._state.version:
            logger.debug(f"Discarding stale filter page v{expected}")
            return 0

        merged = {item.id: item for item in self._filtered}
        before = len(merged)
        for item in page.items:
            merged.setdefault(item.id, item)
        self._filtered = sort_items(merged.values())
        self._offset += page.row_count
        self._has_more = page.has_more
        return len(merged) - before

    async def _fall_back(self, selection: FilterSelection, expected: int, error: Exception):
        logger.warning(f"Remote filtered query failed: {error}")
        try:
            items = await self._recover(selection, error)
        except FeedUnavailableError as exhausted:
            if expected == self._state.version:
                self.last_error = exhausted
                logger.error(f"No fallback left for filter v{expected}: {exhausted}")
            return
        if expected != self._state.version:
            return
        self._filtered = sort_items(items)
        self._has_more = False
        self._state = reduce_filter_state(self._state, LOCAL_ONLY, version=expected)

    @property
    def pending(self) -> bool:
        return self._slot.pending

    def cancel(self):
        self._slot.cancel()

    async def wait(self):
        """Wait for any scheduled or in-flight filtered query to finish."""
        await self._slot.wait()
