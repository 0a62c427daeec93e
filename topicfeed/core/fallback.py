"""
Fallback chain for topicfeed.

When a feed load or a remote filtered query fails, the chain tries a fixed
sequence of degraded strategies, each at most once, and only those that fit
the failure context. If none applies or all of them fail, the original error
surfaces as FeedUnavailableError.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from topicfeed.core.filters import local_filter
from topicfeed.core.merger import ContentMerger, to_items
from topicfeed.core.models import FeedContentItem, FilterSelection
from topicfeed.errors import FeedUnavailableError, RemoteError
from topicfeed.utils.http import with_ceiling

logger = logging.getLogger(__name__)

# Strategies, in the order they are attempted
LEGACY = 'legacy'
LOCAL = 'local'
FILTERED_COLD_START = 'filtered_cold_start'
STRATEGIES = (LEGACY, LOCAL, FILTERED_COLD_START)


@dataclass
class FallbackResult:
    """
    Outcome of a successful fallback strategy.

    ``baseline`` holds freshly fetched unfiltered items to adopt as the
    baseline (None when the existing baseline is kept). ``filtered`` is what
    the user should see.
    """
    strategy: str
    filtered: List[FeedContentItem] = field(default_factory=list)
    baseline: Optional[List[FeedContentItem]] = None
    row_count: int = 0
    has_more: bool = False
    pagination_disabled: bool = True


class FallbackChain:
    """
    Degraded recovery for failed feed and filter loads.
    """
    def __init__(self, source, merger: ContentMerger, page_size: int = 10, timeout: Optional[float] = None):
        """
        Initialize the FallbackChain.

        Args:
            source: ContentSource offering the legacy query
            merger: Owner of the existing baseline, read only here
            page_size: Rows requested from the legacy query
            timeout: Ceiling for each remote call, in seconds
        """
        self.source = source
        self.merger = merger
        self.page_size = page_size
        self.timeout = timeout

    def applicable(self, selection: FilterSelection) -> List[str]:
        """Strategies that fit the current failure context, in order."""
        strategies = []
        if selection.is_empty:
            strategies.append(LEGACY)
        if len(self.merger):
            strategies.append(LOCAL)
        elif not selection.is_empty:
            strategies.append(FILTERED_COLD_START)
        return strategies

    async def recover(self, error: Exception, selection: FilterSelection, topic_slug: str,
                      offset: int = 0, region: Optional[str] = None) -> FallbackResult:
        """
        Run the chain for one failure.

        Args:
            error: The failure being recovered from
            selection: Filter selection active when it happened
            topic_slug: Topic being loaded
            offset: Row offset of the failed page
            region: Region applied to legacy rows that carry none

        Returns:
            The first strategy that succeeded

        Raises:
            FeedUnavailableError: No strategy applied or all of them failed
        """
        for strategy in self.applicable(selection):
            logger.warning(f"Falling back to {strategy} strategy for {topic_slug} after: {error}")
            try:
                if strategy == LEGACY:
                    return await self._legacy(topic_slug, offset, region)
                if strategy == LOCAL:
                    return self._local(selection)
                return await self._filtered_cold_start(selection, topic_slug, region)
            except RemoteError as e:
                logger.warning(f"Fallback strategy {strategy} failed for {topic_slug}: {e}")

        raise FeedUnavailableError(f"Feed for {topic_slug} is unavailable: {error}") from error

    async def _legacy_items(self, topic_slug: str, offset: int, region: Optional[str]):
        rows = await with_ceiling(
            self.source.fetch_legacy_page(topic_slug, self.page_size, offset),
            self.timeout,
            "legacy feed query",
        )
        stories = await self.merger.build(rows, filters_active=False, region=region)
        return to_items(stories), len(rows)

    async def _legacy(self, topic_slug: str, offset: int, region: Optional[str]) -> FallbackResult:
        items, row_count = await self._legacy_items(topic_slug, offset, region)
        return FallbackResult(
            strategy=LEGACY,
            filtered=items,
            baseline=items,
            row_count=row_count,
            has_more=row_count >= self.page_size,
            pagination_disabled=False,
        )

    def _local(self, selection: FilterSelection) -> FallbackResult:
        return FallbackResult(strategy=LOCAL, filtered=local_filter(self.merger.items, selection))

    async def _filtered_cold_start(self, selection: FilterSelection, topic_slug: str,
                                   region: Optional[str]) -> FallbackResult:
        items, row_count = await self._legacy_items(topic_slug, 0, region)
        return FallbackResult(
            strategy=FILTERED_COLD_START,
            filtered=local_filter(items, selection),
            baseline=items,
            row_count=row_count,
        )
