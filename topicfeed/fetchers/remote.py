"""
Remote content source for topicfeed.

Rows returned by the paged queries are denormalized: one row per
(story, slide) pair, or a single row with empty slide columns for a story
without slides. Row keys:

    story_id, story_title, story_author, story_created_at, story_updated_at,
    story_cover_url, story_publication_name, story_is_parliamentary,
    story_mp_names, slide_id, slide_number, slide_content, slide_word_count,
    slide_links, article_source_url, article_published_at, article_region
"""
import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from topicfeed.config import get_config
from topicfeed.errors import RemoteQueryError, RemoteTimeoutError, TopicNotFoundError
from topicfeed.utils.http import request_timeout

# Configure logging
logger = logging.getLogger(__name__)

Row = Dict[str, Any]


class ContentSource(ABC):
    """
    The remote query service a feed is synchronized against.

    Every method raises RemoteTimeoutError for timeouts and connectivity
    problems and RemoteQueryError for error responses.
    """

    @abstractmethod
    async def fetch_topic(self, slug: str) -> Dict[str, Any]:
        """Load a public topic with its full filter vocabulary."""

    @abstractmethod
    async def fetch_page(
        self,
        topic_slug: str,
        keywords: Optional[Sequence[str]] = None,
        sources: Optional[Sequence[str]] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> List[Row]:
        """Paginated, optionally filtered story rows, newest first."""

    @abstractmethod
    async def fetch_legacy_page(self, topic_slug: str, limit: int = 10, offset: int = 0) -> List[Row]:
        """Unfiltered pre-joined story rows from the simpler degraded query."""

    @abstractmethod
    async def fetch_full_slides(self, story_ids: Sequence[str]) -> List[Row]:
        """Every slide of the given stories as flat slide rows."""

    @abstractmethod
    async def fetch_topic_stories(self, topic_id: str) -> List[Dict[str, Any]]:
        """Direct structured query: the topic's stories with nested ``slides``."""

    @abstractmethod
    async def story_topic(self, story_id: str) -> Optional[str]:
        """Id of the topic a story belongs to, or None if it does not exist."""

    async def close(self):
        """Release network resources."""


class RestContentSource(ContentSource):
    """
    ContentSource backed by a PostgREST-style HTTP API.
    """
    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 network: Optional[str] = None):
        """
        Initialize the RestContentSource.

        Args:
            base_url: Service root, e.g. https://example.supabase.co
            api_key: Public API key sent with every request
            network: Network class used to pick the socket timeout
        """
        self.base_url = (base_url or get_config('remote.base_url') or '').rstrip('/')
        self.api_key = api_key or get_config('remote.api_key') or os.getenv('TOPICFEED_API_KEY', '')
        self.timeout = aiohttp.ClientTimeout(total=request_timeout(network))
        self._session = None
        self.headers = {
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        }
        if self.api_key:
            self.headers['apikey'] = self.api_key
            self.headers['Authorization'] = f'Bearer {self.api_key}'

    @property
    def session(self) -> aiohttp.ClientSession:
        """
        Lazy initialization of aiohttp session.

        Returns:
            aiohttp.ClientSession: The HTTP session
        """
        if self._session is None:
            self._session = aiohttp.ClientSession(headers=self.headers, timeout=self.timeout)
        return self._session

    async def close(self):
        """Close aiohttp session."""
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _request(self, method: str, path: str, params: Optional[Dict[str, str]] = None,
                       payload: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}/rest/v1/{path}"
        try:
            async with self.session.request(method, url, params=params, json=payload) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise RemoteQueryError(f"{method} {path} failed with {response.status}: {body[:200]}")
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise RemoteQueryError(f"{method} {path} returned invalid JSON: {e}") from e
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            raise RemoteTimeoutError(f"{method} {path} did not complete: {e}") from e
        except aiohttp.ClientError as e:
            raise RemoteQueryError(f"{method} {path} failed: {e}") from e

    async def _rpc(self, name: str, params: Dict[str, Any]) -> List[Row]:
        data = await self._request('POST', f'rpc/{name}', payload=params)
        return list(data or [])

    async def fetch_topic(self, slug: str) -> Dict[str, Any]:
        data = await self._request('GET', 'topics', params={
            'slug': f'eq.{slug}',
            'is_public': 'eq.true',
            'select': '*',
            'limit': '1',
        })
        if not data:
            raise TopicNotFoundError(f"Topic not found: {slug}")
        return data[0]

    async def fetch_page(self, topic_slug, keywords=None, sources=None, limit=10, offset=0):
        logger.debug(f"Fetching page for {topic_slug} (offset={offset}, limit={limit}, "
                     f"keywords={len(keywords or [])}, sources={len(sources or [])})")
        return await self._rpc('get_topic_stories_with_keywords', {
            'p_topic_slug': topic_slug,
            'p_keywords': list(keywords) if keywords else None,
            'p_sources': list(sources) if sources else None,
            'p_limit': limit,
            'p_offset': offset,
        })

    async def fetch_legacy_page(self, topic_slug, limit=10, offset=0):
        return await self._rpc('get_topic_stories', {
            'p_topic_slug': topic_slug,
            'p_limit': limit,
            'p_offset': offset,
            'p_sort': 'published_at.desc',
        })

    async def fetch_full_slides(self, story_ids):
        if not story_ids:
            return []
        return await self._rpc('get_public_slides_for_stories', {'p_story_ids': list(story_ids)})

    async def fetch_topic_stories(self, topic_id):
        data = await self._request('GET', 'stories', params={
            'topic_id': f'eq.{topic_id}',
            'status': 'eq.published',
            'select': ('id,title,author,created_at,updated_at,cover_illustration_url,'
                       'article_source_url,article_published_at,'
                       'slides(id,slide_number,content,word_count)'),
            'order': 'created_at.desc',
        })
        return list(data or [])

    async def story_topic(self, story_id):
        data = await self._request('GET', 'stories', params={
            'id': f'eq.{story_id}',
            'select': 'topic_id',
            'limit': '1',
        })
        if not data:
            return None
        topic_id = data[0].get('topic_id')
        return str(topic_id) if topic_id is not None else None
