import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from topicfeed.core.models import Topic
from topicfeed.errors import TopicNotFoundError
from topicfeed.fetchers.remote import ContentSource
from topicfeed.utils.text import extract_domain

TOPIC_ID = "topic-1"

TOPIC = {
    "id": TOPIC_ID,
    "slug": "eastbourne",
    "name": "Eastbourne",
    "topic_type": "regional",
    "keywords": ["harbor", "bridge", "council"],
    "landmarks": ["Pier", "Beachy Head"],
    "organizations": ["Lifeboat Station"],
    "region": "Eastbourne",
    "is_public": True,
    "parliamentary_tracking_enabled": True,
}

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def iso(hours_ago: float) -> str:
    return (BASE_TIME - timedelta(hours=hours_ago)).isoformat().replace("+00:00", "Z")


def make_story(number: int, title: Optional[str] = None, slides: int = 3, text: str = "",
               domain: str = "example.com", hours_ago: Optional[float] = None,
               is_parliamentary: bool = False) -> Dict:
    """Nested story record as returned by the direct stories query."""
    story_id = f"s{number}"
    title = title or f"Story {number}"
    published = iso(number if hours_ago is None else hours_ago)
    return {
        "id": story_id,
        "title": title,
        "author": "Reporter",
        "created_at": published,
        "updated_at": published,
        "article_source_url": f"https://www.{domain}/news/{story_id}",
        "article_published_at": published,
        "is_parliamentary": is_parliamentary,
        "topic_id": TOPIC_ID,
        "slides": [
            {
                "id": f"{story_id}-{index}",
                "slide_number": index,
                "content": f"{title} part {index}. {text}".strip(),
                "word_count": 5,
            }
            for index in range(1, slides + 1)
        ],
    }


def story_rows(story: Dict, order: Optional[List[int]] = None) -> List[Dict]:
    """Denormalized (story, slide) rows for a nested story."""
    base = {
        "story_id": story["id"],
        "story_title": story["title"],
        "story_author": story.get("author"),
        "story_created_at": story["created_at"],
        "story_updated_at": story.get("updated_at"),
        "story_is_parliamentary": story.get("is_parliamentary", False),
        "article_source_url": story["article_source_url"],
        "article_published_at": story["article_published_at"],
    }
    slides = story["slides"]
    if not slides:
        return [dict(base, slide_id=None, slide_number=None, slide_content=None)]
    if order is not None:
        by_number = {slide["slide_number"]: slide for slide in slides}
        slides = [by_number[number] for number in order]
    return [
        dict(
            base,
            slide_id=slide["id"],
            slide_number=slide["slide_number"],
            slide_content=slide["content"],
            slide_word_count=slide["word_count"],
        )
        for slide in slides
    ]


def story_text(story: Dict) -> str:
    return " ".join([story["title"]] + [slide["content"] for slide in story["slides"]]).lower()


class FakeContentSource(ContentSource):
    """
    Scripted content source.

    Serves the rows of ``stories`` newest first, records every call and
    raises queued or permanent failures per method name.
    """
    def __init__(self, stories=None, topic=None, delay: float = 0.0):
        self.topic = dict(topic or TOPIC)
        self.stories = list(stories or [])
        self.owners: Dict[str, str] = {}
        self.delay = delay
        self.delays: Dict[str, float] = {}
        self.calls: List[tuple] = []
        self.queued: Dict[str, List[Exception]] = {}
        self.broken: Dict[str, Exception] = {}
        self.closed = False

    def fail(self, method: str, error: Exception, times: int = 1):
        self.queued.setdefault(method, []).extend([error] * times)

    def break_method(self, method: str, error: Exception):
        self.broken[method] = error

    def repair(self, method: str):
        self.broken.pop(method, None)
        self.queued.pop(method, None)

    def calls_to(self, method: str) -> List[dict]:
        return [kwargs for name, kwargs in self.calls if name == method]

    async def _enter(self, method: str, **kwargs):
        self.calls.append((method, kwargs))
        delay = self.delays.get(method, self.delay)
        if delay:
            await asyncio.sleep(delay)
        if self.queued.get(method):
            raise self.queued[method].pop(0)
        if method in self.broken:
            raise self.broken[method]

    def _sorted_stories(self):
        return sorted(self.stories, key=lambda story: story["article_published_at"], reverse=True)

    def _rows(self, stories) -> List[Dict]:
        rows = []
        for story in stories:
            rows.extend(story_rows(story))
        return rows

    async def fetch_topic(self, slug):
        await self._enter("fetch_topic", slug=slug)
        if slug != self.topic["slug"]:
            raise TopicNotFoundError(f"Topic not found: {slug}")
        return dict(self.topic)

    async def fetch_page(self, topic_slug, keywords=None, sources=None, limit=10, offset=0):
        await self._enter("fetch_page", topic_slug=topic_slug, keywords=keywords, sources=sources,
                          limit=limit, offset=offset)
        stories = self._sorted_stories()
        if keywords:
            stories = [s for s in stories if any(k.lower() in story_text(s) for k in keywords)]
        if sources:
            stories = [s for s in stories if extract_domain(s["article_source_url"]) in sources]
        return self._rows(stories)[offset:offset + limit]

    async def fetch_legacy_page(self, topic_slug, limit=10, offset=0):
        await self._enter("fetch_legacy_page", topic_slug=topic_slug, limit=limit, offset=offset)
        return self._rows(self._sorted_stories())[offset:offset + limit]

    async def fetch_full_slides(self, story_ids):
        await self._enter("fetch_full_slides", story_ids=list(story_ids))
        wanted = set(story_ids)
        return [
            dict(slide, story_id=story["id"])
            for story in self.stories if story["id"] in wanted
            for slide in story["slides"]
        ]

    async def fetch_topic_stories(self, topic_id):
        await self._enter("fetch_topic_stories", topic_id=topic_id)
        return [dict(story) for story in self._sorted_stories()]

    async def story_topic(self, story_id):
        await self._enter("story_topic", story_id=story_id)
        if any(story["id"] == story_id for story in self.stories):
            return self.topic["id"]
        return self.owners.get(story_id)

    async def close(self):
        self.closed = True


@pytest.fixture
def topic():
    return Topic.from_dict(TOPIC)


@pytest.fixture
def stories():
    return [
        make_story(1, "Harbor wall repaired", text="The harbor reopened to boats."),
        make_story(2, "New bridge plans", text="The council backed the bridge."),
        make_story(3, "Pier lights restored", domain="bbc.co.uk"),
        make_story(4, "Lifeboat Station open day", domain="bbc.co.uk", text="Crew met the public."),
        make_story(5, "Weather warning", text="Storm expected near Beachy Head."),
    ]


@pytest.fixture
def source(stories):
    return FakeContentSource(stories)
