import asyncio
import time

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from topicfeed.core.cache import MemoryCacheStore, build_snapshot
from topicfeed.core.feed import TopicFeed
from topicfeed.core.models import Story
from topicfeed.errors import RemoteQueryError, RemoteTimeoutError, TopicNotFoundError
from topicfeed.fetchers.remote import RestContentSource

from tests.conftest import TOPIC, make_story, story_rows


class FakeApi:
    """Minimal PostgREST-style service recording what it receives."""

    def __init__(self):
        self.requests = []
        self.rpc_status = 200
        self.rpc_html = False
        self.stories = [make_story(1), make_story(2)]

    def app(self):
        app = web.Application()
        app.router.add_get("/rest/v1/topics", self.topics)
        app.router.add_get("/rest/v1/stories", self.stories_table)
        app.router.add_post("/rest/v1/rpc/{name}", self.rpc)
        return app

    def _record(self, request, payload=None):
        self.requests.append({
            "path": request.path,
            "query": dict(request.query),
            "headers": dict(request.headers),
            "payload": payload,
        })

    async def topics(self, request):
        self._record(request)
        if request.query.get("slug") == f"eq.{TOPIC['slug']}":
            return web.json_response([TOPIC])
        return web.json_response([])

    async def stories_table(self, request):
        self._record(request)
        if request.query.get("select") == "topic_id":
            story_id = request.query["id"].split(".", 1)[1]
            if story_id == "x9":
                return web.json_response([{"topic_id": "topic-2"}])
            return web.json_response([])
        return web.json_response(self.stories)

    async def rpc(self, request):
        payload = await request.json()
        self._record(request, payload)
        if self.rpc_status >= 400:
            return web.json_response({"message": "function does not exist"}, status=self.rpc_status)
        if self.rpc_html:
            return web.Response(text="<html>Bad gateway</html>", content_type="text/html")
        name = request.match_info["name"]
        if name == "get_public_slides_for_stories":
            return web.json_response([
                dict(slide, story_id=story["id"])
                for story in self.stories if story["id"] in payload["p_story_ids"]
                for slide in story["slides"]
            ])
        rows = [row for story in self.stories for row in story_rows(story)]
        return web.json_response(rows[payload["p_offset"]:payload["p_offset"] + payload["p_limit"]])


def _with_source(api, call):
    async def scenario():
        server = TestServer(api.app())
        await server.start_server()
        source = RestContentSource(base_url=str(server.make_url("/")), api_key="public-key")
        try:
            return await call(source)
        finally:
            await source.close()
            await server.close()

    return asyncio.run(scenario())


def test_fetch_topic_sends_key_and_public_filter():
    api = FakeApi()
    topic = _with_source(api, lambda source: source.fetch_topic("eastbourne"))
    assert topic["id"] == TOPIC["id"]
    request = api.requests[0]
    assert request["query"]["is_public"] == "eq.true"
    assert request["headers"]["apikey"] == "public-key"
    assert request["headers"]["Authorization"] == "Bearer public-key"


def test_missing_topic_raises_not_found():
    with pytest.raises(TopicNotFoundError):
        _with_source(FakeApi(), lambda source: source.fetch_topic("nowhere"))


def test_fetch_page_posts_filter_parameters():
    api = FakeApi()
    rows = _with_source(api, lambda source: source.fetch_page("eastbourne", ["harbor"], ["bbc.co.uk"], 4, 2))
    assert len(rows) == 4
    assert rows[0]["story_id"] == "s1"
    assert api.requests[0]["path"] == "/rest/v1/rpc/get_topic_stories_with_keywords"
    assert api.requests[0]["payload"] == {
        "p_topic_slug": "eastbourne",
        "p_keywords": ["harbor"],
        "p_sources": ["bbc.co.uk"],
        "p_limit": 4,
        "p_offset": 2,
    }


def test_unfiltered_page_sends_null_filters():
    api = FakeApi()
    _with_source(api, lambda source: source.fetch_page("eastbourne"))
    payload = api.requests[0]["payload"]
    assert payload["p_keywords"] is None and payload["p_sources"] is None


def test_legacy_page_uses_legacy_function():
    api = FakeApi()
    rows = _with_source(api, lambda source: source.fetch_legacy_page("eastbourne", limit=3))
    assert len(rows) == 3
    assert api.requests[0]["path"] == "/rest/v1/rpc/get_topic_stories"
    assert api.requests[0]["payload"]["p_sort"] == "published_at.desc"


def test_full_slides_skips_request_without_ids():
    api = FakeApi()
    assert _with_source(api, lambda source: source.fetch_full_slides([])) == []
    assert api.requests == []
    slides = _with_source(api, lambda source: source.fetch_full_slides(["s2"]))
    assert [slide["id"] for slide in slides] == ["s2-1", "s2-2", "s2-3"]


def test_story_topic_returns_owner_or_none():
    api = FakeApi()
    assert _with_source(api, lambda source: source.story_topic("x9")) == "topic-2"
    assert _with_source(api, lambda source: source.story_topic("gone")) is None


def test_topic_stories_returns_nested_records():
    api = FakeApi()
    stories = _with_source(api, lambda source: source.fetch_topic_stories("topic-1"))
    assert [story["id"] for story in stories] == ["s1", "s2"]
    assert api.requests[0]["query"]["topic_id"] == "eq.topic-1"


def test_error_status_raises_query_error():
    api = FakeApi()
    api.rpc_status = 404
    with pytest.raises(RemoteQueryError) as excinfo:
        _with_source(api, lambda source: source.fetch_page("eastbourne"))
    assert "404" in str(excinfo.value)


def test_unreachable_service_raises_timeout_error():
    async def scenario():
        source = RestContentSource(base_url="http://127.0.0.1:9", api_key="public-key")
        try:
            await source.fetch_topic("eastbourne")
        finally:
            await source.close()

    with pytest.raises(RemoteTimeoutError):
        asyncio.run(scenario())


def test_non_json_body_raises_query_error():
    api = FakeApi()
    api.rpc_html = True
    with pytest.raises(RemoteQueryError) as excinfo:
        _with_source(api, lambda source: source.fetch_page("eastbourne"))
    assert "invalid JSON" in str(excinfo.value)


def test_gateway_page_falls_back_to_cached_snapshot(topic):
    api = FakeApi()
    api.rpc_html = True
    cache = MemoryCacheStore()
    cached = Story.from_dict(make_story(9, "Cached story"))
    cache.set("eastbourne", build_snapshot("eastbourne", topic, [cached], now=time.time() - 3600))

    async def start(source):
        feed = TopicFeed("eastbourne", source, cache=cache, debounce=0, backoff_factor=0)
        await feed.start()
        return feed

    feed = _with_source(api, start)
    assert [item.id for item in feed.items] == ["s9"]
    assert feed.status.load_error is None
    assert feed.status.using_cached_content
    assert feed.status.pagination_disabled
    assert [request["path"] for request in api.requests if "rpc" in request["path"]] == [
        "/rest/v1/rpc/get_topic_stories_with_keywords",
        "/rest/v1/rpc/get_topic_stories",
    ]
