import asyncio
from xml.etree import ElementTree as ET

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from cache import MetadataCache
from enhancer import ENTRY, NAMESPACES, TITLE, FeedEnhancer
from models import EntryState
from server import FeedProxyServer
from store import PersistenceStore
from utils import BackoffPolicy

FEED_PATH = "/www.youtube.com/feeds/videos.xml"


def upstream_app(body=None, status=200, delay=0.0, seen=None):
    async def handler(request):
        if seen is not None:
            seen.append(dict(request.query))
        if delay:
            await asyncio.sleep(delay)
        return web.Response(body=body, status=status, content_type="application/atom+xml")

    app = web.Application()
    app.router.add_get("/feeds/videos.xml", handler)
    return app


def make_proxy(cache, upstream, **kwargs):
    kwargs.setdefault("wait_seconds", 5)
    kwargs.setdefault("max_retries", 0)
    return FeedProxyServer(
        cache,
        enhancer=FeedEnhancer(hide_unresolved=False, strip_media_group=True, strip_updated=True),
        upstream_url=str(upstream.make_url("/feeds/videos.xml")),
        **kwargs,
    )


def titles(body):
    root = ET.fromstring(body)
    return {entry.find(f"{{{NAMESPACES['yt']}}}videoId").text: entry.find(TITLE).text
            for entry in root.findall(ENTRY)}


@pytest.fixture
def cache(store, resolver, clock):
    return MetadataCache.open(store, resolver, clock=clock, backoff=BackoffPolicy(60, 3600))


@pytest.mark.asyncio
async def test_feed_end_to_end(cache, resolver, clock, feed_xml):
    seen = []
    async with TestServer(upstream_app(feed_xml, seen=seen)) as upstream:
        proxy = make_proxy(cache, upstream)
        async with TestClient(TestServer(proxy.create_app())) as client:
            resp = await client.get(FEED_PATH, params={"channel_id": "UCexample"})
            assert resp.status == 200
            assert resp.content_type == "application/atom+xml"
            assert resp.charset == "utf-8"
            first = titles(await resp.read())

            # C failed; once its backoff expires the next poll picks it up
            clock.advance(61)
            resp = await client.get(FEED_PATH, params={"channel_id": "UCexample"})
            second = titles(await resp.read())

    assert seen[0] == {"channel_id": "UCexample"}
    assert first == {"B": "Deep dive [10:11]", "C": "Weekly update"}
    assert second == {"B": "Deep dive [10:11]", "C": "Weekly update [5:00]"}
    assert resolver.calls.count("A") == 1
    assert resolver.calls.count("B") == 1
    assert resolver.calls.count("C") == 2


@pytest.mark.asyncio
async def test_short_alias_path_and_playlist_query(cache, feed_xml):
    seen = []
    async with TestServer(upstream_app(feed_xml, seen=seen)) as upstream:
        async with TestClient(TestServer(make_proxy(cache, upstream).create_app())) as client:
            resp = await client.get("/feeds/videos.xml", params={"playlist_id": "PL123"})
            assert resp.status == 200

    assert seen == [{"playlist_id": "PL123"}]


@pytest.mark.asyncio
async def test_partial_feed_when_metadata_is_slow(cache, resolver, feed_xml):
    resolver.gate = asyncio.Event()
    async with TestServer(upstream_app(feed_xml)) as upstream:
        proxy = make_proxy(cache, upstream, wait_seconds=0.05)
        async with TestClient(TestServer(proxy.create_app())) as client:
            resp = await client.get(FEED_PATH, params={"channel_id": "UCexample"})
            assert resp.status == 200
            partial = titles(await resp.read())

            # The fetches outlive the request
            assert cache.query("B").state is EntryState.PENDING
            resolver.gate.set()
            await cache.supervisor.drain()
            assert cache.query("B").state is EntryState.READY

    assert partial == {"A": "Quick tip", "B": "Deep dive", "C": "Weekly update"}


@pytest.mark.asyncio
async def test_missing_query_is_bad_request(cache, feed_xml):
    async with TestServer(upstream_app(feed_xml)) as upstream:
        async with TestClient(TestServer(make_proxy(cache, upstream).create_app())) as client:
            resp = await client.get(FEED_PATH)
            assert resp.status == 400


@pytest.mark.asyncio
async def test_unknown_path_is_not_found(cache, feed_xml):
    async with TestServer(upstream_app(feed_xml)) as upstream:
        async with TestClient(TestServer(make_proxy(cache, upstream).create_app())) as client:
            resp = await client.get("/somewhere/else")
            assert resp.status == 404


@pytest.mark.asyncio
async def test_upstream_error_status_is_bad_gateway(cache):
    async with TestServer(upstream_app(b"gone", status=404)) as upstream:
        async with TestClient(TestServer(make_proxy(cache, upstream).create_app())) as client:
            resp = await client.get(FEED_PATH, params={"channel_id": "UCmissing"})
            assert resp.status == 502
            assert "404" in await resp.text()


@pytest.mark.asyncio
async def test_malformed_upstream_feed_is_bad_gateway(cache, resolver):
    async with TestServer(upstream_app(b"<feed><broken></feed>")) as upstream:
        async with TestClient(TestServer(make_proxy(cache, upstream).create_app())) as client:
            resp = await client.get(FEED_PATH, params={"channel_id": "UCexample"})
            assert resp.status == 502

    assert resolver.calls == []


@pytest.mark.asyncio
async def test_upstream_timeout_is_gateway_timeout(cache, feed_xml):
    async with TestServer(upstream_app(feed_xml, delay=0.5)) as upstream:
        proxy = make_proxy(cache, upstream, http_timeout=0.1)
        async with TestClient(TestServer(proxy.create_app())) as client:
            resp = await client.get(FEED_PATH, params={"channel_id": "UCexample"})
            assert resp.status == 504


@pytest.mark.asyncio
async def test_status_reports_cache_counts(cache, feed_xml):
    async with TestServer(upstream_app(feed_xml)) as upstream:
        async with TestClient(TestServer(make_proxy(cache, upstream).create_app())) as client:
            await client.get(FEED_PATH, params={"channel_id": "UCexample"})
            resp = await client.get("/status")
            assert resp.status == 200
            data = await resp.json()

    assert data["status"] == "ok"
    assert data["cache"]["ready"] == 2
    assert data["cache"]["failed"] == 1
    assert data["cache"]["persisted"] == 2


@pytest.mark.asyncio
async def test_cleanup_flushes_and_closes_cache(cache, feed_xml, state_path):
    async with TestServer(upstream_app(feed_xml)) as upstream:
        async with TestClient(TestServer(make_proxy(cache, upstream).create_app())) as client:
            await client.get(FEED_PATH, params={"channel_id": "UCexample"})

    assert set(PersistenceStore(state_path).load()) == {"A", "B"}
    with pytest.raises(RuntimeError):
        cache.supervisor.start_or_join("new-video")
