#!/usr/bin/env python3
"""
HTTP front end of the feed proxy.

Serves ``/www.youtube.com/feeds/videos.xml?channel_id=...`` (and the shorter
``/feeds/videos.xml`` alias): the upstream YouTube feed is fetched, every
video in it is resolved through the shared ``MetadataCache`` for at most
``RESPONSE_WAIT_SECONDS``, and the feed is returned with Shorts removed and
durations in the titles. Videos still being resolved when the deadline hits
are rendered without a duration; their fetches keep running in the
background.
"""

from asyncio import Event, TimeoutError, get_running_loop, wait_for
from signal import SIGINT, SIGTERM
from typing import Any, Dict, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout, web

from cache import MetadataCache
from config import config, get_logger
from enhancer import FeedEnhancer, parse_feed, video_ids
from errors import UpstreamError
from resolver import YtDlpResolver
from store import PersistenceStore
from telemetry import init_telemetry, trace_span
from utils import RetryHelper

logger = get_logger("server")

HTTP_OK = 200
FEED_PATHS = ("/www.youtube.com/feeds/videos.xml", "/feeds/videos.xml")
FEED_QUERY_KEYS = ("channel_id", "playlist_id", "user")
ATOM_CONTENT_TYPE = "application/atom+xml"

CACHE_KEY = web.AppKey("cache", MetadataCache)


class FeedProxyServer:
    """aiohttp application wrapping one ``MetadataCache``."""

    def __init__(
        self,
        cache: MetadataCache,
        *,
        enhancer: Optional[FeedEnhancer] = None,
        upstream_url: Optional[str] = None,
        wait_seconds: Optional[float] = None,
        http_timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        close_cache: bool = True,
    ):
        self.cache = cache
        self.enhancer = enhancer or FeedEnhancer()
        self.upstream_url = upstream_url or config.UPSTREAM_FEED_URL
        self.wait_seconds = config.RESPONSE_WAIT_SECONDS if wait_seconds is None else wait_seconds
        self.http_timeout = http_timeout or config.HTTP_TIMEOUT
        self.retry_helper = RetryHelper(
            max_retries=config.MAX_RETRIES if max_retries is None else max_retries,
            base_delay=config.RETRY_DELAY_BASE,
        )
        self.close_cache = close_cache
        self._session: Optional[ClientSession] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app[CACHE_KEY] = self.cache
        for feed_path in FEED_PATHS:
            app.router.add_get(feed_path, self.handle_feed)
        app.router.add_get("/status", self.handle_status)
        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _on_startup(self, app: web.Application) -> None:
        self._session = ClientSession(headers={'User-Agent': config.USER_AGENT})
        logger.info(f"Feed proxy ready ({len(self.cache.store)} videos cached, upstream {self.upstream_url})")

    async def _on_cleanup(self, app: web.Application) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
        if self.close_cache:
            await app[CACHE_KEY].close()

    async def fetch_upstream(self, params: Dict[str, str]) -> bytes:
        """Fetch the upstream feed, retrying transport errors and 5xx answers.

        Raises:
            UpstreamError: 502 for HTTP or network failures, 504 for timeouts.
        """
        timeout = ClientTimeout(total=self.http_timeout)
        max_retries = self.retry_helper.max_retries
        for attempt in range(max_retries + 1):
            try:
                async with self._session.get(self.upstream_url, params=params, timeout=timeout) as response:
                    if response.status == HTTP_OK:
                        return await response.read()
                    status = response.status
            except TimeoutError:
                if attempt < max_retries:
                    logger.warning(f"Timeout fetching upstream feed {params} (attempt {attempt + 1}/{max_retries + 1})")
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise UpstreamError(f"Upstream feed timed out after {self.http_timeout}s", 504) from None
            except ClientError as e:
                if attempt < max_retries:
                    logger.warning(f"Retry {attempt + 1}/{max_retries} for upstream feed {params}: {e}")
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise UpstreamError(f"Upstream request failed: {e}") from e

            if status < 500 or attempt >= max_retries:
                raise UpstreamError(f"Upstream returned HTTP {status}")
            logger.warning(f"Upstream returned HTTP {status} for {params}; retrying")
            await self.retry_helper.sleep_for_attempt(attempt)
        raise UpstreamError("Upstream feed unavailable")

    @trace_span(
        "server.feed",
        tracer_name="server",
        attr_from_args=lambda self, request: {"http.target": request.path_qs},
    )
    async def handle_feed(self, request: web.Request) -> web.StreamResponse:
        params = {key: request.query[key] for key in FEED_QUERY_KEYS if request.query.get(key)}
        if not params:
            raise web.HTTPBadRequest(text="Missing channel_id, playlist_id or user query parameter")

        try:
            root = parse_feed(await self.fetch_upstream(params))
        except UpstreamError as e:
            logger.warning(f"Upstream feed {params} failed: {e.message}")
            return web.Response(status=e.status, text=e.message)

        cache = request.app[CACHE_KEY]
        ids = video_ids(root)
        try:
            await wait_for(cache.resolve_all(ids), timeout=self.wait_seconds)
        except TimeoutError:
            # Fetches carry on in the background and will be cached for the next poll
            logger.info(f"Metadata for {params} not complete after {self.wait_seconds}s; serving partial feed")

        body = self.enhancer.render(root, cache.snapshot(ids))
        return web.Response(body=body, content_type=ATOM_CONTENT_TYPE, charset="utf-8")

    async def handle_status(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "cache": request.app[CACHE_KEY].stats(),
            "config": config.get_config_summary(),
        })

    async def start(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        host = host or config.LISTEN_HOST
        port = port or config.LISTEN_PORT
        self._runner = web.AppRunner(self.create_app(), access_log=get_logger("access"))
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, port)
        await self._site.start()
        logger.info(f"Listening on http://{host}:{port}{FEED_PATHS[0]}")

    async def stop(self) -> None:
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()
        logger.info("Feed proxy stopped")


async def run_server(host: Optional[str] = None, port: Optional[int] = None, **kwargs: Any) -> None:
    """Open the cache, serve until SIGINT/SIGTERM, then shut down cleanly.

    Raises:
        PersistenceLoadError: the state file is corrupt.
    """
    init_telemetry("feed-proxy-server")
    store = PersistenceStore(config.STATE_PATH)
    cache = MetadataCache.open(store, YtDlpResolver())
    server = FeedProxyServer(cache, **kwargs)

    stop = Event()
    loop = get_running_loop()
    for sig in (SIGINT, SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    await server.start(host, port)
    try:
        await stop.wait()
        logger.info("Shutdown requested")
    finally:
        await server.stop()
