#!/usr/bin/env python3
"""
Background fetch supervisor.

Owns the in-flight metadata fetches: at most one task per video id, created
detached from whichever request first asked for it, so a client that gives up
does not take the fetch down with it. Each task settles its id's cache entry
(READY after persisting, or FAILED with backoff) and removes itself from the
in-flight map.
"""

from asyncio import CancelledError, Future, Semaphore, Task, create_task, gather, get_running_loop, wait
from time import time
from typing import Callable, Dict, Optional, Union

from config import config, get_logger
from errors import FetchError, PersistenceWriteError
from models import CacheEntry, EntryState, VideoId, VideoMetadata
from resolver import MetadataResolver
from store import PersistenceStore
from telemetry import trace_span
from utils import BackoffPolicy, RateLimiter

logger = get_logger("supervisor")

FetchHandle = Union[Task, Future]


class FetchSupervisor:
    """Single-flight, caller-independent metadata fetching.

    ``entries`` is the cache's entry table. The supervisor is its only writer
    for ids that go through a fetch: the task owning an id's fetch is the only
    code that moves that id out of PENDING.
    """

    def __init__(
        self,
        resolver: MetadataResolver,
        store: PersistenceStore,
        entries: Dict[VideoId, CacheEntry],
        *,
        backoff: Optional[BackoffPolicy] = None,
        concurrency: Optional[int] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], float] = time,
    ):
        self.resolver = resolver
        self.store = store
        self._entries = entries
        self._in_flight: Dict[VideoId, Task] = {}
        self.concurrency = concurrency or config.FETCH_CONCURRENCY
        self._semaphore = Semaphore(self.concurrency)
        self.backoff = backoff or BackoffPolicy(config.BACKOFF_BASE_SECONDS, config.BACKOFF_MAX_SECONDS)
        self.rate_limiter = rate_limiter or RateLimiter(config.RESOLVER_REQUESTS_PER_MINUTE)
        self.clock = clock
        self.resolver_calls = 0
        self._closed = False

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def closed(self) -> bool:
        return self._closed

    def start_or_join(self, video_id: VideoId) -> FetchHandle:
        """Return the shared handle for ``video_id``'s fetch, starting one if needed.

        The handle resolves to the settled ``CacheEntry`` (READY or FAILED); it
        never raises ``FetchError``. Callers should wait on it through
        ``asyncio.shield`` so that their own cancellation leaves the fetch alone.
        """
        # No await between the lookup and the insert below: on a single event
        # loop this check-then-insert cannot interleave with another caller.
        task = self._in_flight.get(video_id)
        if task is not None:
            logger.debug(f"Joining in-flight fetch for {video_id}")
            return task

        current = self._entries.get(video_id)
        if current is not None and current.is_ready:
            done: Future = get_running_loop().create_future()
            done.set_result(current)
            return done

        if self._closed:
            raise RuntimeError("FetchSupervisor is closed")

        previous = current if current is not None and current.state is EntryState.FAILED else None
        self._entries[video_id] = CacheEntry.pending(video_id, previous.attempts if previous else 0)
        task = create_task(self._run(video_id, previous), name=f"fetch:{video_id}")
        self._in_flight[video_id] = task
        logger.debug(f"Started fetch for {video_id} ({len(self._in_flight)} in flight)")
        return task

    @trace_span(
        "supervisor.fetch",
        tracer_name="supervisor",
        attr_from_args=lambda self, video_id, previous: {
            "video.id": video_id,
            "fetch.previous_attempts": previous.attempts if previous else 0,
        },
    )
    async def _run(self, video_id: VideoId, previous: Optional[CacheEntry]) -> CacheEntry:
        attempts = previous.attempts if previous else 0
        metadata: Optional[VideoMetadata] = None
        try:
            error: Optional[str] = None
            async with self._semaphore:
                await self.rate_limiter.acquire()
                self.resolver_calls += 1
                try:
                    resolved = await self.resolver.fetch(video_id)
                except FetchError as e:
                    error = e.message
                except Exception as e:
                    # A broken resolver is contained exactly like a failed fetch
                    logger.exception(f"Unexpected resolver error for {video_id}")
                    error = f"{type(e).__name__}: {e}"

            if error is not None:
                return self._settle_failed(video_id, error, attempts + 1)

            metadata = VideoMetadata(
                video_id=video_id,
                duration_seconds=resolved.duration_seconds,
                is_short=resolved.is_short,
                resolved_at=int(self.clock()),
            )
            # Persist before publishing READY
            try:
                await self.store.save_one(metadata)
            except PersistenceWriteError as e:
                logger.error(f"{e}; {video_id} stays resolved in memory only until the next successful write")
            entry = CacheEntry.ready(metadata)
            self._entries[video_id] = entry
            logger.info(
                f"Resolved {video_id}: {metadata.duration_seconds}s"
                + (" (short)" if metadata.is_short else "")
            )
            return entry
        except CancelledError:
            # Only close() cancels fetch tasks
            if metadata is not None:
                self._entries[video_id] = CacheEntry.ready(metadata)
            elif previous is not None:
                self._entries[video_id] = previous
            else:
                self._entries.pop(video_id, None)
            logger.info(f"Fetch for {video_id} cancelled during shutdown")
            raise
        finally:
            self._in_flight.pop(video_id, None)

    def _settle_failed(self, video_id: VideoId, error: str, attempts: int) -> CacheEntry:
        delay = self.backoff.delay(attempts)
        entry = CacheEntry.failed(video_id, error, self.clock() + delay, attempts)
        self._entries[video_id] = entry
        logger.warning(
            f"Metadata fetch for {video_id} failed (attempt {attempts}): {error}. "
            f"Next attempt in {delay:.0f}s"
        )
        return entry

    async def drain(self) -> None:
        """Wait until no fetch is in flight."""
        while self._in_flight:
            await gather(*list(self._in_flight.values()), return_exceptions=True)

    async def close(self, timeout: Optional[float] = None) -> None:
        """Stop accepting fetches, give running ones ``timeout`` seconds, cancel the rest."""
        self._closed = True
        tasks = list(self._in_flight.values())
        if not tasks:
            return
        logger.info(f"Waiting up to {timeout}s for {len(tasks)} in-flight fetches")
        _, still_running = await wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await gather(*still_running, return_exceptions=True)
            logger.warning(f"Cancelled {len(still_running)} unfinished fetches")
