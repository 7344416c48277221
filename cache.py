#!/usr/bin/env python3
"""
In-memory video metadata cache.

``MetadataCache`` answers "what do we know about this video?" without ever
blocking (``query``/``snapshot``) and "get me this video's metadata"
(``resolve``/``resolve_all``), which waits on the shared fetch managed by the
``FetchSupervisor``. Resolved entries are written through to the
``PersistenceStore`` and reloaded on startup.
"""

from asyncio import CancelledError, current_task, gather, shield
from time import time
from typing import Callable, Dict, Iterable, Optional, Union

from config import config, get_logger
from errors import MetadataUnavailable
from models import CacheEntry, EntryState, VideoId, VideoMetadata
from resolver import MetadataResolver
from store import PersistenceStore
from supervisor import FetchHandle, FetchSupervisor
from telemetry import trace_span
from utils import BackoffPolicy, RateLimiter

logger = get_logger("cache")

ResolveResult = Union[VideoMetadata, MetadataUnavailable]


class MetadataCache:
    def __init__(
        self,
        store: PersistenceStore,
        resolver: MetadataResolver,
        *,
        backoff: Optional[BackoffPolicy] = None,
        fetch_concurrency: Optional[int] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], float] = time,
    ):
        self.store = store
        self.clock = clock
        self._entries: Dict[VideoId, CacheEntry] = {}
        self.supervisor = FetchSupervisor(
            resolver,
            store,
            self._entries,
            backoff=backoff,
            concurrency=fetch_concurrency,
            rate_limiter=rate_limiter,
            clock=clock,
        )

    @classmethod
    def open(cls, store: PersistenceStore, resolver: MetadataResolver, **kwargs) -> 'MetadataCache':
        """Create a cache seeded with everything ``store`` has on disk.

        Raises:
            PersistenceLoadError: the state file is corrupt.
        """
        cache = cls(store, resolver, **kwargs)
        cache.seed(store.load())
        return cache

    def seed(self, records: Dict[VideoId, VideoMetadata]) -> None:
        """Mark loaded records READY. Existing READY entries are left alone."""
        for video_id, metadata in records.items():
            current = self._entries.get(video_id)
            if current is None or not current.is_ready:
                self._entries[video_id] = CacheEntry.ready(metadata)
        logger.info(f"Cache seeded with {len(records)} resolved videos")

    def __len__(self) -> int:
        return len(self._entries)

    def query(self, video_id: VideoId) -> CacheEntry:
        """Current entry for ``video_id``; never blocks, never starts a fetch."""
        entry = self._entries.get(video_id)
        if entry is None:
            return CacheEntry.unknown(video_id)
        return entry

    def snapshot(self, video_ids: Iterable[VideoId]) -> Dict[VideoId, CacheEntry]:
        return {video_id: self.query(video_id) for video_id in video_ids}

    def _start(self, video_id: VideoId) -> Union[ResolveResult, FetchHandle]:
        """Answer from the cache, or start (or join) the fetch for ``video_id``.

        Never awaits, so callers can start many fetches before waiting on any.
        """
        entry = self.query(video_id)
        if entry.is_ready:
            logger.debug(f"Cache hit for {video_id}")
            return entry.metadata
        if entry.state is EntryState.FAILED and not entry.retry_due(self.clock()):
            return MetadataUnavailable(video_id, entry.last_error or "", entry.retry_not_before)
        if self.supervisor.closed:
            return MetadataUnavailable(video_id, "shutting down")
        return self.supervisor.start_or_join(video_id)

    async def _wait(self, video_id: VideoId, handle: FetchHandle) -> VideoMetadata:
        try:
            settled = await shield(handle)
        except CancelledError:
            task = current_task()
            if handle.cancelled() and not (task is not None and task.cancelling()):
                # The fetch itself was cancelled by a shutdown, not our caller
                raise MetadataUnavailable(video_id, "fetch cancelled") from None
            raise

        if settled.is_ready:
            return settled.metadata
        raise MetadataUnavailable(video_id, settled.last_error or "", settled.retry_not_before)

    async def resolve(self, video_id: VideoId) -> VideoMetadata:
        """Return metadata for ``video_id``, fetching it if needed.

        Cancelling the caller only abandons the wait: the fetch keeps running
        and its result is cached for the next caller.

        Raises:
            MetadataUnavailable: the fetch failed, an earlier failure is still
                inside its backoff window, or the cache is shutting down.
        """
        outcome = self._start(video_id)
        if isinstance(outcome, MetadataUnavailable):
            raise outcome
        if isinstance(outcome, VideoMetadata):
            return outcome
        return await self._wait(video_id, outcome)

    @trace_span(
        "cache.resolve_all",
        tracer_name="cache",
        attr_from_args=lambda self, video_ids: {"videos.requested": len(video_ids)},
    )
    async def resolve_all(self, video_ids: Iterable[VideoId]) -> Dict[VideoId, ResolveResult]:
        """Resolve many ids concurrently.

        Duplicates are collapsed and the result keeps first-seen order. Each
        value is either ``VideoMetadata`` or the ``MetadataUnavailable`` raised
        for that id; the call as a whole does not raise for per-id failures.

        Every needed fetch is handed to the supervisor before the first wait,
        so a caller that gives up early still leaves all of them running. How
        many reach the resolver at once is bounded by ``FETCH_CONCURRENCY``.
        """
        unique = list(dict.fromkeys(video_ids))
        if not unique:
            return {}
        outcomes = {video_id: self._start(video_id) for video_id in unique}

        async def one(video_id: VideoId) -> ResolveResult:
            outcome = outcomes[video_id]
            if isinstance(outcome, (VideoMetadata, MetadataUnavailable)):
                return outcome
            try:
                return await self._wait(video_id, outcome)
            except MetadataUnavailable as e:
                return e

        results = await gather(*(one(video_id) for video_id in unique))
        resolved = dict(zip(unique, results))
        ready = sum(1 for value in results if isinstance(value, VideoMetadata))
        logger.debug(f"Resolved {ready}/{len(unique)} videos")
        return resolved

    def stats(self) -> Dict[str, int]:
        """Entry counts per state plus fetch and persistence figures."""
        counts = {state.value: 0 for state in EntryState}
        for entry in self._entries.values():
            counts[entry.state.value] += 1
        counts["in_flight"] = self.supervisor.in_flight
        counts["resolver_calls"] = self.supervisor.resolver_calls
        counts["persisted"] = len(self.store)
        return counts

    async def close(self, timeout: Optional[float] = None) -> None:
        """Finish or cancel in-flight fetches, then flush the store."""
        if timeout is None:
            timeout = config.SHUTDOWN_GRACE_SECONDS
        await self.supervisor.close(timeout)
        await self.store.flush()
        logger.info(f"Cache closed ({len(self.store)} videos persisted)")
