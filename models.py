#!/usr/bin/env python3
"""
Data model for the metadata cache.

``VideoMetadata`` is what gets persisted; ``CacheEntry`` is the in-memory
per-video state (unknown, pending, ready, failed) handed out by the cache.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

VideoId = str


@dataclass(frozen=True)
class VideoMetadata:
    """Resolved metadata for one video. Immutable once constructed."""

    video_id: VideoId
    duration_seconds: int
    is_short: bool
    resolved_at: int  # Unix epoch seconds

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the persisted fields (the id is the mapping key)."""
        return {
            'duration_seconds': self.duration_seconds,
            'is_short': self.is_short,
            'resolved_at': self.resolved_at,
        }

    @classmethod
    def from_dict(cls, video_id: VideoId, data: Dict[str, Any]) -> 'VideoMetadata':
        """Build metadata from a persisted record.

        Raises:
            ValueError: if a field is missing or has the wrong type.
        """
        if not isinstance(data, dict):
            raise ValueError(f"record for {video_id} is not a mapping")
        try:
            duration = data['duration_seconds']
            is_short = data['is_short']
            resolved_at = data['resolved_at']
        except KeyError as e:
            raise ValueError(f"record for {video_id} is missing {e}") from None
        # bool is a subclass of int; reject it explicitly for numeric fields
        if not isinstance(duration, int) or isinstance(duration, bool) or duration < 0:
            raise ValueError(f"invalid duration_seconds for {video_id}: {duration!r}")
        if not isinstance(is_short, bool):
            raise ValueError(f"invalid is_short for {video_id}: {is_short!r}")
        if not isinstance(resolved_at, int) or isinstance(resolved_at, bool):
            raise ValueError(f"invalid resolved_at for {video_id}: {resolved_at!r}")
        return cls(video_id=video_id, duration_seconds=duration, is_short=is_short, resolved_at=resolved_at)


class EntryState(Enum):
    UNKNOWN = "unknown"
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class CacheEntry:
    """Snapshot of one video's cache state.

    Only READY entries carry ``metadata``; only FAILED entries carry
    ``last_error``, ``retry_not_before`` and a non-zero ``attempts``.
    PENDING entries remember the failure count of the epoch they replaced so
    a repeated failure keeps growing the backoff.
    """

    video_id: VideoId
    state: EntryState
    metadata: Optional[VideoMetadata] = None
    last_error: Optional[str] = None
    retry_not_before: Optional[float] = None
    attempts: int = 0

    @classmethod
    def unknown(cls, video_id: VideoId) -> 'CacheEntry':
        return cls(video_id, EntryState.UNKNOWN)

    @classmethod
    def pending(cls, video_id: VideoId, attempts: int = 0) -> 'CacheEntry':
        return cls(video_id, EntryState.PENDING, attempts=attempts)

    @classmethod
    def ready(cls, metadata: VideoMetadata) -> 'CacheEntry':
        return cls(metadata.video_id, EntryState.READY, metadata=metadata)

    @classmethod
    def failed(cls, video_id: VideoId, error: str, retry_not_before: float, attempts: int) -> 'CacheEntry':
        return cls(video_id, EntryState.FAILED, last_error=error,
                   retry_not_before=retry_not_before, attempts=attempts)

    @property
    def is_ready(self) -> bool:
        return self.state is EntryState.READY

    def retry_due(self, now: float) -> bool:
        """True when a FAILED entry's backoff has expired."""
        return self.state is EntryState.FAILED and (self.retry_not_before or 0) <= now
