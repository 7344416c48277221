#!/usr/bin/env python3
"""
Durable storage for resolved video metadata.

The whole cache of READY entries lives in a single JSON file that is rewritten
on every new resolution. Writes go through a temporary file and an atomic
rename, so a crash mid-write leaves either the previous or the new file on
disk, never a truncated one.

File layout::

    {
      "version": 1,
      "videos": {
        "<video id>": {"duration_seconds": 611, "is_short": false, "resolved_at": 1760000000}
      }
    }

The older ``{"youtube_videos": {...}}`` layout (with ``length`` and
``timestamp`` fields) is still readable and is rewritten in the current layout
on the next save.
"""

from asyncio import CancelledError, Lock, get_running_loop, shield, wait
from os import path
from typing import Any, Dict, Mapping
from datetime import datetime
import json
import re

from config import get_logger
from errors import PersistenceLoadError, PersistenceWriteError
from models import VideoId, VideoMetadata
from telemetry import trace_span
from utils import atomic_write_text

logger = get_logger("store")

STATE_VERSION = 1


# Sub-microsecond digits that datetime.fromisoformat cannot take
_EXTRA_FRACTION = re.compile(r'(\.\d{6})\d+')


def _legacy_timestamp(video_id: VideoId, value: Any) -> int:
    """Legacy records carry integer epoch seconds; ISO 8601 strings are accepted too."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if not isinstance(value, str):
        raise ValueError(f"invalid timestamp for {video_id}: {value!r}")
    try:
        return int(datetime.fromisoformat(_EXTRA_FRACTION.sub(r'\1', value)).timestamp())
    except ValueError:
        raise ValueError(f"invalid timestamp for {video_id}: {value!r}") from None


class PersistenceStore:
    """JSON-file backed mapping of video id to ``VideoMetadata``.

    ``load()`` is synchronous and meant for startup. Saves are coroutines,
    serialized by a lock and executed off the event loop.
    """

    def __init__(self, file_path: str):
        self.file_path = file_path
        self._records: Dict[VideoId, VideoMetadata] = {}
        self._lock = Lock()
        self._dirty = False

    def __len__(self) -> int:
        return len(self._records)

    @property
    def dirty(self) -> bool:
        """True when the last write failed and the file lags behind memory."""
        return self._dirty

    def load(self) -> Dict[VideoId, VideoMetadata]:
        """Read the state file.

        Returns:
            Mapping of video id to metadata; empty when the file is missing or blank.

        Raises:
            PersistenceLoadError: the file exists but is unreadable or corrupt.
        """
        if not path.exists(self.file_path):
            logger.info(f"State file {self.file_path} does not exist; starting with an empty cache")
            self._records = {}
            return {}

        try:
            with open(self.file_path, 'r', encoding='utf-8') as f:
                raw = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise PersistenceLoadError(f"Cannot read state file {self.file_path}: {e}") from e

        if not raw.strip():
            logger.info(f"State file {self.file_path} is empty; starting with an empty cache")
            self._records = {}
            return {}

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PersistenceLoadError(f"State file {self.file_path} is not valid JSON: {e}") from e

        try:
            records = self._parse(data)
        except ValueError as e:
            raise PersistenceLoadError(f"State file {self.file_path} is corrupt: {e}") from e

        self._records = dict(records)
        logger.info(f"Loaded {len(records)} resolved videos from {self.file_path}")
        return records

    def _parse(self, data: Any) -> Dict[VideoId, VideoMetadata]:
        if not isinstance(data, dict):
            raise ValueError("top level must be a mapping")

        if 'videos' in data:
            version = data.get('version', STATE_VERSION)
            if not isinstance(version, int) or version > STATE_VERSION:
                raise ValueError(f"unsupported state version {version!r}")
            videos = data['videos']
            if not isinstance(videos, dict):
                raise ValueError("'videos' must be a mapping")
            return {vid: VideoMetadata.from_dict(vid, rec) for vid, rec in videos.items()}

        if 'youtube_videos' in data:
            legacy = data['youtube_videos']
            if not isinstance(legacy, dict):
                raise ValueError("'youtube_videos' must be a mapping")
            logger.info(f"Reading legacy state layout from {self.file_path}; it will be rewritten on next save")
            records = {}
            for vid, rec in legacy.items():
                if not isinstance(rec, dict):
                    raise ValueError(f"record for {vid} is not a mapping")
                records[vid] = VideoMetadata.from_dict(vid, {
                    'duration_seconds': rec.get('length'),
                    'is_short': rec.get('is_short'),
                    'resolved_at': _legacy_timestamp(vid, rec.get('timestamp')),
                })
            return records

        raise ValueError("missing 'videos' mapping")

    def _serialize(self) -> str:
        payload = {
            'version': STATE_VERSION,
            'videos': {vid: meta.to_dict() for vid, meta in sorted(self._records.items())},
        }
        return json.dumps(payload, indent=2)

    async def _write_locked(self) -> None:
        """Rewrite the file from ``self._records``. Caller holds ``self._lock``."""
        content = self._serialize()
        loop = get_running_loop()
        self._dirty = True
        future = loop.run_in_executor(None, atomic_write_text, self.file_path, content)
        try:
            await shield(future)
        except CancelledError:
            # The write thread cannot be interrupted; keep the lock until it lands
            await wait([future])
            if future.exception() is None:
                self._dirty = False
            raise
        except OSError as e:
            raise PersistenceWriteError(f"Failed to write state file {self.file_path}: {e}") from e
        self._dirty = False
        logger.debug(f"Wrote {len(self._records)} videos to {self.file_path}")

    @trace_span(
        "store.save",
        tracer_name="store",
        attr_from_args=lambda self, metadata: {"video.id": metadata.video_id},
    )
    async def save_one(self, metadata: VideoMetadata) -> None:
        """Add one record and durably rewrite the file.

        The record is kept even if the write fails, so a later successful write
        includes it.

        Raises:
            PersistenceWriteError: the file could not be replaced.
        """
        async with self._lock:
            self._records[metadata.video_id] = metadata
            await self._write_locked()

    async def save_all(self, mapping: Mapping[VideoId, VideoMetadata]) -> None:
        """Replace the stored mapping with ``mapping`` and rewrite the file.

        Raises:
            PersistenceWriteError: the file could not be replaced.
        """
        async with self._lock:
            self._records = dict(mapping)
            await self._write_locked()

    async def flush(self) -> bool:
        """Retry a previously failed write. Returns True if the file is current."""
        async with self._lock:
            if not self._dirty:
                return True
            try:
                await self._write_locked()
            except PersistenceWriteError as e:
                logger.error(f"Final state flush failed: {e}")
                return False
            logger.info(f"Flushed {len(self._records)} videos to {self.file_path}")
            return True
