#!/usr/bin/env python3
"""
Per-video metadata lookup.

The cache only depends on the ``MetadataResolver`` protocol: an async
``fetch(video_id)`` that returns a ``ResolvedVideo`` or raises ``FetchError``.
``YtDlpResolver`` implements it by running ``yt-dlp --dump-json`` against the
watch URL and classifying the result with a ``ShortsPolicy``.
"""

from asyncio import create_subprocess_exec, wait_for, TimeoutError
from asyncio.subprocess import PIPE
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol
import json

from config import config, get_logger
from errors import FetchError

logger = get_logger("resolver")

WATCH_URL = "https://www.youtube.com/watch?v={video_id}"


@dataclass(frozen=True)
class ResolvedVideo:
    duration_seconds: int
    is_short: bool


class MetadataResolver(Protocol):
    async def fetch(self, video_id: str) -> ResolvedVideo:
        ...


class ShortsPolicy:
    """Decides whether a video is a Short.

    A video is a Short when it is at most ``max_duration`` seconds long and,
    if ``require_vertical`` is set, its frame is at least as tall as it is
    wide.
    """

    def __init__(self, max_duration: int = 180, require_vertical: bool = True):
        self.max_duration = max_duration
        self.require_vertical = require_vertical

    def is_short(self, duration: int, width: Optional[int] = None, height: Optional[int] = None) -> bool:
        if duration > self.max_duration:
            return False
        if not self.require_vertical:
            return True
        if not width or not height:
            # Unknown geometry: short length alone is not enough
            return False
        return height >= width

    @classmethod
    def from_config(cls) -> 'ShortsPolicy':
        return cls(max_duration=config.SHORTS_MAX_DURATION, require_vertical=config.SHORTS_REQUIRE_VERTICAL)


class YtDlpResolver:
    """Resolve durations by shelling out to yt-dlp."""

    def __init__(self, executable: Optional[str] = None, timeout: Optional[float] = None,
                 policy: Optional[ShortsPolicy] = None):
        self.executable = executable or config.YTDLP_PATH
        self.timeout = timeout if timeout is not None else config.RESOLVER_TIMEOUT
        self.policy = policy or ShortsPolicy.from_config()

    async def fetch(self, video_id: str) -> ResolvedVideo:
        """Run yt-dlp for one video.

        Raises:
            FetchError: yt-dlp is missing, timed out, exited non-zero, or
                produced output without a usable duration.
        """
        url = WATCH_URL.format(video_id=video_id)
        logger.debug(f"Running {self.executable} for {video_id}")
        try:
            proc = await create_subprocess_exec(
                self.executable, "--dump-json", "--no-warnings", "--no-playlist", url,
                stdout=PIPE, stderr=PIPE,
            )
        except OSError as e:
            raise FetchError(video_id, f"cannot start {self.executable}: {e}") from e

        try:
            stdout, stderr = await wait_for(proc.communicate(), timeout=self.timeout)
        except TimeoutError:
            raise FetchError(video_id, f"yt-dlp timed out after {self.timeout}s") from None
        finally:
            # Also covers cancellation of the fetch task
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

        if proc.returncode != 0:
            detail = stderr.decode('utf-8', errors='replace').strip().splitlines()
            message = detail[-1] if detail else "no output"
            raise FetchError(video_id, f"yt-dlp exited with status {proc.returncode}: {message}")

        try:
            info = json.loads(stdout)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise FetchError(video_id, f"unparseable yt-dlp output: {e}") from e
        return self.classify(video_id, info)

    def classify(self, video_id: str, info: Dict[str, Any]) -> ResolvedVideo:
        """Turn a yt-dlp info dict into a ``ResolvedVideo``."""
        if not isinstance(info, dict):
            raise FetchError(video_id, "yt-dlp output is not an object")
        duration = info.get('duration')
        if isinstance(duration, bool) or not isinstance(duration, (int, float)):
            # Upcoming premieres and live streams have no duration yet
            status = info.get('live_status') or 'unknown'
            raise FetchError(video_id, f"no duration available (live_status={status})")
        duration_seconds = int(round(duration))
        is_short = self.policy.is_short(
            duration_seconds,
            width=info.get('width'),
            height=info.get('height'),
        )
        return ResolvedVideo(duration_seconds=duration_seconds, is_short=is_short)
