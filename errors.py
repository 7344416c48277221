#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class FetchError(Exception):
    """Raised by a metadata resolver when a video's metadata cannot be retrieved.

    Covers network failures, non-zero yt-dlp exits, unparseable output and
    rate limiting. Never escapes the fetch supervisor.
    """

    def __init__(self, video_id: str, message: str):
        super().__init__(f"{video_id}: {message}")
        self.video_id = video_id
        self.message = message


class MetadataUnavailable(Exception):
    """Raised to callers of ``MetadataCache.resolve`` when no metadata exists.

    This is an expected outcome (render the item without a duration), not an
    application error.

    Attributes:
        video_id: The video that could not be resolved.
        reason: Last fetch error, if any.
        retry_not_before: Epoch seconds before which no new fetch is attempted.
    """

    def __init__(self, video_id: str, reason: str = "", retry_not_before: Optional[float] = None):
        super().__init__(f"Metadata unavailable for {video_id}" + (f": {reason}" if reason else ""))
        self.video_id = video_id
        self.reason = reason
        self.retry_not_before = retry_not_before


class PersistenceLoadError(Exception):
    """The state file exists but cannot be read or parsed. Fatal at startup."""


class PersistenceWriteError(Exception):
    """Writing the state file failed; the previous file is left untouched."""


class UpstreamError(Exception):
    """The upstream feed could not be fetched or parsed.

    ``status`` is the HTTP status the proxy answers with (502 or 504).
    """

    def __init__(self, message: str, status: int = 502):
        super().__init__(message)
        self.message = message
        self.status = status


__all__ = ["FetchError", "MetadataUnavailable", "PersistenceLoadError", "PersistenceWriteError", "UpstreamError"]
