#!/usr/bin/env python3
"""
Utility classes and functions for the feed proxy.

This module contains shared utilities used by the cache, the fetch supervisor
and the request handler: rate limiting, retry/backoff schedules, duration
formatting and atomic file replacement.
"""

from asyncio import Lock, sleep
from time import time
import os
import shutil
import tempfile

from config import get_logger

# Module-specific logger
logger = get_logger("utils")


class RateLimiter:
    """A simple interval-based rate limiter for controlling request rates.

    Ensures calls don't exceed a specified rate by introducing delays when
    necessary. Used to pace metadata lookups against YouTube.
    """

    def __init__(self, requests_per_minute: int):
        """Initialize the rate limiter.

        Args:
            requests_per_minute: Maximum number of requests allowed per minute.
                                If 0 or negative, no rate limiting is applied.
        """
        self.requests_per_minute = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0
        self.last_request_time = 0
        self._lock = Lock()

    async def acquire(self):
        """Acquire permission to make a request, waiting if necessary to respect rate limits."""
        if self.min_interval <= 0:
            return  # No rate limiting

        async with self._lock:
            current_time = time()
            time_since_last = current_time - self.last_request_time

            if time_since_last < self.min_interval:
                wait_time = self.min_interval - time_since_last
                logger.debug(f"Rate limiting: waiting {wait_time:.2f} seconds")
                await sleep(wait_time)

            self.last_request_time = time()


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between retries
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt (0-based)."""
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        """Sleep for the calculated delay for the given attempt."""
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)


class BackoffPolicy:
    """Exponential backoff schedule for failed metadata lookups.

    The first failure waits ``base_seconds``, each further consecutive failure
    doubles the wait, capped at ``max_seconds``.
    """

    def __init__(self, base_seconds: float = 60.0, max_seconds: float = 6 * 3600.0):
        self.base_seconds = max(0.0, float(base_seconds))
        self.max_seconds = max(self.base_seconds, float(max_seconds))

    def delay(self, attempts: int) -> float:
        """Return the wait in seconds after ``attempts`` consecutive failures."""
        if attempts <= 0:
            return 0.0
        # Avoid float overflow for absurd attempt counts
        exponent = min(attempts - 1, 62)
        return min(self.base_seconds * (2 ** exponent), self.max_seconds)

    def __repr__(self) -> str:
        return f"BackoffPolicy(base_seconds={self.base_seconds}, max_seconds={self.max_seconds})"


def format_duration(seconds: int) -> str:
    """Format a video length as a clock string.

    Examples:
        40 -> "0:40", 611 -> "10:11", 3725 -> "1:02:05"
    """
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def atomic_write_text(target: str, content: str, suffix: str = ".tmp") -> None:
    """Write ``content`` to ``target`` so readers see either the old or the new file.

    The data goes to a temporary file in the target's directory, is fsynced,
    and is then moved over the target. On failure the temporary file is
    removed and the original target is left untouched.
    """
    directory = os.path.dirname(os.path.abspath(target))
    os.makedirs(directory, exist_ok=True)
    temp_path = None
    try:
        with tempfile.NamedTemporaryFile(mode='w', encoding='utf-8', suffix=suffix,
                                         dir=directory, delete=False) as temp_file:
            temp_path = temp_file.name
            temp_file.write(content)
            temp_file.flush()
            os.fsync(temp_file.fileno())
        # Atomic move (same filesystem)
        shutil.move(temp_path, target)
        temp_path = None
    finally:
        if temp_path and os.path.exists(temp_path):
            try:
                os.unlink(temp_path)
            except OSError as e:
                logger.warning(f"Could not remove temporary file {temp_path}: {e}")
