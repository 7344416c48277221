import asyncio
from typing import Dict, Optional

import pytest

from errors import FetchError
from resolver import ResolvedVideo
from store import PersistenceStore


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeResolver:
    """Scripted resolver.

    ``results`` maps an id to a ``ResolvedVideo``, an exception to raise, or a
    list of those consumed one per call. Unknown ids fail. When ``gate`` is
    set, every fetch waits on it first. ``active`` counts fetches currently
    in progress and ``peak`` the most seen at once.
    """

    def __init__(self, results: Optional[Dict] = None):
        self.results = dict(results or {})
        self.calls = []
        self.gate: Optional[asyncio.Event] = None
        self.active = 0
        self.peak = 0

    async def fetch(self, video_id: str) -> ResolvedVideo:
        self.calls.append(video_id)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
        finally:
            self.active -= 1
        outcome = self.results.get(video_id)
        if isinstance(outcome, list):
            outcome = outcome.pop(0)
        if outcome is None:
            raise FetchError(video_id, "unknown video")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def settle(condition, rounds: int = 100) -> None:
    """Yield to the event loop until ``condition()`` holds."""
    for _ in range(rounds):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def resolver():
    return FakeResolver({
        "A": ResolvedVideo(duration_seconds=40, is_short=True),
        "B": ResolvedVideo(duration_seconds=611, is_short=False),
        "C": [FetchError("C", "HTTP Error 429: Too Many Requests"), ResolvedVideo(duration_seconds=300, is_short=False)],
    })


@pytest.fixture
def state_path(tmp_path):
    return str(tmp_path / "state.json")


@pytest.fixture
def store(state_path):
    return PersistenceStore(state_path)


@pytest.fixture(name="settle")
def settle_fixture():
    return settle


@pytest.fixture
def make_resolver():
    return FakeResolver


def _entry(video_id: str, title: str) -> str:
    return f"""
 <entry>
  <id>yt:video:{video_id}</id>
  <yt:videoId>{video_id}</yt:videoId>
  <yt:channelId>UCexample</yt:channelId>
  <title>{title}</title>
  <link rel="alternate" href="https://www.youtube.com/watch?v={video_id}"/>
  <author>
   <name>Example Channel</name>
   <uri>https://www.youtube.com/channel/UCexample</uri>
  </author>
  <published>2024-05-01T12:00:00+00:00</published>
  <updated>2024-05-02T08:00:00+00:00</updated>
  <media:group>
   <media:title>{title}</media:title>
   <media:thumbnail url="https://i.ytimg.com/vi/{video_id}/hqdefault.jpg" width="480" height="360"/>
   <media:description>About {title}</media:description>
  </media:group>
 </entry>"""


FEED_XML = f"""<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns:yt="http://www.youtube.com/xml/schemas/2015" xmlns:media="http://search.yahoo.com/mrss/" xmlns="http://www.w3.org/2005/Atom">
 <link rel="self" href="http://www.youtube.com/feeds/videos.xml?channel_id=UCexample"/>
 <id>yt:channel:UCexample</id>
 <yt:channelId>UCexample</yt:channelId>
 <title>Example Channel</title>
 <published>2015-01-01T00:00:00+00:00</published>
{_entry("A", "Quick tip")}
{_entry("B", "Deep dive")}
{_entry("C", "Weekly update")}
</feed>
""".encode("utf-8")


@pytest.fixture
def feed_xml():
    return FEED_XML
