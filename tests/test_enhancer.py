from xml.etree import ElementTree as ET

import pytest

from enhancer import ENTRY, MEDIA_GROUP, NAMESPACES, TITLE, UPDATED, FeedEnhancer, parse_feed, video_ids
from errors import UpstreamError
from models import CacheEntry, VideoMetadata


def snapshot():
    return {
        "A": CacheEntry.ready(VideoMetadata("A", 40, True, 1)),
        "B": CacheEntry.ready(VideoMetadata("B", 611, False, 1)),
        "C": CacheEntry.unknown("C"),
    }


def titles(body):
    root = ET.fromstring(body)
    return {entry.find(f"{{{NAMESPACES['yt']}}}videoId").text: entry.find(TITLE).text
            for entry in root.findall(ENTRY)}


def test_video_ids_in_feed_order(feed_xml):
    assert video_ids(parse_feed(feed_xml)) == ["A", "B", "C"]


def test_render_drops_shorts_and_annotates_durations(feed_xml):
    enhancer = FeedEnhancer(hide_unresolved=False, strip_media_group=True, strip_updated=True)

    body = enhancer.render(parse_feed(feed_xml), snapshot())

    assert titles(body) == {"B": "Deep dive [10:11]", "C": "Weekly update"}
    root = ET.fromstring(body)
    for entry in root.findall(ENTRY):
        assert entry.find(MEDIA_GROUP) is None
        assert entry.find(UPDATED) is None
    # Feed-level elements are untouched
    assert root.find(TITLE).text == "Example Channel"


def test_render_keeps_youtube_namespace_prefixes(feed_xml):
    body = FeedEnhancer().render(parse_feed(feed_xml), snapshot())

    assert body.startswith(b"<?xml")
    assert b'xmlns:yt="http://www.youtube.com/xml/schemas/2015"' in body
    assert b"<yt:videoId>B</yt:videoId>" in body
    assert b"ns0:" not in body


def test_hide_unresolved_drops_entries_without_metadata(feed_xml):
    enhancer = FeedEnhancer(hide_unresolved=True)

    body = enhancer.render(parse_feed(feed_xml), snapshot())

    assert list(titles(body)) == ["B"]


def test_failed_and_pending_entries_render_without_duration(feed_xml):
    entries = snapshot()
    entries["B"] = CacheEntry.pending("B")
    entries["C"] = CacheEntry.failed("C", "HTTP Error 429", 0.0, 1)

    body = FeedEnhancer(hide_unresolved=False).render(parse_feed(feed_xml), entries)

    assert titles(body) == {"B": "Deep dive", "C": "Weekly update"}


def test_stripping_can_be_disabled(feed_xml):
    enhancer = FeedEnhancer(strip_media_group=False, strip_updated=False)

    root = parse_feed(feed_xml)
    enhancer.apply(root, snapshot())

    entry = root.findall(ENTRY)[0]
    assert entry.find(MEDIA_GROUP) is not None
    assert entry.find(UPDATED) is not None


@pytest.mark.parametrize("body", [b"<feed><unclosed></feed>", b"not xml at all", b"<html><body>Oops</body></html>"])
def test_parse_rejects_non_feeds(body):
    with pytest.raises(UpstreamError) as excinfo:
        parse_feed(body)

    assert excinfo.value.status == 502
