#!/usr/bin/env python3
"""
Rewrite YouTube Atom feeds using cached video metadata.

Entries whose video is a known Short are removed, known durations are appended
to titles as ``[m:ss]``, and the bulky ``media:group`` and ``updated``
children are stripped. Entries without metadata pass through unchanged unless
``hide_unresolved`` is set.
"""

from typing import Dict, List, Optional
from xml.etree import ElementTree as ET

from config import config, get_logger
from errors import UpstreamError
from models import CacheEntry, VideoId
from utils import format_duration

logger = get_logger("enhancer")

NAMESPACES = {
    'atom': 'http://www.w3.org/2005/Atom',
    'yt': 'http://www.youtube.com/xml/schemas/2015',
    'media': 'http://search.yahoo.com/mrss/',
}

# Keep YouTube's prefixes on output instead of ns0/ns1
ET.register_namespace('', NAMESPACES['atom'])
ET.register_namespace('yt', NAMESPACES['yt'])
ET.register_namespace('media', NAMESPACES['media'])

ENTRY = f"{{{NAMESPACES['atom']}}}entry"
TITLE = f"{{{NAMESPACES['atom']}}}title"
UPDATED = f"{{{NAMESPACES['atom']}}}updated"
VIDEO_ID = f"{{{NAMESPACES['yt']}}}videoId"
MEDIA_GROUP = f"{{{NAMESPACES['media']}}}group"


def parse_feed(body: bytes) -> ET.Element:
    """Parse an upstream feed document.

    Raises:
        UpstreamError: the body is not well-formed XML or not an Atom feed.
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise UpstreamError(f"Malformed upstream feed: {e}") from e
    if root.tag != f"{{{NAMESPACES['atom']}}}feed":
        raise UpstreamError(f"Unexpected upstream document root {root.tag}")
    return root


def entry_video_id(entry: ET.Element) -> Optional[VideoId]:
    node = entry.find(VIDEO_ID)
    if node is None or not (node.text or '').strip():
        return None
    return node.text.strip()


def video_ids(root: ET.Element) -> List[VideoId]:
    """Video ids in feed order."""
    ids = []
    for entry in root.findall(ENTRY):
        video_id = entry_video_id(entry)
        if video_id:
            ids.append(video_id)
    return ids


class FeedEnhancer:
    def __init__(self, hide_unresolved: Optional[bool] = None, strip_media_group: Optional[bool] = None,
                 strip_updated: Optional[bool] = None):
        self.hide_unresolved = config.HIDE_UNRESOLVED if hide_unresolved is None else hide_unresolved
        self.strip_media_group = config.STRIP_MEDIA_GROUP if strip_media_group is None else strip_media_group
        self.strip_updated = config.STRIP_UPDATED if strip_updated is None else strip_updated

    def apply(self, root: ET.Element, entries: Dict[VideoId, CacheEntry]) -> Dict[str, int]:
        """Rewrite ``root`` in place from a cache snapshot. Returns per-outcome counts."""
        counts = {'annotated': 0, 'shorts_removed': 0, 'unresolved': 0}
        for entry in list(root.findall(ENTRY)):
            video_id = entry_video_id(entry)
            cached = entries.get(video_id) if video_id else None

            if cached is not None and cached.is_ready:
                if cached.metadata.is_short:
                    root.remove(entry)
                    counts['shorts_removed'] += 1
                    continue
                title = entry.find(TITLE)
                if title is not None:
                    title.text = f"{title.text or ''} [{format_duration(cached.metadata.duration_seconds)}]"
                counts['annotated'] += 1
            else:
                counts['unresolved'] += 1
                if self.hide_unresolved:
                    root.remove(entry)
                    continue

            self._strip(entry)
        return counts

    def _strip(self, entry: ET.Element) -> None:
        if self.strip_media_group:
            for node in entry.findall(MEDIA_GROUP):
                entry.remove(node)
        if self.strip_updated:
            for node in entry.findall(UPDATED):
                entry.remove(node)

    def render(self, root: ET.Element, entries: Dict[VideoId, CacheEntry]) -> bytes:
        counts = self.apply(root, entries)
        logger.debug(
            f"Rendered feed: {counts['annotated']} annotated, {counts['shorts_removed']} shorts removed, "
            f"{counts['unresolved']} unresolved"
        )
        return ET.tostring(root, encoding='utf-8', xml_declaration=True)
