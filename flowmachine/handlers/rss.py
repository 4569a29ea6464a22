"""
rss.py - RSS/Atom fetch handler.

Downloads a feed with httpx, parses it with feedparser and emits one packet
per new item. An item is new when its GUID (falling back to the link) has
not been marked processed for this flow step.

Settings:
    feed_url:         Feed location (required).
    timeframe_limit:  all_time | 24_hours | 72_hours | 7_days | 30_days
    search:           Comma-separated keywords; an item must match one.
    exclude_keywords: Comma-separated keywords; matching items are skipped.
    max_items:        New items per run (0 = no limit).

Re-run safety: every emitted GUID is marked processed before the packet is
returned, so a redelivered fetch skips it.
"""

from __future__ import annotations

import calendar
import logging
import re
import time
from html import unescape
from typing import Any, Dict, List, Optional

import feedparser
import httpx

from flowmachine.handlers.base import FetchHandler, HandlerContext
from flowmachine.runtime.errors import HandlerError
from flowmachine.runtime.types import PACKET_FETCH, DataPacket

logger = logging.getLogger(__name__)

TIMEFRAME_SECONDS = {
    "24_hours": 24 * 3600,
    "72_hours": 72 * 3600,
    "7_days": 7 * 86400,
    "30_days": 30 * 86400,
}

IMAGE_MIME_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")

_TAG_RE = re.compile(r"<[^>]+>")


def strip_tags(text: str) -> str:
    return re.sub(r"\s+", " ", unescape(_TAG_RE.sub(" ", text or ""))).strip()


def _split_keywords(value: str) -> List[str]:
    return [k.strip().lower() for k in (value or "").split(",") if k.strip()]


def matches_keywords(text: str, search: str) -> bool:
    """True when ``search`` is empty or any keyword occurs in ``text``."""
    keywords = _split_keywords(search)
    if not keywords:
        return True
    lowered = text.lower()
    return any(k in lowered for k in keywords)


def within_timeframe(published: Optional[float], timeframe_limit: str, now: float) -> bool:
    window = TIMEFRAME_SECONDS.get(timeframe_limit or "all_time")
    if window is None or published is None:
        return True
    return published >= now - window


class RssFetchHandler(FetchHandler):
    """Fetch new items from an RSS or Atom feed."""

    slug = "rss"
    label = "RSS Feed"
    settings_defaults = {
        "feed_url": "",
        "timeframe_limit": "all_time",
        "search": "",
        "exclude_keywords": "",
        "max_items": 5,
    }

    def __init__(self, client: Optional[httpx.Client] = None, clock=time.time):
        self._client = client
        self._clock = clock

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=30.0, follow_redirects=True)
        return self._client

    def _download(self, feed_url: str) -> str:
        try:
            response = self._get_client().get(feed_url, headers={"User-Agent": "flowmachine/rss"})
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise HandlerError(f"Failed to fetch RSS feed: {e}", context={"feed_url": feed_url}) from e
        return response.text

    def fetch(self, context: HandlerContext) -> List[DataPacket]:
        settings = self.settings(context.handler_config)
        feed_url = (settings.get("feed_url") or "").strip()
        if not feed_url:
            raise HandlerError("RSS handler requires 'feed_url'", context={"flow_step_id": str(context.flow_step_id)})

        feed = feedparser.parse(self._download(feed_url))
        if feed.bozo and not feed.entries:
            raise HandlerError(
                f"Failed to parse RSS feed: {feed.get('bozo_exception')}", context={"feed_url": feed_url}
            )

        max_items = int(settings.get("max_items") or 0)
        now = self._clock()
        packets: List[DataPacket] = []
        checked = 0

        for entry in feed.entries:
            checked += 1
            link = entry.get("link", "")
            guid = entry.get("id") or link
            if not guid:
                logger.warning("Skipping RSS item without GUID: %s", entry.get("title"))
                continue
            if context.is_processed(guid):
                continue

            published = entry.get("published_parsed") or entry.get("updated_parsed")
            published_ts = calendar.timegm(published) if published else None
            if not within_timeframe(published_ts, settings.get("timeframe_limit"), now):
                logger.debug("Skipping item outside timeframe: %s", guid)
                continue

            title = entry.get("title") or "Untitled"
            description = strip_tags(entry.get("summary") or entry.get("description") or "")
            search_text = f"{title} {description}"
            if not matches_keywords(search_text, settings.get("search", "")):
                continue
            excluded = _split_keywords(settings.get("exclude_keywords", ""))
            if excluded and matches_keywords(search_text, settings.get("exclude_keywords", "")):
                continue

            if not context.mark_processed(guid):
                # Another delivery emitted it first.
                continue

            packets.append(self._to_packet(entry, guid, title, description, link, published_ts))
            if max_items and len(packets) >= max_items:
                break

        if packets:
            first = packets[0]
            context.set_engine_data(
                {
                    "source_url": first.metadata.get("source_url", ""),
                    "image_url": first.metadata.get("image_url"),
                }
            )
        logger.info(
            "RSS fetch %s: %d new of %d checked (%s)", context.flow_step_id, len(packets), checked, feed_url
        )
        return packets

    def _to_packet(
        self,
        entry: Any,
        guid: str,
        title: str,
        description: str,
        link: str,
        published_ts: Optional[float],
    ) -> DataPacket:
        image_url = self._image_url(entry)
        metadata: Dict[str, Any] = {
            "source_type": self.slug,
            "item_identifier": guid,
            "item_key": f"{self.slug}:{guid}",
            "original_title": title,
            "original_date_gmt": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(published_ts))
            if published_ts
            else None,
            "author": entry.get("author"),
            "categories": [t.get("term") for t in entry.get("tags", []) if t.get("term")],
            "source_url": link,
            "image_url": image_url,
        }
        attachments = [{"url": image_url, "type": "image"}] if image_url else []
        return DataPacket(
            type=PACKET_FETCH,
            content={"title": title, "body": description},
            metadata=metadata,
            attachments=attachments,
        )

    @staticmethod
    def _image_url(entry: Any) -> Optional[str]:
        for enclosure in entry.get("enclosures", []):
            if enclosure.get("type", "") in IMAGE_MIME_TYPES and enclosure.get("href"):
                return enclosure["href"]
        for media in entry.get("media_content", []):
            if media.get("url") and (media.get("medium") == "image" or media.get("type", "") in IMAGE_MIME_TYPES):
                return media["url"]
        return None
