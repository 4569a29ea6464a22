"""
twitter.py - X (Twitter) publish handler.

Posts a tweet through the X API v2 with an OAuth 2.0 user bearer token.

Settings:
    access_token:   Bearer token (falls back to env TWITTER_ACCESS_TOKEN).
    link_handling:  append | none. ``append`` adds the source URL.
    api_base:       Override of https://api.twitter.com/2 (tests, proxies).

Text rules: 280 characters, links count as 24 (t.co), overflow is cut with a
single ellipsis character.

Re-run note: a repeated delivery posts again; X rejects byte-identical
duplicate tweets with 403, which is reported as a handler error.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import httpx

from flowmachine.handlers.base import HandlerContext, PublishContent, PublishHandler
from flowmachine.runtime.errors import HandlerError

logger = logging.getLogger(__name__)

TWEET_LIMIT = 280
TCO_LINK_LENGTH = 24
ELLIPSIS = "…"
DEFAULT_API_BASE = "https://api.twitter.com/2"


def format_tweet(text: str, source_url: Optional[str] = None, link_handling: str = "append") -> str:
    """Fit text (and optionally a link) into one tweet."""
    text = (text or "").strip()
    link = ""
    if link_handling == "append" and source_url and source_url.startswith(("http://", "https://")):
        link = " " + source_url
    available = TWEET_LIMIT - (TCO_LINK_LENGTH if link else 0)

    if len(text) > available:
        text = text[: available - len(ELLIPSIS)].rstrip() + ELLIPSIS
    return (text + link).strip()


class TwitterPublishHandler(PublishHandler):
    """Publish content as a tweet."""

    slug = "twitter"
    label = "Twitter"
    tool_name = "twitter_publish"
    tool_description = (
        "Post content to Twitter/X. Provide the final tweet text in 'content'. "
        "The source link is appended automatically when configured."
    )
    settings_defaults = {"link_handling": "append", "api_base": DEFAULT_API_BASE}

    def __init__(self, client: Optional[httpx.Client] = None):
        self._client = client

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=30.0)
        return self._client

    def publish(self, context: HandlerContext, content: PublishContent) -> Dict[str, Any]:
        settings = self.settings(context.handler_config)
        token = settings.get("access_token") or os.environ.get("TWITTER_ACCESS_TOKEN")
        if not token:
            raise HandlerError("Twitter authentication is not configured", context={"handler": self.slug})

        tweet = format_tweet(content.content, content.source_url, settings.get("link_handling", "append"))
        url = settings.get("api_base", DEFAULT_API_BASE).rstrip("/") + "/tweets"
        try:
            response = self._get_client().post(
                url,
                json={"text": tweet},
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise HandlerError(f"Twitter request failed: {e}", context={"handler": self.slug}) from e

        if response.status_code != 201:
            raise HandlerError(
                f"Twitter API returned {response.status_code}",
                context={"handler": self.slug, "body": response.text[:500]},
            )

        tweet_id = (response.json().get("data") or {}).get("id")
        if not tweet_id:
            raise HandlerError("Twitter API response has no tweet id", context={"body": response.text[:500]})

        screen_name = settings.get("screen_name")
        if screen_name:
            tweet_url = f"https://twitter.com/{screen_name}/status/{tweet_id}"
        else:
            tweet_url = f"https://twitter.com/i/web/status/{tweet_id}"
        logger.info("Posted tweet %s for job %s", tweet_id, context.job_id)
        return {"tweet_id": tweet_id, "tweet_url": tweet_url, "content": tweet}
