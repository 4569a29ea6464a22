# Handlers package
#
# Fetch, publish and update adapters plus the registry they are looked up in.

from __future__ import annotations

from typing import Optional

import httpx

from .base import (
    FetchHandler,
    Handler,
    HandlerContext,
    HandlerRegistry,
    HandlerTool,
    PublishContent,
    PublishHandler,
    UpdateHandler,
)
from .rss import RssFetchHandler
from .twitter import TwitterPublishHandler
from .webhook import HttpUpdateHandler, WebhookPublishHandler


def default_handler_registry(client: Optional[httpx.Client] = None) -> HandlerRegistry:
    """Build a registry holding the built-in handlers.

    Args:
        client: Shared httpx client for all handlers (one per handler if None).
    """
    registry = HandlerRegistry()
    registry.register(RssFetchHandler(client=client))
    registry.register(TwitterPublishHandler(client=client))
    registry.register(WebhookPublishHandler(client=client))
    registry.register(HttpUpdateHandler(client=client))
    return registry


__all__ = [
    "FetchHandler",
    "Handler",
    "HandlerContext",
    "HandlerRegistry",
    "HandlerTool",
    "PublishContent",
    "PublishHandler",
    "UpdateHandler",
    "RssFetchHandler",
    "TwitterPublishHandler",
    "WebhookPublishHandler",
    "HttpUpdateHandler",
    "default_handler_registry",
]
