"""
Test fixtures and utilities for flowmachine tests.

Provides an in-memory container, a scripted AI provider, a recording publish
handler and an RSS feed served through httpx.MockTransport, so full flows run
without network access or real credentials.
"""

from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import httpx
import pytest

from flowmachine.ai.providers import AIResponse, ProviderClient, ToolCall
from flowmachine.ai.tools import ToolRegistry
from flowmachine.config.runtime_config import reset_config
from flowmachine.handlers.base import HandlerContext, HandlerRegistry, PublishContent, PublishHandler
from flowmachine.handlers.rss import RssFetchHandler
from flowmachine.runtime.db import Store
from flowmachine.runtime.errors import HandlerError, ProviderError
from flowmachine.runtime.registry import build_container

FEED_URL = "https://news.example.com/feed.xml"


# ============================================================================
# Configuration isolation
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Drop cached runtime config and FLOWMACHINE_* overrides around each test."""
    import os

    for name in list(os.environ):
        if name.startswith("FLOWMACHINE_"):
            monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


# ============================================================================
# Scripted provider
# ============================================================================

ScriptStep = Union[AIResponse, Exception, Callable[[List[Dict[str, Any]]], AIResponse]]


class ScriptedProvider(ProviderClient):
    """Replays a fixed sequence of replies and records every request.

    Each script entry is an AIResponse, an exception to raise, or a callable
    receiving the message history. When the script runs out, ``fallback`` is
    used (a plain final answer by default).
    """

    name = "scripted"

    def __init__(self, script: Optional[Sequence[ScriptStep]] = None, fallback: Optional[ScriptStep] = None):
        self.script: List[ScriptStep] = list(script or [])
        self.fallback = fallback or AIResponse(content="Final answer", finished=True)
        self.calls: List[Dict[str, Any]] = []

    def complete(self, messages, tools=None) -> AIResponse:
        self.calls.append({"messages": [dict(m) for m in messages], "tools": list(tools or [])})
        step = self.script.pop(0) if self.script else self.fallback
        if isinstance(step, Exception):
            raise step
        if callable(step) and not isinstance(step, AIResponse):
            return step(list(messages))
        return step


def text_reply(text: str) -> AIResponse:
    return AIResponse(content=text, finished=True)


def tool_reply(name: str, arguments: Dict[str, Any], call_id: str = "call-1", content: str = "") -> AIResponse:
    return AIResponse(content=content, tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments)])


def echo_item_title(messages: List[Dict[str, Any]]) -> AIResponse:
    """Reply with a tweet built from the title of the item in the last user message."""
    import json

    payload = json.loads(messages[-1]["content"])
    title = payload["data_packets"][-1]["content"]["title"]
    return text_reply(f"New: {title}")


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def failing_provider() -> ScriptedProvider:
    return ScriptedProvider(fallback=ProviderError("upstream unavailable", status_code=503))


# ============================================================================
# Handlers
# ============================================================================


class RecordingPublishHandler(PublishHandler):
    """Publish handler that records calls instead of talking to a network."""

    slug = "recorder"
    label = "Recorder"
    tool_name = "recorder_publish"
    tool_description = "Publish the final text."

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published: List[PublishContent] = []
        self.contexts: List[HandlerContext] = []

    def publish(self, context: HandlerContext, content: PublishContent) -> Dict[str, Any]:
        if self.fail:
            raise HandlerError("recorder is down", context={"handler": self.slug})
        self.contexts.append(context)
        self.published.append(content)
        return {"post_id": f"post-{len(self.published)}"}


def rss_feed(items: Sequence[Dict[str, str]]) -> str:
    entries = "".join(
        f"""
        <item>
          <title>{item['title']}</title>
          <link>{item['link']}</link>
          <guid>{item['guid']}</guid>
          <description>{item.get('description', '')}</description>
          <pubDate>{item.get('pub_date', 'Mon, 06 Jan 2025 10:00:00 GMT')}</pubDate>
        </item>"""
        for item in items
    )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example News</title>
    <link>https://news.example.com/</link>
    <description>Test feed</description>{entries}
  </channel>
</rss>"""


SAMPLE_ITEMS = [
    {
        "title": "Second story",
        "link": "https://news.example.com/2",
        "guid": "story-2",
        "description": "&lt;p&gt;Details of the &lt;b&gt;second&lt;/b&gt; story&lt;/p&gt;",
    },
    {
        "title": "First story",
        "link": "https://news.example.com/1",
        "guid": "story-1",
        "description": "Details of the first story",
    },
]


class FeedServer:
    """Serves one RSS document through httpx.MockTransport and counts requests."""

    def __init__(self, items: Sequence[Dict[str, str]] = SAMPLE_ITEMS):
        self.items = list(items)
        self.requests: List[httpx.Request] = []
        self.status_code = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="error")
        return httpx.Response(200, text=rss_feed(self.items), headers={"Content-Type": "application/rss+xml"})

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def feed_server() -> FeedServer:
    return FeedServer()


@pytest.fixture
def recorder() -> RecordingPublishHandler:
    return RecordingPublishHandler()


@pytest.fixture
def handlers(feed_server, recorder) -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register(RssFetchHandler(client=feed_server.client()))
    registry.register(recorder)
    return registry


# ============================================================================
# Store and container
# ============================================================================


@pytest.fixture
def store():
    s = Store(":memory:")
    yield s
    s.close()


@pytest.fixture
def make_container(tmp_path, handlers):
    """Factory for containers backed by an in-memory store."""
    built = []

    def _make(provider: Optional[ProviderClient] = None, max_turns: Optional[int] = None, **overrides):
        container = build_container(
            db_path=":memory:",
            files_dir=tmp_path / "files",
            provider=provider if provider is not None else ScriptedProvider(),
            handlers=overrides.pop("handlers", handlers),
            tools=overrides.pop("tools", ToolRegistry()),
            max_turns=max_turns,
            **overrides,
        )
        built.append(container)
        return container

    yield _make
    for container in built:
        container.close()


@pytest.fixture
def container(make_container, provider):
    return make_container(provider=provider)


def build_flow(container, steps: Sequence[Dict[str, Any]], bindings: Sequence[Optional[Dict[str, Any]]] = ()):
    """Create a pipeline and a flow, binding handlers positionally.

    Args:
        steps: ``{"step_type", "config"}`` per pipeline step.
        bindings: ``{"slug", "config"}`` per step, or None to leave unbound.

    Returns:
        (pipeline, flow) with the flow re-read after binding.
    """
    pipeline = container.pipelines.create_pipeline("Test pipeline", list(steps))
    flow = container.pipelines.create_flow(pipeline.pipeline_id, "Test flow")
    for step, binding in zip(pipeline.ordered_steps(), bindings):
        if binding:
            container.pipelines.set_flow_step_handler(
                flow.flow_step_id(step.pipeline_step_id), binding["slug"], binding.get("config", {})
            )
    return pipeline, container.pipelines.get_flow(flow.flow_id)


def rss_ai_publish_flow(container, system_prompt: str = "Write a short tweet for each story."):
    return build_flow(
        container,
        [
            {"step_type": "fetch"},
            {"step_type": "ai", "config": {"system_prompt": system_prompt}},
            {"step_type": "publish"},
        ],
        [
            {"slug": "rss", "config": {"feed_url": FEED_URL}},
            None,
            {"slug": "recorder"},
        ],
    )
