"""
Tests for tool discovery, invocation and the built-in tools.

These tests verify:
1. Discovery order is deterministic (handler, global, chat; by name)
2. Enablement honors disabled lists, required config and enabled_tools
3. Tool exceptions become failed results
4. Built-in tools talk HTTP through httpx and report errors as failures
"""

import httpx
import pytest

from flowmachine.ai.global_tools import (
    GOOGLE_SEARCH_URL,
    GoogleSearchTool,
    ListFlowsTool,
    RunFlowTool,
    WebFetchTool,
    default_tool_registry,
)
from flowmachine.ai.tools import AGENT_CHAT, AGENT_PIPELINE, Tool, ToolDiscovery, ToolRegistry, ToolResult, invoke_tool
from flowmachine.handlers.base import HandlerRegistry
from flowmachine.runtime.types import FlowStepId

from conftest import FEED_URL, RecordingPublishHandler, build_flow


class _NamedTool(Tool):
    def __init__(self, name, fail_with=None):
        self.name = name
        self.description = f"{name} tool"
        self._fail_with = fail_with

    def execute(self, parameters, tool_definition):
        if self._fail_with is not None:
            raise self._fail_with
        return ToolResult(success=True, tool_name=self.name, data={"echo": parameters})


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


@pytest.fixture
def recorder_registry():
    registry = HandlerRegistry()
    registry.register(RecordingPublishHandler())
    return registry


class TestDiscovery:
    """Tests for ToolDiscovery."""

    def test_order_is_handler_then_global_then_chat(self, recorder_registry):
        """Groups keep their order and each group is sorted by name."""
        registry = ToolRegistry()
        registry.register_global(_NamedTool("zeta"))
        registry.register_global(_NamedTool("alpha"))
        registry.register_chat(_NamedTool("beta"))
        discovery = ToolDiscovery(registry, recorder_registry, disabled_tools=lambda: [])

        names = [t.name for t in discovery.discover(AGENT_CHAT, handler_slug="recorder")]
        assert names == ["recorder_publish", "alpha", "zeta", "beta"]

    def test_chat_tools_hidden_from_pipeline_agent(self):
        """Chat-only tools are never offered to AI steps."""
        registry = ToolRegistry()
        registry.register_chat(_NamedTool("run_flow"))
        discovery = ToolDiscovery(registry, disabled_tools=lambda: [])
        assert discovery.discover(AGENT_PIPELINE) == []

    def test_discovery_is_deterministic(self, recorder_registry):
        """Identical inputs give identical ordered output."""
        registry = ToolRegistry()
        for name in ("c", "a", "b"):
            registry.register_global(_NamedTool(name))
        discovery = ToolDiscovery(registry, recorder_registry, disabled_tools=lambda: [])
        first = [t.name for t in discovery.discover(AGENT_PIPELINE, handler_slug="recorder")]
        second = [t.name for t in discovery.discover(AGENT_PIPELINE, handler_slug="recorder")]
        assert first == second == ["recorder_publish", "a", "b", "c"]

    def test_disabled_tool_is_excluded(self):
        """Globally disabled tools are dropped."""
        registry = ToolRegistry()
        registry.register_global(_NamedTool("web_fetch"))
        registry.register_global(_NamedTool("other"))
        discovery = ToolDiscovery(registry, disabled_tools=lambda: ["web_fetch"])
        assert [t.name for t in discovery.discover(AGENT_CHAT)] == ["other"]

    def test_handler_tools_ignore_disabled_list(self, recorder_registry):
        """Handler tools are always enabled."""
        discovery = ToolDiscovery(ToolRegistry(), recorder_registry, disabled_tools=lambda: ["recorder_publish"])
        assert [t.name for t in discovery.discover(AGENT_PIPELINE, handler_slug="recorder")] == ["recorder_publish"]

    def test_unconfigured_tool_is_excluded(self):
        """Tools requiring configuration need it to be present."""
        registry = ToolRegistry()
        registry.register_global(GoogleSearchTool())
        missing = ToolDiscovery(registry, settings_for=lambda name: {}, disabled_tools=lambda: [])
        present = ToolDiscovery(
            registry,
            settings_for=lambda name: {"api_key": "k", "search_engine_id": "cx"},
            disabled_tools=lambda: [],
        )
        assert missing.discover(AGENT_CHAT) == []
        assert [t.name for t in present.discover(AGENT_CHAT)] == ["google_search"]

    def test_enabled_tools_limits_pipeline_agent(self, container):
        """A pipeline step's enabled_tools list filters global tools."""
        registry = ToolRegistry()
        registry.register_global(_NamedTool("web_fetch"))
        registry.register_global(_NamedTool("google_search"))
        pipeline, flow = build_flow(container, [{"step_type": "ai", "config": {"enabled_tools": ["web_fetch"]}}])
        step = flow.flow_step_id(pipeline.ordered_steps()[0].pipeline_step_id)
        discovery = ToolDiscovery(registry, pipelines=container.pipelines, disabled_tools=lambda: [])

        assert [t.name for t in discovery.discover(AGENT_PIPELINE, flow_step_id=step)] == ["web_fetch"]
        assert [t.name for t in discovery.discover(AGENT_CHAT, flow_step_id=step)] == ["google_search", "web_fetch"]


class TestInvocation:
    """Tests for invoke_tool and handler tools."""

    def test_exception_becomes_failed_result(self):
        """An unexpected exception is reported, not raised."""
        result = invoke_tool(_NamedTool("boom", fail_with=RuntimeError("kaput")), {}, {})
        assert result.success is False
        assert result.error == "RuntimeError: kaput"

    def test_handler_tool_publishes_with_item_context(self):
        """The handler tool uses the item's source URL from its definition."""
        handler = RecordingPublishHandler()
        tool = handler.tools({})[0]
        definition = {
            "job_id": "job-1",
            "flow_step_id": FlowStepId("ps-2", "fl-1"),
            "engine_data": {"source_url": "https://fallback"},
            "item": {"source_url": "https://news.example.com/1"},
        }

        result = invoke_tool(tool, {"content": "Hello"}, definition)
        assert result.success is True
        assert result.data == {"post_id": "post-1"}
        assert handler.published[0].content == "Hello"
        assert handler.published[0].source_url == "https://news.example.com/1"

    def test_handler_tool_requires_content(self):
        """Empty content is a tool error fed back to the model."""
        tool = RecordingPublishHandler().tools({})[0]
        result = invoke_tool(tool, {"content": " "}, {"job_id": "job-1", "flow_step_id": FlowStepId("ps", "fl")})
        assert result.success is False
        assert "content" in result.error

    def test_handler_failure_is_tool_failure(self):
        """A failing handler becomes a failed tool result."""
        tool = RecordingPublishHandler(fail=True).tools({})[0]
        result = invoke_tool(tool, {"content": "x"}, {"job_id": "job-1", "flow_step_id": FlowStepId("ps", "fl")})
        assert result.success is False
        assert result.error == "recorder is down"


class TestBuiltInTools:
    """Tests for google_search, web_fetch, list_flows and run_flow."""

    def test_google_search_returns_results(self):
        """Search results are reduced to title, link and snippet."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200, json={"items": [{"title": "T", "link": "https://t", "snippet": "S", "extra": 1}]}
            )

        tool = GoogleSearchTool(
            client=_client(handler), settings_for=lambda name: {"api_key": "k", "search_engine_id": "cx"}
        )
        result = invoke_tool(tool, {"query": "python", "num_results": 50}, {})

        assert result.success is True
        assert result.data["results"] == [{"title": "T", "link": "https://t", "snippet": "S"}]
        assert str(seen[0].url).startswith(GOOGLE_SEARCH_URL)
        assert seen[0].url.params["num"] == "10"
        assert seen[0].url.params["q"] == "python"

    def test_google_search_http_error(self):
        """HTTP failures become failed results."""
        tool = GoogleSearchTool(
            client=_client(lambda request: httpx.Response(403)),
            settings_for=lambda name: {"api_key": "k", "search_engine_id": "cx"},
        )
        result = invoke_tool(tool, {"query": "python"}, {})
        assert result.success is False
        assert "Google search failed" in result.error

    def test_web_fetch_strips_markup_and_truncates(self):
        """Page text is extracted and cut at max_chars."""
        html = "<html><body><h1>Title</h1><p>Some &amp; text</p></body></html>"
        tool = WebFetchTool(
            client=_client(lambda request: httpx.Response(200, text=html)),
            settings_for=lambda name: {"max_chars": 10},
        )
        result = invoke_tool(tool, {"url": "https://example.com"}, {})
        assert result.success is True
        assert result.data["content"] == "Title Some"
        assert result.data["truncated"] is True

    def test_web_fetch_rejects_non_http_url(self):
        """Only http(s) URLs are fetched."""
        result = invoke_tool(WebFetchTool(client=_client(lambda r: httpx.Response(200))), {"url": "file:///etc"}, {})
        assert result.success is False

    def test_run_flow_creates_chat_job(self, container):
        """run_flow starts a job labelled as a chat trigger."""
        _, flow = build_flow(container, [{"step_type": "fetch"}], [{"slug": "rss", "config": {"feed_url": FEED_URL}}])
        result = invoke_tool(RunFlowTool(container.jobs), {"flow_id": flow.flow_id}, {})
        assert result.success is True
        assert container.jobs.get(result.data["job_id"]).trigger == "chat"

    def test_run_flow_unknown_flow(self, container):
        """Unknown flows are reported with their failure reason."""
        result = invoke_tool(RunFlowTool(container.jobs), {"flow_id": "fl-missing"}, {})
        assert result.success is False
        assert result.data == {"reason": "invalid_flow"}

    def test_list_flows(self, container):
        """list_flows returns flows with their schedule."""
        _, flow = build_flow(container, [{"step_type": "fetch"}])
        result = invoke_tool(ListFlowsTool(container.pipelines), {}, {})
        assert result.data["flows"][0]["flow_id"] == flow.flow_id
        assert result.data["flows"][0]["interval"] == "manual"

    def test_default_registry_contents(self, container):
        """The default registry holds the global and chat tools."""
        registry = default_tool_registry(container.pipelines, container.jobs)
        assert [t.name for t in registry.global_tools()] == ["google_search", "web_fetch"]
        assert [t.name for t in registry.chat_tools()] == ["list_flows", "run_flow"]
