"""
global_tools.py - Built-in global and chat-only tools.

Global tools (offered to pipeline and chat agents when enabled):
    google_search   Google Custom Search JSON API. Needs api_key and
                    search_engine_id under ``tools.google_search``.
    web_fetch       Download a web page and return its visible text.

Chat-only tools:
    list_flows      List flows with their pipeline and scheduling.
    run_flow        Create and schedule a job for a flow.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

import httpx

from flowmachine.ai.tools import Tool, ToolRegistry, ToolResult
from flowmachine.config.runtime_config import get_tool_settings
from flowmachine.handlers.rss import strip_tags
from flowmachine.runtime.errors import ConfigurationError, ToolError

if TYPE_CHECKING:
    from flowmachine.runtime.jobs import JobLifecycleManager
    from flowmachine.runtime.pipelines import PipelineManager

logger = logging.getLogger(__name__)

GOOGLE_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
DEFAULT_WEB_FETCH_MAX_CHARS = 20000


class _HttpTool(Tool):
    def __init__(self, client: Optional[httpx.Client] = None, settings_for=get_tool_settings):
        self._client = client
        self._settings_for = settings_for

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=30.0, follow_redirects=True)
        return self._client

    def _settings(self) -> Dict[str, Any]:
        return self._settings_for(self.name)


class GoogleSearchTool(_HttpTool):
    name = "google_search"
    description = "Search the web with Google and return titles, links and snippets."
    parameters = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Search query"},
            "num_results": {"type": "integer", "description": "Results to return (1-10)"},
        },
        "required": ["query"],
    }
    requires_config = True

    def is_configured(self, settings: Dict[str, Any]) -> bool:
        return bool(settings.get("api_key")) and bool(settings.get("search_engine_id"))

    def execute(self, parameters: Dict[str, Any], tool_definition: Dict[str, Any]) -> ToolResult:
        query = (parameters.get("query") or "").strip()
        if not query:
            raise ToolError("Parameter 'query' is required")
        settings = self._settings()
        if not self.is_configured(settings):
            raise ToolError("Google search is not configured")

        num = max(1, min(10, int(parameters.get("num_results") or 5)))
        try:
            response = self._get_client().get(
                GOOGLE_SEARCH_URL,
                params={"key": settings["api_key"], "cx": settings["search_engine_id"], "q": query, "num": num},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ToolError(f"Google search failed: {e}") from e

        items = response.json().get("items") or []
        results = [
            {"title": i.get("title", ""), "link": i.get("link", ""), "snippet": i.get("snippet", "")}
            for i in items
        ]
        return ToolResult(success=True, tool_name=self.name, data={"query": query, "results": results})


class WebFetchTool(_HttpTool):
    name = "web_fetch"
    description = "Fetch a web page by URL and return its text content."
    parameters = {
        "type": "object",
        "properties": {"url": {"type": "string", "description": "Absolute http(s) URL"}},
        "required": ["url"],
    }

    def execute(self, parameters: Dict[str, Any], tool_definition: Dict[str, Any]) -> ToolResult:
        url = (parameters.get("url") or "").strip()
        if not url.startswith(("http://", "https://")):
            raise ToolError("Parameter 'url' must be an http(s) URL")
        max_chars = int(self._settings().get("max_chars") or DEFAULT_WEB_FETCH_MAX_CHARS)

        try:
            response = self._get_client().get(url, headers={"User-Agent": "flowmachine/web_fetch"})
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ToolError(f"Fetching {url} failed: {e}") from e

        text = strip_tags(response.text)
        return ToolResult(
            success=True,
            tool_name=self.name,
            data={"url": url, "content": text[:max_chars], "truncated": len(text) > max_chars},
        )


# =============================================================================
# Chat-only tools
# =============================================================================


class ListFlowsTool(Tool):
    name = "list_flows"
    description = "List configured flows with their pipeline and schedule."
    parameters = {
        "type": "object",
        "properties": {"pipeline_id": {"type": "string", "description": "Only flows of this pipeline"}},
    }

    def __init__(self, pipelines: "PipelineManager"):
        self._pipelines = pipelines

    def execute(self, parameters: Dict[str, Any], tool_definition: Dict[str, Any]) -> ToolResult:
        flows = self._pipelines.list_flows(parameters.get("pipeline_id"))
        data = [
            {
                "flow_id": f.flow_id,
                "name": f.name,
                "pipeline_id": f.pipeline_id,
                "interval": f.scheduling.interval,
                "enabled": f.scheduling.enabled,
            }
            for f in flows
        ]
        return ToolResult(success=True, tool_name=self.name, data={"flows": data})


class RunFlowTool(Tool):
    name = "run_flow"
    description = "Run a flow now. Returns the id of the created job."
    parameters = {
        "type": "object",
        "properties": {"flow_id": {"type": "string", "description": "Flow to run"}},
        "required": ["flow_id"],
    }

    def __init__(self, jobs: "JobLifecycleManager"):
        self._jobs = jobs

    def execute(self, parameters: Dict[str, Any], tool_definition: Dict[str, Any]) -> ToolResult:
        flow_id = (parameters.get("flow_id") or "").strip()
        if not flow_id:
            raise ToolError("Parameter 'flow_id' is required")
        try:
            job_id = self._jobs.create_and_schedule(flow_id, trigger_reason="chat")
        except ConfigurationError as e:
            raise ToolError(e.message, context={"reason": e.reason.value}) from e
        return ToolResult(success=True, tool_name=self.name, data={"flow_id": flow_id, "job_id": job_id})


def default_tool_registry(
    pipelines: Optional["PipelineManager"] = None,
    jobs: Optional["JobLifecycleManager"] = None,
    client: Optional[httpx.Client] = None,
) -> ToolRegistry:
    """Registry with the built-in global tools, plus chat tools when their services are given."""
    registry = ToolRegistry()
    registry.register_global(GoogleSearchTool(client=client))
    registry.register_global(WebFetchTool(client=client))
    if pipelines is not None:
        registry.register_chat(ListFlowsTool(pipelines))
    if jobs is not None:
        registry.register_chat(RunFlowTool(jobs))
    return registry
