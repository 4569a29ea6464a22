"""
tools.py - Tool contract, registry and discovery for the AI tool loop.

Tool invocation contract:
    input:  parameters (arguments proposed by the model) and tool_definition
            (the tool's schema plus engine context: handler_config, job_id,
            flow_step_id, engine_data)
    output: ToolResult(success, data, tool_name, error)

``success=False`` is never fatal to the conversation: the result is fed back
to the model as a tool message.

Tool sources:
- handler tools: exposed by the publish/update handler of a step adjacent to
  the AI step. Always enabled.
- global tools: registered once (google_search, web_fetch). Enabled when
  configured, not globally disabled, and (for pipeline agents) allowed by the
  pipeline step's ``enabled_tools`` list.
- chat tools: only offered to the chat agent.

Discovery is deterministic: identical inputs give identical ordered output.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional

from flowmachine.config.runtime_config import get_disabled_tools, get_tool_settings
from flowmachine.runtime.errors import ToolError

if TYPE_CHECKING:
    from flowmachine.runtime.pipelines import PipelineManager
    from flowmachine.handlers.base import HandlerRegistry

logger = logging.getLogger(__name__)

AGENT_PIPELINE = "pipeline"
AGENT_CHAT = "chat"


@dataclass
class ToolResult:
    """Outcome of one tool invocation."""

    success: bool
    tool_name: str
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success, "data": self.data, "tool_name": self.tool_name}
        if self.error:
            result["error"] = self.error
        return result


class Tool(ABC):
    """A capability the model may invoke.

    Attributes:
        name: Unique tool name exposed to the model.
        description: What the tool does, shown to the model.
        parameters: JSON schema of the arguments.
        handler: Handler slug for handler tools, None otherwise.
        requires_config: Whether ``is_configured`` must pass before use.
    """

    name: str = ""
    description: str = ""
    parameters: Dict[str, Any] = {"type": "object", "properties": {}}
    handler: Optional[str] = None
    requires_config: bool = False

    def is_configured(self, settings: Dict[str, Any]) -> bool:
        return True

    def definition(self) -> Dict[str, Any]:
        """Provider-neutral schema: name, description, parameters."""
        return {"name": self.name, "description": self.description, "parameters": self.parameters}

    @abstractmethod
    def execute(self, parameters: Dict[str, Any], tool_definition: Dict[str, Any]) -> ToolResult:
        """Run the tool. May raise; callers convert exceptions to failures."""


def invoke_tool(tool: Tool, parameters: Dict[str, Any], tool_definition: Dict[str, Any]) -> ToolResult:
    """Invoke a tool, converting any exception into a failed ToolResult."""
    try:
        result = tool.execute(parameters, tool_definition)
    except ToolError as e:
        logger.warning("Tool %s failed: %s", tool.name, e.message)
        return ToolResult(success=False, tool_name=tool.name, error=e.message, data=e.context)
    except Exception as e:
        logger.warning("Tool %s raised %s: %s", tool.name, type(e).__name__, e)
        return ToolResult(success=False, tool_name=tool.name, error=f"{type(e).__name__}: {e}")
    if not isinstance(result, ToolResult):
        return ToolResult(success=False, tool_name=tool.name, error="Tool returned no result")
    return result


class ToolRegistry:
    """Explicit registry of global and chat-only tools, built at startup."""

    def __init__(self) -> None:
        self._global: Dict[str, Tool] = {}
        self._chat: Dict[str, Tool] = {}

    def register_global(self, tool: Tool) -> None:
        self._global[tool.name] = tool

    def register_chat(self, tool: Tool) -> None:
        self._chat[tool.name] = tool

    def global_tools(self) -> List[Tool]:
        return [self._global[name] for name in sorted(self._global)]

    def chat_tools(self) -> List[Tool]:
        return [self._chat[name] for name in sorted(self._chat)]

    def get(self, name: str) -> Optional[Tool]:
        return self._global.get(name) or self._chat.get(name)


@dataclass
class AvailableTool:
    """A discovered tool plus the definition handed to it at call time."""

    tool: Tool
    definition: Dict[str, Any]

    @property
    def name(self) -> str:
        return self.tool.name

    @property
    def is_handler_tool(self) -> bool:
        return self.tool.handler is not None


class ToolDiscovery:
    """Resolves the tools available to one agent invocation.

    Args:
        registry: Global and chat tools.
        handlers: Handler registry, source of handler tools.
        pipelines: Used to read ``enabled_tools`` of the pipeline step.
        settings_for: Tool settings lookup (defaults to runtime config).
        disabled_tools: Global opt-out list lookup (defaults to runtime config).
    """

    def __init__(
        self,
        registry: ToolRegistry,
        handlers: Optional["HandlerRegistry"] = None,
        pipelines: Optional["PipelineManager"] = None,
        settings_for: Callable[[str], Dict[str, Any]] = get_tool_settings,
        disabled_tools: Callable[[], List[str]] = get_disabled_tools,
    ):
        self._registry = registry
        self._handlers = handlers
        self._pipelines = pipelines
        self._settings_for = settings_for
        self._disabled_tools = disabled_tools

    def is_configured(self, tool: Tool) -> bool:
        if not tool.requires_config:
            return True
        return tool.is_configured(self._settings_for(tool.name))

    def is_enabled(self, tool: Tool, agent_type: str, enabled_tools: Optional[Iterable[str]] = None) -> bool:
        """Enablement predicate applied to every discovered tool."""
        if tool.handler is not None:
            return True
        if tool.name in set(self._disabled_tools()):
            return False
        if not self.is_configured(tool):
            return False
        if agent_type == AGENT_PIPELINE and enabled_tools is not None:
            return tool.name in set(enabled_tools)
        return True

    def _enabled_tools_for(self, flow_step_id: Any) -> Optional[List[str]]:
        if flow_step_id is None or self._pipelines is None:
            return None
        resolved = self._pipelines.resolve_flow_step(flow_step_id)
        if resolved is None:
            return None
        enabled = resolved.pipeline_step.config.get("enabled_tools")
        return list(enabled) if enabled is not None else None

    def handler_tools(self, handler_slug: str, handler_config: Optional[Dict[str, Any]] = None) -> List[Tool]:
        if self._handlers is None:
            return []
        handler = self._handlers.find(handler_slug)
        if handler is None:
            return []
        return sorted(handler.tools(handler_config or {}), key=lambda t: t.name)

    def discover(
        self,
        agent_type: str,
        handler_slug: Optional[str] = None,
        handler_config: Optional[Dict[str, Any]] = None,
        flow_step_id: Any = None,
    ) -> List[Tool]:
        """Return enabled tools in a stable order.

        Order: handler tools, global tools, then chat tools (chat agent only),
        each group sorted by name. A later tool with a name already taken is
        dropped.
        """
        enabled_tools = self._enabled_tools_for(flow_step_id) if agent_type == AGENT_PIPELINE else None

        candidates: List[Tool] = []
        if handler_slug:
            candidates.extend(self.handler_tools(handler_slug, handler_config))
        candidates.extend(self._registry.global_tools())
        if agent_type == AGENT_CHAT:
            candidates.extend(self._registry.chat_tools())

        seen = set()
        result: List[Tool] = []
        for tool in candidates:
            if tool.name in seen:
                continue
            if not self.is_enabled(tool, agent_type, enabled_tools):
                continue
            seen.add(tool.name)
            result.append(tool)
        logger.debug(
            "Discovered %d tools for %s agent (handler=%s): %s",
            len(result),
            agent_type,
            handler_slug,
            [t.name for t in result],
        )
        return result
