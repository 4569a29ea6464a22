"""
directives.py - Layered system prompt composition.

The system prompt of an AI step is assembled from independent directive
sources, each producing at most one fragment:

    10  core agent identity
    20  global system prompt (runtime config)
    30  pipeline system prompt, with workflow visualization
    40  tool definitions and tool-usage rules
    50  site / environment context

Fragments render in ascending priority; equal priorities keep registration
order. Tool rules (40) always come after every prompt configured by users
(20, 30), so prompt text cannot override tool syntax. Sources only see the
DirectiveContext and return frozen fragments; they never see or modify each
other's output.

Usage:
    composer = default_directive_composer(global_prompt=lambda: "Be concise.")
    fragments = composer.compose(DirectiveContext(agent_type="pipeline", ...))
    messages = render_system_messages(fragments)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from flowmachine.ai.tools import AGENT_CHAT, Tool
from flowmachine.config.runtime_config import get_setting
from flowmachine.runtime.types import PipelineStep, ResolvedFlowStep, StepType

logger = logging.getLogger(__name__)

PRIORITY_CORE = 10
PRIORITY_GLOBAL_PROMPT = 20
PRIORITY_PIPELINE_PROMPT = 30
PRIORITY_TOOL_DEFINITIONS = 40
PRIORITY_SITE_CONTEXT = 50


@dataclass(frozen=True)
class DirectiveFragment:
    priority: int
    source: str
    content: str


@dataclass
class DirectiveContext:
    """Inputs available to directive sources.

    Attributes:
        agent_type: "pipeline" or "chat".
        pipeline_step: The AI pipeline step being executed (pipeline agents).
        flow_steps: All flow steps of the flow in execution order.
        tools: Tools offered in this conversation.
        handler_labels: Display label per handler slug.
    """

    agent_type: str
    pipeline_step: Optional[PipelineStep] = None
    flow_steps: Sequence[ResolvedFlowStep] = ()
    tools: Sequence[Tool] = ()
    handler_labels: Mapping[str, str] = field(default_factory=dict)


class DirectiveSource(ABC):
    """Produces one system prompt fragment, or None to contribute nothing."""

    name: str = ""
    priority: int = 100

    @abstractmethod
    def produce(self, context: DirectiveContext) -> Optional[str]:
        ...


class DirectiveComposer:
    """Collects fragments from registered sources in priority order."""

    def __init__(self, sources: Optional[Sequence[DirectiveSource]] = None):
        self._sources: List[DirectiveSource] = []
        for source in sources or []:
            self.register(source)

    def register(self, source: DirectiveSource) -> None:
        self._sources.append(source)

    @property
    def sources(self) -> List[DirectiveSource]:
        return list(self._sources)

    def compose(self, context: DirectiveContext) -> List[DirectiveFragment]:
        ordered = sorted(enumerate(self._sources), key=lambda pair: (pair[1].priority, pair[0]))
        fragments: List[DirectiveFragment] = []
        for _, source in ordered:
            content = source.produce(context)
            if content and content.strip():
                fragments.append(DirectiveFragment(source.priority, source.name, content.strip()))
        logger.debug("Composed directives: %s", [f.source for f in fragments])
        return fragments


def render_system_messages(fragments: Sequence[DirectiveFragment]) -> List[Dict[str, Any]]:
    return [{"role": "system", "content": f.content} for f in fragments]


# =============================================================================
# Built-in sources
# =============================================================================


CORE_IDENTITY = (
    "You are an AI content processing agent inside an automated pipeline. "
    "Each request carries data packets produced by earlier pipeline steps. "
    "Transform that content to meet the pipeline goals and use the available "
    "tools to complete the objective. Respond with the final content only."
)

CHAT_IDENTITY = (
    "You are the assistant of a content pipeline engine. You can inspect and "
    "run flows using the available tools. Answer concisely."
)


class CoreIdentityDirective(DirectiveSource):
    name = "core"
    priority = PRIORITY_CORE

    def produce(self, context: DirectiveContext) -> Optional[str]:
        return CHAT_IDENTITY if context.agent_type == AGENT_CHAT else CORE_IDENTITY


class GlobalPromptDirective(DirectiveSource):
    name = "global_prompt"
    priority = PRIORITY_GLOBAL_PROMPT

    def __init__(self, prompt: Callable[[], str] = lambda: get_setting("directives.global_system_prompt", "")):
        self._prompt = prompt

    def produce(self, context: DirectiveContext) -> Optional[str]:
        return (self._prompt() or "").strip() or None


def workflow_visualization(
    flow_steps: Sequence[ResolvedFlowStep],
    current_pipeline_step_id: Optional[str],
    handler_labels: Mapping[str, str],
) -> str:
    """Render the flow as ``RSS FETCH → AI (YOU ARE HERE) → TWITTER PUBLISH``."""
    parts: List[str] = []
    for resolved in flow_steps:
        step_type = resolved.step_type.value.upper()
        if resolved.step_type == StepType.AI:
            here = resolved.pipeline_step.pipeline_step_id == current_pipeline_step_id
            parts.append("AI (YOU ARE HERE)" if here else "AI")
        elif resolved.handler_slug:
            label = handler_labels.get(resolved.handler_slug, resolved.handler_slug)
            parts.append(f"{label.upper()} {step_type}")
        else:
            parts.append(step_type)
    return " → ".join(parts)


class PipelinePromptDirective(DirectiveSource):
    name = "pipeline_prompt"
    priority = PRIORITY_PIPELINE_PROMPT

    def produce(self, context: DirectiveContext) -> Optional[str]:
        if context.pipeline_step is None:
            return None
        system_prompt = (context.pipeline_step.config.get("system_prompt") or "").strip()
        if not system_prompt:
            return None
        content = ""
        visualization = workflow_visualization(
            context.flow_steps, context.pipeline_step.pipeline_step_id, context.handler_labels
        )
        if visualization:
            content += f"WORKFLOW: {visualization}\n\n"
        return content + "PIPELINE GOALS:\n" + system_prompt


class ToolDefinitionsDirective(DirectiveSource):
    name = "tool_definitions"
    priority = PRIORITY_TOOL_DEFINITIONS

    def produce(self, context: DirectiveContext) -> Optional[str]:
        if not context.tools:
            return None
        handler_tools = [t for t in context.tools if t.handler]
        other_tools = [t for t in context.tools if not t.handler]
        lines = ["AVAILABLE TOOLS:"]
        for tool in list(handler_tools) + list(other_tools):
            lines.append(f"- {tool.name}: {tool.description}")
        lines.append("")
        lines.append("TOOL USAGE RULES:")
        if handler_tools:
            names = ", ".join(t.name for t in handler_tools)
            lines.append(f"- Your primary tool for this task: {names}. Calling it completes the step.")
        lines.append("- Call tools only through the native tool-calling interface, never as text.")
        lines.append("- Never repeat a tool call with identical parameters; use the earlier result.")
        lines.append("- If a tool reports an error, correct the parameters or continue without it.")
        return "\n".join(lines)


class SiteContextDirective(DirectiveSource):
    name = "site_context"
    priority = PRIORITY_SITE_CONTEXT

    def __init__(
        self,
        enabled: Callable[[], bool] = lambda: bool(get_setting("directives.site_context_enabled", True)),
        values: Callable[[], Mapping[str, Any]] = lambda: get_setting("directives.site_context", {}) or {},
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._enabled = enabled
        self._values = values
        self._clock = clock

    def produce(self, context: DirectiveContext) -> Optional[str]:
        if not self._enabled():
            return None
        lines = ["SITE CONTEXT:"]
        for key in sorted(self._values()):
            lines.append(f"- {key}: {self._values()[key]}")
        lines.append(f"- current_date: {self._clock().strftime('%Y-%m-%d')}")
        return "\n".join(lines)


def default_directive_composer(
    global_prompt: Optional[Callable[[], str]] = None,
    site_context: Optional[SiteContextDirective] = None,
) -> DirectiveComposer:
    return DirectiveComposer(
        [
            CoreIdentityDirective(),
            GlobalPromptDirective(global_prompt) if global_prompt else GlobalPromptDirective(),
            PipelinePromptDirective(),
            ToolDefinitionsDirective(),
            site_context or SiteContextDirective(),
        ]
    )
