"""
base.py - Handler capability interfaces and registry.

Handlers are the adapters at either end of a pipeline:

    FetchHandler.fetch(context)                 -> List[DataPacket] (empty = nothing new)
    PublishHandler.publish(context, content)    -> Dict result
    UpdateHandler.update(context, content)      -> Dict result

Re-run contract: the queue delivers at least once, so any handler may run
twice for the same (job, flow step). Fetch handlers must consult
``context.is_processed`` before emitting an item and ``context.mark_processed``
as soon as they decide to emit it. Publish and update handlers are invoked
once per AI output; handlers that create remote objects should tolerate a
repeat (document how in the handler).

Handlers may expose tools to an adjacent AI step through ``tools()``; the
default implementation wraps ``publish``/``update`` in a HandlerTool.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from flowmachine.ai.tools import Tool, ToolResult
from flowmachine.runtime.dedup import DedupTracker
from flowmachine.runtime.errors import HandlerError, ToolError
from flowmachine.runtime.types import DataPacket, FlowStepId, StepType

logger = logging.getLogger(__name__)


# =============================================================================
# Context and payloads
# =============================================================================


@dataclass
class HandlerContext:
    """Everything a handler needs for one invocation.

    Attributes:
        job_id: Current job.
        flow_step_id: Flow step being executed.
        handler_config: Flow-level handler settings (merged over defaults).
        engine_data: Job-scoped key/value bag. Read-only outside fetch steps.
        pipeline_id: Owning pipeline, recorded on processed items.
    """

    job_id: str
    flow_step_id: FlowStepId
    handler_config: Dict[str, Any] = field(default_factory=dict)
    engine_data: Mapping[str, Any] = field(default_factory=dict)
    pipeline_id: Optional[str] = None
    source_type: str = ""
    dedup: Optional[DedupTracker] = None
    engine_data_writer: Optional[Callable[[Dict[str, Any]], None]] = None

    def is_processed(self, item_id: str) -> bool:
        if self.dedup is None:
            return False
        return self.dedup.is_processed(self.flow_step_id, self.source_type, item_id)

    def mark_processed(self, item_id: str) -> bool:
        if self.dedup is None:
            return True
        return self.dedup.mark_processed(
            self.flow_step_id, self.source_type, item_id, self.job_id, pipeline_id=self.pipeline_id
        )

    def set_engine_data(self, values: Dict[str, Any]) -> None:
        """Write job engine data. Only fetch contexts carry a writer."""
        if self.engine_data_writer is None:
            raise HandlerError(
                "Engine data is read-only for this step",
                context={"flow_step_id": self.flow_step_id.to_dict()},
            )
        self.engine_data_writer(values)
        merged = dict(self.engine_data)
        merged.update(values)
        self.engine_data = MappingProxyType(merged)


@dataclass
class PublishContent:
    """Content handed to publish and update handlers."""

    content: str
    title: Optional[str] = None
    source_url: Optional[str] = None
    image_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Capability interfaces
# =============================================================================


class Handler(ABC):
    """Common base for all handlers."""

    slug: str = ""
    step_type: StepType = StepType.FETCH
    label: str = ""
    settings_defaults: Dict[str, Any] = {}

    def settings(self, handler_config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        merged = dict(self.settings_defaults)
        merged.update(handler_config or {})
        return merged

    def tools(self, handler_config: Dict[str, Any]) -> List[Tool]:
        return []


class FetchHandler(Handler):
    step_type = StepType.FETCH

    @abstractmethod
    def fetch(self, context: HandlerContext) -> List[DataPacket]:
        """Return one packet per new item, or an empty list."""


class PublishHandler(Handler):
    step_type = StepType.PUBLISH
    tool_name: str = ""
    tool_description: str = ""

    @abstractmethod
    def publish(self, context: HandlerContext, content: PublishContent) -> Dict[str, Any]:
        """Publish content. Raise HandlerError on failure."""

    def tools(self, handler_config: Dict[str, Any]) -> List[Tool]:
        if not self.tool_name:
            return []
        return [HandlerTool(self, self.tool_name, self.tool_description)]


class UpdateHandler(Handler):
    step_type = StepType.UPDATE
    tool_name: str = ""
    tool_description: str = ""

    @abstractmethod
    def update(self, context: HandlerContext, content: PublishContent) -> Dict[str, Any]:
        """Update existing content. Raise HandlerError on failure."""

    def tools(self, handler_config: Dict[str, Any]) -> List[Tool]:
        if not self.tool_name:
            return []
        return [HandlerTool(self, self.tool_name, self.tool_description)]


def run_output_handler(handler: Handler, context: HandlerContext, content: PublishContent) -> Dict[str, Any]:
    if isinstance(handler, PublishHandler):
        return handler.publish(context, content)
    if isinstance(handler, UpdateHandler):
        return handler.update(context, content)
    raise HandlerError(f"Handler {handler.slug} cannot publish or update")


# =============================================================================
# Handler tools
# =============================================================================


class HandlerTool(Tool):
    """Exposes a publish/update handler to the model as a tool.

    The tool definition supplied at call time carries ``handler_config``,
    ``job_id``, ``flow_step_id`` (the handler's own flow step) and
    ``engine_data``.
    """

    parameters = {
        "type": "object",
        "properties": {
            "content": {"type": "string", "description": "The final text to publish"},
            "title": {"type": "string", "description": "Optional title"},
        },
        "required": ["content"],
    }

    def __init__(self, handler: Handler, name: str, description: str):
        self._handler = handler
        self.name = name
        self.description = description
        self.handler = handler.slug

    def execute(self, parameters: Dict[str, Any], tool_definition: Dict[str, Any]) -> ToolResult:
        text = (parameters.get("content") or "").strip()
        if not text:
            raise ToolError("Parameter 'content' is required and must not be empty")

        flow_step = tool_definition.get("flow_step_id")
        if not flow_step or not tool_definition.get("job_id"):
            raise ToolError("Handler tool called without engine context")

        engine_data = dict(tool_definition.get("engine_data") or {})
        item = tool_definition.get("item") or {}
        context = HandlerContext(
            job_id=tool_definition["job_id"],
            flow_step_id=flow_step if isinstance(flow_step, FlowStepId) else FlowStepId.from_dict(flow_step),
            handler_config=self._handler.settings(tool_definition.get("handler_config")),
            engine_data=MappingProxyType(engine_data),
            source_type=self._handler.slug,
        )
        content = PublishContent(
            content=text,
            title=parameters.get("title"),
            source_url=parameters.get("source_url") or item.get("source_url") or engine_data.get("source_url"),
            image_url=parameters.get("image_url") or item.get("image_url") or engine_data.get("image_url"),
        )
        try:
            data = run_output_handler(self._handler, context, content)
        except HandlerError as e:
            raise ToolError(e.message, context=e.context) from e
        return ToolResult(success=True, tool_name=self.name, data=data or {})


# =============================================================================
# Registry
# =============================================================================


class HandlerRegistry:
    """Explicit handler registry keyed by (step_type, slug)."""

    def __init__(self) -> None:
        self._handlers: Dict[Tuple[StepType, str], Handler] = {}

    def register(self, handler: Handler) -> None:
        key = (handler.step_type, handler.slug)
        if key in self._handlers:
            logger.warning("Replacing %s handler '%s'", handler.step_type.value, handler.slug)
        self._handlers[key] = handler

    def get(self, step_type: StepType, slug: Optional[str]) -> Optional[Handler]:
        if not slug:
            return None
        return self._handlers.get((StepType(step_type), slug))

    def find(self, slug: str, step_types: Tuple[StepType, ...] = (StepType.PUBLISH, StepType.UPDATE)) -> Optional[Handler]:
        """Look up a tool-capable handler by slug alone."""
        for step_type in step_types:
            handler = self._handlers.get((step_type, slug))
            if handler is not None:
                return handler
        return None

    def slugs(self, step_type: StepType) -> List[str]:
        return sorted(slug for (kind, slug) in self._handlers if kind == step_type)

    def all(self) -> List[Handler]:
        return [self._handlers[k] for k in sorted(self._handlers, key=lambda k: (k[0].value, k[1]))]
