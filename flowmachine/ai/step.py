"""
step.py - AI step execution.

Runs one conversation per source item. Inbound packets are grouped by
``metadata.item_key`` (oldest item first); each group becomes the user
content of its own conversation so that one AI output maps to exactly one
source item. Packets without an item key form a single group.

Per conversation the step emits, newest first:

    ai_response          final assistant text (when there is any)
    tool_result          each non-handler or failed tool invocation
    ai_handler_complete  each successful handler tool invocation

All emitted packets carry the group's ``item_key`` and ``source_type``. A
later publish/update step reads ``ai_handler_complete`` packets to avoid
calling its handler a second time for the same item.

An item that yields neither text nor a completed handler tool contributes
nothing; if no item contributes, the step returns an empty list.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional

from flowmachine.ai.conversation import ConversationLoop, ConversationResult
from flowmachine.ai.directives import DirectiveComposer, DirectiveContext, render_system_messages
from flowmachine.ai.providers import ProviderClient
from flowmachine.ai.tools import AGENT_PIPELINE, AvailableTool, ToolDiscovery
from flowmachine.config.runtime_config import DEFAULT_MAX_TURNS
from flowmachine.handlers.base import HandlerRegistry
from flowmachine.runtime.pipelines import PipelineManager
from flowmachine.runtime.types import (
    PACKET_AI_HANDLER_COMPLETE,
    PACKET_AI_RESPONSE,
    PACKET_TOOL_RESULT,
    DataPacket,
    ResolvedFlowStep,
    StepType,
    group_by_item,
    packets_to_dicts,
    prepend_packets,
)

logger = logging.getLogger(__name__)

OUTPUT_STEP_TYPES = (StepType.PUBLISH, StepType.UPDATE)
TITLE_MAX_CHARS = 100


def response_title(text: str, fallback: str) -> str:
    first_line = text.strip().split("\n", 1)[0]
    return first_line if first_line and len(first_line) <= TITLE_MAX_CHARS else fallback


class AIStep:
    """Executes AI-type flow steps through the tool loop.

    Args:
        provider: Model client.
        discovery: Tool discovery for the pipeline agent.
        composer: System prompt composer.
        pipelines: Flow navigation (adjacent steps, workflow view).
        handlers: Handler labels for the workflow view.
        max_turns: Conversation bound.
    """

    def __init__(
        self,
        provider: ProviderClient,
        discovery: ToolDiscovery,
        composer: DirectiveComposer,
        pipelines: PipelineManager,
        handlers: HandlerRegistry,
        max_turns: int = DEFAULT_MAX_TURNS,
    ):
        self._discovery = discovery
        self._composer = composer
        self._pipelines = pipelines
        self._handlers = handlers
        self.loop = ConversationLoop(provider, max_turns=max_turns)

    # =========================================================================
    # Tools and prompt
    # =========================================================================

    def _adjacent_output_steps(self, resolved: ResolvedFlowStep) -> List[ResolvedFlowStep]:
        adjacent = [
            self._pipelines.previous_flow_step(resolved.flow_step_id),
            self._pipelines.next_flow_step(resolved.flow_step_id),
        ]
        return [s for s in adjacent if s is not None and s.step_type in OUTPUT_STEP_TYPES and s.handler_slug]

    def available_tools(
        self,
        job_id: str,
        resolved: ResolvedFlowStep,
        engine_data: Mapping[str, Any],
    ) -> List[AvailableTool]:
        """Handler tools of adjacent publish/update steps plus enabled global tools."""
        base_definition = {"job_id": job_id, "engine_data": dict(engine_data)}
        result: List[AvailableTool] = []
        seen = set()

        sources: List[Optional[ResolvedFlowStep]] = list(self._adjacent_output_steps(resolved)) or [None]
        for adjacent in sources:
            tools = self._discovery.discover(
                AGENT_PIPELINE,
                handler_slug=adjacent.handler_slug if adjacent else None,
                handler_config=adjacent.handler_config if adjacent else None,
                flow_step_id=resolved.flow_step_id,
            )
            for tool in tools:
                if tool.name in seen:
                    continue
                seen.add(tool.name)
                definition = dict(tool.definition())
                definition.update(base_definition)
                if tool.handler is not None and adjacent is not None:
                    definition["handler_config"] = dict(adjacent.handler_config)
                    definition["flow_step_id"] = adjacent.flow_step_id
                else:
                    definition["flow_step_id"] = resolved.flow_step_id
                result.append(AvailableTool(tool=tool, definition=definition))
        return result

    def system_messages(self, resolved: ResolvedFlowStep, tools: List[AvailableTool]) -> List[Dict[str, Any]]:
        context = DirectiveContext(
            agent_type=AGENT_PIPELINE,
            pipeline_step=resolved.pipeline_step,
            flow_steps=self._pipelines.flow_steps(resolved.flow_step_id.flow_id),
            tools=[t.tool for t in tools],
            handler_labels={h.slug: h.label or h.slug for h in self._handlers.all()},
        )
        return render_system_messages(self._composer.compose(context))

    @staticmethod
    def user_messages(resolved: ResolvedFlowStep, packets: List[DataPacket]) -> List[Dict[str, Any]]:
        user_message = (
            resolved.handler_config.get("user_message") or resolved.pipeline_step.config.get("user_message") or ""
        ).strip()
        messages: List[Dict[str, Any]] = []
        if user_message:
            messages.append({"role": "user", "content": "ORIGINAL REQUEST (for context): " + user_message})
        if packets:
            messages.append(
                {
                    "role": "user",
                    "content": json.dumps(
                        {"data_packets": packets_to_dicts(packets)}, indent=2, ensure_ascii=False, default=str
                    ),
                }
            )
        return messages

    # =========================================================================
    # Execution
    # =========================================================================

    def execute(
        self,
        job_id: str,
        resolved: ResolvedFlowStep,
        packets: List[DataPacket],
        engine_data: Mapping[str, Any],
    ) -> List[DataPacket]:
        """Run the step. Returns inbound plus new packets, or [] when nothing was produced.

        Raises:
            ProviderError: The model could not be reached; the job fails.
        """
        tools = self.available_tools(job_id, resolved, engine_data)
        system = self.system_messages(resolved, tools)

        groups = group_by_item(packets) or [(None, [])]
        produced: List[DataPacket] = []
        for item_key, group in groups:
            user = self.user_messages(resolved, group)
            if not user:
                continue
            item_tools = [
                AvailableTool(tool=t.tool, definition=dict(t.definition, item=self._item_context(group)))
                for t in tools
            ]
            conversation = self.loop.run(system + user, item_tools)
            logger.info(
                "AI step %s item %s: turns=%d finished=%s truncated=%s handler_completed=%s",
                resolved.flow_step_id,
                item_key,
                conversation.turns,
                conversation.finished,
                conversation.truncated,
                conversation.handler_completed,
            )
            source_type = group[-1].metadata.get("source_type", "unknown") if group else "unknown"
            produced = prepend_packets(produced, self._to_packets(resolved, conversation, item_key, source_type))

        if not any(p.type in (PACKET_AI_RESPONSE, PACKET_AI_HANDLER_COMPLETE) for p in produced):
            logger.info("AI step %s produced no output", resolved.flow_step_id)
            return []
        return prepend_packets(packets, produced)

    @staticmethod
    def _item_context(group: List[DataPacket]) -> Dict[str, Any]:
        """Source URL and image of the item, taken from its oldest packet."""
        if not group:
            return {}
        metadata = group[-1].metadata
        return {
            "source_url": metadata.get("source_url"),
            "image_url": metadata.get("image_url"),
            "item_key": metadata.get("item_key"),
        }

    def _to_packets(
        self,
        resolved: ResolvedFlowStep,
        conversation: ConversationResult,
        item_key: Optional[str],
        source_type: str,
    ) -> List[DataPacket]:
        base = {
            "source_type": source_type,
            "item_key": item_key,
            "flow_step_id": resolved.flow_step_id.to_dict(),
            "ai_provider": getattr(self.loop.provider, "name", "unknown"),
        }
        packets: List[DataPacket] = []

        for invocation in conversation.tool_results:
            if invocation.duplicate:
                continue
            metadata = dict(base)
            metadata.update(
                {
                    "tool_name": invocation.call.name,
                    "tool_parameters": invocation.call.arguments,
                    "tool_success": invocation.result.success,
                    "tool_result": invocation.result.data,
                    "conversation_turn": invocation.turn,
                }
            )
            if invocation.is_handler_tool and invocation.result.success:
                metadata["handler_tool"] = invocation.handler
                packet = DataPacket(
                    type=PACKET_AI_HANDLER_COMPLETE,
                    content={
                        "title": f"Handler Tool Executed: {invocation.call.name}",
                        "body": f"Tool executed by AI agent in {invocation.turn} conversation turns",
                    },
                    metadata=metadata,
                )
            else:
                if invocation.is_handler_tool:
                    metadata["handler_tool"] = invocation.handler
                if invocation.result.error:
                    metadata["tool_error"] = invocation.result.error
                title = invocation.call.name.replace("_", " ").title() + " Result"
                body = (
                    f"{invocation.call.name} completed"
                    if invocation.result.success
                    else f"{invocation.call.name} failed: {invocation.result.error}"
                )
                packet = DataPacket(type=PACKET_TOOL_RESULT, content={"title": title, "body": body}, metadata=metadata)
            packets.insert(0, packet)

        text = conversation.final_text.strip()
        if text:
            metadata = dict(base)
            metadata.update(
                {
                    "conversation_turns": conversation.turns,
                    "finished": conversation.finished,
                    "truncated": conversation.truncated,
                    "handler_completed": conversation.handler_completed,
                }
            )
            packets.insert(
                0,
                DataPacket(
                    type=PACKET_AI_RESPONSE,
                    content={"title": response_title(text, "AI Response"), "body": text},
                    metadata=metadata,
                ),
            )
        return packets
