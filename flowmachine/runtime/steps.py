"""
steps.py - Handler-backed step implementations (fetch, publish, update).

Fetch:
    Runs the bound FetchHandler with a context that can consult and record
    processed items and write job engine data. New packets are prepended to
    the inbound packets; no new packets means an empty result.

Publish / update:
    One handler call per source item (``item_key`` group, oldest first). The
    content is the item's newest ``ai_response`` packet, falling back to its
    fetch packet when the flow has no AI step. When the AI step already ran
    this handler as a tool for the item (a successful ``ai_handler_complete``
    packet naming the handler), the handler is not called again and the
    recorded tool result is reused.
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from flowmachine.handlers.base import (
    FetchHandler,
    Handler,
    HandlerContext,
    HandlerRegistry,
    PublishContent,
    run_output_handler,
)
from flowmachine.runtime.dedup import DedupTracker
from flowmachine.runtime.errors import ConfigurationError
from flowmachine.runtime.jobs import JobLifecycleManager
from flowmachine.runtime.types import (
    PACKET_AI_HANDLER_COMPLETE,
    PACKET_AI_RESPONSE,
    PACKET_FETCH,
    PACKET_PUBLISH,
    PACKET_TOOL_RESULT,
    PACKET_UPDATE,
    DataPacket,
    ResolvedFlowStep,
    StepType,
    group_by_item,
    prepend_packets,
)

logger = logging.getLogger(__name__)


def resolve_handler(handlers: HandlerRegistry, resolved: ResolvedFlowStep) -> Handler:
    """Look up the handler bound to a flow step.

    Raises:
        ConfigurationError: No handler bound, or the slug is not registered.
    """
    slug = resolved.handler_slug
    if not slug:
        raise ConfigurationError(
            f"No handler configured for {resolved.step_type.value} step",
            context={"flow_step_id": resolved.flow_step_id.to_dict()},
        )
    handler = handlers.get(resolved.step_type, slug)
    if handler is None:
        raise ConfigurationError(
            f"Unknown {resolved.step_type.value} handler '{slug}'",
            context={"flow_step_id": resolved.flow_step_id.to_dict(), "handler_slug": slug},
        )
    return handler


class FetchStep:
    def __init__(self, handlers: HandlerRegistry, dedup: DedupTracker, jobs: JobLifecycleManager):
        self._handlers = handlers
        self._dedup = dedup
        self._jobs = jobs

    def execute(
        self,
        job_id: str,
        pipeline_id: str,
        resolved: ResolvedFlowStep,
        packets: List[DataPacket],
        engine_data: Mapping[str, Any],
    ) -> List[DataPacket]:
        handler = resolve_handler(self._handlers, resolved)
        if not isinstance(handler, FetchHandler):
            raise ConfigurationError(f"Handler '{handler.slug}' is not a fetch handler")

        context = HandlerContext(
            job_id=job_id,
            flow_step_id=resolved.flow_step_id,
            handler_config=handler.settings(resolved.handler_config),
            engine_data=MappingProxyType(dict(engine_data)),
            pipeline_id=pipeline_id,
            source_type=handler.slug,
            dedup=self._dedup,
            engine_data_writer=lambda values: self._jobs.store_engine_data(job_id, values),
        )
        fetched = handler.fetch(context) or []
        if not fetched:
            return []
        return prepend_packets(packets, fetched)


class OutputStep:
    """Publish or update step, depending on the bound handler's step type."""

    def __init__(self, handlers: HandlerRegistry):
        self._handlers = handlers

    @staticmethod
    def _packet_type(step_type: StepType) -> str:
        return PACKET_UPDATE if step_type == StepType.UPDATE else PACKET_PUBLISH

    @staticmethod
    def _completed_by_tool(group: List[DataPacket], handler_slug: str) -> Optional[DataPacket]:
        for packet in group:
            if (
                packet.type == PACKET_AI_HANDLER_COMPLETE
                and packet.metadata.get("handler_tool") == handler_slug
                and packet.metadata.get("tool_success", True)
            ):
                return packet
        return None

    @staticmethod
    def _content_source(group: List[DataPacket]) -> Optional[DataPacket]:
        # Items that went through an AI step publish AI text only.
        ai_seen = any(p.type in (PACKET_AI_RESPONSE, PACKET_TOOL_RESULT) for p in group)
        for packet_type in (PACKET_AI_RESPONSE,) if ai_seen else (PACKET_AI_RESPONSE, PACKET_FETCH):
            for packet in group:
                if packet.type == packet_type and (packet.content.get("body") or packet.content.get("title")):
                    return packet
        return None

    def execute(
        self,
        job_id: str,
        resolved: ResolvedFlowStep,
        packets: List[DataPacket],
        engine_data: Mapping[str, Any],
    ) -> List[DataPacket]:
        handler = resolve_handler(self._handlers, resolved)
        packet_type = self._packet_type(resolved.step_type)
        produced: List[DataPacket] = []

        for item_key, group in group_by_item(packets):
            base_metadata: Dict[str, Any] = {
                "item_key": item_key,
                "handler": handler.slug,
                "flow_step_id": resolved.flow_step_id.to_dict(),
                "source_type": group[-1].metadata.get("source_type", "unknown"),
            }

            completed = self._completed_by_tool(group, handler.slug)
            if completed is not None:
                logger.info("Item %s already handled by AI tool %s", item_key, completed.metadata.get("tool_name"))
                metadata = dict(base_metadata, via="ai_tool")
                produced.insert(
                    0,
                    DataPacket(
                        type=packet_type,
                        content={"title": completed.content.get("title", ""), "body": ""},
                        metadata=dict(metadata, result=completed.metadata.get("tool_result") or {}),
                    ),
                )
                continue

            source = self._content_source(group)
            if source is None:
                logger.debug("Item %s has no content to %s", item_key, resolved.step_type.value)
                continue

            oldest = group[-1].metadata
            context = HandlerContext(
                job_id=job_id,
                flow_step_id=resolved.flow_step_id,
                handler_config=handler.settings(resolved.handler_config),
                engine_data=MappingProxyType(dict(engine_data)),
                pipeline_id=resolved.pipeline_step.pipeline_id,
                source_type=handler.slug,
            )
            content = PublishContent(
                content=source.content.get("body") or source.content.get("title") or "",
                title=source.content.get("title"),
                source_url=oldest.get("source_url") or engine_data.get("source_url"),
                image_url=oldest.get("image_url") or engine_data.get("image_url"),
                metadata={"item_key": item_key},
            )
            result = run_output_handler(handler, context, content)
            produced.insert(
                0,
                DataPacket(
                    type=packet_type,
                    content={"title": content.title or "", "body": content.content},
                    metadata=dict(base_metadata, via="handler", result=result or {}),
                ),
            )

        if not produced:
            return []
        logger.info("%s step %s handled %d items", resolved.step_type.value, resolved.flow_step_id, len(produced))
        return prepend_packets(packets, produced)
