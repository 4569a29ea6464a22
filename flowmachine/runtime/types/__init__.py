"""
types - Core type definitions for the flowmachine runtime.

Usage:
    from flowmachine.runtime.types import (
        FlowStepId, StepType, Pipeline, PipelineStep, Flow, FlowStepConfig,
        Scheduling, ResolvedFlowStep, Job, JobStatus, DataPacket,
        FileReference, QueueMessage, generate_job_id, generate_id,
    )
"""

from __future__ import annotations

from ._ids import (
    FlowId,
    FlowStepId,
    JobId,
    PipelineId,
    PipelineStepId,
    generate_id,
    generate_job_id,
)
from ._time import _datetime_to_iso, _iso_to_datetime, _now_epoch, _utcnow
from .jobs import Job, JobStatus
from .packets import (
    PACKET_AI_HANDLER_COMPLETE,
    PACKET_AI_RESPONSE,
    PACKET_FETCH,
    PACKET_PUBLISH,
    PACKET_TOOL_RESULT,
    PACKET_UPDATE,
    DataPacket,
    FileReference,
    PacketPayload,
    QueueMessage,
    packets_from_dicts,
    packets_to_dicts,
    prepend_packets,
    group_by_item,
)
from .pipelines import (
    Flow,
    FlowStepConfig,
    Pipeline,
    PipelineStep,
    ResolvedFlowStep,
    Scheduling,
    StepType,
)

__all__ = [
    "FlowId",
    "FlowStepId",
    "JobId",
    "PipelineId",
    "PipelineStepId",
    "generate_id",
    "generate_job_id",
    "_datetime_to_iso",
    "_iso_to_datetime",
    "_now_epoch",
    "_utcnow",
    "Job",
    "JobStatus",
    "PACKET_AI_HANDLER_COMPLETE",
    "PACKET_AI_RESPONSE",
    "PACKET_FETCH",
    "PACKET_PUBLISH",
    "PACKET_TOOL_RESULT",
    "PACKET_UPDATE",
    "DataPacket",
    "FileReference",
    "PacketPayload",
    "QueueMessage",
    "packets_from_dicts",
    "packets_to_dicts",
    "prepend_packets",
    "group_by_item",
    "Flow",
    "FlowStepConfig",
    "Pipeline",
    "PipelineStep",
    "ResolvedFlowStep",
    "Scheduling",
    "StepType",
]
