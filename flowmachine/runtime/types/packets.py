"""Data packet types passed between steps."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from ._ids import FlowStepId, JobId
from ._time import _datetime_to_iso, _utcnow

# Packet type tags
PACKET_FETCH = "fetch"
PACKET_AI_RESPONSE = "ai_response"
PACKET_TOOL_RESULT = "tool_result"
PACKET_AI_HANDLER_COMPLETE = "ai_handler_complete"
PACKET_PUBLISH = "publish"
PACKET_UPDATE = "update"


@dataclass
class DataPacket:
    """Structured payload produced by a step.

    Attributes:
        type: Packet type tag (fetch, ai_response, tool_result, ...).
        content: Step-specific content, typically ``title`` and ``body``.
        metadata: Provenance (flow step, handler, ``item_key`` linking
            packets derived from the same source item).
        attachments: Media references.
        timestamp: ISO creation time.
    """

    type: str
    content: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    attachments: List[Dict[str, Any]] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: _datetime_to_iso(_utcnow()))

    @property
    def item_key(self) -> Optional[str]:
        return self.metadata.get("item_key")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "timestamp": self.timestamp,
            "content": self.content,
            "metadata": self.metadata,
            "attachments": self.attachments,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataPacket":
        packet = cls(
            type=data.get("type", "unknown"),
            content=dict(data.get("content") or {}),
            metadata=dict(data.get("metadata") or {}),
            attachments=list(data.get("attachments") or []),
        )
        if data.get("timestamp"):
            packet.timestamp = data["timestamp"]
        return packet


@dataclass
class FileReference:
    """Pointer to packets stored out of line in the file area."""

    job_id: JobId
    flow_step_id: FlowStepId
    file_path: str
    digest: str
    stored_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_data_reference": True,
            "job_id": self.job_id,
            "flow_step_id": self.flow_step_id.to_dict(),
            "file_path": self.file_path,
            "digest": self.digest,
            "stored_at": self.stored_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileReference":
        return cls(
            job_id=data["job_id"],
            flow_step_id=FlowStepId.from_dict(data["flow_step_id"]),
            file_path=data["file_path"],
            digest=data.get("digest", ""),
            stored_at=data.get("stored_at", ""),
        )


PacketPayload = Union[List[DataPacket], FileReference, None]


def packets_to_dicts(packets: List[DataPacket]) -> List[Dict[str, Any]]:
    return [p.to_dict() for p in packets]


def packets_from_dicts(items: List[Dict[str, Any]]) -> List[DataPacket]:
    return [DataPacket.from_dict(item) for item in items]


def prepend_packets(existing: List[DataPacket], new: List[DataPacket]) -> List[DataPacket]:
    """Accumulate packets newest first."""
    return list(new) + list(existing)


def group_by_item(packets: List[DataPacket]) -> List[Tuple[Optional[str], List[DataPacket]]]:
    """Group packets by ``item_key``, oldest item first.

    Packets are stored newest first, so the input is walked in reverse. Each
    group keeps newest-first order. Packets without an item key share the
    ``None`` group.
    """
    order: List[Optional[str]] = []
    groups: Dict[Optional[str], List[DataPacket]] = {}
    for packet in reversed(packets):
        key = packet.item_key
        if key not in groups:
            order.append(key)
            groups[key] = []
        groups[key].insert(0, packet)
    return [(key, groups[key]) for key in order]


@dataclass
class QueueMessage:
    """Continuation handed to the Step Executor by the job queue."""

    job_id: JobId
    flow_step_id: FlowStepId
    data: PacketPayload = None

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.data, FileReference):
            data: Any = self.data.to_dict()
        elif self.data is None:
            data = None
        else:
            data = packets_to_dicts(self.data)
        return {"job_id": self.job_id, "flow_step_id": self.flow_step_id.to_dict(), "data": data}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueMessage":
        raw = data.get("data")
        payload: PacketPayload
        if isinstance(raw, dict) and raw.get("is_data_reference"):
            payload = FileReference.from_dict(raw)
        elif raw is None:
            payload = None
        else:
            payload = packets_from_dicts(raw)
        return cls(
            job_id=data["job_id"],
            flow_step_id=FlowStepId.from_dict(data["flow_step_id"]),
            data=payload,
        )
