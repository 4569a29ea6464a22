"""Job types for execution lifecycle tracking."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ._ids import FlowId, FlowStepId, JobId, PipelineId


class JobStatus(str, Enum):
    """Status of one execution attempt of a flow."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_NO_ITEMS = "completed_no_items"  # Nothing to do this run, not a failure
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.COMPLETED_NO_ITEMS, JobStatus.FAILED)


@dataclass
class Job:
    """One execution of a flow from first step to terminal state.

    Attributes:
        job_id: Job identifier.
        flow_id: Flow being executed.
        pipeline_id: Pipeline of the flow at creation time.
        status: Current status.
        trigger: Label of the trigger surface ("manual", "scheduled", ...).
        current_flow_step: Flow step currently executing or queued.
        reason: Failure reason (or ``empty_result`` for completed_no_items).
        message: Human-readable status message.
        context: Diagnostic context persisted on failure.
    """

    job_id: JobId
    flow_id: FlowId
    pipeline_id: PipelineId
    status: JobStatus = JobStatus.PENDING
    trigger: str = "manual"
    current_flow_step: Optional[FlowStepId] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "flow_id": self.flow_id,
            "pipeline_id": self.pipeline_id,
            "status": self.status.value,
            "trigger": self.trigger,
            "current_flow_step": self.current_flow_step.to_dict() if self.current_flow_step else None,
            "reason": self.reason,
            "message": self.message,
            "context": self.context,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }
