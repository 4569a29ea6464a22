"""ID types and generators for the types package.

Provides job and entity ID generation plus the composite flow step key.
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Tuple

# Type aliases
JobId = str
FlowId = str
PipelineId = str
PipelineStepId = str


def _suffix(length: int) -> str:
    return "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(length))


def generate_job_id() -> JobId:
    """Generate a unique job ID.

    Creates IDs in the format: job-YYYYMMDD-HHMMSS-xxxxxx
    where xxxxxx is a random 6-character alphanumeric suffix.

    Example:
        >>> job_id = generate_job_id()
        >>> job_id  # e.g., "job-20251208-143022-abc123"
    """
    now = datetime.now(timezone.utc)
    timestamp = now.strftime("%Y%m%d-%H%M%S")
    return f"job-{timestamp}-{_suffix(6)}"


def generate_id(prefix: str) -> str:
    """Generate an entity ID such as ``pl-3k2j9x0a1b2c``."""
    return f"{prefix}-{_suffix(12)}"


@dataclass(frozen=True)
class FlowStepId:
    """Identity of a pipeline step bound to one flow.

    The pair is stable for the lifetime of the flow, so dedup records and
    queued continuations stay addressable. Both parts are kept separate;
    there is no string form used for lookups.

    Attributes:
        pipeline_step_id: The pipeline step this flow step instantiates.
        flow_id: The owning flow.
    """

    pipeline_step_id: PipelineStepId
    flow_id: FlowId

    def __post_init__(self) -> None:
        if not self.pipeline_step_id or not self.flow_id:
            raise ValueError("FlowStepId requires both pipeline_step_id and flow_id")

    def to_dict(self) -> Dict[str, str]:
        return {"pipeline_step_id": self.pipeline_step_id, "flow_id": self.flow_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlowStepId":
        return cls(pipeline_step_id=data["pipeline_step_id"], flow_id=data["flow_id"])

    def path_parts(self) -> Tuple[str, str]:
        """Directory components used by the packet file area."""
        return (self.flow_id, self.pipeline_step_id)

    def __str__(self) -> str:
        return f"{self.flow_id}/{self.pipeline_step_id}"
