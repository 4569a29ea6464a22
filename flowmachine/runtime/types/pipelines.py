"""Pipeline and flow types.

A pipeline is the reusable template (ordered steps with a step type and
pipeline-level config). A flow is an executable instance binding every
pipeline step to a handler and carrying a scheduling policy.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ._ids import FlowId, FlowStepId, PipelineId, PipelineStepId


class StepType(str, Enum):
    """Kind of work a pipeline step performs."""

    FETCH = "fetch"
    AI = "ai"
    PUBLISH = "publish"
    UPDATE = "update"


@dataclass
class PipelineStep:
    """One position in a pipeline.

    Attributes:
        pipeline_step_id: Stable step identifier.
        pipeline_id: Owning pipeline.
        step_type: fetch, ai, publish or update.
        execution_order: Structural position, 0-based and strictly increasing.
        config: Pipeline-level step settings. AI steps read ``system_prompt``,
            ``user_message`` and ``enabled_tools`` from here.
    """

    pipeline_step_id: PipelineStepId
    pipeline_id: PipelineId
    step_type: StepType
    execution_order: int
    config: Dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.config.get("label") or self.step_type.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline_step_id": self.pipeline_step_id,
            "pipeline_id": self.pipeline_id,
            "step_type": self.step_type.value,
            "execution_order": self.execution_order,
            "config": dict(self.config),
        }


@dataclass
class Pipeline:
    """A reusable ordered template of steps."""

    pipeline_id: PipelineId
    name: str
    steps: List[PipelineStep] = field(default_factory=list)
    created_at: Optional[str] = None

    def ordered_steps(self) -> List[PipelineStep]:
        return sorted(self.steps, key=lambda s: s.execution_order)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "name": self.name,
            "steps": [s.to_dict() for s in self.ordered_steps()],
            "created_at": self.created_at,
        }


@dataclass
class FlowStepConfig:
    """Handler binding for one flow step."""

    handler_slug: Optional[str] = None
    handler_config: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"handler_slug": self.handler_slug, "handler_config": dict(self.handler_config)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlowStepConfig":
        return cls(
            handler_slug=data.get("handler_slug"),
            handler_config=dict(data.get("handler_config") or {}),
        )


@dataclass
class Scheduling:
    """Scheduling policy of a flow.

    Attributes:
        interval: "manual", an interval key (see scheduler.INTERVALS), or
            "one_time" for a single future run.
        next_run_at: Epoch seconds of the next trigger, None when manual.
        last_run_at: Epoch seconds of the last scheduled trigger.
        enabled: False once the flow is deactivated.
    """

    interval: str = "manual"
    next_run_at: Optional[float] = None
    last_run_at: Optional[float] = None
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interval": self.interval,
            "next_run_at": self.next_run_at,
            "last_run_at": self.last_run_at,
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Scheduling":
        data = data or {}
        return cls(
            interval=data.get("interval", "manual"),
            next_run_at=data.get("next_run_at"),
            last_run_at=data.get("last_run_at"),
            enabled=data.get("enabled", True),
        )


@dataclass
class Flow:
    """An executable instance of a pipeline.

    Attributes:
        flow_id: Flow identifier.
        pipeline_id: Template this flow instantiates.
        name: Display name.
        steps: Handler binding per pipeline step id.
        scheduling: Trigger policy.
    """

    flow_id: FlowId
    pipeline_id: PipelineId
    name: str
    steps: Dict[PipelineStepId, FlowStepConfig] = field(default_factory=dict)
    scheduling: Scheduling = field(default_factory=Scheduling)
    created_at: Optional[str] = None

    def flow_step_id(self, pipeline_step_id: PipelineStepId) -> FlowStepId:
        return FlowStepId(pipeline_step_id=pipeline_step_id, flow_id=self.flow_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flow_id": self.flow_id,
            "pipeline_id": self.pipeline_id,
            "name": self.name,
            "steps": {k: v.to_dict() for k, v in self.steps.items()},
            "scheduling": self.scheduling.to_dict(),
            "created_at": self.created_at,
        }


@dataclass
class ResolvedFlowStep:
    """A flow step joined with its pipeline step definition."""

    flow_step_id: FlowStepId
    pipeline_step: PipelineStep
    binding: FlowStepConfig

    @property
    def step_type(self) -> StepType:
        return self.pipeline_step.step_type

    @property
    def handler_slug(self) -> Optional[str]:
        return self.binding.handler_slug

    @property
    def handler_config(self) -> Dict[str, Any]:
        return self.binding.handler_config
