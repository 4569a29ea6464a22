"""
pipelines.py - Structural editing of pipelines and flows.

Pipelines own the step order; flows own handler bindings. Structural edits
on a pipeline cascade into every flow that instantiates it:

- add_step appends with execution_order = len(steps) and binds an empty
  handler slot in every flow.
- remove_step re-indexes the remaining steps to 0..n-1 (order preserved),
  drops the slot from every flow and clears its processed items.

Step navigation (first/next/previous) is always by structural position,
never by identifier.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from flowmachine.runtime.db import Store
from flowmachine.runtime.errors import ConfigurationError, FailureReason
from flowmachine.runtime.types import (
    Flow,
    FlowStepConfig,
    FlowStepId,
    Pipeline,
    PipelineStep,
    ResolvedFlowStep,
    Scheduling,
    StepType,
    generate_id,
)

if TYPE_CHECKING:
    from flowmachine.handlers.base import HandlerRegistry

logger = logging.getLogger(__name__)


class PipelineManager:
    """CRUD and navigation over pipelines, steps and flows."""

    def __init__(self, store: Store, handlers: Optional["HandlerRegistry"] = None):
        self._store = store
        self._handlers = handlers

    # =========================================================================
    # Pipelines
    # =========================================================================

    def create_pipeline(self, name: str, steps: Optional[List[Dict[str, Any]]] = None) -> Pipeline:
        """Create a pipeline, optionally with initial steps.

        Args:
            name: Display name.
            steps: Sequence of ``{"step_type": ..., "config": {...}}``.
        """
        for spec in steps or []:
            if spec.get("step_type") not in {t.value for t in StepType}:
                raise ConfigurationError(f"Unknown step type: {spec.get('step_type')}", context={"name": name})
        pipeline_id = generate_id("pl")
        self._store.insert_pipeline(pipeline_id, name)
        for spec in steps or []:
            self.add_step(pipeline_id, spec["step_type"], spec.get("config"))
        logger.info("Created pipeline %s (%s)", pipeline_id, name)
        return self.require_pipeline(pipeline_id)

    def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        return self._store.get_pipeline(pipeline_id)

    def require_pipeline(self, pipeline_id: str) -> Pipeline:
        pipeline = self._store.get_pipeline(pipeline_id)
        if pipeline is None:
            raise ConfigurationError(
                f"Pipeline {pipeline_id} not found",
                reason=FailureReason.INVALID_FLOW,
                context={"pipeline_id": pipeline_id},
            )
        return pipeline

    def list_pipelines(self) -> List[Pipeline]:
        return self._store.list_pipelines()

    def delete_pipeline(self, pipeline_id: str) -> bool:
        """Delete a pipeline with its flows and processed items. Jobs remain as history."""
        for flow in self._store.list_flows(pipeline_id=pipeline_id):
            self._store.delete_flow(flow.flow_id)
        self._store.delete_processed_items(pipeline_id=pipeline_id)
        deleted = self._store.delete_pipeline(pipeline_id)
        if deleted:
            logger.info("Deleted pipeline %s", pipeline_id)
        return deleted

    # =========================================================================
    # Pipeline steps
    # =========================================================================

    def add_step(
        self,
        pipeline_id: str,
        step_type: Any,
        config: Optional[Dict[str, Any]] = None,
    ) -> PipelineStep:
        """Append a step and bind an empty slot for it in every flow."""
        pipeline = self.require_pipeline(pipeline_id)
        try:
            step_type = StepType(step_type)
        except ValueError as e:
            raise ConfigurationError(
                f"Unknown step type: {step_type}", context={"pipeline_id": pipeline_id}
            ) from e

        step = PipelineStep(
            pipeline_step_id=generate_id("ps"),
            pipeline_id=pipeline_id,
            step_type=step_type,
            execution_order=len(pipeline.steps),
            config=dict(config or {}),
        )
        self._store.insert_pipeline_step(step)

        for flow in self._store.list_flows(pipeline_id=pipeline_id):
            flow.steps[step.pipeline_step_id] = FlowStepConfig()
            self._store.save_flow(flow)

        logger.info(
            "Added %s step %s to pipeline %s at position %d",
            step_type.value,
            step.pipeline_step_id,
            pipeline_id,
            step.execution_order,
        )
        return step

    def remove_step(self, pipeline_id: str, pipeline_step_id: str) -> bool:
        """Remove a step, re-index the rest and drop it from every flow."""
        pipeline = self.require_pipeline(pipeline_id)
        if not any(s.pipeline_step_id == pipeline_step_id for s in pipeline.steps):
            return False

        self._store.delete_pipeline_step(pipeline_step_id)
        remaining = [s for s in pipeline.ordered_steps() if s.pipeline_step_id != pipeline_step_id]
        for index, step in enumerate(remaining):
            if step.execution_order != index:
                self._store.update_pipeline_step(step.pipeline_step_id, index, step.config)

        for flow in self._store.list_flows(pipeline_id=pipeline_id):
            if flow.steps.pop(pipeline_step_id, None) is not None:
                self._store.save_flow(flow)
        self._store.delete_processed_items(pipeline_step_id=pipeline_step_id)

        logger.info("Removed step %s from pipeline %s", pipeline_step_id, pipeline_id)
        return True

    def update_step_config(self, pipeline_step_id: str, config: Dict[str, Any]) -> PipelineStep:
        """Merge ``config`` into a pipeline step's configuration."""
        step = self._store.get_pipeline_step(pipeline_step_id)
        if step is None:
            raise ConfigurationError(
                f"Pipeline step {pipeline_step_id} not found",
                context={"pipeline_step_id": pipeline_step_id},
            )
        step.config.update(config)
        self._store.update_pipeline_step(pipeline_step_id, step.execution_order, step.config)
        return step

    # =========================================================================
    # Flows
    # =========================================================================

    def create_flow(
        self,
        pipeline_id: str,
        name: str,
        scheduling: Optional[Scheduling] = None,
    ) -> Flow:
        """Create a flow binding an empty handler slot for every pipeline step."""
        pipeline = self.require_pipeline(pipeline_id)
        flow = Flow(
            flow_id=generate_id("fl"),
            pipeline_id=pipeline_id,
            name=name,
            steps={s.pipeline_step_id: FlowStepConfig() for s in pipeline.steps},
            scheduling=scheduling or Scheduling(),
        )
        self._store.save_flow(flow)
        logger.info("Created flow %s (%s) for pipeline %s", flow.flow_id, name, pipeline_id)
        return self._store.get_flow(flow.flow_id)

    def get_flow(self, flow_id: str) -> Optional[Flow]:
        return self._store.get_flow(flow_id)

    def require_flow(self, flow_id: str) -> Flow:
        flow = self._store.get_flow(flow_id)
        if flow is None:
            raise ConfigurationError(
                f"Flow {flow_id} not found",
                reason=FailureReason.INVALID_FLOW,
                context={"flow_id": flow_id},
            )
        return flow

    def list_flows(self, pipeline_id: Optional[str] = None) -> List[Flow]:
        return self._store.list_flows(pipeline_id=pipeline_id)

    def delete_flow(self, flow_id: str) -> bool:
        self._store.delete_processed_items(flow_id=flow_id)
        deleted = self._store.delete_flow(flow_id)
        if deleted:
            logger.info("Deleted flow %s", flow_id)
        return deleted

    def set_flow_step_handler(
        self,
        flow_step_id: FlowStepId,
        handler_slug: str,
        handler_config: Optional[Dict[str, Any]] = None,
    ) -> Flow:
        """Bind a handler to one flow step.

        Raises:
            ConfigurationError: Unknown flow, step, or handler slug for the
                step's type.
        """
        flow = self.require_flow(flow_step_id.flow_id)
        step = self._store.get_pipeline_step(flow_step_id.pipeline_step_id)
        if step is None or step.pipeline_id != flow.pipeline_id:
            raise ConfigurationError(
                f"Step {flow_step_id.pipeline_step_id} does not belong to flow {flow.flow_id}",
                context={"flow_step_id": flow_step_id.to_dict()},
            )
        if self._handlers is not None and step.step_type != StepType.AI:
            if self._handlers.get(step.step_type, handler_slug) is None:
                raise ConfigurationError(
                    f"No {step.step_type.value} handler named '{handler_slug}'",
                    context={"available": self._handlers.slugs(step.step_type)},
                )
        flow.steps[step.pipeline_step_id] = FlowStepConfig(
            handler_slug=handler_slug, handler_config=dict(handler_config or {})
        )
        self._store.save_flow(flow)
        return flow

    # =========================================================================
    # Navigation
    # =========================================================================

    def _ordered_flow_steps(self, flow: Flow) -> List[ResolvedFlowStep]:
        steps = self._store.list_pipeline_steps(flow.pipeline_id)
        return [
            ResolvedFlowStep(
                flow_step_id=flow.flow_step_id(step.pipeline_step_id),
                pipeline_step=step,
                binding=flow.steps.get(step.pipeline_step_id, FlowStepConfig()),
            )
            for step in steps
        ]

    def flow_steps(self, flow_id: str) -> List[ResolvedFlowStep]:
        """All flow steps of a flow in execution order."""
        flow = self._store.get_flow(flow_id)
        return self._ordered_flow_steps(flow) if flow else []

    def resolve_flow_step(self, flow_step_id: FlowStepId) -> Optional[ResolvedFlowStep]:
        for resolved in self.flow_steps(flow_step_id.flow_id):
            if resolved.flow_step_id == flow_step_id:
                return resolved
        return None

    def first_flow_step(self, flow_id: str) -> Optional[ResolvedFlowStep]:
        steps = self.flow_steps(flow_id)
        return steps[0] if steps else None

    def next_flow_step(self, flow_step_id: FlowStepId) -> Optional[ResolvedFlowStep]:
        steps = self.flow_steps(flow_step_id.flow_id)
        for index, resolved in enumerate(steps):
            if resolved.flow_step_id == flow_step_id:
                return steps[index + 1] if index + 1 < len(steps) else None
        return None

    def previous_flow_step(self, flow_step_id: FlowStepId) -> Optional[ResolvedFlowStep]:
        steps = self.flow_steps(flow_step_id.flow_id)
        for index, resolved in enumerate(steps):
            if resolved.flow_step_id == flow_step_id:
                return steps[index - 1] if index > 0 else None
        return None
