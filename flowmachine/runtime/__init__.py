# flowmachine/runtime package
# Pipeline execution core: store, packet channel, dedup, queue, job
# lifecycle, step executor and scheduler.
#
# Core components:
#   - types: value types (FlowStepId, Pipeline, Flow, Job, DataPacket, ...)
#   - db: DuckDB persistent store
#   - executor: Step Executor driving jobs one step at a time
#   - registry: explicit service container (build_container)
#
# Usage:
#     from flowmachine.runtime import build_container
#     container = build_container()
#     job_id = container.jobs.create_and_schedule(flow_id, "manual")
#     container.run_pending()

from typing import TYPE_CHECKING

from .types import (
    DataPacket,
    Flow,
    FlowStepId,
    Job,
    JobStatus,
    Pipeline,
    QueueMessage,
    StepType,
)

# Resolved lazily at runtime: the container imports the AI and handler
# packages, which import this package.
if TYPE_CHECKING:
    from .registry import Container as Container
    from .registry import build_container as build_container

__all__ = [
    "DataPacket",
    "Flow",
    "FlowStepId",
    "Job",
    "JobStatus",
    "Pipeline",
    "QueueMessage",
    "StepType",
    "Container",
    "build_container",
]


def __getattr__(name: str):
    """Lazy import for the container to avoid circular dependencies."""
    if name == "Container":
        from .registry import Container

        return Container
    if name == "build_container":
        from .registry import build_container

        return build_container
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
