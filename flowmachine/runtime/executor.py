"""
executor.py - Step Executor.

Consumes one QueueMessage and drives the job one step forward:

    1. skip the message if the job is missing or already terminal
    2. lease the step: the job must still be at this step and no other
       delivery may hold it (stale -> dropped, in flight -> deferred)
    3. resolve the flow step (missing config -> configuration_error)
    4. dereference inbound data (unreadable -> dereference_error)
    5. dispatch by step type: fetch, ai, publish, update
    6. empty result       -> job completed_no_items
       no next step       -> job completed
       otherwise          -> store packets, move the job to the next step,
                             enqueue (job, next step, payload)

Every exception raised inside a step is converted into a StepError and
persisted on the job row; ``execute`` never raises, so a queue worker can
not be crashed by a step. Steps of one job run strictly in structural
order because each step enqueues only its successor, and the lease keeps
a redelivered message from running a step twice at once or after the job
has moved on.

A delivery whose lease expired (the worker running it died) re-runs its
step from scratch. Fetch handlers skip items already marked processed;
output handlers document their own re-run behavior.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, List, Mapping, Optional

from flowmachine.ai.step import AIStep
from flowmachine.handlers.base import HandlerRegistry
from flowmachine.runtime.dedup import DedupTracker
from flowmachine.runtime.errors import (
    ConfigurationError,
    FailureReason,
    OutcomeStatus,
    StepError,
    StepOutcome,
)
from flowmachine.runtime.jobs import JobLifecycleManager
from flowmachine.runtime.packets import DataPacketChannel
from flowmachine.runtime.pipelines import PipelineManager
from flowmachine.runtime.queue import JobQueue
from flowmachine.runtime.steps import FetchStep, OutputStep
from flowmachine.runtime.types import (
    DataPacket,
    Job,
    JobStatus,
    QueueMessage,
    ResolvedFlowStep,
    StepType,
)

logger = logging.getLogger(__name__)

# Longest time one delivery may hold a step before another may retry it
DEFAULT_STEP_LEASE_SECONDS = 3600.0


class StepExecutor:
    """Executes queued steps and decides each job's next transition."""

    def __init__(
        self,
        jobs: JobLifecycleManager,
        pipelines: PipelineManager,
        channel: DataPacketChannel,
        queue: JobQueue,
        handlers: HandlerRegistry,
        dedup: DedupTracker,
        ai_step: Optional[AIStep] = None,
        step_lease_seconds: float = DEFAULT_STEP_LEASE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._jobs = jobs
        self._pipelines = pipelines
        self._channel = channel
        self._queue = queue
        self._ai_step = ai_step
        self._fetch = FetchStep(handlers, dedup, jobs)
        self._output = OutputStep(handlers)
        self.step_lease_seconds = step_lease_seconds
        self._clock = clock

    def execute(self, message: QueueMessage) -> StepOutcome:
        """Execute the step named by ``message``. Never raises."""
        flow_step_id = message.flow_step_id
        job = self._jobs.get(message.job_id)
        if job is None or job.status.is_terminal:
            logger.info(
                "Skipping step %s: job %s is %s",
                flow_step_id,
                message.job_id,
                job.status.value if job else "missing",
            )
            return StepOutcome(status=OutcomeStatus.SKIPPED, flow_step_id=flow_step_id)

        now = self._clock()
        if not self._jobs.claim_step(job.job_id, flow_step_id, now, self.step_lease_seconds):
            return self._not_claimed(message, now)

        resolved: Optional[ResolvedFlowStep] = None
        try:
            resolved = self._pipelines.resolve_flow_step(flow_step_id)
            if resolved is None:
                raise ConfigurationError(
                    f"Flow step {flow_step_id} is not configured",
                    reason=FailureReason.STEP_EXECUTION_FAILURE,
                    context={"flow_step_id": flow_step_id.to_dict()},
                )
            logger.info(
                "Executing %s step %s for job %s",
                resolved.step_type.value,
                flow_step_id,
                job.job_id,
            )

            inbound = self._channel.retrieve(message.data)
            engine_data = self._jobs.retrieve_engine_data(job.job_id)
            packets = self._dispatch(job, resolved, inbound, engine_data)

            if not packets:
                self._jobs.complete(job.job_id, no_items=True)
                return StepOutcome(status=OutcomeStatus.COMPLETED_NO_ITEMS, flow_step_id=flow_step_id)

            next_step = self._pipelines.next_flow_step(flow_step_id)
            if next_step is None:
                self._jobs.complete(job.job_id)
                return StepOutcome(
                    status=OutcomeStatus.COMPLETED,
                    flow_step_id=flow_step_id,
                    packet_count=len(packets),
                )

            payload = self._channel.store(job.job_id, flow_step_id, packets)
            self._jobs.update_status(job.job_id, JobStatus.RUNNING, current_flow_step=next_step.flow_step_id)
            self._queue.enqueue(QueueMessage(job_id=job.job_id, flow_step_id=next_step.flow_step_id, data=payload))
            logger.debug("Job %s advanced to %s", job.job_id, next_step.flow_step_id)
            return StepOutcome(
                status=OutcomeStatus.ADVANCED,
                flow_step_id=flow_step_id,
                next_flow_step_id=next_step.flow_step_id,
                packet_count=len(packets),
            )
        except Exception as exc:
            error = StepError.from_exception(
                exc,
                flow_step_id=flow_step_id,
                handler_slug=resolved.handler_slug if resolved else None,
            )
            self._jobs.fail_with_error(job.job_id, error)
            return StepOutcome(status=OutcomeStatus.FAILED, flow_step_id=flow_step_id, error=error)

    def _not_claimed(self, message: QueueMessage, now: float) -> StepOutcome:
        """Handle a delivery whose step could not be leased.

        A message for a step the job has already left is dropped. A message
        for a step another delivery is still running is put back until that
        lease runs out, so a crashed run is eventually retried.
        """
        flow_step_id = message.flow_step_id
        job = self._jobs.get(message.job_id)
        if job is None or job.status.is_terminal or job.current_flow_step != flow_step_id:
            logger.warning(
                "Dropping stale delivery of step %s for job %s (job is %s at %s)",
                flow_step_id,
                message.job_id,
                job.status.value if job else "missing",
                job.current_flow_step if job else None,
            )
            return StepOutcome(status=OutcomeStatus.SKIPPED, flow_step_id=flow_step_id)

        started_at = self._jobs.step_started_at(job.job_id) or now
        delay = max(started_at + self.step_lease_seconds - now, 1.0)
        self._queue.enqueue(message, delay_seconds=delay)
        logger.warning(
            "Step %s of job %s is already running; delivery deferred %.0fs",
            flow_step_id,
            job.job_id,
            delay,
        )
        return StepOutcome(status=OutcomeStatus.DEFERRED, flow_step_id=flow_step_id)

    def _dispatch(
        self,
        job: Job,
        resolved: ResolvedFlowStep,
        packets: List[DataPacket],
        engine_data: Mapping[str, Any],
    ) -> List[DataPacket]:
        step_type = resolved.step_type
        if step_type == StepType.FETCH:
            return self._fetch.execute(job.job_id, job.pipeline_id, resolved, packets, engine_data)
        if step_type == StepType.AI:
            if self._ai_step is None:
                raise ConfigurationError("No AI provider is configured for AI steps")
            return self._ai_step.execute(job.job_id, resolved, packets, engine_data)
        if step_type in (StepType.PUBLISH, StepType.UPDATE):
            return self._output.execute(job.job_id, resolved, packets, engine_data)
        raise ConfigurationError(f"Unsupported step type '{step_type}'")
