"""
jobs.py - Job lifecycle management.

Creates jobs, moves them through their statuses, and finalizes them:

    pending -> running -> completed
                       -> completed_no_items
                       -> failed

Terminal states are final. ``fail`` persists a structured context so an
operator can tell which step and which handler failed; nothing is retried
automatically. Re-running a flow is an explicit action that creates a new job.

Terminal transitions clean up the job's packet files and engine data
(best-effort). Processed-item records are kept: they are scoped to the flow
step, not the job.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from flowmachine.runtime.db import Store
from flowmachine.runtime.errors import ConfigurationError, FailureReason, StepError
from flowmachine.runtime.packets import DataPacketChannel
from flowmachine.runtime.pipelines import PipelineManager
from flowmachine.runtime.queue import JobQueue
from flowmachine.runtime.types import (
    FlowStepId,
    Job,
    JobStatus,
    QueueMessage,
    generate_job_id,
)

logger = logging.getLogger(__name__)


class JobLifecycleManager:
    """Creates, updates and finalizes jobs."""

    def __init__(
        self,
        store: Store,
        pipelines: PipelineManager,
        queue: JobQueue,
        channel: DataPacketChannel,
    ):
        self._store = store
        self._pipelines = pipelines
        self._queue = queue
        self._channel = channel

    # =========================================================================
    # Creation
    # =========================================================================

    def create_and_schedule(self, flow_id: str, trigger_reason: str = "manual") -> str:
        """Create a pending job for a flow and enqueue its first step.

        Every trigger surface (run now, external trigger, scheduled recurrence)
        ends up here.

        Args:
            flow_id: Flow to execute.
            trigger_reason: Label of the trigger surface.

        Returns:
            The new job id.

        Raises:
            ConfigurationError: reason ``invalid_flow`` if the flow or its
                pipeline does not exist, ``no_steps`` if the pipeline has no
                steps. No job row is written in either case.
        """
        flow = self._store.get_flow(flow_id)
        if flow is None or self._store.get_pipeline(flow.pipeline_id) is None:
            raise ConfigurationError(
                f"Flow {flow_id} not found",
                reason=FailureReason.INVALID_FLOW,
                context={"flow_id": flow_id},
            )

        first = self._pipelines.first_flow_step(flow_id)
        if first is None:
            raise ConfigurationError(
                f"Flow {flow_id} has no steps",
                reason=FailureReason.NO_STEPS,
                context={"flow_id": flow_id, "pipeline_id": flow.pipeline_id},
            )

        job = Job(
            job_id=generate_job_id(),
            flow_id=flow_id,
            pipeline_id=flow.pipeline_id,
            status=JobStatus.PENDING,
            trigger=trigger_reason,
            current_flow_step=first.flow_step_id,
        )
        self._store.insert_job(job)
        self._queue.enqueue(QueueMessage(job_id=job.job_id, flow_step_id=first.flow_step_id, data=None))
        logger.info(
            "Created job %s for flow %s (trigger=%s, first step=%s)",
            job.job_id,
            flow_id,
            trigger_reason,
            first.flow_step_id,
        )
        return job.job_id

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, job_id: str) -> Optional[Job]:
        return self._store.get_job(job_id)

    def list_for_flow(self, flow_id: str, limit: int = 100) -> List[Job]:
        return self._store.list_jobs(flow_id=flow_id, limit=limit)

    def list_for_pipeline(self, pipeline_id: str, limit: int = 100) -> List[Job]:
        return self._store.list_jobs(pipeline_id=pipeline_id, limit=limit)

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[Job]:
        return self._store.list_jobs(status=status, limit=limit)

    def delete(self, flow_id: Optional[str] = None, status: Optional[JobStatus] = None) -> int:
        return self._store.delete_jobs(flow_id=flow_id, status=status)

    # =========================================================================
    # Engine data
    # =========================================================================

    def store_engine_data(self, job_id: str, values: Dict[str, Any]) -> None:
        self._store.set_engine_data(job_id, values)

    def retrieve_engine_data(self, job_id: str) -> Dict[str, Any]:
        return self._store.get_engine_data(job_id)

    # =========================================================================
    # Transitions
    # =========================================================================

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        message: Optional[str] = None,
        current_flow_step: Optional[FlowStepId] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Move a job to ``status``.

        Terminal jobs are never moved again. Terminal target statuses trigger
        cleanup of packet files and engine data.

        Returns:
            True if the row changed.
        """
        job = self._store.get_job(job_id)
        if job is None:
            logger.warning("update_status: job %s not found", job_id)
            return False
        if job.status.is_terminal:
            logger.warning(
                "Ignoring transition of job %s from terminal %s to %s",
                job_id,
                job.status.value,
                status.value,
            )
            return False

        changed = self._store.update_job(
            job_id,
            status,
            message=message,
            reason=reason,
            current_flow_step=current_flow_step,
        )
        if status.is_terminal:
            logger.info("Job %s finished with status %s", job_id, status.value)
            self._cleanup(job_id)
        return changed

    def claim_step(self, job_id: str, flow_step_id: FlowStepId, now: float, lease_seconds: float) -> bool:
        """Lease the job's current step to one delivery.

        Returns False when the job has moved past ``flow_step_id``, is
        terminal, or another delivery holds the step.
        """
        claimed = self._store.claim_job_step(job_id, flow_step_id, now, lease_seconds)
        if claimed:
            logger.debug("Job %s step %s leased for %.0fs", job_id, flow_step_id, lease_seconds)
        return claimed

    def step_started_at(self, job_id: str) -> Optional[float]:
        return self._store.get_step_started_at(job_id)

    def complete(self, job_id: str, no_items: bool = False, message: Optional[str] = None) -> bool:
        if no_items:
            return self.update_status(
                job_id,
                JobStatus.COMPLETED_NO_ITEMS,
                message=message or "No new items to process",
                reason=FailureReason.EMPTY_RESULT.value,
            )
        return self.update_status(job_id, JobStatus.COMPLETED, message=message or "Completed")

    def fail(self, job_id: str, reason: FailureReason, context: Optional[Dict[str, Any]] = None) -> bool:
        """Mark a job failed with a structured context. Terminal, no retry.

        Args:
            job_id: Job to fail.
            reason: Failure reason from the taxonomy.
            context: Diagnostics (flow_step_id, message, stack, ...).
        """
        job = self._store.get_job(job_id)
        if job is None:
            logger.warning("fail: job %s not found", job_id)
            return False
        if job.status.is_terminal:
            logger.warning("fail: job %s already terminal (%s)", job_id, job.status.value)
            return False

        context = dict(context or {})
        message = context.get("message") or reason.value
        logger.error(
            "Job %s failed: reason=%s kind=%s flow_step=%s message=%s",
            job_id,
            reason.value,
            context.get("error_kind"),
            context.get("flow_step_id"),
            message,
        )
        changed = self._store.update_job(
            job_id,
            JobStatus.FAILED,
            message=message,
            reason=reason.value,
            context=context,
        )
        self._cleanup(job_id)
        return changed

    def fail_with_error(self, job_id: str, error: StepError) -> bool:
        return self.fail(job_id, error.reason, error.to_context())

    def _cleanup(self, job_id: str) -> None:
        try:
            self._channel.cleanup_job(job_id)
            self._store.delete_engine_data(job_id)
        except Exception as e:
            logger.warning("Cleanup for job %s failed (non-fatal): %s", job_id, e)
