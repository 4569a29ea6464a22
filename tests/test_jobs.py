"""
Tests for job creation and lifecycle transitions.
"""

import pytest

from flowmachine.runtime.errors import ConfigurationError, ErrorKind, FailureReason, StepError
from flowmachine.runtime.types import JobStatus

from conftest import build_flow


class TestJobCreation:
    """Tests for create_and_schedule."""

    def test_creates_pending_job_and_enqueues_first_step(self, container):
        """A new job points at the first step and has one queued task."""
        pipeline, flow = build_flow(container, [{"step_type": "fetch"}, {"step_type": "publish"}])
        job_id = container.jobs.create_and_schedule(flow.flow_id, trigger_reason="external")

        job = container.jobs.get(job_id)
        assert job.status == JobStatus.PENDING
        assert job.trigger == "external"
        assert job.pipeline_id == pipeline.pipeline_id
        assert job.current_flow_step == flow.flow_step_id(pipeline.ordered_steps()[0].pipeline_step_id)
        assert container.queue.counts() == {"pending": 1}

    def test_missing_flow_is_invalid_flow(self, container):
        """An unknown flow is rejected without writing a job."""
        with pytest.raises(ConfigurationError) as exc_info:
            container.jobs.create_and_schedule("fl-missing")
        assert exc_info.value.reason == FailureReason.INVALID_FLOW
        assert container.jobs.list_jobs() == []

    def test_empty_pipeline_is_no_steps(self, container):
        """A flow whose pipeline has no steps is rejected without writing a job."""
        _, flow = build_flow(container, [])
        with pytest.raises(ConfigurationError) as exc_info:
            container.jobs.create_and_schedule(flow.flow_id)
        assert exc_info.value.reason == FailureReason.NO_STEPS
        assert container.jobs.list_for_flow(flow.flow_id) == []
        assert container.queue.counts() == {}


class TestJobTransitions:
    """Tests for status transitions and cleanup."""

    def _job(self, container):
        _, flow = build_flow(container, [{"step_type": "fetch"}])
        return container.jobs.create_and_schedule(flow.flow_id)

    def test_complete_no_items_records_reason(self, container):
        """completed_no_items is a success status with reason empty_result."""
        job_id = self._job(container)
        container.jobs.complete(job_id, no_items=True)
        job = container.jobs.get(job_id)
        assert job.status == JobStatus.COMPLETED_NO_ITEMS
        assert job.reason == FailureReason.EMPTY_RESULT.value
        assert job.completed_at is not None

    def test_terminal_status_is_final(self, container):
        """A completed job is never moved again."""
        job_id = self._job(container)
        container.jobs.complete(job_id)
        assert container.jobs.update_status(job_id, JobStatus.RUNNING) is False
        assert container.jobs.fail(job_id, FailureReason.EXCEPTION) is False
        assert container.jobs.get(job_id).status == JobStatus.COMPLETED

    def test_fail_persists_context(self, container):
        """fail_with_error stores kind, step and message on the job row."""
        job_id = self._job(container)
        job = container.jobs.get(job_id)
        try:
            raise RuntimeError("handler blew up")
        except RuntimeError as exc:
            error = StepError.from_exception(exc, flow_step_id=job.current_flow_step, handler_slug="rss")

        container.jobs.fail_with_error(job_id, error)
        failed = container.jobs.get(job_id)
        assert failed.status == JobStatus.FAILED
        assert failed.reason == FailureReason.EXCEPTION.value
        assert failed.context["error_kind"] == ErrorKind.HANDLER_EXCEPTION.value
        assert failed.context["handler_slug"] == "rss"
        assert failed.context["flow_step_id"] == job.current_flow_step.to_dict()
        assert "handler blew up" in failed.context["stack"]

    def test_terminal_transition_cleans_engine_data(self, container):
        """Engine data is removed once the job stops."""
        job_id = self._job(container)
        container.jobs.store_engine_data(job_id, {"source_url": "https://x"})
        container.jobs.complete(job_id)
        assert container.jobs.retrieve_engine_data(job_id) == {}

    def test_fail_keeps_processed_items(self, container):
        """Dedup records survive a failed job."""
        pipeline, flow = build_flow(container, [{"step_type": "fetch"}])
        job_id = container.jobs.create_and_schedule(flow.flow_id)
        step = flow.flow_step_id(pipeline.ordered_steps()[0].pipeline_step_id)
        container.dedup.mark_processed(step, "rss", "g1", job_id)
        container.jobs.fail(job_id, FailureReason.EXCEPTION, {"message": "x"})
        assert container.dedup.is_processed(step, "rss", "g1")


class TestStepError:
    """Tests for exception classification."""

    def test_configuration_error_keeps_reason(self):
        """Configuration errors carry their own failure reason."""
        error = StepError.from_exception(ConfigurationError("bad", reason=FailureReason.INVALID_FLOW))
        assert error.kind == ErrorKind.CONFIGURATION_ERROR
        assert error.reason == FailureReason.INVALID_FLOW

    def test_unexpected_exception_is_handler_exception(self):
        """Unknown exceptions are classified as handler exceptions."""
        error = StepError.from_exception(KeyError("x"))
        assert error.kind == ErrorKind.HANDLER_EXCEPTION
        assert error.reason == FailureReason.EXCEPTION
        assert error.context["exception_type"] == "KeyError"
