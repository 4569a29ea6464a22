"""
Tests for the DuckDB store and the processed-item tracker.

These tests verify:
1. File-backed and in-memory stores
2. Job persistence with failure context
3. Processed-item uniqueness under concurrent marking
4. Bulk clears by job, flow, pipeline and step
5. Exclusive job step leases, including on stores created before them
"""

import threading

import duckdb
import pytest

from flowmachine.runtime.db import Store
from flowmachine.runtime.dedup import DedupTracker
from flowmachine.runtime.types import FlowStepId, Job, JobStatus


class TestStore:
    """Tests for basic persistence."""

    def test_memory_path_is_not_a_file(self, tmp_path, monkeypatch):
        """':memory:' keeps the store in memory instead of creating a file."""
        monkeypatch.chdir(tmp_path)
        store = Store(":memory:")
        store.insert_pipeline("pl-1", "P")
        assert store.db_path is None
        assert not (tmp_path / ":memory:").exists()
        store.close()

    def test_file_store_survives_reopen(self, tmp_path):
        """Data written to a file-backed store is visible after reopening."""
        path = tmp_path / "data" / "flowmachine.duckdb"
        store = Store(path)
        store.insert_pipeline("pl-1", "Persisted")
        store.close()

        reopened = Store(path)
        pipeline = reopened.get_pipeline("pl-1")
        assert pipeline is not None
        assert pipeline.name == "Persisted"
        reopened.close()

    def test_job_roundtrip_with_context(self, store):
        """Failure context and current step are persisted on the job row."""
        step = FlowStepId("ps-1", "fl-1")
        store.insert_job(Job(job_id="job-1", flow_id="fl-1", pipeline_id="pl-1", current_flow_step=step))
        store.update_job(
            "job-1",
            JobStatus.FAILED,
            message="boom",
            reason="exception",
            context={"error_kind": "handler_exception"},
        )
        job = store.get_job("job-1")
        assert job.status == JobStatus.FAILED
        assert job.reason == "exception"
        assert job.context["error_kind"] == "handler_exception"
        assert job.current_flow_step == step

    def test_step_lease_is_exclusive_until_it_expires(self, store):
        """Only one caller leases a job step; the lease frees up after it expires or the job advances."""
        step = FlowStepId("ps-1", "fl-1")
        store.insert_job(Job(job_id="job-1", flow_id="fl-1", pipeline_id="pl-1", current_flow_step=step))

        assert store.claim_job_step("job-1", step, 1000.0, 60.0) is True
        assert store.claim_job_step("job-1", step, 1030.0, 60.0) is False
        assert store.claim_job_step("job-1", FlowStepId("ps-2", "fl-1"), 1030.0, 60.0) is False
        assert store.get_step_started_at("job-1") == 1000.0
        assert store.claim_job_step("job-1", step, 1060.0, 60.0) is True

        store.update_job("job-1", JobStatus.RUNNING, current_flow_step=FlowStepId("ps-2", "fl-1"))
        assert store.get_step_started_at("job-1") is None
        assert store.claim_job_step("job-1", step, 1061.0, 60.0) is False

    def test_old_store_gains_step_lease_column(self, tmp_path):
        """A store written before step leases is upgraded on open."""
        path = tmp_path / "old.duckdb"
        conn = duckdb.connect(str(path))
        conn.execute(
            "CREATE TABLE schema_version (version INTEGER PRIMARY KEY, applied_at TIMESTAMP DEFAULT current_timestamp)"
        )
        conn.execute("INSERT INTO schema_version (version) VALUES (1)")
        conn.execute(
            """
            CREATE TABLE jobs (
                job_id VARCHAR PRIMARY KEY, flow_id VARCHAR NOT NULL, pipeline_id VARCHAR NOT NULL,
                status VARCHAR NOT NULL, trigger_label VARCHAR, current_flow_step VARCHAR,
                reason VARCHAR, message VARCHAR, context VARCHAR, created_at VARCHAR,
                updated_at VARCHAR, completed_at VARCHAR
            )
            """
        )
        conn.close()

        store = Store(path)
        step = FlowStepId("ps-1", "fl-1")
        store.insert_job(Job(job_id="job-1", flow_id="fl-1", pipeline_id="pl-1", current_flow_step=step))
        assert store.claim_job_step("job-1", step, 1000.0, 60.0) is True
        store.close()

    def test_list_jobs_filters(self, store):
        """Jobs can be filtered by flow and status."""
        store.insert_job(Job(job_id="job-a", flow_id="fl-1", pipeline_id="pl-1"))
        store.insert_job(Job(job_id="job-b", flow_id="fl-2", pipeline_id="pl-1"))
        store.update_job("job-b", JobStatus.COMPLETED)

        assert [j.job_id for j in store.list_jobs(flow_id="fl-1")] == ["job-a"]
        assert [j.job_id for j in store.list_jobs(status=JobStatus.COMPLETED)] == ["job-b"]
        assert len(store.list_jobs(pipeline_id="pl-1")) == 2

    def test_engine_data_is_per_job(self, store):
        """Engine data values are JSON roundtripped and scoped by job."""
        store.set_engine_data("job-1", {"source_url": "https://x", "count": 2})
        store.set_engine_data("job-1", {"count": 3})
        store.set_engine_data("job-2", {"source_url": "https://y"})
        assert store.get_engine_data("job-1") == {"count": 3, "source_url": "https://x"}
        assert store.delete_engine_data("job-1") == 2
        assert store.get_engine_data("job-1") == {}
        assert store.get_engine_data("job-2") == {"source_url": "https://y"}


class TestDedupTracker:
    """Tests for processed-item tracking."""

    def test_mark_then_check(self, store):
        """An item is processed only for the flow step that marked it."""
        dedup = DedupTracker(store)
        step = FlowStepId("ps-1", "fl-1")
        other = FlowStepId("ps-1", "fl-2")

        assert dedup.is_processed(step, "rss", "guid-1") is False
        assert dedup.mark_processed(step, "rss", "guid-1", "job-1") is True
        assert dedup.is_processed(step, "rss", "guid-1") is True
        assert dedup.is_processed(other, "rss", "guid-1") is False
        assert dedup.is_processed(step, "reddit", "guid-1") is False

    def test_second_mark_reports_existing(self, store):
        """Marking an already processed item returns False."""
        dedup = DedupTracker(store)
        step = FlowStepId("ps-1", "fl-1")
        dedup.mark_processed(step, "rss", "guid-1", "job-1")
        assert dedup.mark_processed(step, "rss", "guid-1", "job-2") is False
        assert store.count_processed_items(step) == 1

    def test_concurrent_marks_insert_once(self, store):
        """Exactly one of many concurrent markers creates the record."""
        dedup = DedupTracker(store)
        step = FlowStepId("ps-1", "fl-1")
        results = []
        barrier = threading.Barrier(8)

        def worker(index):
            barrier.wait()
            results.append(dedup.mark_processed(step, "rss", "guid-shared", f"job-{index}"))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 7
        assert store.count_processed_items(step) == 1

    def test_clear_by_criteria(self, store):
        """Bulk clears remove only matching records."""
        dedup = DedupTracker(store)
        a = FlowStepId("ps-1", "fl-1")
        b = FlowStepId("ps-2", "fl-2")
        dedup.mark_processed(a, "rss", "1", "job-1", pipeline_id="pl-1")
        dedup.mark_processed(a, "rss", "2", "job-2", pipeline_id="pl-1")
        dedup.mark_processed(b, "rss", "3", "job-3", pipeline_id="pl-2")

        assert dedup.clear(job_id="job-1") == 1
        assert dedup.clear(flow_id="fl-2") == 1
        assert dedup.clear(pipeline_id="pl-1") == 1
        assert store.count_processed_items() == 0

    def test_clear_requires_criteria(self, store):
        """A clear without any criterion is refused."""
        with pytest.raises(ValueError):
            DedupTracker(store).clear()
