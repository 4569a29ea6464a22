"""
db.py - DuckDB-backed persistent store for pipelines, flows, jobs and queues.

This module is the only shared mutable resource of the engine. It stores:
- Pipelines and their ordered steps
- Flows (handler bindings per pipeline step, scheduling policy)
- Jobs (status, current flow step, failure context)
- Processed-item records used for deduplication
- Per-job engine data (key/value)
- Durable queue tasks

Every mutation is a single statement (insert, upsert or update). All access
goes through one connection serialized by an RLock, so a statement is atomic
with respect to every other caller in the process.

Usage:
    from flowmachine.runtime.db import Store

    store = Store()                      # in-memory
    store = Store(Path("flowmachine.duckdb"))
    inserted = store.insert_processed_item(flow_step_id, "rss", guid, job_id)
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

import duckdb

from flowmachine.runtime.types import (
    Flow,
    FlowStepConfig,
    FlowStepId,
    Job,
    JobStatus,
    Pipeline,
    PipelineStep,
    Scheduling,
    StepType,
    _datetime_to_iso,
    _utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMP DEFAULT current_timestamp
);

CREATE TABLE IF NOT EXISTS pipelines (
    pipeline_id VARCHAR PRIMARY KEY,
    name VARCHAR NOT NULL,
    created_at VARCHAR,
    updated_at VARCHAR
);

CREATE TABLE IF NOT EXISTS pipeline_steps (
    pipeline_step_id VARCHAR PRIMARY KEY,
    pipeline_id VARCHAR NOT NULL,
    step_type VARCHAR NOT NULL,
    execution_order INTEGER NOT NULL,
    config VARCHAR
);

CREATE TABLE IF NOT EXISTS flows (
    flow_id VARCHAR PRIMARY KEY,
    pipeline_id VARCHAR NOT NULL,
    name VARCHAR NOT NULL,
    steps VARCHAR,
    scheduling VARCHAR,
    created_at VARCHAR,
    updated_at VARCHAR
);

CREATE TABLE IF NOT EXISTS jobs (
    job_id VARCHAR PRIMARY KEY,
    flow_id VARCHAR NOT NULL,
    pipeline_id VARCHAR NOT NULL,
    status VARCHAR NOT NULL,
    trigger_label VARCHAR,
    current_flow_step VARCHAR,
    reason VARCHAR,
    message VARCHAR,
    context VARCHAR,
    created_at VARCHAR,
    updated_at VARCHAR,
    completed_at VARCHAR,
    step_started_at DOUBLE
);

CREATE SEQUENCE IF NOT EXISTS processed_items_id_seq;

CREATE TABLE IF NOT EXISTS processed_items (
    id INTEGER PRIMARY KEY DEFAULT nextval('processed_items_id_seq'),
    pipeline_step_id VARCHAR NOT NULL,
    flow_id VARCHAR NOT NULL,
    pipeline_id VARCHAR,
    source_type VARCHAR NOT NULL,
    item_identifier VARCHAR NOT NULL,
    job_id VARCHAR,
    processed_at VARCHAR,
    UNIQUE (pipeline_step_id, flow_id, source_type, item_identifier)
);

CREATE TABLE IF NOT EXISTS engine_data (
    job_id VARCHAR NOT NULL,
    data_key VARCHAR NOT NULL,
    data_value VARCHAR,
    PRIMARY KEY (job_id, data_key)
);

CREATE SEQUENCE IF NOT EXISTS queue_tasks_seq;

CREATE TABLE IF NOT EXISTS queue_tasks (
    task_id VARCHAR PRIMARY KEY,
    seq BIGINT DEFAULT nextval('queue_tasks_seq'),
    job_id VARCHAR NOT NULL,
    payload VARCHAR NOT NULL,
    status VARCHAR NOT NULL,
    attempts INTEGER DEFAULT 0,
    available_at DOUBLE NOT NULL,
    claimed_at DOUBLE,
    last_error VARCHAR,
    created_at VARCHAR
);
"""


def _now_iso() -> str:
    return _datetime_to_iso(_utcnow())


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _loads(value: Optional[str], default: Any = None) -> Any:
    if value is None or value == "":
        return default
    return json.loads(value)


class Store:
    """DuckDB persistent store.

    Args:
        db_path: Database file. None or ":memory:" keeps everything in memory.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = Path(db_path) if db_path and str(db_path) != ":memory:" else None
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection."""
        if self._connection is None:
            with self._lock:
                if self._connection is None:
                    if self.db_path:
                        self.db_path.parent.mkdir(parents=True, exist_ok=True)
                        self._connection = duckdb.connect(str(self.db_path))
                    else:
                        self._connection = duckdb.connect(":memory:")
                    self._init_schema()
        return self._connection

    def _init_schema(self) -> None:
        """Initialize the database schema."""
        conn = self._connection
        conn.execute(CREATE_TABLES_SQL)
        result = conn.execute(
            "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
        ).fetchone()
        if result is None:
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", [SCHEMA_VERSION])
        elif result[0] < SCHEMA_VERSION:
            # v2: step lease column on jobs
            conn.execute("ALTER TABLE jobs ADD COLUMN IF NOT EXISTS step_started_at DOUBLE")
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", [SCHEMA_VERSION])
            logger.info("Store schema migrated from v%d to v%d", result[0], SCHEMA_VERSION)
        logger.debug("Store schema ready (db_path=%s)", self.db_path or ":memory:")

    @contextmanager
    def _cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Serialize access to the shared connection."""
        with self._lock:
            try:
                yield self.connection
            except duckdb.Error as e:
                logger.warning("Database operation failed: %s", e)
                raise

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            with self._lock:
                self._connection.close()
                self._connection = None

    # =========================================================================
    # Pipelines
    # =========================================================================

    def insert_pipeline(self, pipeline_id: str, name: str) -> None:
        now = _now_iso()
        with self._cursor() as conn:
            conn.execute(
                "INSERT INTO pipelines (pipeline_id, name, created_at, updated_at) VALUES (?, ?, ?, ?)",
                [pipeline_id, name, now, now],
            )

    def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        with self._cursor() as conn:
            row = conn.execute(
                "SELECT pipeline_id, name, created_at FROM pipelines WHERE pipeline_id = ?",
                [pipeline_id],
            ).fetchone()
            if row is None:
                return None
            steps = self._list_pipeline_steps(conn, pipeline_id)
        return Pipeline(pipeline_id=row[0], name=row[1], steps=steps, created_at=row[2])

    def list_pipelines(self) -> List[Pipeline]:
        with self._cursor() as conn:
            rows = conn.execute(
                "SELECT pipeline_id, name, created_at FROM pipelines ORDER BY created_at, pipeline_id"
            ).fetchall()
            return [
                Pipeline(
                    pipeline_id=r[0],
                    name=r[1],
                    steps=self._list_pipeline_steps(conn, r[0]),
                    created_at=r[2],
                )
                for r in rows
            ]

    def delete_pipeline(self, pipeline_id: str) -> bool:
        with self._cursor() as conn:
            conn.execute("DELETE FROM pipeline_steps WHERE pipeline_id = ?", [pipeline_id])
            result = conn.execute(
                "DELETE FROM pipelines WHERE pipeline_id = ? RETURNING pipeline_id", [pipeline_id]
            ).fetchall()
        return len(result) > 0

    def _list_pipeline_steps(self, conn: duckdb.DuckDBPyConnection, pipeline_id: str) -> List[PipelineStep]:
        rows = conn.execute(
            """
            SELECT pipeline_step_id, pipeline_id, step_type, execution_order, config
            FROM pipeline_steps WHERE pipeline_id = ? ORDER BY execution_order
            """,
            [pipeline_id],
        ).fetchall()
        return [
            PipelineStep(
                pipeline_step_id=r[0],
                pipeline_id=r[1],
                step_type=StepType(r[2]),
                execution_order=r[3],
                config=_loads(r[4], {}),
            )
            for r in rows
        ]

    def list_pipeline_steps(self, pipeline_id: str) -> List[PipelineStep]:
        with self._cursor() as conn:
            return self._list_pipeline_steps(conn, pipeline_id)

    def get_pipeline_step(self, pipeline_step_id: str) -> Optional[PipelineStep]:
        with self._cursor() as conn:
            r = conn.execute(
                """
                SELECT pipeline_step_id, pipeline_id, step_type, execution_order, config
                FROM pipeline_steps WHERE pipeline_step_id = ?
                """,
                [pipeline_step_id],
            ).fetchone()
        if r is None:
            return None
        return PipelineStep(
            pipeline_step_id=r[0],
            pipeline_id=r[1],
            step_type=StepType(r[2]),
            execution_order=r[3],
            config=_loads(r[4], {}),
        )

    def insert_pipeline_step(self, step: PipelineStep) -> None:
        with self._cursor() as conn:
            conn.execute(
                """
                INSERT INTO pipeline_steps (pipeline_step_id, pipeline_id, step_type, execution_order, config)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    step.pipeline_step_id,
                    step.pipeline_id,
                    step.step_type.value,
                    step.execution_order,
                    _dumps(step.config),
                ],
            )

    def update_pipeline_step(self, pipeline_step_id: str, execution_order: int, config: Dict[str, Any]) -> None:
        with self._cursor() as conn:
            conn.execute(
                "UPDATE pipeline_steps SET execution_order = ?, config = ? WHERE pipeline_step_id = ?",
                [execution_order, _dumps(config), pipeline_step_id],
            )

    def delete_pipeline_step(self, pipeline_step_id: str) -> bool:
        with self._cursor() as conn:
            result = conn.execute(
                "DELETE FROM pipeline_steps WHERE pipeline_step_id = ? RETURNING pipeline_step_id",
                [pipeline_step_id],
            ).fetchall()
        return len(result) > 0

    # =========================================================================
    # Flows
    # =========================================================================

    @staticmethod
    def _row_to_flow(row: tuple) -> Flow:
        steps_raw = _loads(row[3], {})
        return Flow(
            flow_id=row[0],
            pipeline_id=row[1],
            name=row[2],
            steps={k: FlowStepConfig.from_dict(v) for k, v in steps_raw.items()},
            scheduling=Scheduling.from_dict(_loads(row[4], {})),
            created_at=row[5],
        )

    def save_flow(self, flow: Flow) -> None:
        """Insert or replace a flow row."""
        now = _now_iso()
        with self._cursor() as conn:
            conn.execute(
                """
                INSERT INTO flows (flow_id, pipeline_id, name, steps, scheduling, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (flow_id) DO UPDATE SET
                    name = excluded.name,
                    steps = excluded.steps,
                    scheduling = excluded.scheduling,
                    updated_at = excluded.updated_at
                """,
                [
                    flow.flow_id,
                    flow.pipeline_id,
                    flow.name,
                    _dumps({k: v.to_dict() for k, v in flow.steps.items()}),
                    _dumps(flow.scheduling.to_dict()),
                    flow.created_at or now,
                    now,
                ],
            )

    def get_flow(self, flow_id: str) -> Optional[Flow]:
        with self._cursor() as conn:
            row = conn.execute(
                "SELECT flow_id, pipeline_id, name, steps, scheduling, created_at FROM flows WHERE flow_id = ?",
                [flow_id],
            ).fetchone()
        return self._row_to_flow(row) if row else None

    def list_flows(self, pipeline_id: Optional[str] = None) -> List[Flow]:
        sql = "SELECT flow_id, pipeline_id, name, steps, scheduling, created_at FROM flows"
        params: List[Any] = []
        if pipeline_id:
            sql += " WHERE pipeline_id = ?"
            params.append(pipeline_id)
        sql += " ORDER BY created_at, flow_id"
        with self._cursor() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_flow(r) for r in rows]

    def update_flow_scheduling(self, flow_id: str, scheduling: Scheduling) -> None:
        with self._cursor() as conn:
            conn.execute(
                "UPDATE flows SET scheduling = ?, updated_at = ? WHERE flow_id = ?",
                [_dumps(scheduling.to_dict()), _now_iso(), flow_id],
            )

    def delete_flow(self, flow_id: str) -> bool:
        with self._cursor() as conn:
            result = conn.execute(
                "DELETE FROM flows WHERE flow_id = ? RETURNING flow_id", [flow_id]
            ).fetchall()
        return len(result) > 0

    # =========================================================================
    # Jobs
    # =========================================================================

    _JOB_COLUMNS = (
        "job_id, flow_id, pipeline_id, status, trigger_label, current_flow_step, reason, "
        "message, context, created_at, updated_at, completed_at"
    )

    @staticmethod
    def _row_to_job(row: tuple) -> Job:
        current = _loads(row[5])
        return Job(
            job_id=row[0],
            flow_id=row[1],
            pipeline_id=row[2],
            status=JobStatus(row[3]),
            trigger=row[4] or "manual",
            current_flow_step=FlowStepId.from_dict(current) if current else None,
            reason=row[6],
            message=row[7],
            context=_loads(row[8], {}),
            created_at=row[9],
            updated_at=row[10],
            completed_at=row[11],
        )

    def insert_job(self, job: Job) -> None:
        now = _now_iso()
        job.created_at = job.created_at or now
        job.updated_at = now
        with self._cursor() as conn:
            conn.execute(
                f"INSERT INTO jobs ({self._JOB_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    job.job_id,
                    job.flow_id,
                    job.pipeline_id,
                    job.status.value,
                    job.trigger,
                    _dumps(job.current_flow_step.to_dict()) if job.current_flow_step else None,
                    job.reason,
                    job.message,
                    _dumps(job.context),
                    job.created_at,
                    job.updated_at,
                    job.completed_at,
                ],
            )

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._cursor() as conn:
            row = conn.execute(
                f"SELECT {self._JOB_COLUMNS} FROM jobs WHERE job_id = ?", [job_id]
            ).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(
        self,
        flow_id: Optional[str] = None,
        pipeline_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        limit: int = 100,
    ) -> List[Job]:
        clauses: List[str] = []
        params: List[Any] = []
        if flow_id:
            clauses.append("flow_id = ?")
            params.append(flow_id)
        if pipeline_id:
            clauses.append("pipeline_id = ?")
            params.append(pipeline_id)
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        sql = f"SELECT {self._JOB_COLUMNS} FROM jobs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, job_id DESC LIMIT ?"
        params.append(limit)
        with self._cursor() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_job(r) for r in rows]

    def update_job(
        self,
        job_id: str,
        status: JobStatus,
        message: Optional[str] = None,
        reason: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        current_flow_step: Optional[FlowStepId] = None,
    ) -> bool:
        """Update one job row. Fields left as None keep their stored value."""
        now = _now_iso()
        completed_at = now if status.is_terminal else None
        with self._cursor() as conn:
            result = conn.execute(
                """
                UPDATE jobs SET
                    status = ?,
                    message = COALESCE(?, message),
                    reason = COALESCE(?, reason),
                    context = COALESCE(?, context),
                    current_flow_step = COALESCE(?, current_flow_step),
                    step_started_at = CASE WHEN ? THEN NULL ELSE step_started_at END,
                    updated_at = ?,
                    completed_at = COALESCE(?, completed_at)
                WHERE job_id = ?
                RETURNING job_id
                """,
                [
                    status.value,
                    message,
                    reason,
                    _dumps(context) if context is not None else None,
                    _dumps(current_flow_step.to_dict()) if current_flow_step else None,
                    current_flow_step is not None,
                    now,
                    completed_at,
                    job_id,
                ],
            ).fetchall()
        return len(result) > 0

    def claim_job_step(self, job_id: str, flow_step_id: FlowStepId, now: float, lease_seconds: float) -> bool:
        """Take the job's current step for execution.

        Succeeds only if the job is active, still positioned at
        ``flow_step_id``, and no other delivery holds an unexpired lease on
        that step. The check and the lease are one statement.
        """
        with self._cursor() as conn:
            result = conn.execute(
                """
                UPDATE jobs SET
                    status = ?,
                    step_started_at = ?,
                    updated_at = ?
                WHERE job_id = ?
                  AND current_flow_step = ?
                  AND status IN (?, ?)
                  AND (step_started_at IS NULL OR step_started_at <= ?)
                RETURNING job_id
                """,
                [
                    JobStatus.RUNNING.value,
                    now,
                    _now_iso(),
                    job_id,
                    _dumps(flow_step_id.to_dict()),
                    JobStatus.PENDING.value,
                    JobStatus.RUNNING.value,
                    now - lease_seconds,
                ],
            ).fetchall()
        return len(result) > 0

    def get_step_started_at(self, job_id: str) -> Optional[float]:
        with self._cursor() as conn:
            row = conn.execute("SELECT step_started_at FROM jobs WHERE job_id = ?", [job_id]).fetchone()
        return row[0] if row else None

    def delete_jobs(self, flow_id: Optional[str] = None, status: Optional[JobStatus] = None) -> int:
        clauses: List[str] = []
        params: List[Any] = []
        if flow_id:
            clauses.append("flow_id = ?")
            params.append(flow_id)
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        sql = "DELETE FROM jobs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        with self._cursor() as conn:
            result = conn.execute(sql + " RETURNING job_id", params).fetchall()
        return len(result)

    # =========================================================================
    # Processed items (Idempotent)
    # =========================================================================

    def insert_processed_item(
        self,
        flow_step_id: FlowStepId,
        source_type: str,
        item_identifier: str,
        job_id: Optional[str],
        pipeline_id: Optional[str] = None,
    ) -> bool:
        """Insert a processed-item record if absent. Returns True if inserted."""
        with self._cursor() as conn:
            # Use RETURNING to detect if insert happened (empty result = conflict/no insert)
            result = conn.execute(
                """
                INSERT INTO processed_items
                    (pipeline_step_id, flow_id, pipeline_id, source_type, item_identifier, job_id, processed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (pipeline_step_id, flow_id, source_type, item_identifier) DO NOTHING
                RETURNING id
                """,
                [
                    flow_step_id.pipeline_step_id,
                    flow_step_id.flow_id,
                    pipeline_id,
                    source_type,
                    item_identifier,
                    job_id,
                    _now_iso(),
                ],
            ).fetchall()
        return len(result) > 0

    def processed_item_exists(self, flow_step_id: FlowStepId, source_type: str, item_identifier: str) -> bool:
        with self._cursor() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM processed_items
                WHERE pipeline_step_id = ? AND flow_id = ? AND source_type = ? AND item_identifier = ?
                """,
                [flow_step_id.pipeline_step_id, flow_step_id.flow_id, source_type, item_identifier],
            ).fetchone()
        return row is not None

    def count_processed_items(self, flow_step_id: Optional[FlowStepId] = None) -> int:
        sql = "SELECT COUNT(*) FROM processed_items"
        params: List[Any] = []
        if flow_step_id:
            sql += " WHERE pipeline_step_id = ? AND flow_id = ?"
            params = [flow_step_id.pipeline_step_id, flow_step_id.flow_id]
        with self._cursor() as conn:
            return conn.execute(sql, params).fetchone()[0]

    def delete_processed_items(
        self,
        job_id: Optional[str] = None,
        flow_step_id: Optional[FlowStepId] = None,
        source_type: Optional[str] = None,
        flow_id: Optional[str] = None,
        pipeline_id: Optional[str] = None,
        pipeline_step_id: Optional[str] = None,
    ) -> int:
        """Bulk-delete processed-item records matching every given criterion.

        Raises:
            ValueError: If no criterion is given.
        """
        clauses: List[str] = []
        params: List[Any] = []
        if job_id:
            clauses.append("job_id = ?")
            params.append(job_id)
        if flow_step_id:
            clauses.append("pipeline_step_id = ? AND flow_id = ?")
            params.extend([flow_step_id.pipeline_step_id, flow_step_id.flow_id])
        if source_type:
            clauses.append("source_type = ?")
            params.append(source_type)
        if flow_id:
            clauses.append("flow_id = ?")
            params.append(flow_id)
        if pipeline_id:
            clauses.append("pipeline_id = ?")
            params.append(pipeline_id)
        if pipeline_step_id:
            clauses.append("pipeline_step_id = ?")
            params.append(pipeline_step_id)
        if not clauses:
            raise ValueError("delete_processed_items requires at least one criterion")
        with self._cursor() as conn:
            result = conn.execute(
                "DELETE FROM processed_items WHERE " + " AND ".join(clauses) + " RETURNING id", params
            ).fetchall()
        return len(result)

    # =========================================================================
    # Engine data
    # =========================================================================

    def set_engine_data(self, job_id: str, values: Dict[str, Any]) -> None:
        with self._cursor() as conn:
            for key, value in values.items():
                conn.execute(
                    """
                    INSERT INTO engine_data (job_id, data_key, data_value) VALUES (?, ?, ?)
                    ON CONFLICT (job_id, data_key) DO UPDATE SET data_value = excluded.data_value
                    """,
                    [job_id, key, _dumps(value)],
                )

    def get_engine_data(self, job_id: str) -> Dict[str, Any]:
        with self._cursor() as conn:
            rows = conn.execute(
                "SELECT data_key, data_value FROM engine_data WHERE job_id = ? ORDER BY data_key", [job_id]
            ).fetchall()
        return {k: _loads(v) for k, v in rows}

    def delete_engine_data(self, job_id: str) -> int:
        with self._cursor() as conn:
            result = conn.execute(
                "DELETE FROM engine_data WHERE job_id = ? RETURNING data_key", [job_id]
            ).fetchall()
        return len(result)

    # =========================================================================
    # Queue tasks
    # =========================================================================

    def insert_task(self, task_id: str, job_id: str, payload: Dict[str, Any], available_at: float) -> None:
        with self._cursor() as conn:
            conn.execute(
                """
                INSERT INTO queue_tasks (task_id, job_id, payload, status, attempts, available_at, created_at)
                VALUES (?, ?, ?, 'pending', 0, ?, ?)
                """,
                [task_id, job_id, _dumps(payload), available_at, _now_iso()],
            )

    def claim_task(self, now: float) -> Optional[Dict[str, Any]]:
        """Atomically claim the oldest available pending task."""
        with self._cursor() as conn:
            row = conn.execute(
                """
                UPDATE queue_tasks SET status = 'claimed', claimed_at = ?, attempts = attempts + 1
                WHERE task_id = (
                    SELECT task_id FROM queue_tasks
                    WHERE status = 'pending' AND available_at <= ?
                    ORDER BY available_at, seq
                    LIMIT 1
                )
                RETURNING task_id, job_id, payload, attempts
                """,
                [now, now],
            ).fetchone()
        if row is None:
            return None
        return {"task_id": row[0], "job_id": row[1], "payload": _loads(row[2], {}), "attempts": row[3]}

    def delete_task(self, task_id: str) -> bool:
        with self._cursor() as conn:
            result = conn.execute(
                "DELETE FROM queue_tasks WHERE task_id = ? RETURNING task_id", [task_id]
            ).fetchall()
        return len(result) > 0

    def release_task(self, task_id: str, available_at: float, error: Optional[str], dead: bool = False) -> None:
        with self._cursor() as conn:
            conn.execute(
                """
                UPDATE queue_tasks SET status = ?, available_at = ?, claimed_at = NULL, last_error = ?
                WHERE task_id = ?
                """,
                ["dead" if dead else "pending", available_at, error, task_id],
            )

    def requeue_stale_tasks(self, claimed_before: float, now: float) -> int:
        with self._cursor() as conn:
            result = conn.execute(
                """
                UPDATE queue_tasks SET status = 'pending', available_at = ?, claimed_at = NULL
                WHERE status = 'claimed' AND claimed_at < ?
                RETURNING task_id
                """,
                [now, claimed_before],
            ).fetchall()
        return len(result)

    def task_counts(self) -> Dict[str, int]:
        with self._cursor() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) FROM queue_tasks GROUP BY status ORDER BY status"
            ).fetchall()
        return {status: count for status, count in rows}
