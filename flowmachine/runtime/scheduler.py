"""
scheduler.py - Recurring and one-shot flow triggers.

A flow's Scheduling row holds its interval and the epoch of its next run.
``tick`` triggers every enabled flow whose ``next_run_at`` has passed, via
the same entry point as "run now" (JobLifecycleManager.create_and_schedule),
then advances ``next_run_at`` by the interval. One-shot schedules revert to
manual after firing.

Deactivating a flow only stops future triggers; jobs already queued keep
running.

Usage:
    scheduler = Scheduler(store, jobs)
    scheduler.schedule_flow(flow_id, "hourly")
    scheduler.tick()            # from cron, the CLI, or the background thread
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Union

from flowmachine.runtime.db import Store
from flowmachine.runtime.errors import ConfigurationError, FailureReason
from flowmachine.runtime.jobs import JobLifecycleManager
from flowmachine.runtime.types import Scheduling

logger = logging.getLogger(__name__)

INTERVALS: Dict[str, int] = {
    "every_5_minutes": 300,
    "hourly": 3600,
    "every_2_hours": 7200,
    "every_4_hours": 14400,
    "qtrdaily": 21600,
    "twicedaily": 43200,
    "daily": 86400,
    "weekly": 604800,
}

MANUAL = "manual"
ONE_TIME = "one_time"

ScheduleWhen = Union[str, float, int, datetime]


class Scheduler:
    """Triggers due flows.

    Args:
        store: Persistent store holding flow scheduling.
        jobs: Job lifecycle manager used to start runs.
        poll_interval_seconds: Background thread tick period.
        clock: Epoch seconds source.
    """

    def __init__(
        self,
        store: Store,
        jobs: JobLifecycleManager,
        poll_interval_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._jobs = jobs
        self.poll_interval_seconds = poll_interval_seconds
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _require_flow(self, flow_id: str):
        flow = self._store.get_flow(flow_id)
        if flow is None:
            raise ConfigurationError(
                f"Flow {flow_id} not found",
                reason=FailureReason.INVALID_FLOW,
                context={"flow_id": flow_id},
            )
        return flow

    def schedule_flow(self, flow_id: str, when: ScheduleWhen) -> Scheduling:
        """Set a flow's schedule, replacing any previous one.

        Args:
            flow_id: Flow to schedule.
            when: "manual", an interval key from INTERVALS, or an epoch /
                datetime for a single run.

        Raises:
            ConfigurationError: Unknown flow or interval.
        """
        self._require_flow(flow_id)
        self.unschedule(flow_id)
        now = self._clock()

        if isinstance(when, datetime):
            scheduling = Scheduling(interval=ONE_TIME, next_run_at=when.timestamp())
        elif isinstance(when, (int, float)):
            scheduling = Scheduling(interval=ONE_TIME, next_run_at=float(when))
        elif when == MANUAL:
            scheduling = Scheduling(interval=MANUAL)
        elif when in INTERVALS:
            scheduling = Scheduling(interval=when, next_run_at=now + INTERVALS[when])
        else:
            raise ConfigurationError(
                f"Unknown schedule interval '{when}'",
                context={"flow_id": flow_id, "intervals": sorted(INTERVALS)},
            )

        self._store.update_flow_scheduling(flow_id, scheduling)
        logger.info("Scheduled flow %s: %s (next run %s)", flow_id, scheduling.interval, scheduling.next_run_at)
        return scheduling

    def unschedule(self, flow_id: str) -> None:
        flow = self._require_flow(flow_id)
        if flow.scheduling.interval != MANUAL or flow.scheduling.next_run_at is not None:
            self._store.update_flow_scheduling(
                flow_id, Scheduling(interval=MANUAL, last_run_at=flow.scheduling.last_run_at)
            )

    def deactivate(self, flow_id: str) -> None:
        """Stop future triggers for a flow. In-flight jobs are not affected."""
        flow = self._require_flow(flow_id)
        scheduling = flow.scheduling
        scheduling.enabled = False
        self._store.update_flow_scheduling(flow_id, scheduling)
        logger.info("Deactivated flow %s", flow_id)

    def activate(self, flow_id: str) -> None:
        flow = self._require_flow(flow_id)
        scheduling = flow.scheduling
        scheduling.enabled = True
        if scheduling.interval in INTERVALS and scheduling.next_run_at is None:
            scheduling.next_run_at = self._clock() + INTERVALS[scheduling.interval]
        self._store.update_flow_scheduling(flow_id, scheduling)

    def due_flows(self, now: Optional[float] = None) -> List[str]:
        now = self._clock() if now is None else now
        return [
            f.flow_id
            for f in self._store.list_flows()
            if f.scheduling.enabled and f.scheduling.next_run_at is not None and f.scheduling.next_run_at <= now
        ]

    def tick(self, now: Optional[float] = None) -> List[str]:
        """Trigger every due flow.

        Returns:
            Job ids created in this tick.
        """
        now = self._clock() if now is None else now
        job_ids: List[str] = []
        for flow_id in self.due_flows(now):
            flow = self._store.get_flow(flow_id)
            if flow is None:
                continue
            scheduling = flow.scheduling
            scheduling.last_run_at = now
            if scheduling.interval in INTERVALS:
                interval = INTERVALS[scheduling.interval]
                next_run = scheduling.next_run_at or now
                while next_run <= now:
                    next_run += interval
                scheduling.next_run_at = next_run
            else:
                scheduling.interval = MANUAL
                scheduling.next_run_at = None
            self._store.update_flow_scheduling(flow_id, scheduling)

            try:
                job_ids.append(self._jobs.create_and_schedule(flow_id, trigger_reason="scheduled"))
            except ConfigurationError as e:
                logger.error("Scheduled run of flow %s rejected (%s): %s", flow_id, e.reason.value, e.message)
            except Exception:
                logger.exception("Scheduled run of flow %s failed", flow_id)
        if job_ids:
            logger.info("Scheduler tick started %d jobs", len(job_ids))
        return job_ids

    # =========================================================================
    # Background thread
    # =========================================================================

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="flowmachine-scheduler", daemon=True)
        self._thread.start()
        logger.info("Scheduler started (poll every %ss)", self.poll_interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            self._stop.wait(self.poll_interval_seconds)
