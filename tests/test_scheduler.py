"""
Tests for recurring and one-shot flow triggers.
"""

from datetime import datetime, timezone

import pytest

from flowmachine.runtime.errors import ConfigurationError
from flowmachine.runtime.scheduler import INTERVALS, Scheduler

from conftest import FEED_URL, build_flow


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(container, clock):
    return Scheduler(container.store, container.jobs, clock=clock)


def _flow(container):
    _, flow = build_flow(container, [{"step_type": "fetch"}], [{"slug": "rss", "config": {"feed_url": FEED_URL}}])
    return flow


class TestScheduling:
    """Tests for setting schedules."""

    def test_interval_sets_next_run(self, container, scheduler, clock):
        """A recurring schedule first fires one interval from now."""
        flow = _flow(container)
        scheduling = scheduler.schedule_flow(flow.flow_id, "hourly")
        assert scheduling.interval == "hourly"
        assert scheduling.next_run_at == clock.now + INTERVALS["hourly"]
        assert container.pipelines.get_flow(flow.flow_id).scheduling.next_run_at == scheduling.next_run_at

    def test_unknown_interval_rejected(self, container, scheduler):
        """Interval keys outside the table are configuration errors."""
        flow = _flow(container)
        with pytest.raises(ConfigurationError):
            scheduler.schedule_flow(flow.flow_id, "fortnightly")

    def test_unknown_flow_rejected(self, scheduler):
        """A schedule needs an existing flow."""
        with pytest.raises(ConfigurationError):
            scheduler.schedule_flow("fl-missing", "daily")

    def test_datetime_is_one_shot(self, container, scheduler):
        """A datetime schedules a single run at that instant."""
        flow = _flow(container)
        when = datetime(2030, 1, 1, tzinfo=timezone.utc)
        scheduling = scheduler.schedule_flow(flow.flow_id, when)
        assert scheduling.interval == "one_time"
        assert scheduling.next_run_at == when.timestamp()

    def test_manual_clears_next_run(self, container, scheduler):
        """Switching back to manual removes the pending trigger."""
        flow = _flow(container)
        scheduler.schedule_flow(flow.flow_id, "daily")
        scheduler.schedule_flow(flow.flow_id, "manual")
        assert scheduler.due_flows(now=float("inf")) == []


class TestTick:
    """Tests for triggering due flows."""

    def test_tick_triggers_due_flow_and_advances(self, container, scheduler, clock):
        """A due flow gets a scheduled job and its next run moves forward."""
        flow = _flow(container)
        scheduler.schedule_flow(flow.flow_id, "hourly")

        assert scheduler.tick() == []
        clock.now += INTERVALS["hourly"]
        job_ids = scheduler.tick()

        assert len(job_ids) == 1
        assert container.jobs.get(job_ids[0]).trigger == "scheduled"
        scheduling = container.pipelines.get_flow(flow.flow_id).scheduling
        assert scheduling.last_run_at == clock.now
        assert scheduling.next_run_at == clock.now + INTERVALS["hourly"]

    def test_missed_intervals_fire_once(self, container, scheduler, clock):
        """A tick after several missed intervals triggers a single run."""
        flow = _flow(container)
        scheduler.schedule_flow(flow.flow_id, "every_5_minutes")
        clock.now += 5 * INTERVALS["every_5_minutes"] + 1

        assert len(scheduler.tick()) == 1
        assert container.pipelines.get_flow(flow.flow_id).scheduling.next_run_at > clock.now
        assert scheduler.tick() == []

    def test_one_shot_reverts_to_manual(self, container, scheduler, clock):
        """A one-time schedule fires once and then becomes manual."""
        flow = _flow(container)
        scheduler.schedule_flow(flow.flow_id, clock.now + 10)
        clock.now += 10

        assert len(scheduler.tick()) == 1
        scheduling = container.pipelines.get_flow(flow.flow_id).scheduling
        assert scheduling.interval == "manual"
        assert scheduling.next_run_at is None

    def test_deactivated_flow_is_not_triggered(self, container, scheduler, clock):
        """Deactivation stops future triggers but keeps the schedule."""
        flow = _flow(container)
        scheduler.schedule_flow(flow.flow_id, "hourly")
        scheduler.deactivate(flow.flow_id)
        clock.now += INTERVALS["hourly"]
        assert scheduler.tick() == []

        scheduler.activate(flow.flow_id)
        assert len(scheduler.tick()) == 1

    def test_rejected_flow_does_not_stop_tick(self, container, scheduler, clock):
        """A due flow that cannot run is logged and the others still fire."""
        _, empty_flow = build_flow(container, [])
        good_flow = _flow(container)
        scheduler.schedule_flow(empty_flow.flow_id, "hourly")
        scheduler.schedule_flow(good_flow.flow_id, "hourly")
        clock.now += INTERVALS["hourly"]

        job_ids = scheduler.tick()
        assert len(job_ids) == 1
        assert container.jobs.get(job_ids[0]).flow_id == good_flow.flow_id
