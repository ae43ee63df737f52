"""
Unit Tests for the Scheduler

Tests cover:
- Cron validation and next-run computation (timezones, start/end time)
- A past-due event is started once per occurrence and re-stamped
- Overlapping ticks do not start a second execution
- Disabled workflows skip the occurrence, broken events are paused
"""

from datetime import datetime

import pytest

from hookflow.core.exceptions import DefinitionError
from hookflow.core.repository import WorkflowStore
from hookflow.core.scheduler import compute_next_run, validate_schedule
from hookflow.database import session_scope


DAILY = {"cron": "0 9 * * *"}
TICK_AT = datetime(2026, 10, 19, 9, 0, 5)


def _schedule(services, node_id="n1", schedule=None, next_run=datetime(2026, 10, 19, 9, 0), data=None):
    with session_scope(services.session_factory) as db:
        store = WorkflowStore(db)
        event = store.create_scheduled_event(
            store.get_workflow("wf-1", "acme"),
            node_id=node_id,
            schedule=DAILY if schedule is None else schedule,
            next_run=next_run,
            data=data or {"report": "daily"},
            metadata={"origin": "test"},
        )
        return event.id


def _event(services, event_id):
    with session_scope(services.session_factory) as db:
        event = WorkflowStore(db).get_scheduled_event(event_id)
        return {"status": event.status, "last_run": event.last_run, "next_run": event.next_run}


# ============================================================================
# CRON
# ============================================================================

@pytest.mark.unit
def test_next_run_is_next_occurrence_in_utc():
    assert compute_next_run(DAILY, TICK_AT) == datetime(2026, 10, 20, 9, 0)
    assert compute_next_run(DAILY, datetime(2026, 10, 19, 8, 59)) == datetime(2026, 10, 19, 9, 0)


@pytest.mark.unit
def test_next_run_honours_timezone():
    # 09:00 in Madrid is 07:00 UTC while summer time lasts
    schedule = {"cron": "0 9 * * *", "timezone": "Europe/Madrid"}

    assert compute_next_run(schedule, datetime(2026, 10, 19, 6, 0)) == datetime(2026, 10, 19, 7, 0)


@pytest.mark.unit
def test_next_run_honours_start_and_end_time():
    later = {"cron": "0 9 * * *", "start_time": "2026-11-01T09:00:00"}
    ended = {"cron": "0 9 * * *", "end_time": "2026-10-19T10:00:00"}

    assert compute_next_run(later, TICK_AT) == datetime(2026, 11, 1, 9, 0)
    assert compute_next_run(ended, TICK_AT) is None


@pytest.mark.unit
@pytest.mark.parametrize("schedule", [
    {},
    {"cron": "not a cron"},
    {"cron": "0 9 * * *", "timezone": "Mars/Olympus"},
    {"cron": "0 9 * * *", "start_time": "2026-10-20T00:00:00", "end_time": "2026-10-19T00:00:00"},
    {"cron": "0 9 * * *", "start_time": "tomorrow"},
])
def test_invalid_schedules(schedule):
    with pytest.raises(DefinitionError):
        validate_schedule(schedule)


# ============================================================================
# TICK
# ============================================================================

@pytest.mark.unit
def test_due_event_runs_once_and_is_restamped(services, create_workflow, fan_out_workflow):
    create_workflow(fan_out_workflow)
    event_id = _schedule(services)

    results = services.scheduler.tick(TICK_AT)

    assert len(results) == 1
    assert results[0].created is True
    job = services.queue.jobs_on("data-transformation")[0]
    assert job.payload["input"] == {"report": "daily"}
    assert job.payload["metadata"]["scheduled_event_id"] == event_id
    assert job.payload["metadata"]["scheduled_for"] == "2026-10-19T09:00:00Z"
    assert job.payload["metadata"]["origin"] == "test"
    assert job.payload["metadata"]["trigger_source"] == "scheduler"

    event = _event(services, event_id)
    assert event["last_run"] == TICK_AT
    assert event["next_run"] == datetime(2026, 10, 20, 9, 0)
    assert event["status"] == "active"

    # The next tick finds nothing due
    assert services.scheduler.tick(TICK_AT) == []
    assert len(services.queue.history) == 1


@pytest.mark.unit
def test_overlapping_tick_does_not_start_twice(services, create_workflow, fan_out_workflow):
    create_workflow(fan_out_workflow)
    event_id = _schedule(services)
    first = services.scheduler.tick(TICK_AT)

    # A second scheduler that read the event before it was re-stamped
    with session_scope(services.session_factory) as db:
        store = WorkflowStore(db)
        store.stamp_scheduled_run(store.get_scheduled_event(event_id), None, datetime(2026, 10, 19, 9, 0))
    second = services.scheduler.tick(TICK_AT)

    assert second[0].created is False
    assert second[0].execution_id == first[0].execution_id
    assert len(services.queue.history) == 1


@pytest.mark.unit
def test_one_shot_event_completes(services, create_workflow, fan_out_workflow):
    create_workflow(fan_out_workflow)
    event_id = _schedule(services, schedule={})

    services.scheduler.tick(TICK_AT)

    event = _event(services, event_id)
    assert event["status"] == "completed"
    assert event["next_run"] is None


@pytest.mark.unit
def test_future_event_is_not_due(services, create_workflow, fan_out_workflow):
    create_workflow(fan_out_workflow)
    _schedule(services, next_run=datetime(2026, 10, 20, 9, 0))

    assert services.scheduler.tick(TICK_AT) == []


@pytest.mark.unit
def test_disabled_workflow_skips_occurrence(services, create_workflow, fan_out_workflow):
    create_workflow(fan_out_workflow)
    event_id = _schedule(services)
    with session_scope(services.session_factory) as db:
        store = WorkflowStore(db)
        store.disable_workflow(store.get_workflow("wf-1"))

    assert services.scheduler.tick(TICK_AT) == []

    event = _event(services, event_id)
    assert event["last_run"] is None
    assert event["next_run"] == datetime(2026, 10, 20, 9, 0)
    assert services.queue.history == []


@pytest.mark.unit
def test_event_for_missing_node_is_paused(services, create_workflow, fan_out_workflow):
    create_workflow(fan_out_workflow)
    event_id = _schedule(services, node_id="gone")

    assert services.scheduler.tick(TICK_AT) == []
    assert _event(services, event_id)["status"] == "paused"

    # Paused events are not picked up again
    assert services.scheduler.tick(TICK_AT) == []
