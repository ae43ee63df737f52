"""
Scheduler - turns due ScheduledEvents into executions.

Each tick selects active events whose next_run has passed, starts an
execution through the TriggerService (trigger key
"scheduled:{event}:{next_run}", so a tick that runs twice starts one
execution), then stamps last_run and the next cron occurrence.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from ..database import SessionFactory, session_scope
from .exceptions import (
    DefinitionError,
    DispatchError,
    StoreError,
    WorkflowInactiveError,
    WorkflowNotFoundError,
)
from .repository import WorkflowStore
from .triggers import TriggerResult, TriggerService

logger = logging.getLogger(__name__)


def _parse_time(value: Any, tz: ZoneInfo) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise DefinitionError(f"Invalid schedule time: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def _zone(schedule: Dict[str, Any]) -> ZoneInfo:
    name = schedule.get("timezone") or "UTC"
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise DefinitionError(f"Unknown timezone: {name!r}")


def validate_schedule(schedule: Dict[str, Any]) -> None:
    """
    Raises:
        DefinitionError: Bad cron expression, timezone or start/end time
    """
    cron = schedule.get("cron")
    if not cron or not croniter.is_valid(cron):
        raise DefinitionError(f"Invalid cron expression: {cron!r}")
    tz = _zone(schedule)
    start = _parse_time(schedule.get("start_time"), tz)
    end = _parse_time(schedule.get("end_time"), tz)
    if start and end and end <= start:
        raise DefinitionError("Schedule end_time must be after start_time")


def compute_next_run(schedule: Dict[str, Any], after: datetime) -> Optional[datetime]:
    """
    Next cron occurrence strictly after `after` (naive UTC), honouring the
    schedule's timezone and start/end time.

    Returns:
        Naive UTC datetime, or None when the schedule has no further run
    """
    validate_schedule(schedule)
    tz = _zone(schedule)

    base = after.replace(tzinfo=timezone.utc).astimezone(tz)
    start = _parse_time(schedule.get("start_time"), tz)
    if start and start > base:
        # One second back so the start instant itself can match
        base = start.astimezone(tz) - timedelta(seconds=1)

    next_run = croniter(schedule["cron"], base).get_next(datetime)
    end = _parse_time(schedule.get("end_time"), tz)
    if end and next_run > end:
        return None
    return next_run.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass
class _DueEvent:
    id: str
    workflow_id: str
    node_id: str
    tenant_id: str
    next_run: datetime
    data: Dict[str, Any] = field(default_factory=dict)
    schedule: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def trigger_key(self) -> str:
        return f"scheduled:{self.id}:{self.next_run.isoformat()}"


class Scheduler:

    def __init__(self, session_factory: SessionFactory, triggers: TriggerService, batch_size: int = 100):
        self.session_factory = session_factory
        self.triggers = triggers
        self.batch_size = batch_size

    def _due(self, now: datetime) -> List[_DueEvent]:
        with session_scope(self.session_factory) as db:
            return [
                _DueEvent(
                    id=event.id,
                    workflow_id=event.workflow_id,
                    node_id=event.node_id,
                    tenant_id=event.tenant_id,
                    next_run=event.next_run,
                    data=dict(event.data or {}),
                    schedule=dict(event.schedule or {}),
                    metadata=dict(event.event_metadata or {}),
                )
                for event in WorkflowStore(db).due_events(now, limit=self.batch_size)
            ]

    def tick(self, now: Optional[datetime] = None) -> List[TriggerResult]:
        """
        Run every due event once.

        Returns:
            Trigger results of the events that started (or had already started) an execution
        """
        now = now or datetime.utcnow()
        results = []
        for due in self._due(now):
            metadata = dict(due.metadata)
            metadata.update({"scheduled_event_id": due.id, "scheduled_for": due.next_run.isoformat() + "Z"})
            try:
                result = self.triggers.start(
                    due.tenant_id,
                    due.workflow_id,
                    node_id=due.node_id,
                    input_data=due.data,
                    metadata=metadata,
                    source="scheduler",
                    trigger_key=due.trigger_key,
                )
            except (DispatchError, StoreError) as e:
                # Event left as is; the next tick retries it
                logger.error(f"Scheduled event {due.id} could not be dispatched: {e.message}")
                continue
            except WorkflowInactiveError:
                logger.info(f"Scheduled event {due.id}: workflow {due.workflow_id} is disabled, occurrence skipped")
                self._advance(due, now, ran=False)
                continue
            except (WorkflowNotFoundError, DefinitionError) as e:
                logger.error(f"Scheduled event {due.id} paused: {e.message}")
                self._set_status(due.id, "paused")
                continue

            self._advance(due, now, ran=True)
            results.append(result)
        if results:
            logger.info(f"Scheduler tick started {len(results)} execution(s)")
        return results

    def _advance(self, due: _DueEvent, now: datetime, ran: bool) -> None:
        try:
            next_run = compute_next_run(due.schedule, now) if due.schedule.get("cron") else None
        except DefinitionError as e:
            logger.error(f"Scheduled event {due.id} has an invalid schedule: {e.message}")
            next_run = None
        with session_scope(self.session_factory) as db:
            store = WorkflowStore(db)
            event = store.get_scheduled_event(due.id)
            if event is None:
                return
            last_run = now if ran else event.last_run
            store.stamp_scheduled_run(event, last_run, next_run)
        logger.debug(f"Scheduled event {due.id}: next run {next_run}")

    def _set_status(self, event_id: str, status: str) -> None:
        with session_scope(self.session_factory) as db:
            store = WorkflowStore(db)
            event = store.get_scheduled_event(event_id)
            if event is not None:
                store.set_schedule_status(event, status)

    def run_forever(self, interval: float = 30.0, stop_event: Optional[threading.Event] = None) -> None:
        """Tick every `interval` seconds until stop_event is set."""
        stop_event = stop_event or threading.Event()
        logger.info(f"Scheduler started (interval {interval}s)")
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}", exc_info=True)
            stop_event.wait(interval)
        logger.info("Scheduler stopped")
