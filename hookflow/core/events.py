"""
Worker lifecycle events.

Workers and the dispatcher publish WorkerEvents to an EventChannel; the
monitoring service subscribes and turns them into metrics and alerts.
Publishing never blocks the worker: events are buffered and consumed by
a background thread (or synchronously with drain()).
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class EventType:
    ENQUEUED = "enqueued"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    EXECUTION_STARTED = "execution_started"
    EXECUTION_FINISHED = "execution_finished"


@dataclass
class WorkerEvent:
    type: str
    queue_name: Optional[str] = None
    job_id: Optional[str] = None
    node_id: Optional[str] = None
    execution_id: Optional[str] = None
    tenant_id: Optional[str] = None
    attempt: int = 0
    # True when no further retry will happen for this job
    final: bool = False
    duration: Optional[float] = None  # seconds
    status: Optional[str] = None
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


Subscriber = Callable[[WorkerEvent], None]


class EventChannel:
    """In-process fan-out channel for WorkerEvents."""

    def __init__(self, maxsize: int = 10000):
        self._queue: "queue.Queue[WorkerEvent]" = queue.Queue(maxsize=maxsize)
        self._subscribers: List[Subscriber] = []
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def publish(self, event: WorkerEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning(f"Event channel full, dropping {event.type} event for job {event.job_id}")

    def _deliver(self, event: WorkerEvent) -> None:
        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                logger.error(f"Event subscriber failed on {event.type}: {e}", exc_info=True)

    def drain(self) -> int:
        """Deliver every buffered event synchronously. Returns the count."""
        delivered = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return delivered
            self._deliver(event)
            delivered += 1

    def start(self) -> None:
        """Consume events on a daemon thread until stop() is called."""
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="hookflow-events", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                event = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            self._deliver(event)

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        self.drain()
