"""
Job Dispatcher

Enqueues node jobs onto named queues with a retry policy and mirrors each
job into the event_store table (JobProvenance) so its status survives the
broker forgetting it.

Key Features:
- JobQueue interface: add_job / get_job_status
- CeleryJobQueue: production backend (Redis broker, one queue per node kind)
- LocalJobQueue: in-process backend for development and tests
- NodeDispatcher: creates the NodeExecution record, applies the hop limit
  and the active-workflow check, then enqueues on the routed queue
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from ..database import SessionFactory, session_scope
from ..models import JobProvenance
from .events import EventChannel, EventType, WorkerEvent
from .exceptions import CycleLimitExceeded, DispatchError, HookflowException
from .nodes import Node
from .routing import RESPONSE_QUEUE, QueueRouter

logger = logging.getLogger(__name__)

EXECUTE_NODE_TASK = "hookflow.execute_node"
DELIVER_RESPONSE_TASK = "hookflow.deliver_response"


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"
    PAUSED = "paused"


# event_store status -> public status
PROVENANCE_STATUS_MAP = {
    "waiting": JobStatus.WAITING,
    "pending": JobStatus.WAITING,
    "processing": JobStatus.ACTIVE,
    "active": JobStatus.ACTIVE,
    "running": JobStatus.ACTIVE,
    "success": JobStatus.COMPLETED,
    "completed": JobStatus.COMPLETED,
    "error": JobStatus.FAILED,
    "failed": JobStatus.FAILED,
    "delayed": JobStatus.DELAYED,
    "paused": JobStatus.PAUSED,
}


def map_provenance_status(status: Optional[str]) -> Optional[JobStatus]:
    if not status:
        return None
    return PROVENANCE_STATUS_MAP.get(status.lower())


@dataclass
class JobOptions:
    """
    Retry policy and provenance fields for one job.

    delay_ms postpones the first run. Provenance is only recorded when
    workflow_id and tenant_id are both set.
    """

    attempts: int = 3
    backoff_type: str = "exponential"  # exponential | fixed
    backoff_delay_ms: int = 5000
    delay_ms: Optional[int] = None
    job_id: Optional[str] = None
    workflow_id: Optional[str] = None
    tenant_id: Optional[str] = None
    event_type: Optional[str] = None

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        base = self.backoff_delay_ms / 1000.0
        if self.backoff_type == "fixed":
            return base
        return base * (2 ** max(0, attempt - 1))


class JobPayload(BaseModel):
    """Payload of a node job."""

    node_id: str
    node_type: str = "unknown"
    workflow_id: str
    execution_id: str
    tenant_id: str
    input: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    hop: int = 0


@dataclass
class Job:
    job_id: str
    queue_name: str
    payload: Dict[str, Any]
    options: JobOptions = field(default_factory=JobOptions)


# ============================================================================
# QUEUE INTERFACE
# ============================================================================

class JobQueue(ABC):
    """
    Base class for queue backends. Handles the provenance mirror; backends
    implement _enqueue and _live_status.
    """

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self.session_factory = session_factory

    @abstractmethod
    def _enqueue(self, job: Job) -> None:
        ...

    @abstractmethod
    def _live_status(self, job_id: str) -> Optional[JobStatus]:
        ...

    def add_job(self, queue_name: str, payload: Dict[str, Any], options: Optional[JobOptions] = None) -> str:
        """
        Enqueue a job.

        Returns:
            The job id

        Raises:
            DispatchError: If the backend refuses the job
        """
        options = options or JobOptions()
        job = Job(
            job_id=options.job_id or str(uuid.uuid4()),
            queue_name=queue_name,
            payload=payload,
            options=options,
        )

        if options.workflow_id and options.tenant_id:
            self._record_provenance(job)

        try:
            self._enqueue(job)
        except DispatchError:
            raise
        except Exception as e:
            logger.error(f"Failed to enqueue job on {queue_name}: {e}")
            raise DispatchError(f"Failed to enqueue job on {queue_name}: {e}", queue_name=queue_name)

        logger.info(
            f"Enqueued job {job.job_id} on {queue_name}",
            extra={"job_id": job.job_id, "queue": queue_name, "delay_ms": options.delay_ms},
        )
        return job.job_id

    def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        """Live queue state first, then the provenance record. None when unknown."""
        try:
            status = self._live_status(job_id)
        except Exception as e:
            logger.warning(f"Live status lookup failed for job {job_id}: {e}")
            status = None
        if status is not None:
            return status
        return self._provenance_status(job_id)

    # ------------------------------------------------------------------------
    # provenance
    # ------------------------------------------------------------------------

    def _record_provenance(self, job: Job) -> None:
        if self.session_factory is None:
            return
        options = job.options
        try:
            with session_scope(self.session_factory) as db:
                record = db.get(JobProvenance, job.job_id)
                if record is None:
                    record = JobProvenance(id=job.job_id)
                    db.add(record)
                record.queue_name = job.queue_name
                record.workflow_id = options.workflow_id
                record.tenant_id = options.tenant_id
                record.event_type = options.event_type or job.queue_name
                record.status = "delayed" if options.delay_ms else "waiting"
                record.payload = job.payload
                record.sequence_number = int(job.payload.get("hop", 0) or 0)
                record.timestamp = datetime.utcnow()
                db.commit()
        except SQLAlchemyError as e:
            # Job delivery does not depend on the mirror
            logger.error(f"Failed to record provenance for job {job.job_id}: {e}")

    def update_provenance(self, job_id: str, status: str) -> None:
        """Update the provenance status in place (no-op for unknown jobs)."""
        if self.session_factory is None:
            return
        try:
            with session_scope(self.session_factory) as db:
                record = db.get(JobProvenance, job_id)
                if record is None:
                    return
                record.status = status
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to update provenance for job {job_id}: {e}")

    def _provenance_status(self, job_id: str) -> Optional[JobStatus]:
        if self.session_factory is None:
            return None
        try:
            with session_scope(self.session_factory) as db:
                record = db.get(JobProvenance, job_id)
                return map_provenance_status(record.status) if record else None
        except SQLAlchemyError as e:
            logger.error(f"Failed to read provenance for job {job_id}: {e}")
            return None


# ============================================================================
# CELERY BACKEND
# ============================================================================

# Celery task state -> public status. PENDING means "unknown" to Celery.
CELERY_STATE_MAP = {
    "RECEIVED": JobStatus.WAITING,
    "STARTED": JobStatus.ACTIVE,
    "RUNNING": JobStatus.ACTIVE,
    "RETRY": JobStatus.DELAYED,
    "SUCCESS": JobStatus.COMPLETED,
    "FAILURE": JobStatus.FAILED,
    "REVOKED": JobStatus.FAILED,
}


def task_for_queue(queue_name: str) -> str:
    return DELIVER_RESPONSE_TASK if queue_name == RESPONSE_QUEUE else EXECUTE_NODE_TASK


class CeleryJobQueue(JobQueue):
    """
    Celery backend. The retry policy travels in the task kwargs and is
    applied by the task itself (self.retry with the computed countdown).
    """

    def __init__(self, celery_app, session_factory: Optional[SessionFactory] = None):
        super().__init__(session_factory)
        self.celery_app = celery_app

    def _enqueue(self, job: Job) -> None:
        options = job.options
        countdown = options.delay_ms / 1000.0 if options.delay_ms else None
        self.celery_app.send_task(
            task_for_queue(job.queue_name),
            kwargs={
                "payload": job.payload,
                "max_attempts": options.attempts,
                "backoff_type": options.backoff_type,
                "backoff_delay_ms": options.backoff_delay_ms,
            },
            queue=job.queue_name,
            task_id=job.job_id,
            countdown=countdown,
        )

    def _live_status(self, job_id: str) -> Optional[JobStatus]:
        from celery.result import AsyncResult

        state = AsyncResult(job_id, app=self.celery_app).state
        return CELERY_STATE_MAP.get(state)


# ============================================================================
# LOCAL BACKEND
# ============================================================================

Handler = Callable[[Job, int, int], Any]


class LocalJobQueue(JobQueue):
    """
    In-process queue.

    Jobs are buffered and run by drain() (or immediately with auto_drain).
    Each job gets up to options.attempts runs; backoff delays are computed
    and logged but not slept. A HookflowException with retry_allowed=False
    stops retrying at once.
    """

    def __init__(self, session_factory: Optional[SessionFactory] = None, auto_drain: bool = False):
        super().__init__(session_factory)
        self.auto_drain = auto_drain
        self._pending: Deque[Job] = deque()
        self._handlers: Dict[str, Handler] = {}
        self._default_handler: Optional[Handler] = None
        self._status: Dict[str, JobStatus] = {}
        self._attempts: Dict[str, int] = {}
        self._draining = False
        self.history: list = []

    def register_handler(self, handler: Handler, queue_name: Optional[str] = None) -> None:
        if queue_name is None:
            self._default_handler = handler
        else:
            self._handlers[queue_name] = handler

    def _enqueue(self, job: Job) -> None:
        self._pending.append(job)
        self._status[job.job_id] = JobStatus.DELAYED if job.options.delay_ms else JobStatus.WAITING
        self.history.append(job)
        if self.auto_drain and not self._draining:
            self.drain()

    def _live_status(self, job_id: str) -> Optional[JobStatus]:
        return self._status.get(job_id)

    def attempts_made(self, job_id: str) -> int:
        return self._attempts.get(job_id, 0)

    def jobs_on(self, queue_name: str) -> list:
        return [job for job in self.history if job.queue_name == queue_name]

    def pending_count(self) -> int:
        return len(self._pending)

    def drain(self) -> int:
        """Run buffered jobs (including ones they enqueue). Returns jobs run."""
        if self._draining:
            return 0
        self._draining = True
        processed = 0
        try:
            while self._pending:
                job = self._pending.popleft()
                self._run(job)
                processed += 1
        finally:
            self._draining = False
        return processed

    def _run(self, job: Job) -> None:
        handler = self._handlers.get(job.queue_name, self._default_handler)
        if handler is None:
            logger.error(f"No handler for queue {job.queue_name}, job {job.job_id} left waiting")
            return

        max_attempts = max(1, job.options.attempts)
        for attempt in range(1, max_attempts + 1):
            self._attempts[job.job_id] = attempt
            self._status[job.job_id] = JobStatus.ACTIVE
            try:
                result = handler(job, attempt, max_attempts)
                if asyncio.iscoroutine(result):
                    asyncio.run(result)
            except Exception as e:
                retryable = not (isinstance(e, HookflowException) and not e.retry_allowed)
                if attempt < max_attempts and retryable:
                    delay = job.options.backoff_seconds(attempt)
                    logger.warning(
                        f"Job {job.job_id} attempt {attempt}/{max_attempts} failed: {e}; "
                        f"retrying (backoff {delay:.1f}s not slept)"
                    )
                    continue
                self._status[job.job_id] = JobStatus.FAILED
                logger.error(f"Job {job.job_id} failed after {attempt} attempt(s): {e}")
                return
            self._status[job.job_id] = JobStatus.COMPLETED
            return


# ============================================================================
# NODE DISPATCH
# ============================================================================

class NodeDispatcher:
    """
    Dispatches one node of an execution: applies the hop limit, creates the
    pending NodeExecution, then enqueues on the queue routed for the node.
    """

    def __init__(
        self,
        queue: JobQueue,
        router: QueueRouter,
        events: Optional[EventChannel] = None,
        attempts: int = 3,
        backoff_delay_ms: int = 5000,
        max_hops: int = 50,
    ):
        self.queue = queue
        self.router = router
        self.events = events
        self.attempts = attempts
        self.backoff_delay_ms = backoff_delay_ms
        self.max_hops = max_hops

    def dispatch(
        self,
        store,
        execution,
        node: Node,
        input_data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        hop: int = 0,
        delay_ms: Optional[int] = None,
        parent_job_id: Optional[str] = None,
    ) -> str:
        """
        Returns:
            The job id

        Raises:
            CycleLimitExceeded: If hop is past max_hops
            DispatchError: If the queue refuses the job
        """
        if hop > self.max_hops:
            raise CycleLimitExceeded(execution.id, hop, self.max_hops)

        queue_name = self.router.queue_for(node.type)
        job_id = str(uuid.uuid4())
        record = store.create_node_execution(
            execution_id=execution.id,
            node_id=node.id,
            node_type=node.kind.value,
            job_id=job_id,
            queue_name=queue_name,
            hop=hop,
            input_data=input_data or {},
            parent_job_id=parent_job_id,
        )

        payload = JobPayload(
            node_id=node.id,
            node_type=node.kind.value,
            workflow_id=execution.workflow_id,
            execution_id=execution.id,
            tenant_id=execution.tenant_id,
            input=input_data or {},
            metadata=metadata or {},
            hop=hop,
        ).model_dump()

        options = JobOptions(
            attempts=self.attempts,
            backoff_delay_ms=self.backoff_delay_ms,
            delay_ms=delay_ms,
            job_id=job_id,
            workflow_id=execution.workflow_id,
            tenant_id=execution.tenant_id,
            event_type=f"node.{node.kind.value}",
        )

        self._publish(EventType.ENQUEUED, queue_name, job_id, node, execution)
        try:
            self.queue.add_job(queue_name, payload, options)
        except DispatchError as e:
            store.mark_node_failed(record, f"Dispatch failed: {e.message}", attempt=0)
            self._publish(EventType.FAILED, queue_name, job_id, node, execution, error=e.message)
            raise
        return job_id

    def _publish(self, event_type: str, queue_name: str, job_id: str, node: Node, execution, error: Optional[str] = None) -> None:
        if self.events is None:
            return
        self.events.publish(WorkerEvent(
            type=event_type,
            queue_name=queue_name,
            job_id=job_id,
            node_id=node.id,
            execution_id=execution.id,
            tenant_id=execution.tenant_id,
            final=event_type == EventType.FAILED,
            error=error,
        ))
