"""
NodeRunner - the per-job algorithm every worker runs.

For one node job:
1. Load the execution and its workflow (tenant scoped)
2. Mark the NodeExecution running, provenance "processing"
3. Run the node's executor under the job timeout
4. Success: record the output, then resolve and dispatch the successors
   (same execution id, hop + 1, input = this node's output); complete the
   execution when nothing is left pending or running
5. Failure: record the error and re-raise so the queue retries; on the
   final attempt fail the execution and, for conversations, queue an apology

Also home of ResponseDeliverer, the handler of the response-delivery queue.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from ..database import SessionFactory, session_scope
from .dispatcher import Job, JobOptions, JobPayload, JobQueue, NodeDispatcher
from .events import EventChannel, EventType, WorkerEvent
from .exceptions import (
    CycleLimitExceeded,
    DefinitionError,
    HookflowException,
    NodeTimeoutError,
)
from .executors import ExecutionContext, ExecutorRegistry
from .graph import next_nodes
from .logging_config import bind_execution, clear_execution
from .nodes import parse_definition
from .repository import WorkflowStore
from .routing import RESPONSE_QUEUE
from .senders import MessageSender

logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = "I'm sorry, I encountered an error processing your message. Please try again later."


def is_final_attempt(error: Exception, attempt: int, max_attempts: int) -> bool:
    if isinstance(error, HookflowException) and not error.retry_allowed:
        return True
    return attempt >= max_attempts


class ResponseQueueClient:
    """Queues outbound replies on the response-delivery queue."""

    def __init__(self, queue: JobQueue, events: Optional[EventChannel] = None, attempts: int = 3, backoff_delay_ms: int = 5000):
        self.queue = queue
        self.events = events
        self.attempts = attempts
        self.backoff_delay_ms = backoff_delay_ms

    def enqueue(
        self,
        recipient_id: str,
        message: str,
        channel: str,
        execution_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        is_error: bool = False,
    ) -> str:
        payload = {
            "recipient_id": recipient_id,
            "message": message,
            "channel": channel,
            "execution_id": execution_id,
            "workflow_id": workflow_id,
            "tenant_id": tenant_id,
            "is_error": is_error,
        }
        options = JobOptions(
            attempts=self.attempts,
            backoff_delay_ms=self.backoff_delay_ms,
            workflow_id=workflow_id,
            tenant_id=tenant_id,
            event_type="response.error" if is_error else "response.delivery",
        )
        if self.events is not None:
            # Published before enqueueing so the local queue's inline run is counted after it
            options.job_id = options.job_id or str(uuid.uuid4())
            self.events.publish(WorkerEvent(
                type=EventType.ENQUEUED,
                queue_name=RESPONSE_QUEUE,
                job_id=options.job_id,
                execution_id=execution_id,
                tenant_id=tenant_id,
            ))
        return self.queue.add_job(RESPONSE_QUEUE, payload, options)


class NodeRunner:

    def __init__(
        self,
        session_factory: SessionFactory,
        dispatcher: NodeDispatcher,
        executors: ExecutorRegistry,
        responses: ResponseQueueClient,
        events: Optional[EventChannel] = None,
        job_timeout: float = 30.0,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.executors = executors
        self.responses = responses
        self.events = events
        self.job_timeout = job_timeout

    @property
    def queue(self) -> JobQueue:
        return self.dispatcher.queue

    def _publish(self, event_type: str, job: Job, payload: JobPayload, **fields) -> None:
        if self.events is None:
            return
        self.events.publish(WorkerEvent(
            type=event_type,
            queue_name=job.queue_name,
            job_id=job.job_id,
            node_id=payload.node_id,
            execution_id=payload.execution_id,
            tenant_id=payload.tenant_id,
            **fields,
        ))

    async def run(self, job: Job, attempt: int = 1, max_attempts: int = 3) -> Dict[str, Any]:
        """
        Run one attempt of a node job.

        Returns:
            {"status": ..., "execution_id": ..., "node_id": ..., "dispatched": [job ids]}

        Raises:
            Whatever the node raised, after it has been recorded
        """
        payload = JobPayload(**job.payload)
        bind_execution(payload.execution_id, payload.tenant_id)
        try:
            with session_scope(self.session_factory) as db:
                return await self._run(WorkflowStore(db), job, payload, attempt, max_attempts)
        finally:
            clear_execution()

    async def _run(
        self,
        store: WorkflowStore,
        job: Job,
        payload: JobPayload,
        attempt: int,
        max_attempts: int,
    ) -> Dict[str, Any]:
        result = {
            "status": "skipped",
            "execution_id": payload.execution_id,
            "node_id": payload.node_id,
            "dispatched": [],
        }

        record = store.get_node_execution_by_job(job.job_id)
        if record is None:
            record = store.create_node_execution(
                execution_id=payload.execution_id,
                node_id=payload.node_id,
                node_type=payload.node_type,
                job_id=job.job_id,
                queue_name=job.queue_name,
                hop=payload.hop,
                input_data=payload.input,
            )

        execution = store.get_execution(payload.execution_id, payload.tenant_id)
        if execution is None:
            raise DefinitionError(f"Execution {payload.execution_id} not found")

        if record.status == "completed":
            # Redelivered after the node finished: only finish the continuation
            if execution.status != "running":
                return result
            logger.info(f"Job {job.job_id}: node {payload.node_id} already completed, resuming dispatch")
            workflow = store.get_workflow(payload.workflow_id, payload.tenant_id)
            result["dispatched"] = self._continue(store, execution, workflow, job, payload, record.output or {}, None)
            result["status"] = "completed"
            return result

        if execution.status != "running":
            logger.info(f"Job {job.job_id}: execution is {execution.status}, node {payload.node_id} not run")
            store.mark_node_failed(record, f"Execution {execution.status}", attempt)
            self.queue.update_provenance(job.job_id, "error")
            self._publish(EventType.FAILED, job, payload, attempt=0, final=True, error=f"execution {execution.status}")
            return result

        started = time.monotonic()
        try:
            workflow = store.get_workflow(payload.workflow_id, payload.tenant_id)
            node = parse_definition(workflow.graph_definition).get_node(payload.node_id)
            if node is None:
                raise DefinitionError(f"Node {payload.node_id} not found in workflow {workflow.id}")

            store.mark_node_running(record, attempt)
            self.queue.update_provenance(job.job_id, "processing")
            self._publish(EventType.STARTED, job, payload, attempt=attempt)
            logger.info(
                f"Job {job.job_id}: running node {node.id} ({node.kind.value}) attempt {attempt}/{max_attempts}"
            )

            context = ExecutionContext(
                execution_id=execution.id,
                workflow_id=workflow.id,
                tenant_id=execution.tenant_id,
                job_id=job.job_id,
                attempt=attempt,
                metadata=payload.metadata,
                respond=lambda recipient, message, channel: self.responses.enqueue(
                    recipient, message, channel,
                    execution_id=execution.id,
                    workflow_id=workflow.id,
                    tenant_id=execution.tenant_id,
                ),
            )
            executor = self.executors.get(node.kind)
            try:
                node_result = await asyncio.wait_for(
                    executor.execute(node, payload.input, context),
                    timeout=self.job_timeout,
                )
            except asyncio.TimeoutError:
                raise NodeTimeoutError(
                    f"Node {node.id} timed out after {self.job_timeout}s",
                    node_id=node.id,
                    timeout_seconds=self.job_timeout,
                )
        except Exception as e:
            self._handle_failure(store, execution, record, job, payload, e, attempt, max_attempts, time.monotonic() - started)
            raise

        duration = time.monotonic() - started
        output = node_result.output if isinstance(node_result.output, dict) else {"result": node_result.output}
        store.mark_node_completed(record, output, duration)
        self.queue.update_provenance(job.job_id, "success")
        self._publish(EventType.COMPLETED, job, payload, attempt=attempt, final=True, duration=duration)
        logger.info(f"Job {job.job_id}: node {node.id} completed in {duration:.2f}s")

        delay_ms = int(node_result.delay_seconds * 1000) if node_result.delay_seconds else None
        result["dispatched"] = self._continue(store, execution, workflow, job, payload, output, delay_ms)
        result["status"] = "completed"
        return result

    def _continue(self, store, execution, workflow, job: Job, payload: JobPayload, output, delay_ms) -> List[str]:
        """Dispatch successors, or close the execution when the chain ended."""
        store.session.refresh(workflow)
        if not workflow.is_active:
            if store.finish_execution(execution, "cancelled", f"Workflow {workflow.id} was disabled"):
                logger.info(f"Execution {execution.id} cancelled: workflow disabled")
                self._publish_finished(execution)
            return []

        already = store.dispatched_children(job.job_id)
        metadata = dict(payload.metadata)
        metadata["previous_node_id"] = payload.node_id

        dispatched = []
        for successor in next_nodes(workflow.graph_definition, payload.node_id, output):
            if successor.id in already:
                continue
            try:
                job_id = self.dispatcher.dispatch(
                    store,
                    execution,
                    successor,
                    input_data=output,
                    metadata=metadata,
                    hop=payload.hop + 1,
                    delay_ms=delay_ms,
                    parent_job_id=job.job_id,
                )
            except CycleLimitExceeded as e:
                logger.error(f"Execution {execution.id}: {e.message}")
                if store.finish_execution(execution, "failed", e.message):
                    self._publish_finished(execution)
                return dispatched
            dispatched.append(job_id)

        if not dispatched and not store.has_open_nodes(execution.id):
            if store.finish_execution(execution, "completed"):
                logger.info(f"Execution {execution.id} completed")
                self._publish_finished(execution)
        return dispatched

    def _handle_failure(self, store, execution, record, job: Job, payload: JobPayload, error: Exception, attempt, max_attempts, duration) -> None:
        message = getattr(error, "message", None) or str(error) or error.__class__.__name__
        final = is_final_attempt(error, attempt, max_attempts)

        store.session.rollback()
        store.mark_node_failed(record, message, attempt, duration)
        self.queue.update_provenance(job.job_id, "error" if final else "delayed")
        self._publish(EventType.FAILED, job, payload, attempt=attempt, final=final, duration=duration, error=message)

        if not final:
            logger.warning(f"Job {job.job_id}: attempt {attempt}/{max_attempts} failed: {message}")
            return

        logger.error(f"Job {job.job_id}: node {payload.node_id} failed permanently: {message}")
        if store.finish_execution(execution, "failed", f"Node {payload.node_id}: {message}"):
            self._publish_finished(execution)

        sender = payload.metadata.get("sender_id")
        if sender:
            try:
                self.responses.enqueue(
                    sender,
                    APOLOGY_MESSAGE,
                    payload.metadata.get("channel") or payload.metadata.get("provider") or "whatsapp",
                    execution_id=payload.execution_id,
                    workflow_id=payload.workflow_id,
                    tenant_id=payload.tenant_id,
                    is_error=True,
                )
            except HookflowException as e:
                logger.error(f"Could not queue error reply for execution {payload.execution_id}: {e.message}")

    def _publish_finished(self, execution) -> None:
        if self.events is None:
            return
        self.events.publish(WorkerEvent(
            type=EventType.EXECUTION_FINISHED,
            execution_id=execution.id,
            tenant_id=execution.tenant_id,
            status=execution.status,
        ))


class ResponseDeliverer:
    """Handler of the response-delivery queue."""

    def __init__(self, sender: MessageSender, queue: JobQueue, events: Optional[EventChannel] = None):
        self.sender = sender
        self.queue = queue
        self.events = events

    def _publish(self, event_type: str, job: Job, **fields) -> None:
        if self.events is None:
            return
        self.events.publish(WorkerEvent(
            type=event_type,
            queue_name=job.queue_name,
            job_id=job.job_id,
            execution_id=job.payload.get("execution_id"),
            tenant_id=job.payload.get("tenant_id"),
            **fields,
        ))

    async def deliver(self, job: Job, attempt: int = 1, max_attempts: int = 3) -> Dict[str, Any]:
        payload = job.payload
        channel = payload.get("channel") or "whatsapp"
        started = time.monotonic()
        self.queue.update_provenance(job.job_id, "processing")
        self._publish(EventType.STARTED, job, attempt=attempt)
        try:
            message_id = await self.sender.send(payload.get("recipient_id"), payload.get("message"), channel)
        except Exception as e:
            final = is_final_attempt(e, attempt, max_attempts)
            self.queue.update_provenance(job.job_id, "error" if final else "delayed")
            self._publish(
                EventType.FAILED, job,
                attempt=attempt, final=final, duration=time.monotonic() - started, error=str(e),
            )
            raise

        duration = time.monotonic() - started
        self.queue.update_provenance(job.job_id, "success")
        self._publish(EventType.COMPLETED, job, attempt=attempt, final=True, duration=duration)
        return {"success": True, "channel": channel, "message_id": message_id, "processing_time": duration}
