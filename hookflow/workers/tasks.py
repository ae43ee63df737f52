"""
Celery Tasks for hookflow

Tasks:
- execute_node: run one node job (NodeRunner) on any node queue
- deliver_response: send one outbound reply (ResponseDeliverer)
- scheduler_tick: start due scheduled events (beat, every SCHEDULER_INTERVAL)

Retry policy travels in the task kwargs (max_attempts, backoff); a failed
attempt re-raises through self.retry with the computed countdown, keeping the
task id (= job id) so the NodeExecution record is reused.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from ..core.dispatcher import (
    DELIVER_RESPONSE_TASK,
    EXECUTE_NODE_TASK,
    Job,
    JobOptions,
)
from ..core.routing import RESPONSE_QUEUE
from ..core.runner import is_final_attempt
from .celery_app import SCHEDULER_TICK_TASK, celery_app, settings
from .runtime import Services, build_services

logger = logging.getLogger(__name__)

_services: Optional[Services] = None


def get_services() -> Services:
    """Services of this worker process, built on first use."""
    global _services
    if _services is None:
        _services = build_services(settings, celery_app=celery_app)
        _services.events.start()
    return _services


def _job(task, queue_name: str, payload: Dict[str, Any], max_attempts: int, backoff_type: str, backoff_delay_ms: int) -> Job:
    return Job(
        job_id=task.request.id,
        queue_name=queue_name,
        payload=payload,
        options=JobOptions(
            attempts=max_attempts,
            backoff_type=backoff_type,
            backoff_delay_ms=backoff_delay_ms,
            job_id=task.request.id,
        ),
    )


def _retry_or_raise(task, job: Job, error: Exception, attempt: int):
    max_attempts = job.options.attempts
    if is_final_attempt(error, attempt, max_attempts):
        logger.error(f"Task {job.job_id}: giving up after attempt {attempt}/{max_attempts}")
        raise error
    countdown = job.options.backoff_seconds(attempt)
    logger.warning(f"Task {job.job_id}: retrying in {countdown:.1f}s (attempt {attempt}/{max_attempts})")
    raise task.retry(exc=error, countdown=countdown, max_retries=max_attempts - 1)


@celery_app.task(bind=True, name=EXECUTE_NODE_TASK)
def execute_node(
    self,
    payload: Dict[str, Any],
    max_attempts: int = 3,
    backoff_type: str = "exponential",
    backoff_delay_ms: int = 5000,
) -> Dict[str, Any]:
    services = get_services()
    queue_name = services.router.queue_for(payload.get("node_type", "unknown"))
    job = _job(self, queue_name, payload, max_attempts, backoff_type, backoff_delay_ms)
    attempt = self.request.retries + 1

    logger.info(f"Task {job.job_id}: node {payload.get('node_id')} attempt {attempt}/{max_attempts}")
    try:
        return asyncio.run(services.runner.run(job, attempt, max_attempts))
    except Exception as e:
        _retry_or_raise(self, job, e, attempt)


@celery_app.task(bind=True, name=DELIVER_RESPONSE_TASK)
def deliver_response(
    self,
    payload: Dict[str, Any],
    max_attempts: int = 3,
    backoff_type: str = "exponential",
    backoff_delay_ms: int = 5000,
) -> Dict[str, Any]:
    services = get_services()
    job = _job(self, RESPONSE_QUEUE, payload, max_attempts, backoff_type, backoff_delay_ms)
    attempt = self.request.retries + 1
    try:
        return asyncio.run(services.deliverer.deliver(job, attempt, max_attempts))
    except Exception as e:
        _retry_or_raise(self, job, e, attempt)


@celery_app.task(name=SCHEDULER_TICK_TASK)
def scheduler_tick() -> Dict[str, Any]:
    results = get_services().scheduler.tick()
    return {
        "started": len([r for r in results if r.created]),
        "executions": [r.execution_id for r in results],
    }
