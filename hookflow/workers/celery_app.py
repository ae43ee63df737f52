"""
Celery Application Configuration for hookflow

Architecture:
- Message Broker: Redis
- Result Backend: Redis (live job status for GET /jobs/{id})
- One queue per node category plus response-delivery
- One worker deployment per queue, concurrency from WORKER_CONCURRENCY

Key Features:
- Late acks (at-least-once delivery; node jobs are idempotent per job id)
- Retry policy carried in the task kwargs, applied by the tasks
- Task timeout protection (JOB_TIMEOUT soft, a little more hard)
- Beat entry that runs the scheduler tick every SCHEDULER_INTERVAL seconds
"""

import logging
from typing import List

from celery import Celery
from kombu import Exchange, Queue

from ..core.config import Settings
from ..core.dispatcher import DELIVER_RESPONSE_TASK, EXECUTE_NODE_TASK
from ..core.logging_config import setup_logging
from ..core.routing import DEFAULT_QUEUE, RESPONSE_QUEUE, QueueRouter

logger = logging.getLogger(__name__)

SCHEDULER_TICK_TASK = "hookflow.scheduler_tick"
SCHEDULER_QUEUE = "scheduler"

# Hard limit leaves the soft limit room to record the failure
HARD_LIMIT_BUFFER = 15
SOFT_LIMIT_BUFFER = 5


def create_celery_app(settings: Settings) -> Celery:
    app = Celery("hookflow")
    exchange = Exchange("hookflow", type="direct")
    queue_names = QueueRouter().queues() + [SCHEDULER_QUEUE]

    app.conf.update(
        # ============================================================================
        # BROKER & BACKEND
        # ============================================================================
        broker_url=settings.redis_url,
        result_backend=settings.redis_url,
        broker_connection_retry_on_startup=True,
        broker_connection_retry=True,
        broker_connection_max_retries=10,

        # ============================================================================
        # SERIALIZATION
        # ============================================================================
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],

        timezone="UTC",
        enable_utc=True,

        # ============================================================================
        # TASK EXECUTION
        # ============================================================================
        task_track_started=True,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        task_soft_time_limit=int(settings.job_timeout) + SOFT_LIMIT_BUFFER,
        task_time_limit=int(settings.job_timeout) + HARD_LIMIT_BUFFER,

        # ============================================================================
        # RESULTS
        # ============================================================================
        result_expires=86400,
        result_extended=True,

        # ============================================================================
        # QUEUES & ROUTES
        # ============================================================================
        task_default_queue=DEFAULT_QUEUE,
        task_default_exchange="hookflow",
        task_default_routing_key=DEFAULT_QUEUE,
        task_queues=tuple(Queue(name, exchange, routing_key=name) for name in queue_names),
        task_routes={
            DELIVER_RESPONSE_TASK: {"queue": RESPONSE_QUEUE, "routing_key": RESPONSE_QUEUE},
            SCHEDULER_TICK_TASK: {"queue": SCHEDULER_QUEUE, "routing_key": SCHEDULER_QUEUE},
            # execute_node is routed per call (send_task queue=...)
            EXECUTE_NODE_TASK: {"queue": DEFAULT_QUEUE, "routing_key": DEFAULT_QUEUE},
        },

        # ============================================================================
        # WORKER CONFIGURATION
        # ============================================================================
        worker_pool="prefork",
        worker_concurrency=settings.concurrency_for(DEFAULT_QUEUE),
        worker_max_tasks_per_child=1000,

        worker_send_task_events=True,
        task_send_sent_event=True,
        worker_log_format="[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
        worker_task_log_format="[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s",

        # ============================================================================
        # BEAT SCHEDULE
        # ============================================================================
        beat_schedule={
            "scheduler-tick": {
                "task": SCHEDULER_TICK_TASK,
                "schedule": settings.scheduler_interval,
            },
        },
    )
    return app


def worker_argv(settings: Settings, queue_name: str) -> List[str]:
    """Arguments for a worker consuming one queue with its configured concurrency."""
    return [
        "worker",
        "--queues", queue_name,
        "--concurrency", str(settings.concurrency_for(queue_name)),
        "--hostname", f"{queue_name}@%h",
        "--loglevel", "INFO",
    ]


setup_logging(json_logs=True)

settings = Settings.from_env()
celery_app = create_celery_app(settings)

logger.info(f"Broker: {settings.redis_url.split('@')[1] if '@' in settings.redis_url else 'configured'}")
logger.info(f"Queues: {', '.join(q.name for q in celery_app.conf.task_queues)}")
logger.info(f"Task timeout: {settings.job_timeout}s")

# ============================================================================
# IMPORT TASKS (so they get registered when worker starts)
# ============================================================================
# Must come after celery_app is configured
from . import tasks  # noqa: F401, E402
