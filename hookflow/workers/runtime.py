"""
Service wiring.

build_services() constructs every collaborator once (queue backend,
dispatcher, executors, runner, trigger service, scheduler, monitoring,
adapter registry) and hands them to the API app and the Celery tasks.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from ..core.circuit_breaker import CircuitBreakerRegistry
from ..core.config import Settings
from ..core.dispatcher import CeleryJobQueue, JobQueue, LocalJobQueue, NodeDispatcher
from ..core.events import EventChannel
from ..core.executors import ExecutorRegistry, create_default_executors
from ..core.metrics import MonitoringService, create_monitoring
from ..core.routing import RESPONSE_QUEUE, QueueRouter
from ..core.runner import NodeRunner, ResponseDeliverer, ResponseQueueClient
from ..core.scheduler import Scheduler
from ..core.senders import MessageSender
from ..core.triggers import TriggerService
from ..database import SessionFactory, create_session_factory
from ..webhooks import AdapterRegistry, create_default_registry

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    session_factory: SessionFactory
    events: EventChannel
    monitoring: MonitoringService
    router: QueueRouter
    queue: JobQueue
    breakers: CircuitBreakerRegistry
    executors: ExecutorRegistry
    sender: MessageSender
    dispatcher: NodeDispatcher
    responses: ResponseQueueClient
    runner: NodeRunner
    deliverer: ResponseDeliverer
    triggers: TriggerService
    scheduler: Scheduler
    adapters: AdapterRegistry


def create_queue(settings: Settings, session_factory: SessionFactory, celery_app=None) -> JobQueue:
    if settings.queue_backend == "local":
        return LocalJobQueue(session_factory, auto_drain=True)
    if celery_app is None:
        from .celery_app import celery_app
    return CeleryJobQueue(celery_app, session_factory)


def build_services(
    settings: Optional[Settings] = None,
    session_factory: Optional[SessionFactory] = None,
    queue: Optional[JobQueue] = None,
    celery_app=None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    executors: Optional[ExecutorRegistry] = None,
) -> Services:
    """
    Wire hookflow.

    Args:
        settings: Defaults to Settings.from_env()
        session_factory: Defaults to one bound to settings.database_url
        queue: Queue backend; defaults from settings.queue_backend
        celery_app: Celery app for the celery backend
        transport: httpx transport for outbound calls (tests pass a MockTransport)
        executors: Executor registry override
    """
    settings = settings or Settings.from_env()
    session_factory = session_factory or create_session_factory(settings.database_url)

    events = EventChannel()
    monitoring = create_monitoring(settings)
    events.subscribe(monitoring.handle_event)

    router = QueueRouter()
    queue = queue or create_queue(settings, session_factory, celery_app)
    breakers = CircuitBreakerRegistry()
    executors = executors or create_default_executors(settings, breakers, transport)
    sender = MessageSender(settings, breakers, transport)

    dispatcher = NodeDispatcher(
        queue,
        router,
        events,
        attempts=settings.job_attempts,
        backoff_delay_ms=settings.job_backoff_delay_ms,
        max_hops=settings.max_hops,
    )
    responses = ResponseQueueClient(
        queue, events, attempts=settings.job_attempts, backoff_delay_ms=settings.job_backoff_delay_ms,
    )
    runner = NodeRunner(session_factory, dispatcher, executors, responses, events, job_timeout=settings.job_timeout)
    deliverer = ResponseDeliverer(sender, queue, events)
    triggers = TriggerService(session_factory, dispatcher, events)

    if isinstance(queue, LocalJobQueue):
        queue.register_handler(runner.run)
        queue.register_handler(deliverer.deliver, RESPONSE_QUEUE)

    logger.info(f"Services built (queue backend: {queue.__class__.__name__})")
    return Services(
        settings=settings,
        session_factory=session_factory,
        events=events,
        monitoring=monitoring,
        router=router,
        queue=queue,
        breakers=breakers,
        executors=executors,
        sender=sender,
        dispatcher=dispatcher,
        responses=responses,
        runner=runner,
        deliverer=deliverer,
        triggers=triggers,
        scheduler=Scheduler(session_factory, triggers),
        adapters=create_default_registry(settings),
    )
