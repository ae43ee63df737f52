"""
FastAPI main application
REST API endpoints for hookflow

Run with:
    uvicorn hookflow.api.main:create_app --factory
"""

import logging
import time
import uuid
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from ..core.exceptions import (
    DefinitionError,
    DispatchError,
    HookflowException,
    IngestionError,
    StoreError,
    WorkflowInactiveError,
    WorkflowLockedError,
    WorkflowNotFoundError,
)
from ..core.logging_config import clear_request_id, set_request_id, setup_logging
from ..core.metrics import check_system_health
from ..core.nodes import parse_definition
from ..core.repository import WorkflowStore
from ..core.scheduler import compute_next_run, validate_schedule
from ..core.triggers import entry_node
from ..models import Workflow
from ..workers.runtime import Services, build_services
from . import webhooks
from .schemas import (
    ExecuteRequest,
    ExecutionResponse,
    JobStatusResponse,
    MessageResponse,
    NodeExecutionListResponse,
    NodeExecutionResponse,
    ScheduleCreate,
    ScheduleListResponse,
    ScheduleResponse,
    TriggerResponse,
    WorkflowCreate,
    WorkflowListResponse,
    WorkflowResponse,
    WorkflowUpdate,
)

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def _status_for(exc: HookflowException) -> int:
    if isinstance(exc, IngestionError):
        return exc.status_code
    if isinstance(exc, WorkflowNotFoundError):
        return 404
    if isinstance(exc, (WorkflowLockedError, WorkflowInactiveError)):
        return 409
    if isinstance(exc, DefinitionError):
        return 422
    if isinstance(exc, (DispatchError, StoreError)):
        return 503
    return 500


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the API app around a Services container (built from the
    environment when omitted).
    """
    if services is None:
        setup_logging()
        services = build_services()

    app = FastAPI(
        title="hookflow API",
        description="Webhook-triggered, queue-backed workflow execution engine.",
        version=VERSION,
        openapi_tags=[
            {"name": "health", "description": "Health checks and metrics"},
            {"name": "webhooks", "description": "Provider webhook ingestion"},
            {"name": "workflows", "description": "Workflow CRUD and manual triggers"},
            {"name": "executions", "description": "Execution and node execution history"},
            {"name": "jobs", "description": "Queue job status"},
            {"name": "schedules", "description": "Scheduled events"},
        ],
    )
    app.state.services = services

    # ========================================================================
    # MIDDLEWARE - Request ID Tracking + request metrics
    # ========================================================================

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        set_request_id(request_id)
        started = time.perf_counter()
        status_code = 500

        logger.info(
            f"{request.method} {request.url.path}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "client_ip": request.client.host if request.client else None,
            }
        )
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            logger.info(f"Response {response.status_code}", extra={"status_code": response.status_code})
            return response

        except Exception as e:
            logger.exception("Unhandled exception in request", extra={"error": str(e)})
            raise

        finally:
            route = request.scope.get("route")
            services.monitoring.record_api_request(
                getattr(route, "path", "unmatched"),
                request.method,
                status_code,
                time.perf_counter() - started,
            )
            clear_request_id()

    # ========================================================================
    # EXCEPTION HANDLERS
    # ========================================================================

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request, exc):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail, "status_code": exc.status_code},
        )

    @app.exception_handler(HookflowException)
    async def hookflow_exception_handler(request, exc):
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error(f"{exc.__class__.__name__}: {exc.message}")
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.message, "status_code": status_code},
        )

    def get_db():
        db = services.session_factory()
        try:
            yield db
        finally:
            db.close()

    def get_store(db: Session = Depends(get_db)) -> WorkflowStore:
        return WorkflowStore(db)

    app.include_router(webhooks.router)

    # ========================================================================
    # HEALTH & METRICS
    # ========================================================================

    @app.get("/health", tags=["health"], summary="Health check (lightweight)")
    def health_check():
        return {"status": "healthy", "service": "hookflow", "version": VERSION}

    @app.get("/health/detailed", tags=["health"], summary="Detailed health check")
    def detailed_health_check(db: Session = Depends(get_db)):
        health = check_system_health(db, services.breakers)
        if health["healthy"]:
            logger.info("System health check: HEALTHY")
        else:
            logger.warning("System health check: UNHEALTHY", extra={"issues": health["issues"]})
        return health

    @app.get("/metrics", tags=["health"], summary="Prometheus metrics")
    def prometheus_metrics():
        return Response(
            content=services.monitoring.prometheus_text(),
            media_type=services.monitoring.content_type,
        )

    @app.get("/metrics/summary", tags=["health"], summary="Queue, API and execution counters")
    def metrics_summary():
        return services.monitoring.summary()

    # ========================================================================
    # JOBS
    # ========================================================================

    @app.get("/jobs/{job_id}", response_model=JobStatusResponse, tags=["jobs"])
    def get_job_status(job_id: str):
        status = services.queue.get_job_status(job_id)
        if status is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        return JobStatusResponse(job_id=job_id, status=status.value)

    # ========================================================================
    # WORKFLOWS
    # ========================================================================

    @app.post("/workflows", response_model=WorkflowResponse, status_code=201, tags=["workflows"])
    def create_workflow(body: WorkflowCreate, store: WorkflowStore = Depends(get_store)):
        if body.id and store.session.get(Workflow, body.id) is not None:
            raise HTTPException(status_code=409, detail=f"Workflow {body.id} already exists")
        workflow = store.create_workflow(
            tenant_id=body.tenant_id,
            name=body.name,
            graph_definition=body.graph_definition,
            workflow_id=body.id,
            description=body.description,
            is_active=body.is_active,
        )
        return WorkflowResponse.model_validate(workflow)

    @app.get("/workflows", response_model=WorkflowListResponse, tags=["workflows"])
    def list_workflows(
        tenant_id: Optional[str] = None,
        limit: int = Query(100, ge=1, le=500),
        offset: int = Query(0, ge=0),
        store: WorkflowStore = Depends(get_store),
    ):
        workflows = store.list_workflows(tenant_id, limit=limit, offset=offset)
        return WorkflowListResponse(
            workflows=[WorkflowResponse.model_validate(w) for w in workflows],
            total=len(workflows),
        )

    @app.get("/workflows/{workflow_id}", response_model=WorkflowResponse, tags=["workflows"])
    def get_workflow(workflow_id: str, tenant_id: Optional[str] = None, store: WorkflowStore = Depends(get_store)):
        return WorkflowResponse.model_validate(store.get_workflow(workflow_id, tenant_id))

    @app.put("/workflows/{workflow_id}", response_model=WorkflowResponse, tags=["workflows"])
    def update_workflow(
        workflow_id: str,
        body: WorkflowUpdate,
        tenant_id: Optional[str] = None,
        store: WorkflowStore = Depends(get_store),
    ):
        workflow = store.update_workflow(
            store.get_workflow(workflow_id, tenant_id),
            name=body.name,
            description=body.description,
            graph_definition=body.graph_definition,
            is_active=body.is_active,
        )
        return WorkflowResponse.model_validate(workflow)

    @app.delete("/workflows/{workflow_id}", response_model=MessageResponse, tags=["workflows"])
    def delete_workflow(workflow_id: str, tenant_id: Optional[str] = None, store: WorkflowStore = Depends(get_store)):
        store.delete_workflow(store.get_workflow(workflow_id, tenant_id))
        return MessageResponse(message=f"Workflow {workflow_id} deleted")

    @app.post("/workflows/{workflow_id}/disable", response_model=WorkflowResponse, tags=["workflows"])
    def disable_workflow(workflow_id: str, tenant_id: Optional[str] = None, store: WorkflowStore = Depends(get_store)):
        workflow = store.disable_workflow(store.get_workflow(workflow_id, tenant_id))
        return WorkflowResponse.model_validate(workflow)

    @app.post("/workflows/{workflow_id}/execute", response_model=TriggerResponse, status_code=202, tags=["workflows"])
    def execute_workflow(workflow_id: str, body: ExecuteRequest):
        result = services.triggers.start(
            body.tenant_id,
            workflow_id,
            node_id=body.node_id,
            input_data=body.input,
            metadata=body.metadata,
            source="api",
            trigger_key=body.trigger_key,
        )
        return TriggerResponse(
            execution_id=result.execution_id,
            workflow_id=result.workflow_id,
            node_id=result.node_id,
            created=result.created,
            job_id=result.job_id,
        )

    # ========================================================================
    # EXECUTIONS
    # ========================================================================

    def _execution(store: WorkflowStore, execution_id: str, tenant_id: Optional[str]):
        execution = store.get_execution(execution_id, tenant_id)
        if execution is None:
            raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
        return execution

    @app.get("/executions/{execution_id}", response_model=ExecutionResponse, tags=["executions"])
    def get_execution(execution_id: str, tenant_id: Optional[str] = None, store: WorkflowStore = Depends(get_store)):
        return ExecutionResponse.model_validate(_execution(store, execution_id, tenant_id))

    @app.get("/executions/{execution_id}/nodes", response_model=NodeExecutionListResponse, tags=["executions"])
    def get_execution_nodes(execution_id: str, tenant_id: Optional[str] = None, store: WorkflowStore = Depends(get_store)):
        _execution(store, execution_id, tenant_id)
        nodes = store.list_node_executions(execution_id)
        return NodeExecutionListResponse(
            execution_id=execution_id,
            nodes=[NodeExecutionResponse.model_validate(n) for n in nodes],
            total=len(nodes),
        )

    # ========================================================================
    # SCHEDULES
    # ========================================================================

    def _schedule(store: WorkflowStore, event_id: str, tenant_id: Optional[str]):
        event = store.get_scheduled_event(event_id, tenant_id)
        if event is None:
            raise HTTPException(status_code=404, detail=f"Scheduled event {event_id} not found")
        return event

    @app.post("/schedules", response_model=ScheduleResponse, status_code=201, tags=["schedules"])
    def create_schedule(body: ScheduleCreate, store: WorkflowStore = Depends(get_store)):
        workflow = store.get_workflow(body.workflow_id, body.tenant_id)
        schedule = body.schedule()
        validate_schedule(schedule)

        definition = parse_definition(workflow.graph_definition)
        node = definition.get_node(body.node_id) if body.node_id else entry_node(definition)
        if node is None:
            raise DefinitionError(f"Node {body.node_id or '(entry)'} not found in workflow {workflow.id}")

        event = store.create_scheduled_event(
            workflow,
            node.id,
            schedule,
            next_run=compute_next_run(schedule, datetime.utcnow()),
            data=body.data,
            metadata=body.metadata,
        )
        logger.info(f"Scheduled workflow {workflow.id} ({body.cron}), next run {event.next_run}")
        return ScheduleResponse.model_validate(event)

    @app.get("/schedules", response_model=ScheduleListResponse, tags=["schedules"])
    def list_schedules(tenant_id: Optional[str] = None, store: WorkflowStore = Depends(get_store)):
        events = store.list_scheduled_events(tenant_id)
        return ScheduleListResponse(
            schedules=[ScheduleResponse.model_validate(e) for e in events],
            total=len(events),
        )

    @app.get("/schedules/{event_id}", response_model=ScheduleResponse, tags=["schedules"])
    def get_schedule(event_id: str, tenant_id: Optional[str] = None, store: WorkflowStore = Depends(get_store)):
        return ScheduleResponse.model_validate(_schedule(store, event_id, tenant_id))

    @app.post("/schedules/{event_id}/pause", response_model=ScheduleResponse, tags=["schedules"])
    def pause_schedule(event_id: str, tenant_id: Optional[str] = None, store: WorkflowStore = Depends(get_store)):
        event = store.set_schedule_status(_schedule(store, event_id, tenant_id), "paused")
        return ScheduleResponse.model_validate(event)

    @app.post("/schedules/{event_id}/resume", response_model=ScheduleResponse, tags=["schedules"])
    def resume_schedule(event_id: str, tenant_id: Optional[str] = None, store: WorkflowStore = Depends(get_store)):
        event = _schedule(store, event_id, tenant_id)
        # next_run belongs to the scheduler: a missed occurrence fires on the next tick
        if event.next_run is None:
            raise HTTPException(status_code=409, detail=f"Scheduled event {event_id} has no further runs")
        event = store.set_schedule_status(event, "active")
        return ScheduleResponse.model_validate(event)

    return app
