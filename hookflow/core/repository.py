"""
WorkflowStore - data access for workflows, registrations, executions and
scheduled events.

Wraps one SQLAlchemy session. Every query that touches tenant data is
scoped by tenant id. Methods commit their own writes so a worker never
dispatches successors before the node's completion is durable.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, not_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import (
    Execution,
    NodeExecution,
    ScheduledEvent,
    WebhookRegistration,
    Workflow,
)
from ..models.webhook import registration_id
from .exceptions import (
    StoreError,
    WorkflowLockedError,
    WorkflowNotFoundError,
)
from .nodes import parse_definition

logger = logging.getLogger(__name__)

OPEN_NODE_STATUSES = ("pending", "running")


class WorkflowStore:

    def __init__(self, session: Session):
        self.session = session

    def _commit(self) -> None:
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise
        except SQLAlchemyError as e:
            self.session.rollback()
            raise StoreError(f"Database commit failed: {e}")

    # ========================================================================
    # WORKFLOWS
    # ========================================================================

    def get_workflow(self, workflow_id: str, tenant_id: Optional[str] = None) -> Workflow:
        """
        Raises:
            WorkflowNotFoundError: If missing (or owned by another tenant)
        """
        query = self.session.query(Workflow).filter(Workflow.id == workflow_id)
        if tenant_id is not None:
            query = query.filter(Workflow.tenant_id == tenant_id)
        workflow = query.first()
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id, tenant_id)
        return workflow

    def list_workflows(self, tenant_id: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[Workflow]:
        query = self.session.query(Workflow)
        if tenant_id is not None:
            query = query.filter(Workflow.tenant_id == tenant_id)
        return query.order_by(Workflow.created_at.desc()).offset(offset).limit(limit).all()

    def count_running_executions(self, workflow_id: str) -> int:
        return self.session.query(func.count(Execution.id)).filter(
            Execution.workflow_id == workflow_id,
            Execution.status == "running",
        ).scalar() or 0

    def create_workflow(
        self,
        tenant_id: str,
        name: str,
        graph_definition: Dict[str, Any],
        workflow_id: Optional[str] = None,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> Workflow:
        """
        Create a workflow and its webhook registrations.

        Raises:
            DefinitionError: If the graph has duplicate ids or dangling edges
        """
        parse_definition(graph_definition).validate_integrity()

        workflow = Workflow(
            id=workflow_id or str(uuid.uuid4()),
            tenant_id=tenant_id,
            name=name,
            description=description,
            graph_definition=graph_definition,
            version=1,
            is_active=is_active,
        )
        self.session.add(workflow)
        self.session.flush()
        self.sync_webhook_registrations(workflow)
        self._commit()
        self.session.refresh(workflow)

        logger.info(f"Created workflow {workflow.id} for tenant {tenant_id}")
        return workflow

    def update_workflow(
        self,
        workflow: Workflow,
        name: Optional[str] = None,
        description: Optional[str] = None,
        graph_definition: Optional[Dict[str, Any]] = None,
        is_active: Optional[bool] = None,
    ) -> Workflow:
        """
        Update a workflow. A graph change bumps the version.

        Raises:
            WorkflowLockedError: Graph change while executions are running
            DefinitionError: If the new graph is invalid
        """
        if graph_definition is not None and graph_definition != workflow.graph_definition:
            running = self.count_running_executions(workflow.id)
            if running:
                raise WorkflowLockedError(workflow.id, running)
            parse_definition(graph_definition).validate_integrity()
            workflow.graph_definition = graph_definition
            workflow.version = (workflow.version or 1) + 1

        if name is not None:
            workflow.name = name
        if description is not None:
            workflow.description = description
        if is_active is not None:
            workflow.is_active = is_active

        self.sync_webhook_registrations(workflow)
        self._commit()
        self.session.refresh(workflow)
        return workflow

    def disable_workflow(self, workflow: Workflow) -> Workflow:
        """Stop new triggers; in-flight chains stop at their next dispatch."""
        workflow.is_active = False
        self.deactivate_registrations(workflow.id)
        self._commit()
        logger.info(f"Disabled workflow {workflow.id}")
        return workflow

    def delete_workflow(self, workflow: Workflow) -> None:
        """
        Delete a workflow that has no execution history; otherwise disable it
        so audit records keep their foreign key.
        """
        self.deactivate_registrations(workflow.id)
        has_history = self.session.query(func.count(Execution.id)).filter(
            Execution.workflow_id == workflow.id
        ).scalar()
        if has_history:
            workflow.is_active = False
        else:
            self.session.query(WebhookRegistration).filter(
                WebhookRegistration.workflow_id == workflow.id
            ).delete(synchronize_session=False)
            self.session.query(ScheduledEvent).filter(
                ScheduledEvent.workflow_id == workflow.id
            ).delete(synchronize_session=False)
            self.session.delete(workflow)
        self._commit()
        logger.info(f"Deleted workflow {workflow.id} (history kept: {bool(has_history)})")

    # ========================================================================
    # WEBHOOK REGISTRATIONS
    # ========================================================================

    def sync_webhook_registrations(self, workflow: Workflow) -> List[WebhookRegistration]:
        """
        Create/refresh one registration per webhook trigger node that names a
        provider. Registrations whose node disappeared are deactivated.
        """
        definition = parse_definition(workflow.graph_definition)
        status = "active" if workflow.is_active else "inactive"

        wanted = {}
        for node in definition.webhook_nodes():
            provider = node.config.get("provider")
            if not provider:
                continue
            reg_id = registration_id(workflow.tenant_id, provider, workflow.id)
            wanted[reg_id] = (provider.lower(), node.id)

        existing = {
            reg.id: reg
            for reg in self.session.query(WebhookRegistration).filter(
                WebhookRegistration.workflow_id == workflow.id
            ).all()
        }

        result = []
        for reg_id, (provider, node_id) in wanted.items():
            registration = existing.get(reg_id)
            if registration is None:
                registration = WebhookRegistration(
                    id=reg_id,
                    tenant_id=workflow.tenant_id,
                    workflow_id=workflow.id,
                    provider_type=provider,
                )
                self.session.add(registration)
            registration.node_id = node_id
            registration.status = status
            result.append(registration)

        for reg_id, registration in existing.items():
            if reg_id not in wanted:
                registration.status = "inactive"

        return result

    def deactivate_registrations(self, workflow_id: str) -> None:
        self.session.query(WebhookRegistration).filter(
            WebhookRegistration.workflow_id == workflow_id
        ).update({"status": "inactive"}, synchronize_session=False)

    def get_registration(self, reg_id: str) -> Optional[WebhookRegistration]:
        return self.session.get(WebhookRegistration, reg_id)

    def touch_registration(self, registration: WebhookRegistration) -> None:
        registration.last_triggered_at = datetime.utcnow()
        self._commit()

    # ========================================================================
    # EXECUTIONS
    # ========================================================================

    def get_execution(self, execution_id: str, tenant_id: Optional[str] = None) -> Optional[Execution]:
        query = self.session.query(Execution).filter(Execution.id == execution_id)
        if tenant_id is not None:
            query = query.filter(Execution.tenant_id == tenant_id)
        return query.first()

    def find_execution_by_trigger(self, trigger_key: str) -> Optional[Execution]:
        return self.session.query(Execution).filter(Execution.trigger_key == trigger_key).first()

    def create_execution(
        self,
        workflow: Workflow,
        start_node_id: str,
        trigger_source: str,
        trigger_key: Optional[str] = None,
        trigger_data: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Execution, bool]:
        """
        Create an Execution unless one already exists for trigger_key.

        Returns:
            (execution, created)
        """
        if trigger_key:
            existing = self.find_execution_by_trigger(trigger_key)
            if existing is not None:
                return existing, False

        execution = Execution(
            id=str(uuid.uuid4()),
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            tenant_id=workflow.tenant_id,
            status="running",
            started_from=start_node_id,
            trigger_source=trigger_source,
            trigger_key=trigger_key,
            trigger_data=trigger_data,
            started_at=datetime.utcnow(),
        )
        self.session.add(execution)
        try:
            self._commit()
        except IntegrityError:
            # Concurrent delivery of the same trigger won the insert
            existing = self.find_execution_by_trigger(trigger_key) if trigger_key else None
            if existing is None:
                raise StoreError(f"Could not create execution for trigger {trigger_key}")
            return existing, False
        return execution, True

    def finish_execution(self, execution: Execution, status: str, error: Optional[str] = None) -> bool:
        """
        Move a running execution to a terminal status.

        Returns:
            False if the execution was already terminal
        """
        if execution.status != "running":
            return False
        execution.status = status
        execution.error = error
        execution.completed_at = datetime.utcnow()
        self._commit()
        return True

    def release_trigger_key(self, execution: Execution, error: str) -> None:
        """Mark an execution whose first dispatch failed so the trigger can be retried."""
        execution.status = "failed"
        execution.error = error
        execution.trigger_key = None
        execution.completed_at = datetime.utcnow()
        self._commit()

    # ========================================================================
    # NODE EXECUTIONS
    # ========================================================================

    def create_node_execution(
        self,
        execution_id: str,
        node_id: str,
        node_type: str,
        job_id: str,
        queue_name: str,
        hop: int,
        input_data: Optional[Dict[str, Any]] = None,
        parent_job_id: Optional[str] = None,
    ) -> NodeExecution:
        record = NodeExecution(
            execution_id=execution_id,
            node_id=node_id,
            node_type=node_type,
            job_id=job_id,
            queue_name=queue_name,
            status="pending",
            attempts=0,
            hop=hop,
            parent_job_id=parent_job_id,
            input=input_data,
        )
        self.session.add(record)
        self._commit()
        return record

    def get_node_execution_by_job(self, job_id: str) -> Optional[NodeExecution]:
        return self.session.query(NodeExecution).filter(NodeExecution.job_id == job_id).first()

    def dispatched_children(self, parent_job_id: str) -> set:
        """
        Node ids already dispatched by a job (redelivery must not dispatch them twice).

        Children the queue refused (failed before any attempt) are left out so
        the retried parent enqueues them again.
        """
        rows = self.session.query(NodeExecution.node_id).filter(
            NodeExecution.parent_job_id == parent_job_id,
            not_(and_(NodeExecution.status == "failed", NodeExecution.attempts == 0)),
        ).all()
        return {row[0] for row in rows}

    def list_node_executions(self, execution_id: str) -> List[NodeExecution]:
        return self.session.query(NodeExecution).filter(
            NodeExecution.execution_id == execution_id
        ).order_by(NodeExecution.id).all()

    def mark_node_running(self, record: NodeExecution, attempt: int) -> None:
        record.status = "running"
        record.attempts = attempt
        record.error = None
        record.started_at = datetime.utcnow()
        self._commit()

    def mark_node_completed(self, record: NodeExecution, output: Dict[str, Any], duration: float) -> None:
        record.status = "completed"
        record.output = output
        record.error = None
        record.execution_time = duration
        record.completed_at = datetime.utcnow()
        self._commit()

    def mark_node_failed(self, record: NodeExecution, error: str, attempt: int, duration: Optional[float] = None) -> None:
        record.status = "failed"
        record.error = error
        record.attempts = attempt
        record.execution_time = duration
        record.completed_at = datetime.utcnow()
        self._commit()

    def has_open_nodes(self, execution_id: str) -> bool:
        """True while any node of the execution is pending or running."""
        return bool(
            self.session.query(func.count(NodeExecution.id)).filter(
                NodeExecution.execution_id == execution_id,
                NodeExecution.status.in_(OPEN_NODE_STATUSES),
            ).scalar()
        )

    # ========================================================================
    # SCHEDULED EVENTS
    # ========================================================================

    def create_scheduled_event(
        self,
        workflow: Workflow,
        node_id: str,
        schedule: Dict[str, Any],
        next_run: Optional[datetime],
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ScheduledEvent:
        event = ScheduledEvent(
            id=str(uuid.uuid4()),
            workflow_id=workflow.id,
            node_id=node_id,
            tenant_id=workflow.tenant_id,
            data=data or {},
            schedule=schedule,
            next_run=next_run,
            status="active" if next_run else "completed",
            event_metadata=metadata or {},
        )
        self.session.add(event)
        self._commit()
        return event

    def get_scheduled_event(self, event_id: str, tenant_id: Optional[str] = None) -> Optional[ScheduledEvent]:
        query = self.session.query(ScheduledEvent).filter(ScheduledEvent.id == event_id)
        if tenant_id is not None:
            query = query.filter(ScheduledEvent.tenant_id == tenant_id)
        return query.first()

    def list_scheduled_events(self, tenant_id: Optional[str] = None) -> List[ScheduledEvent]:
        query = self.session.query(ScheduledEvent)
        if tenant_id is not None:
            query = query.filter(ScheduledEvent.tenant_id == tenant_id)
        return query.order_by(ScheduledEvent.next_run).all()

    def due_events(self, now: datetime, limit: int = 100) -> List[ScheduledEvent]:
        """Active events whose next_run has passed, oldest first."""
        return self.session.query(ScheduledEvent).filter(
            ScheduledEvent.status == "active",
            ScheduledEvent.next_run.isnot(None),
            ScheduledEvent.next_run <= now,
        ).order_by(ScheduledEvent.next_run).limit(limit).all()

    def set_schedule_status(self, event: ScheduledEvent, status: str) -> ScheduledEvent:
        event.status = status
        self._commit()
        return event

    def stamp_scheduled_run(self, event: ScheduledEvent, last_run: datetime, next_run: Optional[datetime]) -> None:
        event.last_run = last_run
        event.next_run = next_run
        if next_run is None:
            event.status = "completed"
        self._commit()
