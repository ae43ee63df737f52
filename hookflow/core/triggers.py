"""
Trigger Service - the single entry point that starts executions.

Webhooks, the scheduler and the API all go through start(): it checks the
workflow (tenant scoped, active), creates the Execution idempotently on its
trigger key and dispatches the start node.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..database import SessionFactory, session_scope
from ..models.webhook import registration_id
from ..webhooks.base import NormalizedWebhookEvent, body_bytes
from .dispatcher import NodeDispatcher
from .events import EventChannel, EventType, WorkerEvent
from .exceptions import DefinitionError, DispatchError, WorkflowInactiveError
from .nodes import Node, WorkflowDefinition, parse_definition
from .repository import WorkflowStore

logger = logging.getLogger(__name__)


@dataclass
class TriggerResult:
    execution_id: str
    workflow_id: str
    tenant_id: str
    node_id: str
    # False when the trigger key had already started an execution
    created: bool
    job_id: Optional[str] = None


def entry_node(definition: WorkflowDefinition) -> Optional[Node]:
    """Start node when none is named: a webhook node, else the first node without incoming edges."""
    webhooks = definition.webhook_nodes()
    if webhooks:
        return webhooks[0]
    targets = {edge.target for edge in definition.edges}
    for node in definition.nodes:
        if node.id not in targets:
            return node
    return definition.nodes[0] if definition.nodes else None


def webhook_trigger_key(registration: str, event: NormalizedWebhookEvent, raw_body: Any) -> str:
    if event.message_id:
        # sent, delivered and read all carry the id of the outbound message
        status = event.data.get("status") if event.event_type == "status_update" else None
        if status:
            return f"webhook:{registration}:{event.message_id}:{status}"
        return f"webhook:{registration}:{event.message_id}"
    digest = hashlib.sha256(body_bytes(raw_body if raw_body is not None else event.raw_payload)).hexdigest()
    return f"webhook:{registration}:{digest}"


class TriggerService:

    def __init__(self, session_factory: SessionFactory, dispatcher: NodeDispatcher, events: Optional[EventChannel] = None):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.events = events

    def start(
        self,
        tenant_id: str,
        workflow_id: str,
        node_id: Optional[str] = None,
        input_data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        source: str = "api",
        trigger_key: Optional[str] = None,
    ) -> TriggerResult:
        """
        Start an execution of a workflow at node_id (or its entry node).

        Raises:
            WorkflowNotFoundError: Unknown workflow for this tenant
            WorkflowInactiveError: Workflow is disabled
            DefinitionError: Start node missing from the graph
            DispatchError: Queue refused the first job (trigger key released)
        """
        with session_scope(self.session_factory) as db:
            store = WorkflowStore(db)
            workflow = store.get_workflow(workflow_id, tenant_id)
            if not workflow.is_active:
                raise WorkflowInactiveError(workflow_id)

            definition = parse_definition(workflow.graph_definition)
            node = definition.get_node(node_id) if node_id else entry_node(definition)
            if node is None:
                raise DefinitionError(f"Start node {node_id or '(entry)'} not found in workflow {workflow_id}")

            execution, created = store.create_execution(
                workflow,
                start_node_id=node.id,
                trigger_source=source,
                trigger_key=trigger_key,
                trigger_data=input_data,
            )
            result = TriggerResult(
                execution_id=execution.id,
                workflow_id=workflow.id,
                tenant_id=workflow.tenant_id,
                node_id=node.id,
                created=created,
            )
            if not created:
                logger.info(f"Trigger {trigger_key} already started execution {execution.id}, skipping")
                return result

            if self.events is not None:
                self.events.publish(WorkerEvent(
                    type=EventType.EXECUTION_STARTED,
                    execution_id=execution.id,
                    tenant_id=execution.tenant_id,
                    status=source,
                ))

            run_metadata = dict(metadata or {})
            run_metadata.setdefault("trigger_source", source)
            try:
                result.job_id = self.dispatcher.dispatch(
                    store, execution, node, input_data=input_data or {}, metadata=run_metadata, hop=0,
                )
            except DispatchError as e:
                store.release_trigger_key(execution, f"Dispatch failed: {e.message}")
                raise

            logger.info(
                f"Started execution {execution.id} of workflow {workflow.id} at {node.id} ({source})",
                extra={"execution_id": execution.id, "tenant_id": tenant_id, "job_id": result.job_id},
            )
            return result

    def handle_webhook(
        self,
        event: NormalizedWebhookEvent,
        tenant_id: str,
        provider: str,
        workflow_id: str,
        raw_body: Any = None,
    ) -> Optional[TriggerResult]:
        """
        Start the workflow bound to a webhook registration.

        Returns None when the event is dropped (no registration, inactive,
        tenant mismatch).
        """
        reg_id = registration_id(tenant_id, provider, workflow_id)
        with session_scope(self.session_factory) as db:
            store = WorkflowStore(db)
            registration = store.get_registration(reg_id)
            if registration is None:
                logger.warning(f"No webhook registration {reg_id}, event dropped")
                return None
            if registration.tenant_id != tenant_id:
                logger.warning(f"Webhook registration {reg_id} belongs to another tenant, event dropped")
                return None
            if registration.status != "active":
                logger.info(f"Webhook registration {reg_id} is {registration.status}, event dropped")
                return None
            store.touch_registration(registration)
            node_id = registration.node_id

        metadata = dict(event.metadata)
        metadata.update({
            "provider": event.provider,
            "channel": event.provider,
            "event_type": event.event_type,
            "registration_id": reg_id,
        })
        if event.customer_id:
            metadata["sender_id"] = event.customer_id
        if event.message_id:
            metadata["message_id"] = event.message_id

        input_data = {
            "event_type": event.event_type,
            "customer_id": event.customer_id,
            "timestamp": event.timestamp,
            "provider": event.provider,
            "data": event.data,
        }
        return self.start(
            tenant_id,
            workflow_id,
            node_id=node_id,
            input_data=input_data,
            metadata=metadata,
            source="webhook",
            trigger_key=webhook_trigger_key(reg_id, event, raw_body),
        )
