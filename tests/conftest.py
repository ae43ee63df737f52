"""
Pytest fixtures for hookflow tests

This module provides shared fixtures for all tests:
- SQLite database per test (file in tmp_path, so every session sees it)
- Settings for the local queue backend
- Services wired with a LocalJobQueue and a mocked outbound HTTP transport
- Sample workflow definitions
"""

from typing import Any, Dict, List

import httpx
import pytest
from fastapi.testclient import TestClient

from hookflow.api.main import create_app
from hookflow.core.config import Settings
from hookflow.core.dispatcher import LocalJobQueue
from hookflow.core.repository import WorkflowStore
from hookflow.database import create_session_factory, session_scope
from hookflow.models import Base
from hookflow.workers.runtime import build_services


TEST_ENV = {
    "QUEUE_BACKEND": "local",
    "JOB_ATTEMPTS": "3",
    "JOB_BACKOFF_DELAY_MS": "10",
    "JOB_TIMEOUT": "5",
    "AGENT_SERVICE_URL": "http://agents.test",
    "WHATSAPP_API_TOKEN": "wa-token",
    "WHATSAPP_PHONE_NUMBER_ID": "5550001",
    "MESSENGER_PAGE_TOKEN": "page-token",
}


# ============================================================================
# DATABASE FIXTURES
# ============================================================================

@pytest.fixture(scope="function")
def session_factory(tmp_path):
    """
    Fresh SQLite database for each test.
    Torn down (engine disposed) after the test.
    """
    factory = create_session_factory(f"sqlite:///{tmp_path / 'hookflow.db'}")
    engine = factory.kw["bind"]
    Base.metadata.create_all(engine)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def create_workflow(session_factory):
    """
    Factory fixture: create_workflow(graph, tenant_id="acme", workflow_id="wf-1")
    returns the workflow id.
    """
    def _create(graph: Dict[str, Any], tenant_id: str = "acme", workflow_id: str = "wf-1", **kwargs) -> str:
        with session_scope(session_factory) as db:
            workflow = WorkflowStore(db).create_workflow(
                tenant_id=tenant_id,
                name=kwargs.pop("name", f"Workflow {workflow_id}"),
                graph_definition=graph,
                workflow_id=workflow_id,
                **kwargs,
            )
            return workflow.id

    return _create


# ============================================================================
# SERVICE FIXTURES
# ============================================================================

class OutboundRecorder:
    """
    httpx MockTransport handler standing in for the agent service, the Meta
    send APIs and tenant HTTP endpoints.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.agent_reply: Dict[str, Any] = {"success": True, "response": "Hello from the agent"}
        # Number of agent calls answered with 503 before succeeding
        self.agent_failures = 0
        self.send_failures = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if "/agents/" in path:
            if self.agent_failures:
                self.agent_failures -= 1
                return httpx.Response(503, json={"error": "agent service unavailable"})
            return httpx.Response(200, json=self.agent_reply)

        if path.endswith("/messages"):
            if self.send_failures:
                self.send_failures -= 1
                return httpx.Response(502, json={"error": "upstream"})
            return httpx.Response(200, json={"messages": [{"id": "wamid.OUT1"}], "message_id": "m_OUT1"})

        return httpx.Response(200, json={"ok": True, "path": path})

    def calls_to(self, fragment: str) -> List[httpx.Request]:
        return [request for request in self.requests if fragment in str(request.url)]


@pytest.fixture
def settings():
    return Settings.from_env(dict(TEST_ENV))


@pytest.fixture
def outbound():
    return OutboundRecorder()


@pytest.fixture
def queue(session_factory):
    return LocalJobQueue(session_factory)


@pytest.fixture
def services(settings, session_factory, queue, outbound):
    return build_services(
        settings,
        session_factory=session_factory,
        queue=queue,
        transport=httpx.MockTransport(outbound),
    )


@pytest.fixture
def run_queue(services):
    """run_queue() runs every buffered job, then delivers the worker events to monitoring."""
    def _run() -> int:
        processed = services.queue.drain()
        services.events.drain()
        return processed

    return _run


@pytest.fixture
def client(services):
    """TestClient around an app wired to the test services."""
    with TestClient(create_app(services)) as test_client:
        yield test_client


# ============================================================================
# WORKFLOW DEFINITION FIXTURES
# ============================================================================

@pytest.fixture
def fan_out_workflow():
    """
    n1 -> n2, n1 -> n3
    """
    return {
        "nodes": [
            {"id": "n1", "type": "transform", "config": {"set": {"step": "n1"}}},
            {"id": "n2", "type": "transform", "config": {"set": {"branch": "n2"}}},
            {"id": "n3", "type": "transform", "config": {"set": {"branch": "n3"}}},
        ],
        "edges": [
            {"source": "n1", "target": "n2"},
            {"source": "n1", "target": "n3"},
        ],
    }


@pytest.fixture
def whatsapp_support_workflow():
    """
    WhatsApp inbound -> agent (replies to the customer)
    """
    return {
        "nodes": [
            {"id": "inbound", "type": "webhook", "config": {"provider": "whatsapp"}},
            {"id": "agent", "type": "agent", "config": {"agent_id": "support"}},
        ],
        "edges": [
            {"source": "inbound", "target": "agent"},
        ],
    }


@pytest.fixture
def decision_workflow():
    """
    start -> check (score > 3) -> [high | low]
    """
    return {
        "nodes": [
            {"id": "start", "type": "transform"},
            {"id": "check", "type": "decision", "config": {"condition": "data.get('score', 0) > 3"}},
            {"id": "high", "type": "transform", "config": {"set": {"tier": "high"}}},
            {"id": "low", "type": "transform", "config": {"set": {"tier": "low"}}},
        ],
        "edges": [
            {"source": "start", "target": "check"},
            {"source": "check", "target": "high", "condition": "true"},
            {"source": "check", "target": "low", "condition": "false"},
        ],
    }


@pytest.fixture
def whatsapp_message():
    """whatsapp_message(text, message_id, sender) builds a Cloud API text message webhook."""
    def _build(text: str = "Hola", message_id: str = "wamid.IN1", sender: str = "34600111222") -> Dict[str, Any]:
        return {
            "object": "whatsapp_business_account",
            "entry": [{
                "id": "WABA_ID",
                "changes": [{
                    "field": "messages",
                    "value": {
                        "messaging_product": "whatsapp",
                        "metadata": {"display_phone_number": "34900000000", "phone_number_id": "5550001"},
                        "contacts": [{"profile": {"name": "Ana"}, "wa_id": sender}],
                        "messages": [{
                            "from": sender,
                            "id": message_id,
                            "timestamp": "1760000000",
                            "type": "text",
                            "text": {"body": text},
                        }],
                    },
                }],
            }],
        }

    return _build
