"""
Tests for the webhook ingestion routes

Tests cover:
- Unknown provider: 400, nothing enqueued
- Signature check: 401 on mismatch, 202 on a valid signature
- Verification challenges on GET and POST, Twitter CRC signed with the tenant secret
- Malformed bodies
- Accepted events reach the trigger service in the background
"""

import base64
import hashlib
import hmac
import json

import pytest

from hookflow.core.config import Settings

URL = "/webhooks/acme/whatsapp/wf-1"


def _sign(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def signed_services(services):
    services.settings = Settings.from_env(dict(services.settings.environ, WHATSAPP_WEBHOOK_SECRET_ACME="shh"))
    return services


# ============================================================================
# REJECTIONS
# ============================================================================

@pytest.mark.unit
def test_unknown_provider_is_rejected(client, services):
    response = client.post("/webhooks/acme/telegram/wf-1", json={"message": "hi"})

    assert response.status_code == 400
    assert response.json()["status_code"] == 400
    assert "telegram" in response.json()["error"]
    assert services.queue.history == []


@pytest.mark.unit
def test_bad_signature_is_rejected(client, signed_services, create_workflow, whatsapp_support_workflow, whatsapp_message):
    create_workflow(whatsapp_support_workflow)
    body = json.dumps(whatsapp_message()).encode()

    response = client.post(URL, content=body, headers={
        "Content-Type": "application/json",
        "X-Hub-Signature-256": _sign(body, "wrong-secret"),
    })

    assert response.status_code == 401
    assert response.json() == {"error": "Invalid webhook signature", "status_code": 401}
    assert signed_services.queue.history == []


@pytest.mark.unit
def test_missing_signature_is_rejected_when_secret_configured(client, signed_services, whatsapp_message):
    response = client.post(URL, json=whatsapp_message())

    assert response.status_code == 401


@pytest.mark.unit
def test_malformed_json(client, services):
    response = client.post(URL, content=b"{not json", headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.json()["error"] == "Request body is not valid JSON"
    assert services.queue.history == []


# ============================================================================
# CHALLENGES
# ============================================================================

@pytest.mark.unit
def test_get_verification_challenge(client):
    response = client.get(URL, params={"hub.mode": "subscribe", "hub.challenge": "abc123", "hub.verify_token": "t"})

    assert response.status_code == 200
    assert response.text == "abc123"


@pytest.mark.unit
def test_get_without_challenge(client):
    response = client.get(URL)

    assert response.status_code == 400
    assert response.json()["error"] == "Not a verification request"


@pytest.mark.unit
def test_post_challenge_body(client, services):
    response = client.post(
        "/webhooks/acme/facebook/wf-1",
        json={"mode": "subscribe", "challenge": "abc123", "verify_token": "t"},
    )

    assert response.status_code == 200
    assert response.text == "abc123"
    assert services.queue.history == []


@pytest.mark.unit
def test_slack_url_verification(client):
    response = client.post("/webhooks/acme/slack/wf-1", json={"type": "url_verification", "challenge": "xyz"})

    assert response.status_code == 200
    assert response.json() == {"challenge": "xyz"}


@pytest.mark.unit
def test_twitter_crc_check_uses_tenant_secret(client, services):
    services.settings = Settings.from_env(dict(services.settings.environ, TWITTER_WEBHOOK_SECRET_ACME="consumer"))
    token = base64.b64encode(hmac.new(b"consumer", b"crc-1", hashlib.sha256).digest()).decode()

    response = client.get("/webhooks/acme/twitter/wf-1", params={"crc_token": "crc-1"})

    assert response.status_code == 200
    assert response.json() == {"response_token": "sha256=" + token}
    assert client.get("/webhooks/globex/twitter/wf-1", params={"crc_token": "crc-1"}).status_code == 400


# ============================================================================
# ACCEPTED EVENTS
# ============================================================================

@pytest.mark.unit
def test_accepted_event_starts_execution(client, signed_services, create_workflow, whatsapp_support_workflow, whatsapp_message):
    create_workflow(whatsapp_support_workflow)
    body = json.dumps(whatsapp_message(text="Hola")).encode()

    response = client.post(URL, content=body, headers={
        "Content-Type": "application/json",
        "X-Hub-Signature-256": _sign(body, "shh"),
    })

    assert response.status_code == 202
    assert response.json() == {"success": True, "message": "Webhook received"}

    jobs = signed_services.queue.jobs_on("webhook-trigger")
    assert len(jobs) == 1
    assert jobs[0].payload["node_id"] == "inbound"
    assert jobs[0].payload["input"]["data"]["text"] == "Hola"
    assert jobs[0].payload["metadata"]["sender_id"] == "34600111222"


@pytest.mark.unit
def test_redelivered_event_is_acknowledged_once_executed(client, services, create_workflow, whatsapp_support_workflow, whatsapp_message):
    create_workflow(whatsapp_support_workflow)

    first = client.post(URL, json=whatsapp_message())
    second = client.post(URL, json=whatsapp_message())

    assert first.status_code == second.status_code == 202
    assert len(services.queue.history) == 1


@pytest.mark.unit
def test_event_for_unregistered_workflow_is_acknowledged_and_dropped(client, services, whatsapp_message):
    response = client.post("/webhooks/acme/whatsapp/no-such-workflow", json=whatsapp_message())

    assert response.status_code == 202
    assert services.queue.history == []


@pytest.mark.unit
def test_provider_segment_is_case_insensitive(client, services, create_workflow, whatsapp_support_workflow, whatsapp_message):
    create_workflow(whatsapp_support_workflow)

    response = client.post("/webhooks/acme/WhatsApp/wf-1", json=whatsapp_message())

    assert response.status_code == 202
    assert len(services.queue.history) == 1


def _status(status, wamid="wamid.OUT1"):
    return {"object": "whatsapp_business_account", "entry": [{"changes": [{"field": "messages", "value": {
        "statuses": [{"id": wamid, "status": status, "recipient_id": "34600111222", "timestamp": "1760000001"}],
    }}]}]}


@pytest.mark.unit
def test_each_delivery_status_starts_its_own_execution(client, services, create_workflow, whatsapp_support_workflow):
    create_workflow(whatsapp_support_workflow)

    for status in ("sent", "delivered", "read", "read"):
        assert client.post(URL, json=_status(status)).status_code == 202

    assert len(services.queue.history) == 3
    assert [job.payload["input"]["data"]["status"] for job in services.queue.history] == ["sent", "delivered", "read"]
