"""
Webhook ingestion routes.

GET  /webhooks/{tenant_id}/{provider}/{workflow_id}  provider verification
POST /webhooks/{tenant_id}/{provider}/{workflow_id}  event delivery

Requests are acknowledged (202) as soon as they pass the synchronous checks
(known provider, signature, decodable body); normalization and the trigger
run in a background task.
"""

import json
import logging
from typing import Any, Dict, Mapping

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from ..core.exceptions import (
    HookflowException,
    MalformedPayloadError,
    SignatureVerificationError,
)
from ..webhooks.base import ChallengeResponse, WebhookProviderAdapter
from .schemas import WebhookAccepted

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _challenge_response(challenge: ChallengeResponse):
    if isinstance(challenge.response, dict):
        return JSONResponse(challenge.response)
    return PlainTextResponse(str(challenge.response or ""))


def process_webhook(
    services,
    adapter: WebhookProviderAdapter,
    tenant_id: str,
    provider: str,
    workflow_id: str,
    payload: Any,
    headers: Mapping[str, str],
    raw_body: bytes,
) -> None:
    """Normalize and trigger. Runs after the response has been sent."""
    event = adapter.normalize_payload(payload, headers, tenant_id)
    try:
        result = services.triggers.handle_webhook(event, tenant_id, provider, workflow_id, raw_body=raw_body)
    except HookflowException as e:
        logger.error(
            f"Webhook {provider} for {tenant_id}/{workflow_id} not processed: {e.message}",
            extra={"event_type": event.event_type, "retry_allowed": e.retry_allowed},
        )
        return
    except Exception:
        logger.exception(f"Webhook {provider} for {tenant_id}/{workflow_id} failed")
        return

    if result is not None:
        logger.info(
            f"Webhook {event.event_type} from {provider} -> execution {result.execution_id}"
            + ("" if result.created else " (duplicate)")
        )


@router.get("/{tenant_id}/{provider}/{workflow_id}", summary="Provider verification challenge")
def verify_webhook(tenant_id: str, provider: str, workflow_id: str, request: Request):
    services = request.app.state.services
    adapter = services.adapters.require(provider)
    secret = services.settings.webhook_secret(provider.lower(), tenant_id)
    challenge = adapter.handle_challenge(dict(request.query_params), dict(request.headers), secret=secret)
    if not challenge.is_challenge:
        raise HTTPException(status_code=400, detail="Not a verification request")
    logger.info(f"Answered {provider} verification for {tenant_id}/{workflow_id}")
    return _challenge_response(challenge)


@router.post("/{tenant_id}/{provider}/{workflow_id}", status_code=202, summary="Receive a webhook event")
async def receive_webhook(
    tenant_id: str,
    provider: str,
    workflow_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
):
    services = request.app.state.services
    provider = provider.lower()
    adapter = services.adapters.require(provider)

    raw_body = await request.body()
    headers: Dict[str, str] = dict(request.headers)

    try:
        payload = json.loads(raw_body) if raw_body else {}
    except ValueError:
        payload = None

    secret = services.settings.webhook_secret(provider, tenant_id)
    if isinstance(payload, dict):
        challenge = adapter.handle_challenge(payload, headers, secret=secret)
        if challenge.is_challenge:
            return _challenge_response(challenge)

    if secret and not adapter.verify_signature(raw_body, headers, secret):
        logger.warning(f"Rejected {provider} webhook for {tenant_id}/{workflow_id}: bad signature")
        raise SignatureVerificationError("Invalid webhook signature")

    if payload is None:
        raise MalformedPayloadError("Request body is not valid JSON")

    background_tasks.add_task(
        process_webhook, services, adapter, tenant_id, provider, workflow_id, payload, headers, raw_body,
    )
    return JSONResponse(
        status_code=202,
        content=WebhookAccepted(message="Webhook received").model_dump(),
    )
