"""
Generic JSON webhook adapter for tenant-built integrations.

Signature: X-Webhook-Signature = "sha256=" + HMAC-SHA256(secret, "{timestamp}.{body}")
with X-Webhook-Timestamp (unix seconds) inside a 5 minute window.
"""

import time
from typing import Any, Dict, Mapping, Optional, Tuple

from .base import (
    UNKNOWN_EVENT,
    ChallengeResponse,
    ProviderType,
    WebhookProviderAdapter,
    body_bytes,
    header,
    hmac_sha256_hex,
    signatures_match,
)

REPLAY_WINDOW_SECONDS = 300


class CustomWebhookAdapter(WebhookProviderAdapter):
    provider = ProviderType.CUSTOM

    def __init__(self, replay_window: int = REPLAY_WINDOW_SECONDS, clock=time.time):
        self.replay_window = replay_window
        self.clock = clock

    def verify_signature(self, payload: Any, headers: Mapping[str, str], secret: str) -> bool:
        signature = header(headers, "x-webhook-signature")
        timestamp = header(headers, "x-webhook-timestamp")
        if not signature or not timestamp or not secret:
            return False
        try:
            if abs(self.clock() - int(timestamp)) > self.replay_window:
                return False
        except ValueError:
            return False

        provided = signature[len("sha256="):] if signature.startswith("sha256=") else signature
        expected = hmac_sha256_hex(secret, timestamp.encode("utf-8") + b"." + body_bytes(payload))
        return signatures_match(expected, provided)

    def handle_challenge(
        self,
        query_or_body: Any,
        headers: Optional[Mapping[str, str]] = None,
        secret: Optional[str] = None,
    ) -> ChallengeResponse:
        if (
            isinstance(query_or_body, Mapping)
            and query_or_body.get("challenge")
            and set(query_or_body) <= {"challenge", "type"}
        ):
            return ChallengeResponse(is_challenge=True, response={"challenge": query_or_body["challenge"]})
        return ChallengeResponse()

    def extract(self, raw_payload: Any) -> Tuple[str, Optional[str], Dict[str, Any]]:
        if not isinstance(raw_payload, dict):
            return UNKNOWN_EVENT, None, {}
        event_type = raw_payload.get("event") or raw_payload.get("type") or UNKNOWN_EVENT
        customer_id = raw_payload.get("customer_id") or raw_payload.get("user_id")
        data = raw_payload.get("data") if isinstance(raw_payload.get("data"), dict) else {
            k: v for k, v in raw_payload.items() if k not in ("event", "type")
        }
        if raw_payload.get("id") and "message_id" not in data:
            data = dict(data, message_id=raw_payload["id"])
        return str(event_type), customer_id, data
