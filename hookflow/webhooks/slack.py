"""
Slack Events API adapter.

Signature: X-Slack-Signature = "v0=" + HMAC-SHA256(secret, "v0:{ts}:{body}")
with X-Slack-Request-Timestamp no older than 5 minutes.
"""

import logging
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
    to_millis,
)

logger = logging.getLogger(__name__)

REPLAY_WINDOW_SECONDS = 300


class SlackWebhookAdapter(WebhookProviderAdapter):
    provider = ProviderType.SLACK

    def __init__(self, replay_window: int = REPLAY_WINDOW_SECONDS, clock=time.time):
        self.replay_window = replay_window
        self.clock = clock

    def verify_signature(self, payload: Any, headers: Mapping[str, str], secret: str) -> bool:
        signature = header(headers, "x-slack-signature")
        timestamp = header(headers, "x-slack-request-timestamp")
        if not signature or not timestamp or not secret:
            return False

        try:
            sent_at = int(timestamp)
        except ValueError:
            return False
        if abs(self.clock() - sent_at) > self.replay_window:
            logger.warning("Slack request outside the replay window")
            return False

        base = b"v0:" + timestamp.encode("utf-8") + b":" + body_bytes(payload)
        expected = "v0=" + hmac_sha256_hex(secret, base)
        return signatures_match(expected, signature)

    def handle_challenge(
        self,
        query_or_body: Any,
        headers: Optional[Mapping[str, str]] = None,
        secret: Optional[str] = None,
    ) -> ChallengeResponse:
        if (
            isinstance(query_or_body, Mapping)
            and query_or_body.get("type") == "url_verification"
            and query_or_body.get("challenge")
        ):
            return ChallengeResponse(is_challenge=True, response={"challenge": query_or_body["challenge"]})
        return ChallengeResponse()

    def extract(self, raw_payload: Any) -> Tuple[str, Optional[str], Dict[str, Any]]:
        if not isinstance(raw_payload, dict):
            return UNKNOWN_EVENT, None, {}

        event = raw_payload.get("event") if isinstance(raw_payload.get("event"), dict) else None
        if raw_payload.get("type") == "event_callback" and event:
            event_type = str(event.get("type") or UNKNOWN_EVENT)
        elif raw_payload.get("command"):
            event_type = "command." + str(raw_payload["command"]).lstrip("/")
        else:
            event_type = str(raw_payload.get("type") or UNKNOWN_EVENT)

        customer_id = None
        if event:
            customer_id = event.get("user") or (event.get("item") or {}).get("user")
        if not customer_id:
            user = raw_payload.get("user")
            customer_id = user.get("id") if isinstance(user, dict) else raw_payload.get("user_id")

        data: Dict[str, Any] = {}
        if raw_payload.get("team_id"):
            data["team_id"] = raw_payload["team_id"]

        if event and event_type in ("message", "app_mention"):
            data.update({
                "user_id": event.get("user"),
                "channel_id": event.get("channel"),
                "timestamp": event.get("ts"),
                "thread_ts": event.get("thread_ts"),
                "message_id": event.get("client_msg_id") or event.get("ts"),
            })
            if event.get("text"):
                data["message_type"] = "text"
                data["text"] = event["text"]
            files = event.get("files")
            if isinstance(files, list) and files:
                file = files[0]
                filetype = file.get("filetype") or ""
                data.update({
                    "file_id": file.get("id"),
                    "file_name": file.get("name"),
                    "file_type": filetype,
                    "file_url": file.get("url_private"),
                    "message_type": next(
                        (kind for kind in ("image", "audio", "video") if filetype.startswith(kind)),
                        "file",
                    ),
                })
            if event.get("blocks"):
                data["blocks"] = event["blocks"]
        elif event and event_type in ("reaction_added", "reaction_removed"):
            item = event.get("item") or {}
            data.update({
                "user_id": event.get("user"),
                "reaction": event.get("reaction"),
                "item_user": event.get("item_user"),
                "item_type": item.get("type"),
                "channel_id": item.get("channel"),
                "item_ts": item.get("ts"),
                "timestamp": event.get("event_ts"),
            })
        elif event:
            data.update({k: v for k, v in event.items() if k != "type"})
        elif raw_payload.get("command"):
            data.update({
                "command": raw_payload.get("command"),
                "text": raw_payload.get("text"),
                "channel_id": raw_payload.get("channel_id"),
                "user_id": raw_payload.get("user_id"),
                "response_url": raw_payload.get("response_url"),
            })

        return event_type, customer_id, data

    def event_timestamp(self, raw_payload: Any, data: Dict[str, Any]) -> Optional[int]:
        return to_millis(data.get("timestamp"))
