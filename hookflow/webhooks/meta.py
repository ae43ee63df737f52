"""
Meta platform adapters: Facebook Messenger, Instagram and WhatsApp Cloud API.

All three share the signature scheme (X-Hub-Signature-256: sha256=<hex>
over the raw body) and the subscription challenge (hub.mode=subscribe).
"""

import hmac
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from .base import (
    UNKNOWN_EVENT,
    ChallengeResponse,
    ProviderType,
    WebhookProviderAdapter,
    body_bytes,
    first,
    header,
    hmac_sha256_hex,
    signatures_match,
    to_millis,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-hub-signature-256"


def _param(source: Mapping[str, Any], name: str) -> Optional[Any]:
    # Frameworks keep "hub.mode" as is; some proxies strip the prefix
    value = source.get(f"hub.{name}")
    if value is None:
        value = source.get(name)
    return value


class MetaWebhookAdapter(WebhookProviderAdapter):
    """Signature and challenge handling shared by Meta platforms."""

    def __init__(self, verify_token: Optional[str] = None):
        self.verify_token = verify_token

    def verify_signature(self, payload: Any, headers: Mapping[str, str], secret: str) -> bool:
        signature = header(headers, SIGNATURE_HEADER)
        if not signature or not secret:
            return False
        provided = signature[len("sha256="):] if signature.startswith("sha256=") else signature
        try:
            expected = hmac_sha256_hex(secret, body_bytes(payload))
        except (TypeError, ValueError) as e:
            logger.warning(f"{self.provider.value} signature check failed: {e}")
            return False
        return signatures_match(expected, provided)

    def handle_challenge(
        self,
        query_or_body: Any,
        headers: Optional[Mapping[str, str]] = None,
        secret: Optional[str] = None,
    ) -> ChallengeResponse:
        if not isinstance(query_or_body, Mapping):
            return ChallengeResponse()

        mode = _param(query_or_body, "mode")
        challenge = _param(query_or_body, "challenge")
        token = _param(query_or_body, "verify_token")
        if mode != "subscribe" or not challenge or not token:
            return ChallengeResponse()

        if self.verify_token and not hmac.compare_digest(
            str(token).encode("utf-8"), self.verify_token.encode("utf-8")
        ):
            logger.warning(f"{self.provider.value} challenge with wrong verify token")
            return ChallengeResponse()

        return ChallengeResponse(is_challenge=True, response=str(challenge))


def _attachment_data(attachment: Dict[str, Any]) -> Dict[str, Any]:
    kind = attachment.get("type")
    payload = attachment.get("payload") or {}
    if kind in ("image", "video", "audio", "file"):
        return {"message_type": kind, "url": payload.get("url")}
    if kind == "template":
        return {
            "message_type": "template",
            "template_type": payload.get("template_type"),
            "template_data": payload,
        }
    return {"message_type": "fallback", "fallback_url": payload.get("url")}


# ============================================================================
# FACEBOOK
# ============================================================================

# messaging[0] key -> event type
FACEBOOK_EVENTS = (
    ("message", "message"),
    ("postback", "messaging_postback"),
    ("delivery", "message_deliveries"),
    ("read", "message_reads"),
    ("account_linking", "messaging_account_linking"),
    ("referral", "messaging_referrals"),
    ("handover", "messaging_handovers"),
    ("policy_enforcement", "messaging_policy_enforcement"),
    ("feedback", "messaging_feedback"),
)


def messenger_message_data(message: Dict[str, Any]) -> Dict[str, Any]:
    data: Dict[str, Any] = {"message_id": message.get("mid")}
    if message.get("quick_reply"):
        data.update({
            "message_type": "quick_reply",
            "text": message.get("text"),
            "quick_reply_payload": message["quick_reply"].get("payload"),
        })
    elif message.get("text"):
        data.update({"message_type": "text", "text": message["text"]})
    elif first(message.get("attachments")):
        data.update(_attachment_data(message["attachments"][0]))
    else:
        data["message_type"] = UNKNOWN_EVENT
    return data


class FacebookWebhookAdapter(MetaWebhookAdapter):
    provider = ProviderType.FACEBOOK

    def extract(self, raw_payload: Any) -> Tuple[str, Optional[str], Dict[str, Any]]:
        entry = first(raw_payload.get("entry")) if isinstance(raw_payload, dict) else None
        messaging = first(entry.get("messaging")) if isinstance(entry, dict) else None
        if not isinstance(messaging, dict):
            return UNKNOWN_EVENT, None, {}

        event_type = UNKNOWN_EVENT
        for key, name in FACEBOOK_EVENTS:
            if messaging.get(key):
                event_type = name
                break

        sender_id = (messaging.get("sender") or {}).get("id")
        data: Dict[str, Any] = {
            "sender_id": sender_id,
            "recipient_id": (messaging.get("recipient") or {}).get("id"),
            "timestamp": messaging.get("timestamp"),
        }

        if event_type == "message":
            data.update(messenger_message_data(messaging["message"]))
        elif event_type == "messaging_postback":
            postback = messaging["postback"]
            data.update({
                "message_type": "postback",
                "payload": postback.get("payload"),
                "title": postback.get("title"),
            })
            referral = postback.get("referral")
            if referral:
                data.update({
                    "referral_source": referral.get("source"),
                    "referral_type": referral.get("type"),
                    "referral_ref": referral.get("ref"),
                })
        elif event_type == "message_deliveries":
            delivery = messaging["delivery"]
            data.update({
                "message_type": "delivery",
                "watermark": delivery.get("watermark"),
                "delivered_message_ids": delivery.get("mids"),
            })
        elif event_type == "message_reads":
            data.update({"message_type": "read", "watermark": messaging["read"].get("watermark")})
        else:
            data["message_type"] = event_type

        return event_type, sender_id, data

    def event_timestamp(self, raw_payload: Any, data: Dict[str, Any]) -> Optional[int]:
        return to_millis(data.get("timestamp"))


# ============================================================================
# INSTAGRAM
# ============================================================================

class InstagramWebhookAdapter(MetaWebhookAdapter):
    provider = ProviderType.INSTAGRAM

    def extract(self, raw_payload: Any) -> Tuple[str, Optional[str], Dict[str, Any]]:
        entry = first(raw_payload.get("entry")) if isinstance(raw_payload, dict) else None
        if not isinstance(entry, dict):
            return UNKNOWN_EVENT, None, {}

        messaging = first(entry.get("messaging"))
        if isinstance(messaging, dict):
            sender_id = (messaging.get("sender") or {}).get("id")
            data: Dict[str, Any] = {
                "sender_id": sender_id,
                "recipient_id": (messaging.get("recipient") or {}).get("id"),
                "timestamp": messaging.get("timestamp"),
            }
            if isinstance(messaging.get("message"), dict):
                data.update(messenger_message_data(messaging["message"]))
            return "direct", sender_id, data

        change = first(entry.get("changes"))
        if not isinstance(change, dict):
            return UNKNOWN_EVENT, None, {}

        field = change.get("field")
        value = change.get("value") or {}
        if field == "comments":
            author = value.get("from") or {}
            return "comment", author.get("id"), {
                "comment_id": value.get("id"),
                "user_id": author.get("id"),
                "username": author.get("username"),
                "text": value.get("text"),
                "media_id": (value.get("media") or {}).get("id"),
                "timestamp": value.get("created_time"),
            }
        if field == "mentions":
            return "mention", value.get("user_id"), {
                "media_id": value.get("media_id"),
                "comment_id": value.get("comment_id"),
                "user_id": value.get("user_id"),
                "username": value.get("username"),
                "text": value.get("text"),
                "timestamp": value.get("created_time"),
            }
        if field == "story_mentions":
            user = value.get("mentioned_user") or {}
            return "story_mention", user.get("id"), {
                "story_id": value.get("story_id"),
                "user_id": user.get("id"),
                "username": user.get("username"),
                "timestamp": value.get("created_time"),
            }
        return UNKNOWN_EVENT, None, {}


# ============================================================================
# WHATSAPP
# ============================================================================

class WhatsAppWebhookAdapter(MetaWebhookAdapter):
    provider = ProviderType.WHATSAPP

    def extract(self, raw_payload: Any) -> Tuple[str, Optional[str], Dict[str, Any]]:
        entry = first(raw_payload.get("entry")) if isinstance(raw_payload, dict) else None
        change = first(entry.get("changes")) if isinstance(entry, dict) else None
        value = change.get("value") if isinstance(change, dict) else None
        if not isinstance(value, dict):
            return UNKNOWN_EVENT, None, {}

        message = first(value.get("messages"))
        status = first(value.get("statuses"))
        if isinstance(message, dict):
            event_type, event = "message", message
        elif isinstance(status, dict):
            event_type, event = "status_update", status
        else:
            return "other", None, {"field": change.get("field"), "value": value}

        metadata = value.get("metadata") or {}
        sender = event.get("from") or event.get("recipient_id")
        data: Dict[str, Any] = {
            "sender_id": sender,
            "recipient_id": event.get("to") or metadata.get("phone_number_id"),
            "timestamp": event.get("timestamp"),
            "message_id": event.get("id"),
        }
        contact = first(value.get("contacts"))
        if isinstance(contact, dict):
            data["profile_name"] = (contact.get("profile") or {}).get("name")

        if event_type == "message":
            data.update(self._message_data(event))
        else:
            data["status"] = event.get("status")
            data["conversation_id"] = (event.get("conversation") or {}).get("id")

        return event_type, sender, data

    def _message_data(self, message: Dict[str, Any]) -> Dict[str, Any]:
        if message.get("text"):
            return {"message_type": "text", "text": message["text"].get("body")}
        for media in ("image", "video", "audio", "document"):
            if message.get(media):
                item = message[media]
                data = {
                    "message_type": media,
                    "media_id": item.get("id"),
                    "media_url": item.get("url") or item.get("id"),
                    "mime_type": item.get("mime_type"),
                }
                if media == "document":
                    data["file_name"] = item.get("filename")
                return data
        if message.get("location"):
            location = message["location"]
            return {
                "message_type": "location",
                "latitude": location.get("latitude"),
                "longitude": location.get("longitude"),
            }
        if message.get("button"):
            return {
                "message_type": "button",
                "button_text": message["button"].get("text"),
                "button_payload": message["button"].get("payload"),
            }
        if message.get("interactive"):
            interactive = message["interactive"]
            data = {"message_type": "interactive", "interactive_type": interactive.get("type")}
            if interactive.get("button_reply"):
                data["button_id"] = interactive["button_reply"].get("id")
                data["button_text"] = interactive["button_reply"].get("title")
            elif interactive.get("list_reply"):
                data["list_item_id"] = interactive["list_reply"].get("id")
                data["list_item_title"] = interactive["list_reply"].get("title")
            return data
        return {"message_type": message.get("type") or UNKNOWN_EVENT}

    def event_timestamp(self, raw_payload: Any, data: Dict[str, Any]) -> Optional[int]:
        return to_millis(data.get("timestamp"))
