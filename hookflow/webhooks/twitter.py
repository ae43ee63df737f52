"""
Twitter (X) Account Activity API adapter.

Signature: x-twitter-webhooks-signature = "sha256=" + base64(HMAC-SHA256(
consumer secret, body)). Hex digests are accepted as well.

Challenge: a GET with crc_token is answered with
{"response_token": "sha256=" + base64(HMAC-SHA256(consumer secret, crc_token))}.
"""

import base64
import hashlib
import hmac
import logging
from datetime import datetime
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

SIGNATURE_HEADER = "x-twitter-webhooks-signature"

# Payload keys in the order they are checked; each holds a list of events
EVENT_KEYS = (
    "tweet_create_events",
    "favorite_events",
    "follow_events",
    "unfollow_events",
    "block_events",
    "unblock_events",
    "mute_events",
    "unmute_events",
    "tweet_delete_events",
    "direct_message_events",
    "direct_message_mark_read_events",
    "direct_message_indicate_typing_events",
)

CREATED_AT_FORMAT = "%a %b %d %H:%M:%S %z %Y"


def crc_response_token(secret: str, crc_token: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), str(crc_token).encode("utf-8"), hashlib.sha256).digest()
    return "sha256=" + base64.b64encode(digest).decode("ascii")


def _created_at_millis(value: Any) -> Optional[int]:
    """Twitter dates look like "Wed Oct 10 20:19:24 +0000 2018"."""
    if not isinstance(value, str):
        return None
    try:
        return int(datetime.strptime(value, CREATED_AT_FORMAT).timestamp() * 1000)
    except ValueError:
        return None


def _user_id(user: Any) -> Optional[str]:
    return user.get("id_str") if isinstance(user, dict) else None


class TwitterWebhookAdapter(WebhookProviderAdapter):
    provider = ProviderType.TWITTER

    def verify_signature(self, payload: Any, headers: Mapping[str, str], secret: str) -> bool:
        signature = header(headers, SIGNATURE_HEADER)
        if not signature or not secret:
            return False
        provided = signature[len("sha256="):] if signature.startswith("sha256=") else signature
        message = body_bytes(payload)
        digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
        return signatures_match(base64.b64encode(digest).decode("ascii"), provided) or signatures_match(
            hmac_sha256_hex(secret, message), provided
        )

    def handle_challenge(
        self,
        query_or_body: Any,
        headers: Optional[Mapping[str, str]] = None,
        secret: Optional[str] = None,
    ) -> ChallengeResponse:
        if not isinstance(query_or_body, Mapping) or not query_or_body.get("crc_token"):
            return ChallengeResponse()
        if not secret:
            logger.warning("twitter CRC check received but no consumer secret is configured")
            return ChallengeResponse()
        return ChallengeResponse(
            is_challenge=True,
            response={"response_token": crc_response_token(secret, query_or_body["crc_token"])},
        )

    def extract(self, raw_payload: Any) -> Tuple[str, Optional[str], Dict[str, Any]]:
        if not isinstance(raw_payload, dict):
            return UNKNOWN_EVENT, None, {}

        event_type, event = UNKNOWN_EVENT, None
        for key in EVENT_KEYS:
            if first(raw_payload.get(key)) is not None:
                event_type, event = key, raw_payload[key][0]
                break
        else:
            if raw_payload.get("user_event"):
                event_type, event = "user_event", raw_payload["user_event"]
            elif raw_payload.get("revoke"):
                event_type, event = "revoke", raw_payload["revoke"]

        data: Dict[str, Any] = {}
        if raw_payload.get("for_user_id"):
            data["for_user_id"] = raw_payload["for_user_id"]
        if not isinstance(event, dict):
            return event_type, raw_payload.get("for_user_id"), data

        customer_id = None
        if event_type == "tweet_create_events":
            customer_id = _user_id(event.get("user"))
            data.update(self._tweet_data(event))
        elif event_type == "direct_message_events":
            data.update(self._direct_message_data(event))
            customer_id = data.get("sender_id")
        elif event_type in ("follow_events", "unfollow_events", "block_events", "unblock_events",
                            "mute_events", "unmute_events"):
            source, target = event.get("source") or {}, event.get("target") or {}
            customer_id = _user_id(source)
            data.update({
                "source_user_id": _user_id(source),
                "source_screen_name": source.get("screen_name"),
                "target_user_id": _user_id(target),
                "target_screen_name": target.get("screen_name"),
                "timestamp": _created_at_millis(event.get("created_at")),
            })
        elif event_type == "favorite_events":
            user = event.get("user") or {}
            tweet = event.get("favorited_status") or {}
            customer_id = _user_id(user)
            data.update({
                "user_id": _user_id(user),
                "screen_name": user.get("screen_name"),
                "tweet_id": tweet.get("id_str"),
                "tweet_user_id": _user_id(tweet.get("user")),
                "timestamp": _created_at_millis(event.get("created_at")),
            })
        elif event_type == "tweet_delete_events":
            status = event.get("status") or {}
            customer_id = status.get("user_id") or event.get("user_id_str")
            data.update({
                "user_id": customer_id,
                "tweet_id": status.get("id") or event.get("status_id_str"),
                "timestamp": event.get("timestamp_ms"),
            })
        elif event_type == "revoke":
            customer_id = (event.get("source") or {}).get("user_id")
            data["user_id"] = customer_id
        else:
            data["event"] = event

        return event_type, customer_id or raw_payload.get("for_user_id"), data

    def _tweet_data(self, tweet: Dict[str, Any]) -> Dict[str, Any]:
        user = tweet.get("user") or {}
        data: Dict[str, Any] = {
            "message_id": tweet.get("id_str"),
            "tweet_id": tweet.get("id_str"),
            "user_id": _user_id(user),
            "screen_name": user.get("screen_name"),
            "text": tweet.get("full_text") or tweet.get("text"),
            "timestamp": to_millis(tweet.get("timestamp_ms")) or _created_at_millis(tweet.get("created_at")),
            "tweet_type": "tweet",
        }
        # A reply can also quote; the most specific kind wins
        for key, kind in (("retweeted_status", "retweet"), ("quoted_status", "quote")):
            related = tweet.get(key)
            if isinstance(related, dict):
                data["tweet_type"] = kind
                data[f"{kind}_of_tweet_id"] = related.get("id_str")
                data[f"{kind}_of_user_id"] = _user_id(related.get("user"))
        if tweet.get("in_reply_to_status_id_str"):
            data.update({
                "tweet_type": "reply",
                "in_reply_to_tweet_id": tweet["in_reply_to_status_id_str"],
                "in_reply_to_user_id": tweet.get("in_reply_to_user_id_str"),
                "in_reply_to_screen_name": tweet.get("in_reply_to_screen_name"),
            })
        media = (tweet.get("extended_entities") or tweet.get("entities") or {}).get("media")
        if isinstance(media, list) and media:
            data["media_urls"] = [item.get("media_url_https") for item in media]
            data["media_types"] = [item.get("type") for item in media]
        return data

    def _direct_message_data(self, event: Dict[str, Any]) -> Dict[str, Any]:
        # Account Activity DMs nest under message_create
        message = event.get("message_create") or event
        message_data = message.get("message_data") or {}
        sender_id = message.get("sender_id") or event.get("sender_id")
        data: Dict[str, Any] = {
            "message_id": event.get("id"),
            "sender_id": sender_id,
            "recipient_id": (message.get("target") or {}).get("recipient_id") or event.get("recipient_id"),
            "timestamp": event.get("created_timestamp"),
            "message_type": "text",
            "text": message_data.get("text"),
        }
        quick_reply = message_data.get("quick_reply_response")
        if isinstance(quick_reply, dict):
            data.update({"message_type": "quick_reply", "quick_reply_payload": quick_reply.get("metadata")})
        attachment = message_data.get("attachment")
        if isinstance(attachment, dict):
            media = attachment.get("media") or {}
            data.update({
                "message_type": media.get("type") or attachment.get("type") or "attachment",
                "media_id": media.get("id_str") or media.get("id"),
                "media_url": media.get("media_url_https"),
            })
        return data

    def event_timestamp(self, raw_payload: Any, data: Dict[str, Any]) -> Optional[int]:
        return to_millis(data.get("timestamp"))
