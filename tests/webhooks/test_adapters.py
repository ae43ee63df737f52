"""
Unit Tests for webhook provider adapters

Tests cover:
- Signature verification (Meta, Slack, Twitter, custom) over raw and re-serialized bodies
- Subscription challenges, including the Twitter CRC check
- Payload normalization per provider, including malformed payloads
- Adapter registry
"""

import base64
import hashlib
import hmac
import json

import pytest

from hookflow.core.config import Settings
from hookflow.core.exceptions import UnknownProviderError
from hookflow.webhooks import create_default_registry
from hookflow.webhooks.base import UNKNOWN_EVENT, body_bytes, header, to_millis
from hookflow.webhooks.custom import CustomWebhookAdapter
from hookflow.webhooks.meta import (
    FacebookWebhookAdapter,
    InstagramWebhookAdapter,
    WhatsAppWebhookAdapter,
)
from hookflow.webhooks.slack import SlackWebhookAdapter
from hookflow.webhooks.twitter import TwitterWebhookAdapter, crc_response_token

SECRET = "app-secret"
NOW = 1760000000


def _hex(message: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


# ============================================================================
# HELPERS
# ============================================================================

@pytest.mark.unit
def test_header_lookup_is_case_insensitive():
    assert header({"X-Hub-Signature-256": "sha256=x"}, "x-hub-signature-256") == "sha256=x"
    assert header(None, "x") is None


@pytest.mark.unit
def test_body_bytes_keeps_raw_bodies():
    assert body_bytes(b'{"a": 1}') == b'{"a": 1}'
    assert body_bytes('{"a": 1}') == b'{"a": 1}'
    assert body_bytes({"a": 1, "b": "ñ"}) == '{"a":1,"b":"ñ"}'.encode()


@pytest.mark.unit
@pytest.mark.parametrize("value, expected", [
    (1760000000, 1760000000000),
    ("1760000000", 1760000000000),
    (1760000000123, 1760000000123),
    ("1760000000.5", 1760000000500),
    ("soon", None),
    (None, None),
])
def test_to_millis(value, expected):
    assert to_millis(value) == expected


# ============================================================================
# SIGNATURES
# ============================================================================

@pytest.mark.unit
@pytest.mark.parametrize("adapter_class", [FacebookWebhookAdapter, InstagramWebhookAdapter, WhatsAppWebhookAdapter])
def test_meta_signature(adapter_class):
    adapter = adapter_class()
    body = b'{"object": "page", "entry": []}'
    good = {"X-Hub-Signature-256": "sha256=" + _hex(body)}

    assert adapter.verify_signature(body, good, SECRET) is True
    assert adapter.verify_signature(body + b" ", good, SECRET) is False
    assert adapter.verify_signature(body, {"X-Hub-Signature-256": "sha256=deadbeef"}, SECRET) is False
    assert adapter.verify_signature(body, {}, SECRET) is False
    assert adapter.verify_signature(body, good, "") is False


@pytest.mark.unit
def test_meta_signature_over_decoded_payload():
    payload = {"object": "page", "entry": []}
    signature = _hex(json.dumps(payload, separators=(",", ":")).encode())

    assert FacebookWebhookAdapter().verify_signature(payload, {"x-hub-signature-256": signature}, SECRET) is True


@pytest.mark.unit
def test_slack_signature_and_replay_window():
    adapter = SlackWebhookAdapter(clock=lambda: NOW + 10)
    body = b'{"type": "event_callback"}'
    signature = "v0=" + _hex(b"v0:" + str(NOW).encode() + b":" + body)
    headers = {"X-Slack-Signature": signature, "X-Slack-Request-Timestamp": str(NOW)}

    assert adapter.verify_signature(body, headers, SECRET) is True
    assert adapter.verify_signature(body, dict(headers, **{"X-Slack-Request-Timestamp": "abc"}), SECRET) is False

    late = SlackWebhookAdapter(clock=lambda: NOW + 301)
    assert late.verify_signature(body, headers, SECRET) is False


@pytest.mark.unit
def test_custom_signature():
    adapter = CustomWebhookAdapter(clock=lambda: NOW)
    body = b'{"event": "order.created"}'
    signature = _hex(str(NOW).encode() + b"." + body)

    assert adapter.verify_signature(
        body, {"X-Webhook-Signature": f"sha256={signature}", "X-Webhook-Timestamp": str(NOW)}, SECRET
    ) is True
    assert adapter.verify_signature(
        body, {"X-Webhook-Signature": signature, "X-Webhook-Timestamp": str(NOW - 600)}, SECRET
    ) is False
    assert adapter.verify_signature(body, {"X-Webhook-Signature": signature}, SECRET) is False


@pytest.mark.unit
def test_twitter_signature_base64_and_hex():
    adapter = TwitterWebhookAdapter()
    body = b'{"for_user_id": "2244994945", "tweet_create_events": []}'
    digest = hmac.new(SECRET.encode(), body, hashlib.sha256).digest()

    assert adapter.verify_signature(
        body, {"X-Twitter-Webhooks-Signature": "sha256=" + base64.b64encode(digest).decode()}, SECRET
    ) is True
    assert adapter.verify_signature(body, {"x-twitter-webhooks-signature": "sha256=" + _hex(body)}, SECRET) is True
    assert adapter.verify_signature(body + b" ", {"x-twitter-webhooks-signature": "sha256=" + _hex(body)}, SECRET) is False
    assert adapter.verify_signature(body, {"X-Hub-Signature-256": "sha256=" + _hex(body)}, SECRET) is False
    assert adapter.verify_signature(body, {"x-twitter-webhooks-signature": "sha256=" + _hex(body)}, "") is False


# ============================================================================
# CHALLENGES
# ============================================================================

@pytest.mark.unit
def test_facebook_challenge_echoes_value():
    adapter = FacebookWebhookAdapter(verify_token="t")

    result = adapter.handle_challenge({"mode": "subscribe", "challenge": "abc123", "verify_token": "t"})

    assert result.is_challenge is True
    assert result.response == "abc123"


@pytest.mark.unit
def test_meta_challenge_with_hub_prefix_and_wrong_token():
    adapter = WhatsAppWebhookAdapter(verify_token="t")

    hub = adapter.handle_challenge({"hub.mode": "subscribe", "hub.challenge": "42", "hub.verify_token": "t"})
    assert hub.is_challenge and hub.response == "42"

    wrong = adapter.handle_challenge({"hub.mode": "subscribe", "hub.challenge": "42", "hub.verify_token": "nope"})
    assert wrong.is_challenge is False

    assert adapter.handle_challenge({"object": "whatsapp_business_account"}).is_challenge is False
    assert adapter.handle_challenge(["not", "a", "mapping"]).is_challenge is False


@pytest.mark.unit
def test_meta_verify_token_uses_constant_time_compare(monkeypatch):
    calls = []
    real = hmac.compare_digest

    def spy(a, b):
        calls.append((a, b))
        return real(a, b)

    monkeypatch.setattr("hookflow.webhooks.meta.hmac.compare_digest", spy)
    adapter = InstagramWebhookAdapter(verify_token="tökén-1")

    assert adapter.handle_challenge({"hub.mode": "subscribe", "hub.challenge": "9", "hub.verify_token": "tökén-1"}).is_challenge
    assert not adapter.handle_challenge({"hub.mode": "subscribe", "hub.challenge": "9", "hub.verify_token": "tökén-2"}).is_challenge
    assert calls == [("tökén-1".encode(), "tökén-1".encode()), ("tökén-2".encode(), "tökén-1".encode())]


@pytest.mark.unit
def test_slack_and_custom_challenges():
    slack = SlackWebhookAdapter().handle_challenge({"type": "url_verification", "challenge": "xyz", "token": "x"})
    assert slack.is_challenge and slack.response == {"challenge": "xyz"}

    custom = CustomWebhookAdapter()
    assert custom.handle_challenge({"challenge": "c1"}).response == {"challenge": "c1"}
    assert custom.handle_challenge({"challenge": "c1", "event": "x"}).is_challenge is False


@pytest.mark.unit
def test_twitter_crc_challenge():
    adapter = TwitterWebhookAdapter()
    expected = base64.b64encode(hmac.new(SECRET.encode(), b"crc-abc", hashlib.sha256).digest()).decode()

    result = adapter.handle_challenge({"crc_token": "crc-abc"}, secret=SECRET)

    assert result.is_challenge is True
    assert result.response == {"response_token": "sha256=" + expected}
    assert crc_response_token(SECRET, "crc-abc") == "sha256=" + expected
    assert adapter.handle_challenge({"crc_token": "crc-abc"}).is_challenge is False
    assert adapter.handle_challenge({"for_user_id": "1"}, secret=SECRET).is_challenge is False


# ============================================================================
# NORMALIZATION
# ============================================================================

@pytest.mark.unit
def test_whatsapp_text_message(whatsapp_message):
    event = WhatsAppWebhookAdapter().normalize_payload(
        whatsapp_message(text="Hola"), {"User-Agent": "facebookexternalua", "X-Other": "dropped"}, "acme"
    )

    assert event.event_type == "message"
    assert event.provider == "whatsapp"
    assert event.customer_id == "34600111222"
    assert event.message_id == "wamid.IN1"
    assert event.timestamp == 1760000000000
    assert event.data["text"] == "Hola"
    assert event.data["message_type"] == "text"
    assert event.data["profile_name"] == "Ana"
    assert event.data["recipient_id"] == "5550001"
    assert event.metadata["user-agent"] == "facebookexternalua"
    assert "x-other" not in event.metadata
    assert event.metadata["source"] == "whatsapp"
    assert event.metadata["source_type"] == "webhook"
    assert event.metadata["action_type"] == "message"
    assert event.metadata["tenant_id"] == "acme"


@pytest.mark.unit
def test_whatsapp_status_and_interactive():
    status = {"entry": [{"changes": [{"field": "messages", "value": {
        "statuses": [{"id": "wamid.OUT1", "status": "read", "recipient_id": "34600111222", "timestamp": "1760000001"}],
    }}]}]}
    interactive = {"entry": [{"changes": [{"value": {"messages": [{
        "from": "34600111222", "id": "wamid.IN2", "type": "interactive",
        "interactive": {"type": "button_reply", "button_reply": {"id": "yes", "title": "Sí"}},
    }]}}]}]}
    adapter = WhatsAppWebhookAdapter()

    status_event = adapter.normalize_payload(status, {}, "acme")
    assert status_event.event_type == "status_update"
    assert status_event.data["status"] == "read"
    assert status_event.customer_id == "34600111222"

    button = adapter.normalize_payload(interactive, {}, "acme")
    assert button.data["message_type"] == "interactive"
    assert button.data["button_id"] == "yes"
    assert button.data["button_text"] == "Sí"


@pytest.mark.unit
def test_whatsapp_other_change():
    payload = {"entry": [{"changes": [{"field": "account_update", "value": {"event": "VERIFIED"}}]}]}

    event = WhatsAppWebhookAdapter().normalize_payload(payload, {}, "acme")

    assert event.event_type == "other"
    assert event.data == {"field": "account_update", "value": {"event": "VERIFIED"}}


@pytest.mark.unit
def test_facebook_message_and_postback():
    adapter = FacebookWebhookAdapter()
    message = {"object": "page", "entry": [{"messaging": [{
        "sender": {"id": "PSID-1"}, "recipient": {"id": "PAGE-1"}, "timestamp": 1760000000123,
        "message": {"mid": "m_1", "text": "hola"},
    }]}]}
    postback = {"entry": [{"messaging": [{
        "sender": {"id": "PSID-1"},
        "postback": {"payload": "GET_STARTED", "title": "Empezar", "referral": {"ref": "ad-7", "source": "ADS"}},
    }]}]}

    event = adapter.normalize_payload(message, {}, "acme")
    assert event.event_type == "message"
    assert event.customer_id == "PSID-1"
    assert event.message_id == "m_1"
    assert event.timestamp == 1760000000123
    assert event.data["text"] == "hola"

    clicked = adapter.normalize_payload(postback, {}, "acme")
    assert clicked.event_type == "messaging_postback"
    assert clicked.data["payload"] == "GET_STARTED"
    assert clicked.data["referral_ref"] == "ad-7"


@pytest.mark.unit
def test_facebook_attachment():
    payload = {"entry": [{"messaging": [{
        "sender": {"id": "PSID-1"},
        "message": {"mid": "m_2", "attachments": [{"type": "image", "payload": {"url": "https://cdn.test/a.jpg"}}]},
    }]}]}

    event = FacebookWebhookAdapter().normalize_payload(payload, {}, "acme")

    assert event.data["message_type"] == "image"
    assert event.data["url"] == "https://cdn.test/a.jpg"


@pytest.mark.unit
def test_instagram_direct_and_comment():
    adapter = InstagramWebhookAdapter()
    direct = {"entry": [{"messaging": [{"sender": {"id": "IGSID"}, "message": {"mid": "ig_1", "text": "hey"}}]}]}
    comment = {"entry": [{"changes": [{"field": "comments", "value": {
        "id": "c1", "text": "precio?", "from": {"id": "IGU1", "username": "ana"}, "media": {"id": "M1"},
    }}]}]}

    dm = adapter.normalize_payload(direct, {}, "acme")
    assert dm.event_type == "direct"
    assert dm.data["text"] == "hey"

    commented = adapter.normalize_payload(comment, {}, "acme")
    assert commented.event_type == "comment"
    assert commented.customer_id == "IGU1"
    assert commented.data["media_id"] == "M1"


@pytest.mark.unit
def test_slack_message_and_command():
    adapter = SlackWebhookAdapter()
    message = {"type": "event_callback", "team_id": "T1", "event": {
        "type": "message", "user": "U1", "channel": "C1", "text": "hola", "ts": "1760000000.000100",
        "client_msg_id": "cm-1",
    }}
    command = {"command": "/order", "text": "42", "user_id": "U2", "channel_id": "C2"}

    event = adapter.normalize_payload(message, {}, "acme")
    assert event.event_type == "message"
    assert event.customer_id == "U1"
    assert event.message_id == "cm-1"
    assert event.data["team_id"] == "T1"
    assert event.timestamp == 1760000000000

    slash = adapter.normalize_payload(command, {}, "acme")
    assert slash.event_type == "command.order"
    assert slash.customer_id == "U2"
    assert slash.data["text"] == "42"


@pytest.mark.unit
def test_twitter_tweet_and_reply():
    payload = {"for_user_id": "2244994945", "tweet_create_events": [{
        "id_str": "1050118621198921728",
        "created_at": "Wed Oct 10 20:19:24 +0000 2018",
        "text": "@acme my order is late",
        "user": {"id_str": "6253282", "screen_name": "maria"},
        "in_reply_to_status_id_str": "1050118000000000000",
        "in_reply_to_user_id_str": "2244994945",
        "in_reply_to_screen_name": "acme",
        "entities": {"media": [{"media_url_https": "https://pbs.twimg.com/a.jpg", "type": "photo"}]},
    }]}

    event = TwitterWebhookAdapter().normalize_payload(payload, {}, "acme")

    assert event.provider == "twitter"
    assert event.event_type == "tweet_create_events"
    assert event.customer_id == "6253282"
    assert event.message_id == "1050118621198921728"
    assert event.data["tweet_type"] == "reply"
    assert event.data["in_reply_to_screen_name"] == "acme"
    assert event.data["text"] == "@acme my order is late"
    assert event.data["media_types"] == ["photo"]
    assert event.data["for_user_id"] == "2244994945"
    assert event.timestamp == 1539202764000


@pytest.mark.unit
def test_twitter_direct_message_and_follow():
    adapter = TwitterWebhookAdapter()
    dm = {"for_user_id": "2244994945", "direct_message_events": [{
        "type": "message_create",
        "id": "954491830116155396",
        "created_timestamp": "1516403560557",
        "message_create": {
            "target": {"recipient_id": "2244994945"},
            "sender_id": "3805104374",
            "message_data": {"text": "Hola, ¿dónde está mi pedido?"},
        },
    }]}
    follow = {"for_user_id": "2244994945", "follow_events": [{
        "created_at": "Wed Oct 10 20:19:24 +0000 2018",
        "source": {"id_str": "3805104374", "screen_name": "maria"},
        "target": {"id_str": "2244994945", "screen_name": "acme"},
    }]}

    message = adapter.normalize_payload(dm, {}, "acme")
    assert message.event_type == "direct_message_events"
    assert message.customer_id == "3805104374"
    assert message.message_id == "954491830116155396"
    assert message.data["recipient_id"] == "2244994945"
    assert message.data["message_type"] == "text"
    assert message.data["text"] == "Hola, ¿dónde está mi pedido?"
    assert message.timestamp == 1516403560557

    followed = adapter.normalize_payload(follow, {}, "acme")
    assert followed.event_type == "follow_events"
    assert followed.customer_id == "3805104374"
    assert followed.data["target_screen_name"] == "acme"


@pytest.mark.unit
def test_twitter_revoke_and_unknown():
    adapter = TwitterWebhookAdapter()

    revoke = adapter.normalize_payload(
        {"revoke": {"date_time": "2018-05-24T09:48:12+00:00", "source": {"user_id": "3805104374"}}}, {}, "acme"
    )
    assert revoke.event_type == "revoke"
    assert revoke.customer_id == "3805104374"

    other = adapter.normalize_payload({"for_user_id": "2244994945", "tweet_create_events": []}, {}, "acme")
    assert other.event_type == UNKNOWN_EVENT
    assert other.customer_id == "2244994945"


@pytest.mark.unit
def test_custom_payload():
    event = CustomWebhookAdapter().normalize_payload(
        {"event": "order.created", "id": "evt-1", "customer_id": "cus-9", "data": {"order": 42}}, {}, "acme"
    )

    assert event.event_type == "order.created"
    assert event.customer_id == "cus-9"
    assert event.data == {"order": 42, "message_id": "evt-1"}


@pytest.mark.unit
@pytest.mark.parametrize("adapter", [
    FacebookWebhookAdapter(),
    InstagramWebhookAdapter(),
    WhatsAppWebhookAdapter(),
    SlackWebhookAdapter(),
    TwitterWebhookAdapter(),
    CustomWebhookAdapter(),
])
@pytest.mark.parametrize("payload", [None, "text", [], {}, {"entry": "bogus"}, {"entry": [{"changes": [None]}]}])
def test_malformed_payloads_normalize_to_unknown(adapter, payload):
    event = adapter.normalize_payload(payload, None, "acme")

    assert event.provider == adapter.provider.value
    assert event.metadata["tenant_id"] == "acme"
    if event.event_type == UNKNOWN_EVENT:
        assert event.customer_id == ""


@pytest.mark.unit
@pytest.mark.parametrize("payload, expected", [
    ({"type": 123}, "123"),
    ({"type": "event_callback", "event": {"type": 7, "user": "U1"}}, "7"),
    ({"type": ["block_actions"]}, "['block_actions']"),
])
def test_slack_non_string_type_is_coerced(payload, expected):
    event = SlackWebhookAdapter().normalize_payload(payload, {}, "acme")

    assert event.event_type == expected
    assert event.metadata["action_type"] == expected


@pytest.mark.unit
def test_extract_returning_odd_values_still_normalizes():
    class LooseAdapter(CustomWebhookAdapter):
        def extract(self, raw_payload):
            return 404, 17, ["not", "a", "dict"]

    event = LooseAdapter().normalize_payload({"event": "x"}, {}, "acme")

    assert event.event_type == "404"
    assert event.customer_id == "17"
    assert event.data == {}


# ============================================================================
# REGISTRY
# ============================================================================

@pytest.mark.unit
def test_registry():
    registry = create_default_registry(Settings.from_env({"FACEBOOK_VERIFY_TOKEN": "t"}))

    assert registry.providers() == ["custom", "facebook", "instagram", "slack", "twitter", "whatsapp"]
    assert isinstance(registry.require("WhatsApp"), WhatsAppWebhookAdapter)
    assert registry.require("facebook").verify_token == "t"
    assert registry.get("telegram") is None
    with pytest.raises(UnknownProviderError):
        registry.require("telegram")
