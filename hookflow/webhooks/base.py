"""
Base classes for webhook provider adapters.

Contract:
- normalize_payload() never raises: unknown shapes give event_type "unknown"
  and an empty data bag
- verify_signature() never raises: missing or malformed headers give False
- handle_challenge() is pure; secret is the tenant's signing secret, for
  providers whose challenge answer is signed
"""

import hashlib
import hmac
import json
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Request headers copied into event metadata
METADATA_HEADERS = ("user-agent", "content-type", "x-forwarded-for", "x-request-id")

UNKNOWN_EVENT = "unknown"


class ProviderType(str, Enum):
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    WHATSAPP = "whatsapp"
    SLACK = "slack"
    TWITTER = "twitter"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: str) -> Optional["ProviderType"]:
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class NormalizedWebhookEvent(BaseModel):
    """Canonical shape of every inbound webhook."""

    event_type: str = UNKNOWN_EVENT
    customer_id: str = ""
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))  # ms
    provider: str
    data: Dict[str, Any] = Field(default_factory=dict)
    raw_payload: Any = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def message_id(self) -> Optional[str]:
        value = self.data.get("message_id")
        return str(value) if value else None


class ChallengeResponse(BaseModel):
    is_challenge: bool = False
    response: Optional[Union[str, Dict[str, Any]]] = None


def header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    if not headers:
        return None
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def body_bytes(payload: Any) -> bytes:
    """
    Bytes the signature is computed over: raw bodies as received, decoded
    objects re-serialized compactly.
    """
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signatures_match(expected: str, provided: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), provided.strip().encode("utf-8"))


def to_millis(value: Any) -> Optional[int]:
    """Provider timestamps come as seconds or milliseconds, numbers or strings."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    # Anything below year ~2286 in seconds
    if number < 10_000_000_000:
        number *= 1000
    return int(number)


def first(items: Any) -> Optional[Any]:
    if isinstance(items, list) and items:
        return items[0]
    return None


class WebhookProviderAdapter(ABC):
    """
    Base adapter. Subclasses implement extract(), verify_signature() and
    handle_challenge().
    """

    provider: ProviderType = ProviderType.CUSTOM

    @abstractmethod
    def extract(self, raw_payload: Any) -> Tuple[str, Optional[str], Dict[str, Any]]:
        """
        Returns:
            (event_type, customer_id, data)
        """

    @abstractmethod
    def verify_signature(self, payload: Any, headers: Mapping[str, str], secret: str) -> bool:
        ...

    @abstractmethod
    def handle_challenge(
        self,
        query_or_body: Any,
        headers: Optional[Mapping[str, str]] = None,
        secret: Optional[str] = None,
    ) -> ChallengeResponse:
        ...

    def event_timestamp(self, raw_payload: Any, data: Dict[str, Any]) -> Optional[int]:
        return None

    def normalize_payload(
        self,
        raw_payload: Any,
        headers: Optional[Mapping[str, str]],
        tenant_id: str,
    ) -> NormalizedWebhookEvent:
        try:
            event_type, customer_id, data = self.extract(raw_payload)
        except Exception as e:
            logger.warning(f"Could not normalize {self.provider.value} payload: {e}")
            event_type, customer_id, data = UNKNOWN_EVENT, None, {}

        event_type = str(event_type) if event_type else UNKNOWN_EVENT
        if not isinstance(data, dict):
            data = {}
        event = NormalizedWebhookEvent(
            event_type=event_type,
            customer_id=str(customer_id) if customer_id else "",
            provider=self.provider.value,
            data=data,
            raw_payload=raw_payload,
            metadata=self.build_metadata(event_type, headers, tenant_id),
        )
        try:
            timestamp = self.event_timestamp(raw_payload, event.data)
        except Exception:
            timestamp = None
        if timestamp:
            event.timestamp = timestamp
        return event

    def build_metadata(self, event_type: str, headers: Optional[Mapping[str, str]], tenant_id: str) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {}
        for name in METADATA_HEADERS:
            value = header(headers, name)
            if value:
                metadata[name] = value
        metadata.update({
            "source": self.provider.value,
            "source_type": "webhook",
            "action_type": event_type,
            "tenant_id": tenant_id,
            "received_at": datetime.utcnow().isoformat() + "Z",
        })
        return metadata
