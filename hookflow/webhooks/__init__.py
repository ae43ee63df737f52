"""
Webhook provider adapters.

Each adapter verifies a provider's signature, answers its subscription
challenge and normalizes its payloads into a NormalizedWebhookEvent.
"""

from .base import (
    ChallengeResponse,
    NormalizedWebhookEvent,
    ProviderType,
    WebhookProviderAdapter,
)
from .registry import AdapterRegistry, create_default_registry

__all__ = [
    "AdapterRegistry",
    "ChallengeResponse",
    "NormalizedWebhookEvent",
    "ProviderType",
    "WebhookProviderAdapter",
    "create_default_registry",
]
