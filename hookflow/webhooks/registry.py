"""
Adapter registry: provider id -> adapter instance.
"""

import logging
from typing import Dict, List, Optional

from ..core.exceptions import UnknownProviderError
from .base import ProviderType, WebhookProviderAdapter
from .custom import CustomWebhookAdapter
from .meta import FacebookWebhookAdapter, InstagramWebhookAdapter, WhatsAppWebhookAdapter
from .slack import SlackWebhookAdapter
from .twitter import TwitterWebhookAdapter

logger = logging.getLogger(__name__)


class AdapterRegistry:

    def __init__(self):
        self._adapters: Dict[str, WebhookProviderAdapter] = {}

    def register(self, provider: str, adapter: WebhookProviderAdapter) -> None:
        key = str(provider.value if isinstance(provider, ProviderType) else provider).lower()
        self._adapters[key] = adapter
        logger.debug(f"Registered webhook adapter for {key}")

    def get(self, provider: str) -> Optional[WebhookProviderAdapter]:
        return self._adapters.get(str(provider).strip().lower())

    def require(self, provider: str) -> WebhookProviderAdapter:
        """
        Raises:
            UnknownProviderError: If no adapter is registered for the provider
        """
        adapter = self.get(provider)
        if adapter is None:
            raise UnknownProviderError(provider)
        return adapter

    def providers(self) -> List[str]:
        return sorted(self._adapters)


def create_default_registry(settings=None) -> AdapterRegistry:
    """Registry with every built-in adapter; Meta verify tokens come from settings."""
    def token(provider: str) -> Optional[str]:
        return settings.verify_token(provider) if settings is not None else None

    registry = AdapterRegistry()
    registry.register(ProviderType.FACEBOOK, FacebookWebhookAdapter(verify_token=token("facebook")))
    registry.register(ProviderType.INSTAGRAM, InstagramWebhookAdapter(verify_token=token("instagram")))
    registry.register(ProviderType.WHATSAPP, WhatsAppWebhookAdapter(verify_token=token("whatsapp")))
    registry.register(ProviderType.SLACK, SlackWebhookAdapter())
    registry.register(ProviderType.TWITTER, TwitterWebhookAdapter())
    registry.register(ProviderType.CUSTOM, CustomWebhookAdapter())
    return registry
