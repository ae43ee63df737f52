"""
Outbound conversational replies.

MessageSender delivers a text reply to the customer on the channel the
conversation came from:
- whatsapp: WhatsApp Cloud API (POST /{phone_number_id}/messages)
- facebook / instagram: Messenger Send API (POST /me/messages)
"""

import logging
from typing import Any, Dict, Optional

import httpx

from .circuit_breaker import CircuitBreakerRegistry
from .exceptions import ExecutorUnavailableError, NodeExecutionError

logger = logging.getLogger(__name__)


class MessageSender:
    """
    Example:
        sender = MessageSender(settings, breakers)
        message_id = await sender.send("34600000000", "Hi!", channel="whatsapp")
    """

    def __init__(
        self,
        settings,
        breakers: Optional[CircuitBreakerRegistry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.settings = settings
        self.breakers = breakers or CircuitBreakerRegistry()
        self.transport = transport
        self.timeout = timeout

    async def send(self, recipient_id: str, message: str, channel: str = "whatsapp") -> Optional[str]:
        """
        Send a text reply.

        Returns:
            Provider message id, or None for channels without a delivery API

        Raises:
            NodeExecutionError: Missing recipient/message/credentials (not retried)
                or provider error (retried)
            ExecutorUnavailableError: Channel circuit breaker is open
        """
        if not recipient_id:
            raise NodeExecutionError("Missing required field: recipient_id", retry_allowed=False)
        if not message:
            raise NodeExecutionError("Missing required field: message", retry_allowed=False)

        channel = (channel or "whatsapp").lower()
        if channel == "whatsapp":
            return await self._send_whatsapp(recipient_id, message)
        if channel in ("facebook", "instagram", "messenger"):
            return await self._send_messenger(recipient_id, message, channel)

        logger.warning(f"No delivery API for channel '{channel}', reply to {recipient_id} dropped")
        return None

    async def _send_whatsapp(self, recipient_id: str, message: str) -> Optional[str]:
        token = self.settings.whatsapp_api_token
        phone_number_id = self.settings.whatsapp_phone_number_id
        if not token or not phone_number_id:
            raise NodeExecutionError(
                "WHATSAPP_API_TOKEN and WHATSAPP_PHONE_NUMBER_ID must be set to send WhatsApp replies",
                retry_allowed=False,
            )

        data = await self._post(
            "whatsapp",
            f"{self.settings.graph_api_url}/{phone_number_id}/messages",
            json={
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": recipient_id,
                "type": "text",
                "text": {"body": message},
            },
            headers={"Authorization": f"Bearer {token}"},
        )
        messages = data.get("messages") or [{}]
        message_id = messages[0].get("id")
        logger.info(f"WhatsApp message sent to {recipient_id}, message_id: {message_id}")
        return message_id

    async def _send_messenger(self, recipient_id: str, message: str, channel: str) -> Optional[str]:
        token = self.settings.messenger_page_token
        if not token:
            raise NodeExecutionError(
                "MESSENGER_PAGE_TOKEN must be set to send Messenger/Instagram replies",
                retry_allowed=False,
            )

        data = await self._post(
            channel,
            f"{self.settings.graph_api_url}/me/messages",
            json={
                "recipient": {"id": recipient_id},
                "messaging_type": "RESPONSE",
                "message": {"text": message},
            },
            params={"access_token": token},
        )
        message_id = data.get("message_id")
        logger.info(f"{channel} message sent to {recipient_id}, message_id: {message_id}")
        return message_id

    async def _post(self, service: str, url: str, **kwargs) -> Dict[str, Any]:
        breaker = self.breakers.get(f"send:{service}")
        if breaker.is_open():
            raise ExecutorUnavailableError(f"{service} delivery circuit breaker is OPEN", service=service)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, **kwargs)
        except httpx.HTTPError as e:
            breaker.record_failure()
            raise NodeExecutionError(f"{service} delivery failed: {e}")

        if response.status_code >= 500:
            breaker.record_failure()
            raise NodeExecutionError(f"{service} delivery failed with HTTP {response.status_code}")
        breaker.record_success()

        if response.status_code >= 400:
            # Bad recipient or expired token, retrying will not help
            raise NodeExecutionError(
                f"{service} rejected the message (HTTP {response.status_code}): {response.text[:200]}",
                retry_allowed=False,
            )
        try:
            return response.json()
        except ValueError:
            return {}
