"""
WhatsApp Business (Graph API) client.

Public methods never raise: failures are logged, counted, and reported as
None / False so the webhook handler can fall back to an apology message.
"""

import logging
from typing import Any, Optional

import httpx
from pydantic import BaseModel

from whatsapp_ai.config import Settings
from whatsapp_ai.errors import SendError
from whatsapp_ai.metrics import record_whatsapp_request
from whatsapp_ai.utils import to_whatsapp_recipient

logger = logging.getLogger(__name__)


class SendResult(BaseModel):
    message_id: str


class WhatsAppService:
    def __init__(
        self,
        token: str,
        phone_number_id: str,
        client: httpx.AsyncClient,
        api_version: str = "v22.0",
        base_url: str = "https://graph.facebook.com",
    ):
        self.token = token
        self.phone_number_id = phone_number_id
        self.client = client
        self.messages_url = f"{base_url.rstrip('/')}/{api_version}/{phone_number_id}/messages"

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient) -> "WhatsAppService":
        return cls(
            token=settings.WHATSAPP_TOKEN,
            phone_number_id=settings.WHATSAPP_PHONE_NUMBER_ID,
            client=client,
            api_version=settings.WHATSAPP_API_VERSION,
            base_url=settings.WHATSAPP_API_BASE_URL,
        )

    @property
    def configured(self) -> bool:
        return bool(self.token and self.phone_number_id)

    async def _post(self, operation: str, payload: dict) -> dict[str, Any]:
        """
        POST to the messages endpoint.

        Raises:
            SendError: on transport errors or non-2xx responses
        """
        try:
            response = await self.client.post(
                self.messages_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.token}"},
            )
        except httpx.HTTPError as e:
            record_whatsapp_request(operation, "transport_error")
            raise SendError(f"{operation} failed: {e}") from e

        record_whatsapp_request(operation, str(response.status_code))
        if response.is_error:
            raise SendError(
                f"{operation} failed: WhatsApp API error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError:
            return {}

    async def send_message(self, to: str, text: str) -> Optional[SendResult]:
        """Send a text message. Returns the WhatsApp message id, or None on failure."""
        if not self.configured:
            logger.error("WhatsApp credentials not configured")
            return None

        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to_whatsapp_recipient(to),
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
        try:
            result = await self._post("send_message", payload)
        except SendError as e:
            logger.error(f"Error sending WhatsApp message: {e}")
            return None

        messages = result.get("messages") or []
        if not messages or "id" not in messages[0]:
            logger.error(f"WhatsApp API response without message id: {result}")
            return None

        logger.info(f"Message sent to {to_whatsapp_recipient(to)}: {messages[0]['id']}")
        return SendResult(message_id=messages[0]["id"])

    async def mark_message_as_read(self, message_id: str) -> bool:
        if not self.configured:
            return False

        payload = {
            "messaging_product": "whatsapp",
            "status": "read",
            "message_id": message_id,
        }
        try:
            await self._post("mark_read", payload)
        except SendError as e:
            logger.warning(f"Error marking message as read: {e}")
            return False
        return True

    async def send_typing_indicator(self, to: str, is_typing: bool = True) -> bool:
        if not self.configured:
            return False

        recipient = to_whatsapp_recipient(to)
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": recipient,
            "type": "reaction",
            "reaction": {
                "messaging_product": "whatsapp",
                "recipient_id": recipient,
                "type": "typing" if is_typing else "read",
            },
        }
        try:
            await self._post("typing_indicator", payload)
        except SendError as e:
            logger.debug(f"Error sending typing indicator: {e}")
            return False
        return True
