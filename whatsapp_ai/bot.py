"""
Inbound message handling: authorization, dedupe, history, AI reply, send.
"""

import logging
from enum import Enum
from typing import Iterable

from whatsapp_ai.ai_service import AIService, APOLOGY_MESSAGE
from whatsapp_ai.chat_store import ChatStore
from whatsapp_ai.errors import SendError
from whatsapp_ai.metrics import record_message_outcome, record_message_stored
from whatsapp_ai.schemas import InboundMessage, WebhookPayload
from whatsapp_ai.utils import is_authorized_phone_number, normalize_phone_number
from whatsapp_ai.whatsapp_client import WhatsAppService

logger = logging.getLogger(__name__)

UNAUTHORIZED_MESSAGE = (
    "Sorry, but this WhatsApp number is not authorized to use this AI chatbot. "
    "Please contact the administrator for access."
)

INBOUND_PREFIX = "inbound:"


class MessageOutcome(str, Enum):
    REPLIED = "replied"
    FAILED = "failed"
    UNAUTHORIZED = "unauthorized"
    DUPLICATE = "duplicate"
    UNSUPPORTED_TYPE = "unsupported_type"
    INVALID_SENDER = "invalid_sender"


class ChatBot:
    def __init__(
        self,
        store: ChatStore,
        whatsapp: WhatsAppService,
        ai: AIService,
        authorized_numbers: Iterable[str],
        history_limit: int = 20,
        dedup_ttl_seconds: int = 86400,
    ):
        self.store = store
        self.whatsapp = whatsapp
        self.ai = ai
        self.authorized_numbers = frozenset(normalize_phone_number(n) for n in authorized_numbers)
        self.history_limit = history_limit
        self.dedup_ttl_seconds = dedup_ttl_seconds

    async def handle_webhook(self, payload: WebhookPayload) -> list[MessageOutcome]:
        """Process every message of every 'messages' change, in payload order."""
        outcomes = []
        for entry in payload.entry:
            for change in entry.changes:
                if change.field != "messages":
                    logger.debug(f"Ignoring webhook change field {change.field!r}")
                    continue
                for message in change.value.messages:
                    outcome = await self.handle_message(message)
                    record_message_outcome(outcome.value)
                    outcomes.append(outcome)
        return outcomes

    async def handle_message(self, message: InboundMessage) -> MessageOutcome:
        if message.type != "text" or message.text is None:
            logger.info(f"Rejected message of type {message.type}")
            return MessageOutcome.UNSUPPORTED_TYPE

        try:
            sender = normalize_phone_number(message.from_number)
        except ValueError:
            logger.warning(f"Rejected message {message.id} with unusable sender {message.from_number!r}")
            return MessageOutcome.INVALID_SENDER

        if not is_authorized_phone_number(sender, self.authorized_numbers):
            logger.warning(f"Rejected message from unauthorized number: {sender}")
            await self.send_unauthorized_notice(sender, message.id)
            return MessageOutcome.UNAUTHORIZED

        try:
            if not await self._claim_message_id(message.id):
                logger.info(f"Duplicate delivery of {message.id} from {sender}, skipping")
                return MessageOutcome.DUPLICATE
            await self.process_message(sender, message.text.body, message.id)
        except Exception as e:
            logger.exception(f"Error processing message {message.id} from {sender}: {e}")
            await self.whatsapp.send_message(sender, APOLOGY_MESSAGE)
            return MessageOutcome.FAILED

        return MessageOutcome.REPLIED

    async def _claim_message_id(self, message_id: str) -> bool:
        """
        Record an upstream message id as seen.

        Returns False if it was already recorded, since store_message is
        not idempotent and the platform redelivers webhooks. The claim is a
        single insert-if-absent, so overlapping deliveries of the same id
        get exactly one True.
        """
        key = f"{INBOUND_PREFIX}{message_id}"
        return await self.store.backend.add(key, "1", expire_after_seconds=self.dedup_ttl_seconds)

    async def process_message(self, sender: str, text: str, message_id: str) -> None:
        """
        Store, reply, store the reply, send it.

        Raises:
            StorageError: if the conversation store cannot be written
            SendError: if the reply could not be delivered
        """
        await self.store.store_message(sender, text, is_from_user=True)
        record_message_stored("user")

        await self.whatsapp.mark_message_as_read(message_id)
        await self.whatsapp.send_typing_indicator(sender, True)

        history = await self.store.get_conversation_history_for_ai(sender, self.history_limit)
        reply = await self.ai.generate_response(text, history)

        await self.store.store_message(sender, reply, is_from_user=False)
        record_message_stored("assistant")

        result = await self.whatsapp.send_message(sender, reply)
        await self.whatsapp.send_typing_indicator(sender, False)
        if result is None:
            raise SendError(f"reply to {sender} was not delivered")

        logger.info(f"Processed message from {sender}: {text[:50]}")

    async def send_unauthorized_notice(self, sender: str, message_id: str) -> None:
        await self.whatsapp.mark_message_as_read(message_id)
        if await self.whatsapp.send_message(sender, UNAUTHORIZED_MESSAGE):
            logger.info(f"Sent unauthorized message to {sender}")
