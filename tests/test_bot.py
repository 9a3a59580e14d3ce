"""
Tests for ChatBot message handling outside the HTTP layer.

Tests cover:
- At-most-once processing of overlapping deliveries of one message id
- Senders that do not normalize to a phone number
"""

import asyncio

import pytest

from whatsapp_ai.bot import ChatBot, MessageOutcome
from whatsapp_ai.chat_store import ChatStore
from whatsapp_ai.schemas import InboundMessage
from tests.utils import AUTHORIZED_NUMBER, YieldingBackend, text_message


@pytest.fixture
def store():
    return ChatStore(YieldingBackend())


@pytest.fixture
def bot(store, fake_whatsapp, fake_ai):
    return ChatBot(
        store=store,
        whatsapp=fake_whatsapp,
        ai=fake_ai,
        authorized_numbers=[AUTHORIZED_NUMBER],
    )


class TestDuplicateDelivery:

    @pytest.mark.asyncio
    async def test_overlapping_deliveries_are_processed_once(self, bot, store, fake_whatsapp, fake_ai):
        message = InboundMessage.model_validate(text_message("hi", message_id="wamid.X"))

        outcomes = await asyncio.gather(bot.handle_message(message), bot.handle_message(message))

        assert sorted(outcomes) == sorted([MessageOutcome.REPLIED, MessageOutcome.DUPLICATE])
        assert await store.get_message_count(AUTHORIZED_NUMBER) == 2
        assert fake_whatsapp.sent == [(AUTHORIZED_NUMBER, "echo: hi")]
        assert len(fake_ai.calls) == 1

    @pytest.mark.asyncio
    async def test_many_overlapping_deliveries(self, bot, store, fake_whatsapp):
        message = InboundMessage.model_validate(text_message("hi", message_id="wamid.Y"))

        outcomes = await asyncio.gather(*(bot.handle_message(message) for _ in range(5)))

        assert outcomes.count(MessageOutcome.REPLIED) == 1
        assert outcomes.count(MessageOutcome.DUPLICATE) == 4
        assert await store.get_message_count(AUTHORIZED_NUMBER) == 2
        assert len(fake_whatsapp.sent) == 1

    @pytest.mark.asyncio
    async def test_distinct_ids_are_both_processed(self, bot, store):
        first = InboundMessage.model_validate(text_message("one", message_id="wamid.1"))
        second = InboundMessage.model_validate(text_message("two", message_id="wamid.2"))

        outcomes = await asyncio.gather(bot.handle_message(first), bot.handle_message(second))

        assert outcomes == [MessageOutcome.REPLIED, MessageOutcome.REPLIED]
        assert await store.get_message_count(AUTHORIZED_NUMBER) == 4


class TestInvalidSender:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sender", ["", "+", "not-a-number"])
    async def test_sender_without_digits_is_rejected(self, bot, store, fake_whatsapp, sender):
        message = InboundMessage.model_validate(text_message("hi", sender=sender, message_id="wamid.Z"))

        outcome = await bot.handle_message(message)

        assert outcome == MessageOutcome.INVALID_SENDER
        assert fake_whatsapp.sent == []
        assert fake_whatsapp.read == []
        assert await store.list_phone_numbers() == []
