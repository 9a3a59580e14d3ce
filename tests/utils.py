"""
Shared helpers for building signed WhatsApp webhook requests, plus fakes
for the outbound collaborators.
"""

import asyncio
import hashlib
import hmac
import json

from whatsapp_ai.storage import MemoryKeyValueBackend
from whatsapp_ai.whatsapp_client import SendResult

TEST_VERIFY_TOKEN = "test-verify-token"
TEST_APP_SECRET = "test-app-secret"
TEST_ADMIN_TOKEN = "test-admin-token"
AUTHORIZED_NUMBER = "+14155550100"
UNAUTHORIZED_NUMBER = "+919876543210"


def compute_signature(body: str, secret: str = TEST_APP_SECRET) -> str:
    """X-Hub-Signature-256 header value for a request body."""
    digest = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def make_webhook_body(messages: list, field: str = "messages") -> str:
    """WhatsApp notification JSON with the given messages in one change."""
    return json.dumps({
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA_ID",
                "changes": [
                    {
                        "field": field,
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {
                                "display_phone_number": "15550001111",
                                "phone_number_id": "123456789",
                            },
                            "messages": messages,
                        },
                    }
                ],
            }
        ],
    })


def text_message(body: str, sender: str = AUTHORIZED_NUMBER.lstrip("+"), message_id: str = "wamid.1") -> dict:
    return {
        "from": sender,
        "id": message_id,
        "timestamp": "1736935200",
        "type": "text",
        "text": {"body": body},
    }


def post_webhook(client, body: str, signature: str = None, content_type: str = "application/json"):
    headers = {"Content-Type": content_type}
    headers["X-Hub-Signature-256"] = compute_signature(body) if signature is None else signature
    return client.post("/api/webhook", content=body, headers=headers)


class FakeWhatsApp:
    """Records outbound calls instead of hitting the Graph API."""

    def __init__(self):
        self.sent = []
        self.read = []
        self.typing = []
        self.fail_send = False

    async def send_message(self, to, text):
        self.sent.append((to, text))
        if self.fail_send:
            return None
        return SendResult(message_id=f"wamid.out.{len(self.sent)}")

    async def mark_message_as_read(self, message_id):
        self.read.append(message_id)
        return True

    async def send_typing_indicator(self, to, is_typing=True):
        self.typing.append((to, is_typing))
        return True


class FakeAI:
    """Echoes the user message and records the history it was given."""

    def __init__(self):
        self.calls = []

    async def generate_response(self, user_message, conversation_history=""):
        self.calls.append((user_message, conversation_history))
        return f"echo: {user_message}"


class YieldingBackend(MemoryKeyValueBackend):
    """Suspends on every call so concurrent coroutines interleave."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def put(self, key, value, expire_after_seconds=None, expire_at=None):
        await asyncio.sleep(0)
        await super().put(key, value, expire_after_seconds, expire_at)

    async def add(self, key, value, expire_after_seconds=None, expire_at=None):
        await asyncio.sleep(0)
        return await super().add(key, value, expire_after_seconds, expire_at)
