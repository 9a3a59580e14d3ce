"""
Pydantic schemas for stored records, webhook payloads and API responses.

This module contains:
- Chat store records (persisted as camelCase JSON)
- WhatsApp Cloud API webhook payload models
- Response models for the HTTP API
"""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and Z suffix."""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Chat Store Records
# =============================================================================

_record_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatMessage(BaseModel):
    """A single conversation turn. Immutable once created."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    role: Literal["user", "assistant"]
    content: str
    timestamp: str
    message_id: str


class ChatChunk(BaseModel):
    """
    Fixed-capacity page of one phone number's history.
    Insertion order of messages is chronological order.
    """
    model_config = _record_config

    phone_number: str
    chunk_index: int = Field(..., ge=0)
    messages: list[ChatMessage] = Field(default_factory=list)
    message_count: int = Field(default=0, ge=0)
    created_at: str


class ChatMetadata(BaseModel):
    """Per-phone-number summary: source of truth for message and chunk counts."""
    model_config = _record_config

    phone_number: str
    total_messages: int = Field(default=0, ge=0)
    total_chunks: int = Field(default=0, ge=0)
    last_message_timestamp: str
    last_updated: str


# =============================================================================
# WhatsApp Webhook Payload
# =============================================================================

class TextContent(BaseModel):
    body: str


class InboundMessage(BaseModel):
    """One entry of entry[].changes[].value.messages[]."""
    model_config = ConfigDict(populate_by_name=True)

    # 'from' is a reserved word in Python, so we use alias
    from_number: str = Field(..., alias="from")
    id: str
    type: str
    timestamp: Optional[str] = None
    text: Optional[TextContent] = None


class ContactProfile(BaseModel):
    name: Optional[str] = None


class Contact(BaseModel):
    wa_id: str
    profile: Optional[ContactProfile] = None


class ChangeValue(BaseModel):
    messaging_product: Optional[str] = None
    metadata: Optional[dict] = None
    contacts: list[Contact] = Field(default_factory=list)
    messages: list[InboundMessage] = Field(default_factory=list)
    statuses: list[dict] = Field(default_factory=list)


class WebhookChange(BaseModel):
    field: str
    value: ChangeValue


class WebhookEntry(BaseModel):
    id: Optional[str] = None
    changes: list[WebhookChange] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    """
    Pydantic model for a WhatsApp Cloud API webhook notification.

    Structural checks (object discriminator, non-empty entry list) are done
    first by WebhookVerificationService; this model types what passed.
    """
    object: str
    entry: list[WebhookEntry] = Field(..., min_length=1)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "object": "whatsapp_business_account",
                    "entry": [
                        {
                            "id": "WABA_ID",
                            "changes": [
                                {
                                    "field": "messages",
                                    "value": {
                                        "messaging_product": "whatsapp",
                                        "messages": [
                                            {
                                                "from": "14155550100",
                                                "id": "wamid.HBgL",
                                                "timestamp": "1736935200",
                                                "type": "text",
                                                "text": {"body": "Hello"},
                                            }
                                        ],
                                    },
                                }
                            ],
                        }
                    ],
                }
            ]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ServiceInfoResponse(BaseModel):
    status: str = "ok"
    message: str = "WhatsApp AI Chatbot is running"
    timestamp: str
    version: str


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")


class ConversationResponse(BaseModel):
    """Recent history of one phone number for the admin API."""
    phone_number: str
    metadata: ChatMetadata
    messages: list[ChatMessage] = Field(default_factory=list)


class DeleteConversationResponse(BaseModel):
    status: str = "deleted"
    phone_number: str


class PruneResponse(BaseModel):
    phone_number: str
    days_to_keep: int = Field(..., ge=0)
    deleted: int = Field(..., ge=0)


class ConversationListResponse(BaseModel):
    phone_numbers: list[str] = Field(default_factory=list)
    total: int = Field(..., ge=0)
