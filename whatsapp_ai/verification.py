"""
Webhook verification for the WhatsApp Cloud API.

Implements Meta's webhook contract:
- GET handshake: hub.mode / hub.verify_token / hub.challenge
- POST payloads: content type, X-Hub-Signature-256 over the raw body,
  and the notification envelope structure
"""

import logging
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

from whatsapp_ai.config import Settings
from whatsapp_ai.utils import verify_hmac_signature

logger = logging.getLogger(__name__)

WHATSAPP_OBJECT = "whatsapp_business_account"


class VerificationError(str, Enum):
    MISSING_PARAMETERS = "Missing required parameters"
    INVALID_MODE = "Invalid mode"
    TOKEN_MISMATCH = "Token mismatch"
    INVALID_CONTENT_TYPE = "Invalid content type"
    INVALID_SIGNATURE = "Invalid signature"
    INVALID_BODY = "Invalid body"
    NOT_WHATSAPP_MESSAGE = "Not a WhatsApp message"
    INVALID_ENTRY_STRUCTURE = "Invalid entry structure"


# HTTP status for each failure, used by the router
ERROR_STATUS_CODES = {
    VerificationError.MISSING_PARAMETERS: 400,
    VerificationError.INVALID_MODE: 403,
    VerificationError.TOKEN_MISMATCH: 403,
    VerificationError.INVALID_CONTENT_TYPE: 400,
    VerificationError.INVALID_SIGNATURE: 401,
    VerificationError.INVALID_BODY: 400,
    VerificationError.NOT_WHATSAPP_MESSAGE: 400,
    VerificationError.INVALID_ENTRY_STRUCTURE: 400,
}


class VerificationResult(BaseModel):
    is_valid: bool
    error: Optional[VerificationError] = None
    challenge: Optional[str] = None


class PayloadValidation(BaseModel):
    is_valid: bool
    error: Optional[VerificationError] = None


def status_code_for(error: Optional[VerificationError]) -> int:
    return ERROR_STATUS_CODES.get(error, 400)


class WebhookVerificationService:
    """Gatekeeper run before any webhook business logic."""

    def __init__(self, verify_token: str, app_secret: str, require_signature: bool = False):
        self.verify_token = verify_token
        self.app_secret = app_secret
        self.require_signature = require_signature

    @classmethod
    def from_settings(cls, settings: Settings) -> "WebhookVerificationService":
        return cls(
            verify_token=settings.WHATSAPP_VERIFY_TOKEN,
            app_secret=settings.META_APP_SECRET,
            require_signature=settings.WEBHOOK_REQUIRE_SIGNATURE,
        )

    def validate_verification_request(
        self,
        mode: Optional[str],
        token: Optional[str],
        challenge: Optional[str],
        verify_token: Optional[str] = None,
    ) -> VerificationResult:
        """
        Validate the GET handshake.

        verify_token defaults to the configured one. On success the caller
        echoes the challenge back verbatim.
        """
        if verify_token is None:
            verify_token = self.verify_token

        logger.info(
            "Webhook verification attempt",
            extra={
                "mode": mode,
                "token": "[REDACTED]" if token else None,
                "challenge_present": bool(challenge),
                "has_verify_token": bool(verify_token),
            },
        )

        if not verify_token or not mode or not token or not challenge:
            logger.warning("Webhook verification failed: missing required parameters")
            return VerificationResult(is_valid=False, error=VerificationError.MISSING_PARAMETERS)

        if mode != "subscribe":
            logger.warning(f"Webhook verification failed: invalid mode {mode!r}")
            return VerificationResult(is_valid=False, error=VerificationError.INVALID_MODE)

        if token != verify_token:
            logger.warning("Webhook verification failed: token mismatch")
            return VerificationResult(is_valid=False, error=VerificationError.TOKEN_MISMATCH)

        logger.info("Webhook verified successfully")
        return VerificationResult(is_valid=True, challenge=challenge)

    async def validate_message_payload(
        self,
        content_type: Optional[str],
        raw_body: bytes,
        signature: Optional[str],
        body: Any,
    ) -> PayloadValidation:
        """
        Validate a POST notification.

        raw_body must be the bytes exactly as received; body is the parsed
        JSON (or None when parsing failed).
        """
        if not content_type or "application/json" not in content_type:
            logger.warning(f"Webhook POST failed: invalid content type {content_type!r}")
            return PayloadValidation(is_valid=False, error=VerificationError.INVALID_CONTENT_TYPE)

        if self.app_secret:
            if signature:
                if not verify_hmac_signature(raw_body, signature, self.app_secret):
                    logger.warning("Webhook POST failed: invalid signature")
                    return PayloadValidation(is_valid=False, error=VerificationError.INVALID_SIGNATURE)
            elif self.require_signature:
                logger.warning("Webhook POST failed: missing signature")
                return PayloadValidation(is_valid=False, error=VerificationError.INVALID_SIGNATURE)

        structure = self.validate_message_structure(body)
        if not structure.is_valid:
            logger.warning(f"Webhook POST failed: {structure.error.value}")
            return structure

        logger.debug("Webhook POST payload validated")
        return PayloadValidation(is_valid=True)

    @staticmethod
    def validate_message_structure(body: Any) -> PayloadValidation:
        if not isinstance(body, dict):
            return PayloadValidation(is_valid=False, error=VerificationError.INVALID_BODY)

        if body.get("object") != WHATSAPP_OBJECT:
            return PayloadValidation(is_valid=False, error=VerificationError.NOT_WHATSAPP_MESSAGE)

        entry = body.get("entry")
        if not isinstance(entry, list) or not entry:
            return PayloadValidation(is_valid=False, error=VerificationError.INVALID_ENTRY_STRUCTURE)

        return PayloadValidation(is_valid=True)
