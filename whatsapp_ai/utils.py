"""
Utility functions for webhook signatures and phone numbers.
"""

import hmac
import hashlib
import logging
import re
from typing import Iterable

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="

_NON_DIGITS = re.compile(r"\D")


def compute_hmac_signature(body: bytes, secret: str) -> str:
    """Hex-encoded HMAC-SHA256 of the raw body keyed by the app secret."""
    return hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify a Meta X-Hub-Signature-256 value.

    Args:
        body: Raw request body bytes, exactly as received
        signature: Header value, with or without the "sha256=" prefix
        secret: Meta app secret

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying HMAC signature over {len(body)} bytes")

    provided = signature.removeprefix(SIGNATURE_PREFIX)
    expected = compute_hmac_signature(body, secret)

    # Constant-time comparison; bytes so non-ASCII header values compare as unequal
    is_valid = hmac.compare_digest(
        expected.encode("utf-8"),
        provided.encode("utf-8")
    )
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def normalize_phone_number(phone_number: str) -> str:
    """
    Canonical +<countrycode><number> form.

    Keeps only the digits (any '+', including misplaced ones, is dropped)
    and prefixes a single '+'.

    Raises:
        ValueError: if the input contains no digits
    """
    digits = _NON_DIGITS.sub("", phone_number)
    if not digits:
        raise ValueError(f"Not a phone number: {phone_number!r}")
    return f"+{digits}"


def to_whatsapp_recipient(phone_number: str) -> str:
    """Graph API expects recipients without the leading '+'."""
    return normalize_phone_number(phone_number)[1:]


def is_authorized_phone_number(phone_number: str, authorized: Iterable[str]) -> bool:
    """Check a sender against the allow-list, both sides normalized."""
    normalized = normalize_phone_number(phone_number)
    return normalized in {normalize_phone_number(number) for number in authorized}
