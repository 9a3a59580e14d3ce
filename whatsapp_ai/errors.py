"""
Exception hierarchy for the chatbot backend.

Webhook verification failures are not exceptions: they are returned as
result values and mapped to HTTP status codes by the router.
"""


class ChatbotError(Exception):
    """Base class for application errors."""


class StorageError(ChatbotError):
    """Key-value backend read or write failed."""

    def __init__(self, message: str, key: str = None):
        super().__init__(message)
        self.key = key


class SendError(ChatbotError):
    """WhatsApp Graph API request failed."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code
