"""
Prometheus metrics for the chatbot API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook outcome counter (result)
- Per-message processing outcome counter (outcome)
- Stored chat message counter (role)
- Outbound WhatsApp API request counter (operation, status)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: verified, verification_failed, accepted, rejected
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

# outcome: replied, failed, unauthorized, duplicate, unsupported_type, invalid_sender
chat_messages_processed_total = Counter(
    "chat_messages_processed_total",
    "Inbound WhatsApp messages by processing outcome",
    labelnames=["outcome"]
)

chat_messages_stored_total = Counter(
    "chat_messages_stored_total",
    "Messages appended to the conversation store",
    labelnames=["role"]
)

whatsapp_api_requests_total = Counter(
    "whatsapp_api_requests_total",
    "Outbound WhatsApp Graph API requests",
    labelnames=["operation", "status"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Admin paths embed phone numbers; collapse them to keep label cardinality low
    normalized_path = path.split("?")[0]
    if normalized_path.startswith("/admin/conversations/"):
        normalized_path = "/admin/conversations/{phone_number}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    """
    Record a webhook request outcome.

    Args:
        result: Processing result - one of:
            - "verified": GET handshake succeeded, challenge echoed
            - "verification_failed": GET handshake rejected
            - "accepted": POST payload passed verification and was processed
            - "rejected": POST payload failed signature or structure checks
    """
    webhook_requests_total.labels(result=result).inc()


def record_message_outcome(outcome: str) -> None:
    """
    Record how one inbound WhatsApp message was handled.

    Args:
        outcome: One of replied, failed, unauthorized, duplicate,
            unsupported_type, invalid_sender
    """
    chat_messages_processed_total.labels(outcome=outcome).inc()


def record_message_stored(role: str) -> None:
    """
    Record a message appended to the conversation store.

    Args:
        role: "user" for inbound text, "assistant" for the AI reply
    """
    chat_messages_stored_total.labels(role=role).inc()


def record_whatsapp_request(operation: str, status: str) -> None:
    """
    Record an outbound Graph API call.

    Args:
        operation: send_message, mark_read or typing_indicator
        status: HTTP status code as a string, or "transport_error"
    """
    whatsapp_api_requests_total.labels(operation=operation, status=status).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
