import hmac
import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

import httpx
from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status, Query
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from whatsapp_ai.ai_service import AIService
from whatsapp_ai.bot import ChatBot
from whatsapp_ai.chat_store import ChatStore
from whatsapp_ai.config import settings
from whatsapp_ai.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from whatsapp_ai.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from whatsapp_ai.schemas import (
    ConversationListResponse,
    ConversationResponse,
    DeleteConversationResponse,
    ErrorResponse,
    HealthResponse,
    PruneResponse,
    ServiceInfoResponse,
    WebhookPayload,
    format_timestamp,
    utc_now,
)
from whatsapp_ai.storage import init_db, check_db_health, SQLKeyValueBackend
from whatsapp_ai.utils import normalize_phone_number
from whatsapp_ai.verification import WebhookVerificationService, status_code_for
from whatsapp_ai.whatsapp_client import WhatsAppService


API_VERSION = "v22.0"

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    - Startup: create the key-value table, purge expired entries, build the store and API clients
    - Shutdown: close the shared HTTP client
    """
    init_db()
    backend = SQLKeyValueBackend()
    purged = await backend.purge_expired()
    if purged:
        logger.info(f"Purged {purged} expired key-value entries")

    http_client = httpx.AsyncClient(timeout=settings.WHATSAPP_TIMEOUT_SECONDS)
    app.state.chat_store = ChatStore(backend, ttl_days=settings.CHAT_TTL_DAYS)
    app.state.whatsapp = WhatsAppService.from_settings(settings, http_client)
    app.state.ai = AIService.from_settings(settings)
    app.state.verifier = WebhookVerificationService.from_settings(settings)
    if not settings.authorized_numbers:
        logger.warning("AUTHORIZED_PHONE_NUMBERS is empty, every sender will be rejected")
    yield
    await http_client.aclose()


app = FastAPI(
    title="WhatsApp AI Chatbot",
    description="WhatsApp Cloud API webhook backend with LLM replies and chunked chat history",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Dependencies
# =============================================================================

def get_chat_store(request: Request) -> ChatStore:
    return request.app.state.chat_store


def get_whatsapp_service(request: Request) -> WhatsAppService:
    return request.app.state.whatsapp


def get_ai_service(request: Request) -> AIService:
    return request.app.state.ai


def get_verifier(request: Request) -> WebhookVerificationService:
    return request.app.state.verifier


def get_chat_bot(
    store: ChatStore = Depends(get_chat_store),
    whatsapp: WhatsAppService = Depends(get_whatsapp_service),
    ai: AIService = Depends(get_ai_service),
) -> ChatBot:
    return ChatBot(
        store=store,
        whatsapp=whatsapp,
        ai=ai,
        authorized_numbers=settings.authorized_numbers,
        history_limit=settings.HISTORY_LIMIT,
        dedup_ttl_seconds=settings.DEDUP_TTL_SECONDS,
    )


def require_admin(
    x_admin_token: Annotated[str | None, Header(alias="X-Admin-Token")] = None,
) -> None:
    if not settings.ADMIN_TOKEN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin API disabled")
    if not x_admin_token or not hmac.compare_digest(
        x_admin_token.encode("utf-8"), settings.ADMIN_TOKEN.encode("utf-8")
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid admin token")


def path_phone_number(phone_number: str) -> str:
    """
    Canonical form of the {phone_number} path parameter.
    Returns 400 if it contains no digits.
    """
    try:
        return normalize_phone_number(phone_number)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/", response_model=ServiceInfoResponse)
async def service_info() -> ServiceInfoResponse:
    return ServiceInfoResponse(timestamp=format_timestamp(utc_now()), version=API_VERSION)


@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. WHATSAPP_VERIFY_TOKEN is set (non-empty)
    2. DB is reachable and the kv_entries table exists

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WHATSAPP_VERIFY_TOKEN:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="WHATSAPP_VERIFY_TOKEN not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@app.get("/api/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    request: Request,
    mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
    verifier: WebhookVerificationService = Depends(get_verifier),
) -> PlainTextResponse:
    """
    Webhook subscription handshake.

    Echoes hub.challenge when hub.mode is "subscribe" and hub.verify_token
    matches WHATSAPP_VERIFY_TOKEN.
    """
    result = verifier.validate_verification_request(mode=mode, token=token, challenge=challenge)

    if not result.is_valid:
        record_webhook_outcome("verification_failed")
        log_webhook_data(request, result="verification_failed", error=result.error.value)
        return PlainTextResponse(result.error.value, status_code=status_code_for(result.error))

    record_webhook_outcome("verified")
    log_webhook_data(request, result="verified")
    return PlainTextResponse(result.challenge)


@app.post(
    "/api/webhook",
    response_class=PlainTextResponse,
    responses={
        400: {"description": "Invalid content type or payload structure"},
        401: {"description": "Invalid signature"},
    },
)
async def receive_webhook(
    request: Request,
    x_hub_signature_256: Annotated[str | None, Header(alias="X-Hub-Signature-256")] = None,
    verifier: WebhookVerificationService = Depends(get_verifier),
    bot: ChatBot = Depends(get_chat_bot),
) -> PlainTextResponse:
    """
    Receive WhatsApp notifications.

    The signature is checked over the raw body bytes, before any parsing
    result is trusted. Once the payload is accepted the response is 200 even
    if individual messages fail, so the platform does not redeliver.
    """
    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes")

    try:
        body = json.loads(raw_body)
    except ValueError as e:
        logger.warning(f"Webhook body is not valid JSON: {e}")
        body = None

    validation = await verifier.validate_message_payload(
        content_type=request.headers.get("content-type"),
        raw_body=raw_body,
        signature=x_hub_signature_256,
        body=body,
    )
    if not validation.is_valid:
        record_webhook_outcome("rejected")
        log_webhook_data(request, result="rejected", error=validation.error.value)
        return PlainTextResponse(validation.error.value, status_code=status_code_for(validation.error))

    try:
        payload = WebhookPayload.model_validate(body)
    except ValidationError as e:
        logger.warning(f"Webhook payload failed schema validation: {e}")
        record_webhook_outcome("rejected")
        log_webhook_data(request, result="rejected", error="Invalid payload")
        return PlainTextResponse("Invalid payload", status_code=status.HTTP_400_BAD_REQUEST)

    outcomes = await bot.handle_webhook(payload)

    record_webhook_outcome("accepted")
    log_webhook_data(
        request,
        result="accepted",
        messages=len(outcomes),
        outcomes=[outcome.value for outcome in outcomes],
    )
    return PlainTextResponse("OK")


# =============================================================================
# Admin Routes
# =============================================================================

@app.get(
    "/admin/conversations",
    response_model=ConversationListResponse,
    dependencies=[Depends(require_admin)],
)
async def list_conversations(store: ChatStore = Depends(get_chat_store)) -> ConversationListResponse:
    phone_numbers = await store.list_phone_numbers()
    return ConversationListResponse(phone_numbers=phone_numbers, total=len(phone_numbers))


@app.get(
    "/admin/conversations/{phone_number}",
    response_model=ConversationResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    dependencies=[Depends(require_admin)],
)
async def get_conversation(
    phone: str = Depends(path_phone_number),
    limit: Annotated[int, Query(ge=1, le=200, description="Number of most recent messages")] = 50,
    store: ChatStore = Depends(get_chat_store),
) -> ConversationResponse:
    metadata = await store.get_metadata(phone)
    if metadata is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no chat history")

    messages = await store.get_messages_for_ai(phone, limit)
    logger.info(f"Admin read {len(messages)} of {metadata.total_messages} messages for {phone}")
    return ConversationResponse(phone_number=phone, metadata=metadata, messages=messages)


@app.delete(
    "/admin/conversations/{phone_number}",
    response_model=DeleteConversationResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    dependencies=[Depends(require_admin)],
)
async def delete_conversation(
    phone: str = Depends(path_phone_number),
    store: ChatStore = Depends(get_chat_store),
) -> DeleteConversationResponse:
    if not await store.delete_all_messages(phone):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to delete chat history",
        )
    return DeleteConversationResponse(phone_number=phone)


@app.post(
    "/admin/conversations/{phone_number}/prune",
    response_model=PruneResponse,
    responses={400: {"model": ErrorResponse}},
    dependencies=[Depends(require_admin)],
)
async def prune_conversation(
    phone: str = Depends(path_phone_number),
    days_to_keep: Annotated[int, Query(ge=0, description="Keep messages newer than this many days")] = 30,
    store: ChatStore = Depends(get_chat_store),
) -> PruneResponse:
    deleted = await store.delete_old_messages(phone, days_to_keep)
    return PruneResponse(phone_number=phone, days_to_keep=days_to_keep, deleted=deleted)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
