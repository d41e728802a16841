import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Annotated, Optional, Union

import httpx
from fastapi import FastAPI, Response, Request, Depends, HTTPException, status, Query

from relaydesk.clock import ConversationClock
from relaydesk.config import Settings, settings
from relaydesk.dispatcher import (
    BulkDispatcher,
    DispatchInProgress,
    DispatchSession,
    NoDispatchRunning,
    not_sent,
)
from relaydesk.grouping import group_conversations
from relaydesk.identity import IdentityValidator
from relaydesk.logging_utils import setup_logging, RequestLoggingMiddleware, log_delivery_data
from relaydesk.metrics import get_metrics, get_metrics_content_type
from relaydesk.relay import DeliveryClient, VerificationReconciler
from relaydesk.schemas import (
    ClearResponse,
    ConversationSummary,
    DispatchPreview,
    DispatchProgress,
    DispatchReport,
    ErrorResponse,
    HealthResponse,
    IdentityRequest,
    IdentityResult,
    ImportResponse,
    MessageCreate,
    MessageImport,
    MessageRecord,
    MessagesListResponse,
    MessageStatus,
    MessageUpdate,
    VerifyResponse,
)
from relaydesk.storage import (
    MessageAlreadySent,
    MessageLocked,
    MessageNotFound,
    MessageStore,
    check_db_health,
    init_db,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


# =============================================================================
# Service Wiring
# =============================================================================

@dataclass
class Services:
    """Everything the routes need, built once per application."""
    store: MessageStore
    identity: IdentityValidator
    session: DispatchSession
    http_client: httpx.AsyncClient


def build_services(config: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> Services:
    """
    Wire store, external clients and dispatcher from settings.

    Args:
        config: Settings to build from
        transport: Optional httpx transport (tests pass a MockTransport)
    """
    http_client = httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS, transport=transport)
    store = MessageStore(default_timezone=config.DEFAULT_TIMEZONE)
    delivery = DeliveryClient(
        http_client,
        relay_url=config.RELAY_API_URL,
        chat_id=config.RELAY_CHAT_ID,
        chat_type=config.RELAY_CHAT_TYPE,
        order_error_pattern=config.ORDER_ERROR_PATTERN,
    )
    dispatcher = BulkDispatcher(
        store,
        delivery,
        ConversationClock(http_client, config.DIRECTORY_API_BASE, fail_open=config.CLOCK_FAIL_OPEN),
        VerificationReconciler(http_client, config.RELAY_API_URL),
        ordering_precheck=config.ORDERING_PRECHECK,
        verify_after_send=config.VERIFY_AFTER_SEND,
        send_delay=config.SEND_DELAY_SECONDS,
    )
    return Services(
        store=store,
        identity=IdentityValidator(http_client, config.DIRECTORY_API_BASE),
        session=DispatchSession(dispatcher),
        http_client=http_client,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database, recover interrupted sends, build clients
    - Shutdown: Close the shared HTTP client
    """
    init_db()
    MessageStore().recover_interrupted()
    services = build_services(settings)
    app.state.services = services
    logger.info(
        "Relay desk started",
        extra={
            "ordering_precheck": settings.ORDERING_PRECHECK,
            "verify_after_send": settings.VERIFY_AFTER_SEND,
            "clock_fail_open": settings.CLOCK_FAIL_OPEN,
        },
    )
    yield
    await services.http_client.aclose()


app = FastAPI(
    title="Relay Desk API",
    description="Compose messages and relay them in per-conversation timestamp order",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


def get_services(request: Request) -> Services:
    return request.app.state.services


ServicesDep = Annotated[Services, Depends(get_services)]


def _not_found(message_id: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"message {message_id} not found")


def _conflict(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)


# =============================================================================
# Health Check Routes
# =============================================================================

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
    1. DB is reachable and schema is applied
    2. RELAY_API_URL is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.RELAY_API_URL:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="RELAY_API_URL not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Message Store Routes
# =============================================================================

@app.get("/messages", response_model=MessagesListResponse)
async def list_messages(
    services: ServicesDep,
    status_filter: Annotated[Optional[MessageStatus], Query(alias="status", description="Only messages in this status")] = None,
) -> MessagesListResponse:
    """
    List the message store in list order.
    """
    messages = services.store.list_messages(status=status_filter)
    logger.debug(f"GET /messages: {len(messages)} messages (status={status_filter})")
    return MessagesListResponse(data=messages, total=len(messages))


@app.post("/messages", response_model=MessageRecord, status_code=status.HTTP_201_CREATED)
async def add_message(payload: MessageCreate, services: ServicesDep) -> MessageRecord:
    """
    Add a pending message. The list is regrouped so each conversation stays
    together in timestamp order.
    """
    return services.store.add(payload)


@app.delete("/messages", response_model=ClearResponse)
async def clear_messages(services: ServicesDep) -> ClearResponse:
    """
    Remove every message. Refused while a dispatch is running.
    """
    if services.session.running:
        raise _conflict("a dispatch is running")
    try:
        removed = services.store.clear()
    except MessageLocked:
        raise _conflict("a message is being sent")
    return ClearResponse(removed=removed)


@app.get("/messages/export", response_model=list[MessageRecord])
async def export_messages(services: ServicesDep) -> list[MessageRecord]:
    """
    Export the full store as an ordered list of records. The same format
    is accepted by POST /messages/import.
    """
    return services.store.list_messages()


@app.post(
    "/messages/import",
    response_model=ImportResponse,
    responses={409: {"model": ErrorResponse, "description": "Dispatch running"}},
)
async def import_messages(records: list[MessageImport], services: ServicesDep) -> ImportResponse:
    """
    Replace the whole store with the given records, keeping their order.
    """
    if services.session.running:
        raise _conflict("a dispatch is running")
    try:
        imported = services.store.replace_all(records)
    except MessageLocked:
        raise _conflict("a message is being sent")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return ImportResponse(imported=imported)


@app.get("/messages/{message_id}", response_model=MessageRecord)
async def get_message(message_id: str, services: ServicesDep) -> MessageRecord:
    message = services.store.get(message_id)
    if message is None:
        raise _not_found(message_id)
    return message


@app.put(
    "/messages/{message_id}",
    response_model=MessageRecord,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown message"},
        409: {"model": ErrorResponse, "description": "Message is sending or already sent"},
    },
)
async def update_message(message_id: str, payload: MessageUpdate, services: ServicesDep) -> MessageRecord:
    """
    Edit a pending or failed message; it becomes pending again.
    """
    try:
        return services.store.update(message_id, payload)
    except MessageNotFound:
        raise _not_found(message_id)
    except MessageLocked:
        raise _conflict("message is being sent")
    except MessageAlreadySent:
        raise _conflict("message was already sent")


@app.delete("/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(message_id: str, services: ServicesDep) -> Response:
    try:
        services.store.delete(message_id)
    except MessageNotFound:
        raise _not_found(message_id)
    except MessageLocked:
        raise _conflict("message is being sent")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Delivery Routes
# =============================================================================

@app.post(
    "/messages/{message_id}/send",
    response_model=MessageRecord,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown message"},
        409: {"model": ErrorResponse, "description": "Another send is in flight"},
    },
)
async def send_message(message_id: str, request: Request, services: ServicesDep) -> MessageRecord:
    """
    Send one message now. Sending an already-sent message is a no-op.
    """
    try:
        message = await services.session.send_one(message_id)
    except MessageNotFound:
        raise _not_found(message_id)
    except (DispatchInProgress, MessageLocked):
        raise _conflict("a send is already in flight")

    log_delivery_data(request, message_id=message_id, result=message.status.value)
    return message


@app.post(
    "/messages/{message_id}/verify",
    response_model=VerifyResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown message"},
        409: {"model": ErrorResponse, "description": "Message not sent or no receipt id"},
    },
)
async def verify_message(message_id: str, request: Request, services: ServicesDep) -> VerifyResponse:
    """
    Check the relay's update feed for the message's receipt id.
    """
    try:
        verified, message = await services.session.dispatcher.verify(message_id)
    except MessageNotFound:
        raise _not_found(message_id)
    except ValueError as e:
        raise _conflict(str(e))

    log_delivery_data(request, message_id=message_id, result="verified" if verified else "unverified")
    return VerifyResponse(verified=verified, message=message)


@app.post("/identities/validate", response_model=IdentityResult)
async def validate_identity(payload: IdentityRequest, services: ServicesDep) -> IdentityResult:
    """
    Look a handle up in the directory. Any failure reads as exists=false.
    """
    return await services.identity.validate(payload.handle)


# =============================================================================
# Bulk Dispatch Routes
# =============================================================================

@app.get("/dispatch/preview", response_model=DispatchPreview)
async def dispatch_preview(services: ServicesDep) -> DispatchPreview:
    """
    Report what a bulk send would touch, grouped by conversation.
    """
    candidates = [m for m in services.store.list_messages() if not_sent(m)]
    groups = group_conversations(candidates)
    return DispatchPreview(
        total=len(candidates),
        conversations=[
            ConversationSummary(sender=g.sender, receiver=g.receiver, count=len(g))
            for g in groups
        ],
    )


@app.post(
    "/dispatch",
    response_model=Union[DispatchReport, DispatchProgress],
    status_code=status.HTTP_202_ACCEPTED,
    responses={409: {"model": ErrorResponse, "description": "Dispatch already running"}},
)
async def start_dispatch(
    response: Response,
    services: ServicesDep,
    wait: Annotated[bool, Query(description="Wait for the run to finish")] = False,
) -> Union[DispatchReport, DispatchProgress]:
    """
    Send every message that is not yet sent, conversation by conversation.

    Without wait, the run continues in the background and the initial
    progress is returned; poll GET /dispatch/progress.
    """
    try:
        if wait:
            report = await services.session.run()
            response.status_code = status.HTTP_200_OK
            return report
        return services.session.start()
    except DispatchInProgress:
        raise _conflict("a dispatch is already running")


@app.get("/dispatch/progress", response_model=DispatchProgress)
async def dispatch_progress(services: ServicesDep) -> DispatchProgress:
    return services.session.progress


@app.post(
    "/dispatch/cancel",
    response_model=DispatchProgress,
    responses={409: {"model": ErrorResponse, "description": "Nothing is running"}},
)
async def cancel_dispatch(services: ServicesDep) -> DispatchProgress:
    """
    Stop the running dispatch at the next message boundary.
    """
    try:
        return services.session.cancel()
    except NoDispatchRunning:
        raise _conflict("no dispatch is running")


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
