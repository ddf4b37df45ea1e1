import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError as SettingsError

from relay.broadcast import Broadcaster, Subscription
from relay.config import get_settings
from relay.errors import FeedDisruption, StorageError, ValidationError
from relay.events import to_wire
from relay.feed import ChangeFeedTranslator, FeedState
from relay.logging_utils import setup_logging, RequestLoggingMiddleware, log_ingest_data
from relay.metrics import get_metrics, get_metrics_content_type
from relay.schemas import (
    ConversationSummary,
    ErrorResponse,
    HealthResponse,
    IngestReport,
    MessageRecord,
    PatchOutcome,
    SendRequest,
    StatusRequest,
    StatusUpdateResponse,
)
from relay.service import RelayService
from relay.storage import MessageStore, create_store


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: load settings (fatal if DATABASE_URL is missing), build the
      store, create schema, start the change feed
    - Shutdown: stop the feed, end subscriptions, release the engine
    """
    try:
        settings = get_settings()
    except SettingsError as e:
        logger.critical(f"Invalid configuration, refusing to start: {e}")
        raise

    setup_logging(settings.LOG_LEVEL)

    store = create_store(settings.DATABASE_URL)
    store.init_schema()

    broadcaster = Broadcaster(queue_size=settings.SUBSCRIBER_QUEUE_SIZE)
    feed = ChangeFeedTranslator(
        store,
        broadcaster,
        poll_interval=settings.FEED_POLL_INTERVAL_SECONDS,
        batch_size=settings.FEED_BATCH_SIZE,
        max_failures=settings.FEED_MAX_FAILURES,
        retry_backoff=settings.FEED_RETRY_BACKOFF_SECONDS,
    )
    try:
        await feed.seek_to_head()
    except FeedDisruption as e:
        # The feed task retries the seek on its first poll
        logger.error(f"Change feed could not be positioned at startup: {e}")
    feed.start()

    app.state.store = store
    app.state.service = RelayService(store, settings.BUSINESS_NUMBER)
    app.state.broadcaster = broadcaster
    app.state.feed = feed

    yield

    await feed.stop()
    broadcaster.close()
    store.dispose()


app = FastAPI(
    title="Messaging Relay",
    description="Ingests message/status payloads and streams store changes to connected clients",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


def get_service(request: Request) -> RelayService:
    return request.app.state.service


def get_store(request: Request) -> MessageStore:
    return request.app.state.store


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    logger.warning(f"Rejected request: {exc}")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error(f"Storage failure on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "storage failure"},
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(
    request: Request,
    response: Response,
    store: MessageStore = Depends(get_store),
) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. The change feed is not degraded

    Otherwise returns 503 (Service Unavailable).
    """
    feed_state = request.app.state.feed.state.value

    if not store.check_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied",
            feed=feed_state,
        )

    if feed_state == FeedState.DEGRADED.value:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Change feed degraded, restart required",
            feed=feed_state,
        )

    return HealthResponse(status="ready", feed=feed_state)


# =============================================================================
# Ingest Route
# =============================================================================

@app.post("/webhook", response_model=IngestReport)
async def webhook(
    request: Request,
    service: RelayService = Depends(get_service),
) -> IngestReport:
    """
    Ingest a provider payload pushed by API.

    The body is a single payload object (envelope or flat shape) or an array
    of them. Malformed items are skipped and counted, never fatal.
    """
    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes")

    try:
        decoded = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"Invalid JSON: {e}")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid JSON: {str(e)}"
        )

    blob = [decoded] if isinstance(decoded, dict) else decoded
    report = service.ingest_batch([blob], source_names=["webhook"])
    log_ingest_data(request, report)
    return report


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/api/chats", response_model=list[ConversationSummary])
async def list_chats(service: RelayService = Depends(get_service)) -> list:
    """Conversations with their last message and unread count, most recent first."""
    return service.list_conversations()


@app.get("/api/messages/{conversation_id}", response_model=list[MessageRecord])
async def conversation_messages(
    conversation_id: str,
    service: RelayService = Depends(get_service),
) -> list:
    """Messages of a conversation, oldest first. Marks inbound messages as read."""
    return service.get_conversation_messages(conversation_id)


@app.post(
    "/api/send",
    response_model=MessageRecord,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse, "description": "Missing conversation or body"}},
)
async def send_message(
    payload: SendRequest,
    service: RelayService = Depends(get_service),
) -> MessageRecord:
    """Store an outbound message. No external delivery is attempted."""
    return service.send_outbound(payload.conversation_id, payload.body)


@app.post(
    "/api/status",
    response_model=StatusUpdateResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing id or unknown status"},
        404: {"model": ErrorResponse, "description": "No message matches the id"},
    },
)
async def update_status(
    payload: StatusRequest,
    service: RelayService = Depends(get_service),
) -> StatusUpdateResponse:
    """Update a message status by primary id or correlation id."""
    outcome = service.update_status(payload.id, payload.status)
    if outcome is PatchOutcome.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="message not found")
    return StatusUpdateResponse(success=True, outcome=outcome)


@app.get("/api/test-message")
async def test_message(
    conversation_id: str = Query("919937320320", alias="wa_id"),
    text: str = Query("Test inbound message"),
    service: RelayService = Depends(get_service),
) -> dict:
    """Inject a fake inbound message to exercise the real-time path by hand."""
    record = service.simulate_inbound(conversation_id, text)
    return {"success": True, "emitted": record.model_dump(mode="json")}


# =============================================================================
# Real-time Route
# =============================================================================

async def _forward_events(websocket: WebSocket, subscription: Subscription) -> None:
    async for event in subscription:
        await websocket.send_json(to_wire(event))


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@app.websocket("/ws")
async def realtime_events(websocket: WebSocket) -> None:
    """
    Stream every change-feed event to the client as JSON.

    The subscription is registered before the handshake completes, so any
    change committed after connect is delivered.
    """
    broadcaster: Broadcaster = websocket.app.state.broadcaster
    async with broadcaster.subscribe() as subscription:
        await websocket.accept()
        forward = asyncio.create_task(_forward_events(websocket, subscription))
        listen = asyncio.create_task(_wait_for_disconnect(websocket))
        done, pending = await asyncio.wait({forward, listen}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if listen in done:
            return

        try:
            forward.result()
        except WebSocketDisconnect:
            logger.debug("Real-time client went away during send")
            return

        # Broadcaster closed: server is shutting down
        await websocket.close()


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
