import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError

from relaychat.config import Settings, get_settings
from relaychat.errors import MessageValidationError, StoreReadError, StoreWriteError
from relaychat.forwarder import PeerForwarder
from relaychat.gateway import PollingGateway
from relaychat.hub import BroadcastHub
from relaychat.logging_utils import setup_logging, RequestLoggingMiddleware, log_ingest_data
from relaychat.metrics import record_ingest_outcome, get_metrics, get_metrics_content_type
from relaychat.models import ORIGIN_LOCAL, ORIGIN_RELAYED
from relaychat.registry import ConnectionRegistry
from relaychat.schemas import (
    ErrorResponse,
    HealthResponse,
    IngestResponse,
    MessageResponse,
    RelayRequest,
    SendRequest,
    SnapshotResponse,
    make_error,
)
from relaychat.storage import MessageStore


logger = logging.getLogger(__name__)

router = APIRouter()


def get_gateway(request: Request) -> PollingGateway:
    return request.app.state.gateway


def get_store(request: Request) -> MessageStore:
    return request.app.state.store


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the node is running.
    """
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response, store: MessageStore = Depends(get_store)) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the message store is reachable
    and its schema is applied, otherwise 503.
    """
    if not store.check_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Polling Routes
# =============================================================================

def _snapshot(gateway: PollingGateway) -> list[MessageResponse]:
    try:
        messages = gateway.snapshot()
    except StoreReadError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Messages unavailable"
        )
    return [MessageResponse.model_validate(m) for m in messages]


@router.get("/messages", response_model=list[MessageResponse])
async def list_messages(gateway: PollingGateway = Depends(get_gateway)) -> list[MessageResponse]:
    """
    Full snapshot of every message this node knows, in arrival order.
    There is no cursor; polling clients re-render or diff themselves.
    """
    data = _snapshot(gateway)
    logger.debug(f"GET /messages: returned {len(data)} messages")
    return data


@router.get("/api/messages", response_model=SnapshotResponse)
async def list_messages_wrapped(gateway: PollingGateway = Depends(get_gateway)) -> SnapshotResponse:
    """Same snapshot as GET /messages, wrapped as {success, data}."""
    return SnapshotResponse(data=_snapshot(gateway))


# =============================================================================
# Ingest Routes
# =============================================================================

async def _parse_body(request: Request, schema: type[BaseModel], origin: str) -> BaseModel:
    """
    Parse and validate a JSON body, answering 400 on any problem.
    """
    raw_body = await request.body()
    try:
        return schema.model_validate(json.loads(raw_body))
    except ValidationError as e:
        logger.warning(f"Validation error: {e}")
        detail = "Message or sender missing"
    except ValueError as e:
        # JSONDecodeError, or UnicodeDecodeError for non UTF-8 bodies
        logger.warning(f"Invalid JSON: {e}")
        detail = f"Invalid JSON: {e}"

    record_ingest_outcome(origin, "validation_error")
    log_ingest_data(request, origin=origin, result="validation_error")
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def _store_message(request: Request, origin: str, store_call):
    """
    Run one gateway ingest call and translate its failures.
    Failures after the append (broadcast, forward) never reach here.
    """
    try:
        message = store_call()
    except MessageValidationError as e:
        record_ingest_outcome(origin, "validation_error")
        log_ingest_data(request, origin=origin, result="validation_error")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreWriteError:
        record_ingest_outcome(origin, "store_error")
        log_ingest_data(request, origin=origin, result="store_error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Message was not saved"
        )

    record_ingest_outcome(origin, "created")
    log_ingest_data(request, origin=origin, result="created", message_id=message.id)
    return message


_ingest_errors = {
    400: {"model": ErrorResponse, "description": "Missing or empty message/sender"},
    500: {"model": ErrorResponse, "description": "Message was not saved"},
}


@router.post("/send", response_model=IngestResponse, responses=_ingest_errors)
@router.post("/api/messages/send", response_model=IngestResponse, responses=_ingest_errors)
async def send_message(
    request: Request,
    gateway: PollingGateway = Depends(get_gateway),
) -> IngestResponse:
    """
    Accept a message from a local client.

    The message is stored, pushed to live subscribers and handed to the
    peer forwarder. The response does not wait for the peer.
    """
    payload = await _parse_body(request, SendRequest, ORIGIN_LOCAL)
    message = _store_message(
        request,
        ORIGIN_LOCAL,
        lambda: gateway.ingest(payload.sender, payload.message),
    )
    return IngestResponse(data=MessageResponse.model_validate(message))


@router.post("/api/messages/receive", response_model=IngestResponse, responses=_ingest_errors)
async def receive_message(
    request: Request,
    gateway: PollingGateway = Depends(get_gateway),
) -> IngestResponse:
    """
    Accept a message forwarded by the paired node.
    It is stored as relayed and broadcast locally, never forwarded back.
    """
    payload = await _parse_body(request, RelayRequest, ORIGIN_RELAYED)
    message = _store_message(
        request,
        ORIGIN_RELAYED,
        lambda: gateway.receive(payload.sender, payload.message, payload.timestamp),
    )
    return IngestResponse(
        message="Message received and broadcasted",
        data=MessageResponse.model_validate(message),
    )


# =============================================================================
# Live Subscription
# =============================================================================

@router.websocket("/ws")
async def live_messages(websocket: WebSocket):
    """
    Live stream: one initial_messages event with the full backlog, then a
    new_message event per message. Clients may also submit messages with
    {"type": "send_message", "message": ..., "sender": ...}.
    """
    hub: BroadcastHub = websocket.app.state.hub
    gateway: PollingGateway = websocket.app.state.gateway

    await websocket.accept()
    subscriber = await hub.attach(websocket)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                frame = json.loads(data)
            except json.JSONDecodeError:
                _reply(subscriber, make_error("BAD_REQUEST", "invalid json"))
                continue
            if not isinstance(frame, dict) or frame.get("type") != "send_message":
                _reply(subscriber, make_error("BAD_REQUEST", "unknown frame type"))
                continue

            try:
                message = gateway.ingest(frame.get("sender"), frame.get("message"))
            except MessageValidationError as e:
                record_ingest_outcome(ORIGIN_LOCAL, "validation_error")
                _reply(subscriber, make_error("BAD_REQUEST", str(e)))
            except StoreWriteError:
                record_ingest_outcome(ORIGIN_LOCAL, "store_error")
                _reply(subscriber, make_error("INTERNAL", "Message was not saved"))
            else:
                record_ingest_outcome(ORIGIN_LOCAL, "created")
                logger.debug(f"Socket message stored: id={message.id}")
    except WebSocketDisconnect:
        pass
    finally:
        await hub.detach(subscriber.connection_id)


def _reply(subscriber, event: dict) -> None:
    # Goes through the subscriber queue to keep a single writer per socket
    if subscriber.connected:
        try:
            subscriber.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.debug(f"Reply to {subscriber.connection_id} dropped, queue full")


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# Application Factory
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    peer_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build one chat node.

    Every component is constructed here and passed explicitly; the
    message store is loaded from disk when the app starts.

    Args:
        settings: node settings, defaults to the environment
        peer_transport: optional httpx transport for the peer forwarder
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    store = MessageStore(settings.DATABASE_URL)
    registry = ConnectionRegistry()
    hub = BroadcastHub(store, registry, queue_size=settings.SUBSCRIBER_QUEUE_SIZE)
    forwarder = PeerForwarder(
        settings.PEER_URL,
        timeout=settings.PEER_TIMEOUT_SECONDS,
        transport=peer_transport,
    )
    gateway = PollingGateway(store, hub, forwarder, max_length=settings.MAX_MESSAGE_LENGTH)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        - Startup: create the schema and load the existing history
        - Shutdown: drop subscribers, finish in-flight forwards
        """
        store.init()
        logger.info(f"Node ready, peer={forwarder.peer_url or 'none'}")
        yield
        await hub.close()
        await forwarder.aclose()
        store.dispose()

    app = FastAPI(
        title="relaychat node",
        description="Chat node with live fan-out and best-effort relay to a paired node",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.registry = registry
    app.state.hub = hub
    app.state.forwarder = forwarder
    app.state.gateway = gateway

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.include_router(router)
    return app


app = create_app()
