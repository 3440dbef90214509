"""
FastAPI Application Module

HTTP surface of the campus direct-messaging service. Students open a
conversation with a first message, the recipient accepts or ignores it, and
accepted conversations carry messages both ways with unread counters.

Key Features:
- Async request handling with FastAPI
- Rate limiting through a pluggable limiter (in-process or Redis)
- Structured logging and Prometheus metrics
- CORS and OpenTelemetry support

Every route resolves the caller through the identity dependency and then
delegates to the ConversationEngine; typed engine errors are mapped to
status codes in one exception handler.
"""

import time
from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

import structlog
from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

from ..config import Settings, get_settings
from ..domain.errors import ConversationAlreadyExists, ConversationError, RateLimited
from ..logging_config import configure_logging
from ..repositories.base import Repository
from ..repositories.memory import InMemoryRepository
from ..repositories.sql import SQLAlchemyRepository
from ..services.conversation_engine import ConversationEngine
from .auth import Caller, get_caller, get_confirmed_caller
from .rate_limiter import (
    RateLimiter,
    RedisRateLimiter,
    SlidingWindowRateLimiter,
    rate_limit_key,
)
from .schemas import (
    ConversationResponse,
    InboxResponse,
    MessageResponse,
    SendMessageRequest,
    StartConversationRequest,
    StartConversationResponse,
    ThreadConversation,
    ThreadResponse,
    UpdateConversationRequest,
)

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter(
    "requests_total", "Total requests by endpoint", ["method", "path"], registry=CUSTOM_REGISTRY
)
ERRORS = Counter("errors_total", "Total errors by kind", ["kind"], registry=CUSTOM_REGISTRY)
REQUEST_DURATION = Histogram(
    "request_duration_seconds", "Request processing time by endpoint", ["path"], registry=CUSTOM_REGISTRY
)
CONVERSATIONS_STARTED = Counter(
    "conversations_started_total", "Conversations opened", registry=CUSTOM_REGISTRY
)
MESSAGES_SENT = Counter("messages_sent_total", "Messages sent", registry=CUSTOM_REGISTRY)

ERROR_STATUS = {
    "UNAUTHENTICATED": status.HTTP_401_UNAUTHORIZED,
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "FORBIDDEN": status.HTTP_403_FORBIDDEN,
    "INVALID_ARGUMENT": status.HTTP_400_BAD_REQUEST,
    "CONVERSATION_ALREADY_EXISTS": status.HTTP_409_CONFLICT,
    "INVALID_STATE_TRANSITION": status.HTTP_409_CONFLICT,
    "STORAGE_UNAVAILABLE": status.HTTP_503_SERVICE_UNAVAILABLE,
    "RATE_LIMITED": status.HTTP_429_TOO_MANY_REQUESTS,
}

UNLIMITED_PATHS = {"/health", "/metrics"}

logger = structlog.get_logger()


def build_repository(settings: Settings) -> Repository:
    """Pick the store from settings."""
    if settings.database_url:
        return SQLAlchemyRepository(settings.database_url, echo=settings.database_echo)
    return InMemoryRepository()


def build_rate_limiter(settings: Settings) -> RateLimiter:
    """Pick the limiter from settings."""
    if settings.rate_limit_redis_url:
        return RedisRateLimiter.from_url(
            settings.rate_limit_redis_url,
            rate_limit=settings.rate_limit_requests,
            time_window=settings.rate_limit_window_seconds,
        )
    return SlidingWindowRateLimiter(
        rate_limit=settings.rate_limit_requests,
        time_window=settings.rate_limit_window_seconds,
    )


def get_engine(request: Request) -> ConversationEngine:
    """Returns the conversation engine of the running app"""
    return request.app.state.engine


def error_response(error: ConversationError) -> JSONResponse:
    body = {"error": error.message, "kind": error.kind}
    if isinstance(error, ConversationAlreadyExists):
        body["conversationId"] = error.conversation_id
        body["status"] = error.status
    return JSONResponse(
        status_code=ERROR_STATUS.get(error.kind, status.HTTP_500_INTERNAL_SERVER_ERROR),
        content=body,
    )


def create_app(
    settings: Optional[Settings] = None,
    repository: Optional[Repository] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """Build the application with its store and limiter."""
    settings = settings or get_settings()
    repository = repository or build_repository(settings)
    rate_limiter = rate_limiter or build_rate_limiter(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles app startup/shutdown and resource management"""
        configure_logging(settings.log_level, settings.log_json)
        await app.state.repository.init()
        await app.state.rate_limiter.start()
        logger.info("application_startup_complete")

        yield

        await app.state.rate_limiter.stop()
        await app.state.repository.close()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="Campus DM API",
        description="Direct messaging between students with request/accept handshake",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.repository = repository
    app.state.rate_limiter = rate_limiter
    app.state.engine = ConversationEngine(
        repository, max_message_length=settings.max_message_length
    )

    # Enable cross-origin requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Set up request tracing
    FastAPIInstrumentor.instrument_app(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Tracks requests and enforces rate limits"""
        request_id = request.headers.get("x-request-id") or str(uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        path = request.url.path
        logger.info("request_started", method=request.method, path=path)

        start = time.perf_counter()
        try:
            if path not in UNLIMITED_PATHS:
                limiter = request.app.state.rate_limiter
                if not await limiter.allow(rate_limit_key(request)):
                    error = RateLimited("Too many requests. Please slow down.")
                    ERRORS.labels(kind=error.kind).inc()
                    response = error_response(error)
                    response.headers["Retry-After"] = str(limiter.time_window)
                    response.headers["X-Request-ID"] = request_id
                    return response
            response = await call_next(request)
        except Exception as e:
            logger.error("request_failed", path=path, error=str(e))
            raise
        finally:
            # Label by route template so ids do not explode cardinality
            route = request.scope.get("route")
            endpoint = getattr(route, "path", "unmatched")
            REQUESTS.labels(method=request.method, path=endpoint).inc()
            REQUEST_DURATION.labels(path=endpoint).observe(time.perf_counter() - start)

        response.headers["X-Request-ID"] = request_id
        logger.info("request_completed", path=path, status_code=response.status_code)
        return response

    @app.exception_handler(ConversationError)
    async def conversation_error_handler(request: Request, exc: ConversationError):
        ERRORS.labels(kind=exc.kind).inc()
        logger.info("request_rejected", path=request.url.path, kind=exc.kind, error=exc.message)
        return error_response(exc)

    @app.post(
        "/conversations",
        response_model=StartConversationResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def start_conversation(
        body: StartConversationRequest,
        caller: Caller = Depends(get_confirmed_caller),
        engine: ConversationEngine = Depends(get_engine),
    ) -> StartConversationResponse:
        """Opens a conversation request with a first message"""
        conversation, message = await engine.start_conversation(
            caller.party, body.receiver_id, body.message_content
        )
        CONVERSATIONS_STARTED.inc()
        return StartConversationResponse(conversation_id=conversation.id, message=message)

    @app.get("/conversations", response_model=InboxResponse)
    async def list_conversations(
        caller: Caller = Depends(get_caller),
        engine: ConversationEngine = Depends(get_engine),
    ) -> InboxResponse:
        """Lists the caller's conversations with unread totals"""
        inbox = await engine.list_conversations_for_party(caller.party)
        return InboxResponse(
            conversations=inbox.conversations,
            total_unread_count=inbox.total_unread_count,
        )

    @app.get("/conversations/{conversation_id}/messages", response_model=ThreadResponse)
    async def get_thread(
        conversation_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        caller: Caller = Depends(get_caller),
        engine: ConversationEngine = Depends(get_engine),
    ) -> ThreadResponse:
        """Gets conversation metadata and its messages, oldest first"""
        thread = await engine.get_thread(conversation_id, caller.party, limit=limit, offset=offset)
        return ThreadResponse(
            conversation=ThreadConversation(
                **thread.conversation.model_dump(),
                is_initiator=thread.is_initiator,
                is_recipient=thread.is_recipient,
                other_party=thread.other_party,
            ),
            messages=thread.messages,
        )

    @app.patch("/conversations/{conversation_id}", response_model=ConversationResponse)
    async def update_conversation(
        conversation_id: str,
        body: UpdateConversationRequest,
        caller: Caller = Depends(get_caller),
        engine: ConversationEngine = Depends(get_engine),
    ) -> ConversationResponse:
        """Accepts/ignores a request and/or marks it read"""
        conversation = await engine.update_conversation(
            conversation_id, caller.party, status=body.status, mark_read=body.mark_read
        )
        return ConversationResponse(conversation=conversation)

    @app.post(
        "/messages",
        response_model=MessageResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def send_message(
        body: SendMessageRequest,
        caller: Caller = Depends(get_caller),
        engine: ConversationEngine = Depends(get_engine),
    ) -> MessageResponse:
        """Sends a message in an accepted conversation"""
        message = await engine.send_message(body.conversation_id, caller.party, body.content)
        MESSAGES_SENT.inc()
        return MessageResponse(message=message)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")

    return app


app = create_app()
