"""
FastAPI Application Module

HTTP surface of the chat agent: a thin layer over ConversationOrchestrator.

Key Features:
- JSON replies in a {success, message, data} envelope
- Server-sent events for streamed replies
- Per-client rate limiting and request logging
- Prometheus metrics, CORS and OpenTelemetry support
"""

import json
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import generate_latest
from structlog import get_logger

from ..config import Settings
from ..container import Container, build_container
from ..domain.exceptions import (
    ConversationNotFoundError,
    InvalidStatusTransitionError,
    SmartChatError,
    ValidationError,
)
from ..log_config import configure_logging
from ..metrics import CHAT_ERRORS, CUSTOM_REGISTRY
from ..services.orchestrator import ChatStream, ConversationOrchestrator
from .rate_limiter import rate_limit_middleware
from .schemas import Envelope, MessageCreate

logger = get_logger()

MAX_MESSAGE_LENGTH = 2000


def envelope(data: Any = None, message: str = "Success", status_code: int = 200) -> JSONResponse:
    body = Envelope(success=status_code < 400, message=message, data=data)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    # Blank strings are stripped to empty and count as missing
    missing = [str(e["loc"][-1]) for e in errors if e["type"] in ("missing", "string_too_short")]
    if missing:
        return f"Missing required fields: {', '.join(missing)}"
    for error in errors:
        if error["loc"][-1] == "userMessage" and error["type"] == "string_too_long":
            return f"Message too long (max {MAX_MESSAGE_LENGTH} characters)"
    first = errors[0] if errors else {"loc": ("body",), "msg": "invalid request"}
    return f"Invalid {first['loc'][-1]}: {first['msg']}"


async def sse_frames(chat_stream: ChatStream) -> AsyncIterator[str]:
    """One `data: {"text": ...}` frame per chunk; the stream ends when the connection closes."""
    try:
        async for chunk in chat_stream:
            yield f"data: {json.dumps({'text': chunk}, ensure_ascii=False)}\n\n"
    finally:
        await chat_stream.aclose()


def get_container(request: Request) -> Container:
    """Returns the wiring built at startup"""
    return request.app.state.container


def get_orchestrator(container: Container = Depends(get_container)) -> ConversationOrchestrator:
    """Returns the conversation orchestrator"""
    return container.orchestrator


def create_app(container: Optional[Container] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the app. Without a container, one is built from the environment at startup."""
    if settings is None:
        settings = container.settings if container is not None else Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Validates configuration, builds the container and manages background tasks"""
        owned = getattr(app.state, "container", None) is None
        if owned:
            configure_logging(settings.log_level, settings.log_json)
            app.state.container = build_container(settings.validate())
        await app.state.container.rate_limiter.start()
        logger.info("application_startup_complete")

        yield

        await app.state.container.rate_limiter.stop()
        if owned:
            await app.state.container.aclose()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="Smart Chat Agent API",
        description="Multi-provider conversational sales assistant",
        version="0.1.0",
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    # Enable cross-origin requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Set up request tracing
    FastAPIInstrumentor.instrument_app(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Tracks requests and enforces rate limits on chat routes"""
        path = request.url.path
        logger.info("request_started", method=request.method, path=path)
        if path.startswith("/api/chat"):
            limited = await rate_limit_middleware(request, request.app.state.container.rate_limiter)
            if limited is not None:
                return limited
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("request_failed", path=path, error=str(e))
            raise
        logger.info(
            "request_completed",
            path=path,
            status=response.status_code,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return response

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        logger.warning("request_invalid", path=request.url.path, errors=len(exc.errors()))
        return envelope(message=validation_message(exc), status_code=400)

    @app.exception_handler(SmartChatError)
    async def chat_error_handler(request: Request, exc: SmartChatError):
        if isinstance(exc, ValidationError):
            return envelope(message=str(exc), status_code=400)
        if isinstance(exc, ConversationNotFoundError):
            return envelope(message=str(exc), status_code=404)
        if isinstance(exc, InvalidStatusTransitionError):
            return envelope(message=str(exc), status_code=409)
        CHAT_ERRORS.labels(stage="api").inc()
        logger.error("request_error", path=request.url.path, error_class=type(exc).__name__, error=str(exc))
        return envelope(message="Internal Server Error", status_code=500)

    @app.post("/api/chat/message")
    async def send_message(
        body: MessageCreate,
        orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
    ):
        """
        Processes a user message and returns the assistant reply.
        With stream=true the reply is sent as server-sent events.
        """
        logger.info("chat_message_received", user_id=body.userId, domain=body.domain, stream=body.stream)
        try:
            if body.stream:
                chat_stream = await orchestrator.open_stream(
                    body.userMessage, body.domain, body.userId, body.forceModel
                )
                return StreamingResponse(
                    sse_frames(chat_stream),
                    media_type="text/event-stream",
                    headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
                )
            reply = await orchestrator.send_message(body.userMessage, body.domain, body.userId, body.forceModel)
        except SmartChatError:
            raise
        except Exception as e:
            CHAT_ERRORS.labels(stage="api").inc()
            logger.error("send_message_error", user_id=body.userId, domain=body.domain, error=str(e))
            return envelope(message="Failed to process message", status_code=500)
        return envelope(reply.model_dump(mode="json"), "Message processed successfully")

    @app.get("/api/chat/history/{user_id}")
    async def get_history(
        user_id: str,
        domain: Optional[str] = None,
        orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
    ):
        """Gets the active conversation of a user in a store"""
        if not domain:
            return envelope(message="Missing domain query parameter", status_code=400)
        conversation = await orchestrator.get_history(user_id, domain)
        if conversation is None:
            return envelope({"messages": []}, "No conversation found")
        return envelope(
            {
                "conversationId": str(conversation.id),
                "messages": [m.model_dump(mode="json") for m in conversation.messages],
                "metadata": conversation.metadata.model_dump(mode="json"),
                "systemPromptMemorized": conversation.has_system_prompt,
            },
            "History retrieved successfully",
        )

    @app.post("/api/chat/close/{conversation_id}")
    async def close_conversation(
        conversation_id: UUID,
        orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
    ):
        """Closes an active conversation"""
        await orchestrator.close_conversation(conversation_id)
        logger.info("conversation_closed", conversation_id=str(conversation_id))
        return envelope(None, "Conversation closed successfully")

    @app.get("/api/chat/stats")
    async def get_stats(
        domain: Optional[str] = None,
        startDate: Optional[datetime] = None,
        endDate: Optional[datetime] = None,
        orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
    ):
        """Aggregated token, cost and latency figures for a store (last 7 days by default)"""
        if not domain:
            return envelope(message="Missing domain query parameter", status_code=400)
        stats = await orchestrator.get_stats(domain, _naive_utc(startDate), _naive_utc(endDate))
        return envelope(stats.model_dump(mode="json"), "Stats retrieved successfully")

    @app.get("/health")
    async def health():
        return envelope({"status": "healthy"}, "OK")

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")

    return app
