"""FastAPI main application."""
import time
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, Optional

import aiohttp
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from thinkstream.config import app_config, settings
from thinkstream.core import (
    ErrorRecoveryService,
    MessageStreamingService,
    OllamaClient,
    create_recovery_strategy,
)
from thinkstream.models import ChatRequest, ErrorResponse, ErrorState, ErrorType, HealthResponse
from thinkstream.utils import create_error_state, get_logger, setup_logging
from thinkstream.utils.errors import ServiceUnavailableError, ThinkstreamError

# Setup logging
setup_logging(settings.log_level)
logger = get_logger(__name__)

_STATUS_BY_ERROR_TYPE = {
    ErrorType.CONNECTION: 502,
    ErrorType.API: 502,
    ErrorType.TIMEOUT: 504,
    ErrorType.CANCELLATION: 499,
    ErrorType.VALIDATION: 400,
    ErrorType.FORMAT: 502,
    ErrorType.STATE: 409,
    ErrorType.UNKNOWN: 500,
}


def _error_body(error_state: ErrorState) -> Dict:
    return ErrorResponse(
        error={
            "message": error_state.message,
            "type": error_state.error_type.value,
            "suggestions": error_state.suggestions,
            "can_retry": error_state.can_retry,
        }
    ).model_dump()


def create_app(backend=None, max_chats: Optional[int] = None) -> FastAPI:
    """Build the application.

    ``backend`` replaces the Ollama client; when omitted one is created on
    startup over a shared aiohttp session. At most ``max_chats`` chat
    sessions are kept; the least recently used idle one is evicted to make
    room for a new chat.
    """
    chat_limit = settings.max_chats if max_chats is None else max_chats

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle."""
        logger.info(
            "app_startup",
            host=settings.host,
            port=settings.port,
            ollama_url=settings.ollama_url,
            model=app_config.streaming.default_model,
        )

        http_session: Optional[aiohttp.ClientSession] = None
        client = backend
        if client is None:
            connector = aiohttp.TCPConnector(
                limit=settings.http_max_connections,
                limit_per_host=settings.http_max_connections,
            )
            http_session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=settings.http_timeout),
            )
            client = OllamaClient(http_session)

        recovery = ErrorRecoveryService()
        service_name = app_config.streaming.service_name
        recovery.register_recovery_strategy(
            service_name,
            create_recovery_strategy(service_name, client=client),
        )

        app.state.backend = client
        app.state.recovery_service = recovery
        app.state.chats = OrderedDict()

        yield

        for service in app.state.chats.values():
            service.dispose()
        recovery.dispose()
        if http_session is not None:
            await http_session.close()
        logger.info("app_shutdown")

    app = FastAPI(
        title="Thinkstream API",
        description=app_config.service.description,
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ThinkstreamError)
    async def pipeline_exception_handler(request: Request, exc: ThinkstreamError):
        """Render pipeline errors as user-facing messages."""
        error_state = create_error_state(exc, operation=request.url.path)
        status_code = _STATUS_BY_ERROR_TYPE[error_state.error_type]
        if isinstance(exc, ServiceUnavailableError):
            status_code = 503
        logger.warning(
            "request_error",
            path=request.url.path,
            error_type=error_state.error_type.value,
            error=str(exc),
        )
        return JSONResponse(status_code=status_code, content=_error_body(error_state))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler."""
        logger.exception("unhandled_error", error=str(exc))
        error_state = create_error_state(exc, operation=request.url.path)
        return JSONResponse(status_code=500, content=_error_body(error_state))

    def get_chat(chat_id: str, create: bool = False) -> MessageStreamingService:
        chats: "OrderedDict[str, MessageStreamingService]" = app.state.chats
        service = chats.get(chat_id)
        if service is not None:
            chats.move_to_end(chat_id)
        else:
            if not create:
                raise HTTPException(status_code=404, detail=f"Unknown chat: {chat_id}")
            if len(chats) >= chat_limit:
                evict_idle_chat(chats)
            service = MessageStreamingService(
                app.state.backend,
                recovery_service=app.state.recovery_service,
            )
            chats[chat_id] = service
            logger.info("chat_session_created", chat_id=chat_id)
        return service

    def evict_idle_chat(chats: "OrderedDict[str, MessageStreamingService]") -> None:
        for chat_id, service in chats.items():
            if not service.has_active_generation:
                del chats[chat_id]
                service.dispose()
                logger.info("chat_session_evicted", chat_id=chat_id)
                return
        logger.warning("chat_limit_reached", limit=chat_limit)
        raise HTTPException(status_code=503, detail="Too many active chats")

    async def stream_events(
        service: MessageStreamingService,
        request: ChatRequest,
        request_id: str,
    ) -> AsyncGenerator[str, None]:
        """Render generation events as server-sent events."""
        start_time = time.time()
        events = service.generate_streaming_message(
            request.content,
            model=request.model,
            conversation_history=request.conversation_history,
            processed_files=request.processed_files,
            context=request.context,
            context_length=request.context_length,
            show_live_response=True,
        )
        try:
            async for event in events:
                yield f"data: {event.model_dump_json()}\n\n"
        except Exception as e:
            # The error event has already been sent.
            logger.warning("stream_failed", request_id=request_id, error=str(e))
        finally:
            await events.aclose()

        logger.info(
            "request_complete",
            request_id=request_id,
            elapsed_seconds=time.time() - start_time,
            stream=True,
        )
        yield "data: [DONE]\n\n"

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint."""
        recovery: ErrorRecoveryService = app.state.recovery_service
        service_name = app_config.streaming.service_name
        services = {service_name: recovery.get_service_health(service_name).value}
        services.update(
            {name: health.value for name, health in recovery.get_all_service_health().items()}
        )
        return HealthResponse(
            status=recovery.get_system_health().value,
            services=services,
            errors=recovery.get_error_statistics(),
            model=app_config.streaming.default_model,
        )

    @app.get("/v1/errors")
    async def error_report(limit: Optional[int] = Query(default=None, ge=1)):
        """Recorded backend errors, newest first."""
        recovery: ErrorRecoveryService = app.state.recovery_service
        return recovery.export_error_report(limit=limit)

    @app.post("/v1/chats/{chat_id}/messages")
    async def send_message(chat_id: str, request: ChatRequest):
        """Generate the assistant's reply, streamed or in one piece."""
        request_id = f"msg-{uuid.uuid4().hex[:12]}"
        service = get_chat(chat_id, create=True)
        logger.info(
            "request_start",
            request_id=request_id,
            chat_id=chat_id,
            message_preview=request.content[:100],
            stream=request.stream,
        )

        if request.stream:
            return StreamingResponse(
                stream_events(service, request, request_id),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "Connection": "keep-alive",
                    "X-Accel-Buffering": "no",  # Disable nginx buffering
                },
            )

        result = None
        async for event in service.generate_streaming_message(
            request.content,
            model=request.model,
            conversation_history=request.conversation_history,
            processed_files=request.processed_files,
            context=request.context,
            context_length=request.context_length,
            show_live_response=False,
        ):
            result = event

        logger.info("request_complete", request_id=request_id, stream=False)
        if result.type == "cancelled":
            return JSONResponse(
                status_code=_STATUS_BY_ERROR_TYPE[ErrorType.CANCELLATION],
                content=result.model_dump(mode="json"),
            )
        return result.model_dump(mode="json")

    @app.post("/v1/chats/{chat_id}/cancel")
    async def cancel_message(chat_id: str):
        """Cancel the chat's generation in flight."""
        service = get_chat(chat_id)
        service.cancel_streaming()
        return {"chat_id": chat_id, "cancelled": True, "phase": service.phase.value}

    @app.post("/v1/chats/{chat_id}/bubbles/{message_id}/toggle")
    async def toggle_bubble(chat_id: str, message_id: str):
        """Flip a thinking bubble between expanded and collapsed."""
        service = get_chat(chat_id)
        expanded = service.toggle_thinking_bubble(message_id)
        return {"chat_id": chat_id, "message_id": message_id, "expanded": expanded}

    @app.get("/v1/chats/{chat_id}/stats")
    async def chat_stats(chat_id: str):
        """Streaming and thinking statistics for a chat."""
        service = get_chat(chat_id)
        stats = service.get_streaming_stats()
        stats["is_valid"] = service.validate_state()
        return stats

    @app.delete("/v1/chats/{chat_id}")
    async def delete_chat(chat_id: str):
        """Cancel the chat's generation and forget the session."""
        service = app.state.chats.pop(chat_id, None)
        if service is None:
            raise HTTPException(status_code=404, detail=f"Unknown chat: {chat_id}")
        service.dispose()
        logger.info("chat_session_deleted", chat_id=chat_id)
        return {"chat_id": chat_id, "deleted": True}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "thinkstream.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False,
    )
