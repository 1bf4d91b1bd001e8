"""Data models for the pipeline and API."""
from .api import (
    ChatMessage,
    ChatRequest,
    ErrorResponse,
    HealthResponse,
    ProcessedFile,
)
from .internal import (
    BackendChunk,
    BackendResponse,
    ErrorSeverity,
    ErrorState,
    ErrorType,
    RecoveryResult,
    ServiceHealthStatus,
    StreamEvent,
    StreamingState,
    SystemHealthStatus,
    ThinkingState,
)

__all__ = [
    "ChatMessage",
    "ChatRequest",
    "ErrorResponse",
    "HealthResponse",
    "ProcessedFile",
    "BackendChunk",
    "BackendResponse",
    "ErrorSeverity",
    "ErrorState",
    "ErrorType",
    "RecoveryResult",
    "ServiceHealthStatus",
    "StreamEvent",
    "StreamingState",
    "SystemHealthStatus",
    "ThinkingState",
]
