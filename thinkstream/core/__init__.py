"""Core business logic modules."""
from .client import OllamaClient, build_prompt
from .recovery import CircuitBreaker, CircuitState, ErrorRecoveryService
from .strategies import (
    CompositeRecoveryStrategy,
    ConnectionRecoveryStrategy,
    InputRecoveryStrategy,
    RecoveryStrategy,
    StateRecoveryStrategy,
    StreamingRecoveryStrategy,
    create_recovery_strategy,
)
from .streaming import MessageStreamingService, StreamPhase
from .thinking import ProcessedResponse, ThinkingBlock, ThinkingContentProcessor

__all__ = [
    "OllamaClient",
    "build_prompt",
    "CircuitBreaker",
    "CircuitState",
    "ErrorRecoveryService",
    "CompositeRecoveryStrategy",
    "ConnectionRecoveryStrategy",
    "InputRecoveryStrategy",
    "RecoveryStrategy",
    "StateRecoveryStrategy",
    "StreamingRecoveryStrategy",
    "create_recovery_strategy",
    "MessageStreamingService",
    "StreamPhase",
    "ProcessedResponse",
    "ThinkingBlock",
    "ThinkingContentProcessor",
]
