"""Internal data structures for the streaming pipeline."""
import time
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorType(str, Enum):
    """Classification of pipeline errors."""
    CONNECTION = "connection"
    API = "api"
    TIMEOUT = "timeout"
    CANCELLATION = "cancellation"
    VALIDATION = "validation"
    STATE = "state"
    FORMAT = "format"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    """How loudly an error should be reported."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


_SEVERITY_BY_TYPE = {
    ErrorType.CANCELLATION: ErrorSeverity.INFO,
    ErrorType.VALIDATION: ErrorSeverity.WARNING,
    ErrorType.FORMAT: ErrorSeverity.WARNING,
    ErrorType.CONNECTION: ErrorSeverity.ERROR,
    ErrorType.TIMEOUT: ErrorSeverity.ERROR,
    ErrorType.API: ErrorSeverity.ERROR,
    ErrorType.STATE: ErrorSeverity.CRITICAL,
    ErrorType.UNKNOWN: ErrorSeverity.CRITICAL,
}


class ServiceHealthStatus(str, Enum):
    """Health of a single named service."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


class SystemHealthStatus(str, Enum):
    """Aggregate health across services."""
    HEALTHY = "healthy"
    WARNING = "warning"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class ErrorState(BaseModel):
    """A classified failure, ready to be shown to a user."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    error: Any = Field(default=None, exclude=True)
    error_type: ErrorType
    message: str
    suggestions: List[str]
    can_retry: bool
    operation: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=datetime.now)

    @property
    def is_recent(self) -> bool:
        """Whether the error happened in the last 30 seconds."""
        return (datetime.now() - self.timestamp).total_seconds() < 30

    @property
    def severity(self) -> ErrorSeverity:
        return _SEVERITY_BY_TYPE[self.error_type]


class ThinkingState(BaseModel):
    """Snapshot of thinking-block extraction for one generation.

    ``expanded_bubbles`` holds the user's per-message expansion choices and
    outlives individual generations.
    """
    model_config = ConfigDict(frozen=True)

    current_thinking_content: str = ""
    has_active_thinking_bubble: bool = False
    is_inside_thinking_block: bool = False
    is_thinking_phase: bool = False
    expanded_bubbles: Dict[str, bool] = Field(default_factory=dict)

    @classmethod
    def initial(cls) -> "ThinkingState":
        return cls()

    def toggle_bubble_expansion(self, message_id: str) -> "ThinkingState":
        """Flip the expansion flag for a message.

        An absent id counts as collapsed, and collapsing removes the id, so
        toggling twice restores the original mapping.
        """
        bubbles = dict(self.expanded_bubbles)
        if bubbles.get(message_id, False):
            del bubbles[message_id]
        else:
            bubbles[message_id] = True
        return self.model_copy(update={"expanded_bubbles": bubbles})

    def is_bubble_expanded(self, message_id: str) -> bool:
        return self.expanded_bubbles.get(message_id, False)

    def clear_current_thinking(self) -> "ThinkingState":
        """Drop content and flags but keep bubble expansion choices."""
        return self.model_copy(
            update={
                "current_thinking_content": "",
                "has_active_thinking_bubble": False,
                "is_inside_thinking_block": False,
                "is_thinking_phase": False,
                "expanded_bubbles": dict(self.expanded_bubbles),
            }
        )

    @property
    def has_thinking_content(self) -> bool:
        return bool(self.current_thinking_content)

    @property
    def has_expanded_bubbles(self) -> bool:
        return any(self.expanded_bubbles.values())

    @property
    def expanded_bubble_count(self) -> int:
        return sum(1 for expanded in self.expanded_bubbles.values() if expanded)

    @property
    def is_valid(self) -> bool:
        """Check flag consistency.

        An open block always has an active bubble. Outside a block, an
        active bubble needs content to show.
        """
        if self.is_inside_thinking_block and not self.has_active_thinking_bubble:
            return False
        if (
            self.has_active_thinking_bubble
            and not self.is_inside_thinking_block
            and not self.current_thinking_content
        ):
            return False
        return True


class StreamingState(BaseModel):
    """Snapshot of one in-flight generation.

    ``current_response`` is the raw accumulated text; ``display_response``
    is the same text with thinking blocks removed.
    """
    model_config = ConfigDict(frozen=True)

    current_response: str = ""
    display_response: str = ""
    is_streaming: bool = False
    is_complete: bool = False
    is_cancelled: bool = False

    @classmethod
    def initial(cls) -> "StreamingState":
        return cls()

    @classmethod
    def streaming(cls, current_response: str, display_response: str) -> "StreamingState":
        return cls(
            current_response=current_response,
            display_response=display_response,
            is_streaming=True,
        )

    @classmethod
    def completed(cls, current_response: str, display_response: str) -> "StreamingState":
        return cls(
            current_response=current_response,
            display_response=display_response,
            is_complete=True,
        )

    @classmethod
    def cancelled(cls, current_response: str = "", display_response: str = "") -> "StreamingState":
        return cls(
            current_response=current_response,
            display_response=display_response,
            is_cancelled=True,
        )

    @property
    def accumulated_length(self) -> int:
        return len(self.current_response)

    @property
    def has_content(self) -> bool:
        return bool(self.current_response or self.display_response)

    @property
    def has_filtered_content(self) -> bool:
        return self.current_response != self.display_response

    @property
    def is_valid(self) -> bool:
        """Display text is derived from raw text and a finished stream is not live."""
        if len(self.display_response) > len(self.current_response):
            return False
        if self.is_streaming and (self.is_complete or self.is_cancelled):
            return False
        if self.is_complete and self.is_cancelled:
            return False
        return True


class RecoveryResult(BaseModel):
    """Outcome of a recovery strategy."""
    model_config = ConfigDict(frozen=True)

    success: bool
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    @classmethod
    def succeeded(cls, message: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> "RecoveryResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def failed(cls, message: str, data: Optional[Dict[str, Any]] = None) -> "RecoveryResult":
        return cls(success=False, message=message, data=data)


class BackendResponse(BaseModel):
    """A complete, non-streamed backend response."""
    text: str
    context: Optional[List[int]] = None


class BackendChunk(BaseModel):
    """One partial response from a backend stream."""
    partial_text: str = ""
    done: bool = False
    context: Optional[List[int]] = None


class StreamEvent(BaseModel):
    """An update emitted by the streaming service."""
    model_config = ConfigDict(frozen=True)

    type: Literal["partial", "complete", "cancelled", "error"]
    filtered_text: str = ""
    thinking_text: str = ""
    delta: str = ""
    full_text: str = ""
    context: Optional[List[int]] = None
    streaming_state: StreamingState
    thinking_state: ThinkingState
    error_state: Optional[ErrorState] = None
    created: int = Field(default_factory=lambda: int(time.time()))
