"""Request and response models for the HTTP API and backend inputs."""
import time
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    """A message from the conversation history."""
    role: Literal["system", "user", "assistant"]
    content: str


class ProcessedFile(BaseModel):
    """A file attached to a prompt, already read into memory."""
    file_name: str
    text_content: Optional[str] = None
    base64_images: List[str] = Field(default_factory=list)

    @property
    def has_text_content(self) -> bool:
        return bool(self.text_content)


class ChatRequest(BaseModel):
    """Request to generate the next assistant message in a chat."""
    content: str = Field(min_length=1)
    model: Optional[str] = None
    conversation_history: List[ChatMessage] = Field(default_factory=list)
    processed_files: Optional[List[ProcessedFile]] = None
    context: Optional[List[int]] = None
    context_length: Optional[int] = Field(default=None, ge=1)
    stream: bool = True


class ErrorResponse(BaseModel):
    """Error response."""
    error: Dict[str, Any]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    services: Dict[str, str] = Field(default_factory=dict)
    errors: Dict[str, Any] = Field(default_factory=dict)
    version: str = "1.0.0"
    model: str
    timestamp: int = Field(default_factory=lambda: int(time.time()))
