"""HTTP client for the Ollama generation API."""
import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from thinkstream.config import settings
from thinkstream.models.api import ChatMessage, ProcessedFile
from thinkstream.models.internal import BackendChunk, BackendResponse
from thinkstream.utils.errors import (
    BackendApiError,
    BackendConnectionError,
    FormatError,
    OperationTimeoutError,
)
from thinkstream.utils.logging import get_logger

logger = get_logger(__name__)


def _extract_text(data: Dict[str, Any]) -> str:
    """Response text from either a /api/generate or a /api/chat payload."""
    if isinstance(data.get("response"), str):
        return data["response"]
    message = data.get("message") or {}
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            part["text"]
            for part in content
            if isinstance(part, dict) and part.get("type") == "text" and part.get("text")
        )
    return ""


def build_prompt(
    prompt: str,
    conversation_history: Optional[List[ChatMessage]] = None,
    processed_files: Optional[List[ProcessedFile]] = None,
) -> str:
    """Assemble the prompt text sent to /api/generate.

    The first system message leads, then the user prompt, then the content of
    any attached text files.
    """
    parts = []
    for message in conversation_history or []:
        if message.role == "system":
            parts.append(f"{message.content}\n\n")
            break

    parts.append(prompt)

    text_files = [f for f in processed_files or [] if f.has_text_content]
    if text_files:
        parts.append("\n\n")
        for f in text_files:
            parts.append(f"File: {f.file_name}\n{f.text_content}\n\n")

    return "".join(parts)


class OllamaClient:
    """Async HTTP client for an Ollama server."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: Optional[str] = None,
        auth_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize client with a shared session."""
        self.session = session
        self.base_url = (base_url or settings.ollama_url).rstrip("/")
        self.auth_token = settings.ollama_auth_token if auth_token is None else auth_token
        self.timeout = timeout or settings.http_timeout
        self._call_count = 0

    @property
    def headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def build_payload(
        self,
        prompt: str,
        model: str,
        stream: bool,
        conversation_history: Optional[List[ChatMessage]] = None,
        processed_files: Optional[List[ProcessedFile]] = None,
        context: Optional[List[int]] = None,
        context_length: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Request body for /api/generate."""
        payload: Dict[str, Any] = {
            "model": model,
            "prompt": build_prompt(prompt, conversation_history, processed_files),
            "stream": stream,
        }

        images = [image for f in processed_files or [] for image in f.base64_images]
        if images:
            payload["images"] = images
        if context_length is not None and context_length > 0:
            payload["options"] = {"num_ctx": context_length}
        if context:
            payload["context"] = context
        return payload

    @asynccontextmanager
    async def _post(self, path: str, payload: Dict[str, Any], call_id: str):
        """POST to the server, translating transport failures."""
        self._call_count += 1
        url = f"{self.base_url}{path}"
        try:
            async with self.session.post(
                url,
                json=payload,
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status != 200:
                    body = await response.text()
                    logger.error(
                        "backend_error",
                        call_id=call_id,
                        status=response.status,
                        response=body[:200],
                    )
                    raise BackendApiError(
                        f"Backend request to {path} failed",
                        status_code=response.status,
                    )
                yield response
        except (aiohttp.ServerTimeoutError, asyncio.TimeoutError) as e:
            raise OperationTimeoutError(
                f"Request to {path} timed out", self.timeout
            ) from e
        except aiohttp.ClientConnectionError as e:
            raise BackendConnectionError(
                "Failed to connect to Ollama server", original_error=e
            ) from e
        except aiohttp.ClientResponseError as e:
            raise BackendApiError(
                f"Backend request to {path} failed",
                status_code=e.status,
                original_error=e,
            ) from e
        except aiohttp.ClientError as e:
            raise BackendConnectionError(
                "Network error occurred", original_error=e
            ) from e

    async def generate_once(
        self,
        prompt: str,
        model: str,
        conversation_history: Optional[List[ChatMessage]] = None,
        processed_files: Optional[List[ProcessedFile]] = None,
        context: Optional[List[int]] = None,
        context_length: Optional[int] = None,
    ) -> BackendResponse:
        """Generate a complete response in one request."""
        payload = self.build_payload(
            prompt,
            model,
            stream=False,
            conversation_history=conversation_history,
            processed_files=processed_files,
            context=context,
            context_length=context_length,
        )
        call_id = f"generate_{self._call_count + 1}"
        logger.info("calling_model", call_id=call_id, model=model, stream=False)

        async with self._post("/api/generate", payload, call_id) as response:
            body = await response.text()

        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise FormatError(f"Invalid JSON from backend: {e.msg}") from e

        result = BackendResponse(text=_extract_text(data), context=data.get("context"))
        logger.info("model_success", call_id=call_id, content_length=len(result.text))
        return result

    async def generate_stream(
        self,
        prompt: str,
        model: str,
        conversation_history: Optional[List[ChatMessage]] = None,
        processed_files: Optional[List[ProcessedFile]] = None,
        context: Optional[List[int]] = None,
        context_length: Optional[int] = None,
    ) -> AsyncIterator[BackendChunk]:
        """Stream partial responses as the server produces them.

        The server sends one JSON object per line. Lines that fail to parse
        are logged and skipped; iteration ends after the ``done`` chunk.
        """
        payload = self.build_payload(
            prompt,
            model,
            stream=True,
            conversation_history=conversation_history,
            processed_files=processed_files,
            context=context,
            context_length=context_length,
        )
        call_id = f"stream_{self._call_count + 1}"
        logger.info("calling_model", call_id=call_id, model=model, stream=True)

        async with self._post("/api/generate", payload, call_id) as response:
            async for raw_line in response.content:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning("stream_line_invalid", call_id=call_id, error=e.msg)
                    continue

                chunk = BackendChunk(
                    partial_text=_extract_text(data),
                    done=bool(data.get("done", False)),
                    context=data.get("context"),
                )
                yield chunk
                if chunk.done:
                    break

    async def test_connection(self) -> bool:
        """Check that the server answers on /api/tags."""
        try:
            async with self.session.get(
                f"{self.base_url}/api/tags",
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("connection_test_failed", error=str(e))
            return False

    @property
    def total_calls(self) -> int:
        """Get total number of API calls made."""
        return self._call_count
