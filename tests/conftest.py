"""Shared fixtures for the thinkstream test suite."""
import asyncio
from typing import List, Optional

import pytest

from thinkstream.config import CircuitBreakerConfig, RetryConfig, StreamingConfig
from thinkstream.core.recovery import ErrorRecoveryService
from thinkstream.core.streaming import MessageStreamingService
from thinkstream.models.internal import BackendChunk, BackendResponse
from thinkstream.utils.retry import ErrorHandler


class FakeBackend:
    """In-memory stand-in for OllamaClient.

    ``chunks`` is what ``generate_stream`` yields, ``response`` what
    ``generate_once`` returns. Queue exceptions in ``failures`` to make the
    next calls raise. With ``stall_after`` set the stream hangs once that
    many chunks have been sent.
    """

    def __init__(
        self,
        chunks: Optional[List[str]] = None,
        response: str = "",
        context: Optional[List[int]] = None,
        chunk_delay: float = 0.0,
    ):
        self.chunks = chunks or []
        self.response = response
        self.context = context
        self.chunk_delay = chunk_delay
        self.failures: List[BaseException] = []
        self.once_calls = []
        self.stream_calls = []
        self.chunks_sent = 0
        self.stream_closed = False
        self.connected = True
        self.stall_after: Optional[int] = None

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    async def generate_once(self, prompt, model, **kwargs) -> BackendResponse:
        self.once_calls.append({"prompt": prompt, "model": model, **kwargs})
        self._maybe_fail()
        return BackendResponse(text=self.response, context=self.context)

    async def generate_stream(self, prompt, model, **kwargs):
        self.stream_calls.append({"prompt": prompt, "model": model, **kwargs})
        self._maybe_fail()
        try:
            for text in self.chunks:
                if self.stall_after is not None and self.chunks_sent >= self.stall_after:
                    await asyncio.Event().wait()
                if self.chunk_delay:
                    await asyncio.sleep(self.chunk_delay)
                self.chunks_sent += 1
                yield BackendChunk(partial_text=text)
            yield BackendChunk(done=True, context=self.context)
        finally:
            self.stream_closed = True

    async def test_connection(self) -> bool:
        return self.connected


@pytest.fixture
def fast_retry_config():
    return RetryConfig(max_retries=2, base_delay=0.0, max_delay=0.0, operation_timeout=5.0)


@pytest.fixture
def error_handler(fast_retry_config):
    return ErrorHandler(fast_retry_config)


@pytest.fixture
def streaming_config():
    return StreamingConfig(default_model="test-model", chunk_timeout=5.0, service_name="ollama")


@pytest.fixture
def recovery_service(fast_retry_config):
    service = ErrorRecoveryService(
        config=CircuitBreakerConfig(failure_threshold=5, cooldown=60.0),
        retry_config=fast_retry_config,
    )
    yield service
    service.dispose()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def streaming_service(backend, streaming_config, error_handler):
    service = MessageStreamingService(
        backend,
        config=streaming_config,
        error_handler=error_handler,
    )
    yield service
    service.dispose()


async def collect(events):
    """Drain an event iterator into a list."""
    return [event async for event in events]
