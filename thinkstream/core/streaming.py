"""Message generation with live thinking extraction."""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from thinkstream.config import StreamingConfig, app_config
from thinkstream.models.api import ChatMessage, ProcessedFile
from thinkstream.models.internal import (
    BackendChunk,
    StreamEvent,
    StreamingState,
    ThinkingState,
)
from thinkstream.utils.cancellation import CancellationManager, CancellationToken
from thinkstream.utils.errors import CancellationError, ServiceDisposedError
from thinkstream.utils.logging import get_logger
from thinkstream.utils.retry import (
    ErrorHandler,
    create_error_state,
    execute_cancellable,
    execute_with_timeout,
)
from .recovery import ErrorRecoveryService
from .thinking import ThinkingContentProcessor

logger = get_logger(__name__)

StateListener = Callable[[Any], None]


class StreamPhase(str, Enum):
    """Lifecycle of one generation request."""
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETING = "completing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


_ACTIVE_PHASES = frozenset({
    StreamPhase.REQUESTING,
    StreamPhase.STREAMING,
    StreamPhase.COMPLETING,
})


@dataclass
class _Progress:
    """What one generation has produced so far."""
    raw: str = ""
    display: str = ""
    shown: str = ""
    thinking: Optional[ThinkingState] = None


async def _read_chunk(chunks: AsyncIterator[BackendChunk]) -> Optional[BackendChunk]:
    """Next chunk from a backend stream, or None once it is exhausted."""
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


class MessageStreamingService:
    """Drive one chat session's generations through the backend.

    ``backend`` provides ``generate_once(...)`` returning a BackendResponse
    and ``generate_stream(...)`` yielding BackendChunks. Each generation is
    exposed as an async iterator of StreamEvents. Only one generation runs
    at a time; starting another cancels the one in flight.
    """

    def __init__(
        self,
        backend,
        processor: Optional[ThinkingContentProcessor] = None,
        recovery_service: Optional[ErrorRecoveryService] = None,
        config: Optional[StreamingConfig] = None,
        error_handler: Optional[ErrorHandler] = None,
    ):
        """Initialize with a backend and optional collaborators."""
        self.backend = backend
        self.processor = processor or ThinkingContentProcessor()
        self.recovery_service = recovery_service
        self.config = config or app_config.streaming
        self.error_handler = error_handler or ErrorHandler(app_config.retry)

        self._cancellation = CancellationManager()
        self._token: Optional[CancellationToken] = None
        self._phase = StreamPhase.IDLE
        self._streaming_state = StreamingState.initial()
        self._thinking_state = ThinkingState.initial()
        self._streaming_listeners: List[StateListener] = []
        self._thinking_listeners: List[StateListener] = []
        self._generation_count = 0
        self._disposed = False

    @property
    def phase(self) -> StreamPhase:
        return self._phase

    @property
    def streaming_state(self) -> StreamingState:
        return self._streaming_state

    @property
    def thinking_state(self) -> ThinkingState:
        return self._thinking_state

    @property
    def is_streaming(self) -> bool:
        return self._streaming_state.is_streaming

    @property
    def is_cancelled(self) -> bool:
        return self._token is not None and self._token.is_cancelled

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def has_active_generation(self) -> bool:
        return self._phase in _ACTIVE_PHASES

    def add_streaming_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener`` with each new StreamingState; returns a remover."""
        return self._add_listener(self._streaming_listeners, listener)

    def add_thinking_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener`` with each new ThinkingState; returns a remover."""
        return self._add_listener(self._thinking_listeners, listener)

    def generate_streaming_message(
        self,
        content: str,
        model: Optional[str] = None,
        conversation_history: Optional[List[ChatMessage]] = None,
        processed_files: Optional[List[ProcessedFile]] = None,
        context: Optional[List[int]] = None,
        context_length: Optional[int] = None,
        show_live_response: Optional[bool] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Start a generation and return its events.

        With ``show_live_response`` the backend is streamed: one ``partial``
        event per non-empty chunk, then a ``complete`` event. Without it a
        single ``complete`` event is produced. Cancellation ends the sequence
        with one ``cancelled`` event. Other failures produce an ``error``
        event and then re-raise.

        Raises ServiceDisposedError straight away on a disposed service.
        """
        self._ensure_not_disposed()
        live = self.config.show_live_response if show_live_response is None else show_live_response
        request = {
            "prompt": content,
            "model": model or self.config.default_model,
            "conversation_history": conversation_history or [],
            "processed_files": processed_files,
            "context": context,
            "context_length": context_length,
        }
        token = self._begin_generation()
        logger.info(
            "generation_started",
            model=request["model"],
            stream=live,
            token_id=token.token_id,
        )
        return self._run_generation(request, live, token)

    def cancel_streaming(self) -> None:
        """Cancel the generation in flight and return to idle state."""
        token = self._token
        if token is not None and not token.is_cancelled:
            logger.info("streaming_cancel_requested", token_id=token.token_id)
            self._cancellation.cancel_token(token.token_id)
            token.cancel()
        if self._phase in _ACTIVE_PHASES:
            self._phase = StreamPhase.CANCELLED
        self._reset_states()

    def toggle_thinking_bubble(self, message_id: str) -> bool:
        """Flip a message's bubble expansion; returns the new value."""
        self._set_thinking_state(
            self.processor.toggle_bubble_expansion(self._thinking_state, message_id)
        )
        return self.is_thinking_bubble_expanded(message_id)

    def is_thinking_bubble_expanded(self, message_id: str) -> bool:
        return self.processor.is_bubble_expanded(self._thinking_state, message_id)

    def get_streaming_stats(self) -> Dict[str, Any]:
        """Summary of the service state for debugging."""
        return {
            "phase": self._phase.value,
            "is_streaming": self.is_streaming,
            "is_cancelled": self.is_cancelled,
            "is_complete": self._streaming_state.is_complete,
            "accumulated_length": self._streaming_state.accumulated_length,
            "display_length": len(self._streaming_state.display_response),
            "generation_count": self._generation_count,
            "has_active_generation": self.has_active_generation,
            "thinking_stats": self.get_thinking_stats(),
        }

    def get_thinking_stats(self) -> Dict[str, Any]:
        return self.processor.get_thinking_stats(self._thinking_state)

    def validate_state(self) -> bool:
        return self._streaming_state.is_valid and self._thinking_state.is_valid

    def dispose(self) -> None:
        """Cancel any generation and refuse new ones."""
        if self._disposed:
            return
        logger.info("streaming_service_disposed", generations=self._generation_count)
        if self._token is not None:
            self._token.cancel()
        self._cancellation.dispose()
        self.processor.dispose()
        self._streaming_listeners.clear()
        self._thinking_listeners.clear()
        if self._phase in _ACTIVE_PHASES:
            self._phase = StreamPhase.CANCELLED
        self._disposed = True

    async def _run_generation(
        self,
        request: Dict[str, Any],
        live: bool,
        token: CancellationToken,
    ) -> AsyncIterator[StreamEvent]:
        progress = _Progress(thinking=self._thinking_state)
        finished = False
        try:
            if live:
                events = self._stream_events(request, token, progress)
                try:
                    async for event in events:
                        yield event
                finally:
                    await events.aclose()
            else:
                yield await self._single_response(request, token, progress)
            finished = True
        except CancellationError:
            finished = True
            yield self._cancelled_event(token, progress)
        except asyncio.CancelledError:
            finished = True
            self._abandon(token, "generation_task_cancelled")
            raise
        except Exception as error:
            finished = True
            if token.is_cancelled:
                # Late failure from a generation that was already cancelled.
                yield self._cancelled_event(token, progress)
                return
            event = self._failed_event(error, token, progress)
            yield event
            raise
        finally:
            if not finished:
                self._abandon(token, "generation_abandoned")

    async def _stream_events(
        self,
        request: Dict[str, Any],
        token: CancellationToken,
        progress: _Progress,
    ) -> AsyncIterator[StreamEvent]:
        chunks, chunk = await self._call_backend(
            lambda: self._open_stream(request),
            token,
            "generate_stream",
        )
        final_context: Optional[List[int]] = None

        try:
            if self._is_current(token):
                self._phase = StreamPhase.STREAMING
                self._set_streaming_state(StreamingState.streaming("", ""))

            while chunk is not None:
                token.raise_if_cancelled("Streaming cancelled")

                if chunk.partial_text:
                    yield self._apply_chunk(chunk.partial_text, token, progress)
                    token.raise_if_cancelled("Streaming cancelled")

                if chunk.done:
                    final_context = chunk.context
                    break

                chunk = await execute_cancellable(
                    lambda: execute_with_timeout(
                        lambda: _read_chunk(chunks),
                        self.config.chunk_timeout,
                        operation_name="stream_chunk",
                    ),
                    token,
                    operation_name="stream_chunk",
                )
        except CancellationError:
            raise
        except Exception as error:
            if token.is_cancelled:
                raise CancellationError("Streaming cancelled") from error
            await self._report_error(error, "stream_chunk")
            raise
        finally:
            await chunks.aclose()

        yield self._complete(token, progress, final_context)

    async def _single_response(
        self,
        request: Dict[str, Any],
        token: CancellationToken,
        progress: _Progress,
    ) -> StreamEvent:
        response = await self._call_backend(
            lambda: self.backend.generate_once(**request),
            token,
            "generate_once",
        )
        token.raise_if_cancelled("Generation cancelled")

        if self._is_current(token):
            self._phase = StreamPhase.COMPLETING
        progress.raw = response.text
        progress.display, progress.thinking = self.processor.process_streaming_response(
            response.text, progress.thinking
        )
        return self._complete(token, progress, response.context)

    async def _open_stream(
        self,
        request: Dict[str, Any],
    ) -> Tuple[AsyncIterator[BackendChunk], Optional[BackendChunk]]:
        """Start the backend stream and wait for its first chunk."""
        chunks = self.backend.generate_stream(**request)
        try:
            first = await _read_chunk(chunks)
        except BaseException:
            await chunks.aclose()
            raise
        return chunks, first

    async def _call_backend(
        self,
        operation: Callable[[], Awaitable[Any]],
        token: CancellationToken,
        operation_name: str,
    ) -> Any:
        if self.recovery_service is not None:
            return await self.recovery_service.execute_service_operation(
                self.config.service_name,
                operation,
                operation_name=operation_name,
                cancellation_token=token,
            )
        return await self.error_handler.execute(
            operation,
            cancellation_token=token,
            operation_name=operation_name,
        )

    def _apply_chunk(
        self,
        text: str,
        token: CancellationToken,
        progress: _Progress,
    ) -> StreamEvent:
        previous_shown = progress.shown
        progress.raw += text
        display, thinking = self.processor.process_streaming_response(
            progress.raw, progress.thinking
        )
        shown = self.processor.hold_back_partial_marker(display)
        thinking = self.processor.update_thinking_phase(thinking, shown)
        progress.display = display
        progress.shown = shown
        progress.thinking = thinking

        streaming_state = StreamingState.streaming(progress.raw, shown)
        if self._is_current(token):
            self._set_streaming_state(streaming_state)
            self._set_thinking_state(thinking)

        if shown.startswith(previous_shown):
            delta = shown[len(previous_shown):]
        else:
            delta = shown

        return StreamEvent(
            type="partial",
            filtered_text=shown,
            thinking_text=thinking.current_thinking_content,
            delta=delta,
            full_text=progress.raw,
            streaming_state=streaming_state,
            thinking_state=thinking,
        )

    def _complete(
        self,
        token: CancellationToken,
        progress: _Progress,
        context: Optional[List[int]],
    ) -> StreamEvent:
        thinking = progress.thinking or ThinkingState.initial()
        streaming_state = StreamingState.completed(progress.raw, progress.display)
        if self._is_current(token):
            self._phase = StreamPhase.COMPLETED
            self._set_streaming_state(streaming_state)
            self._set_thinking_state(self.processor.reset_thinking_state(self._thinking_state))

        logger.info(
            "generation_completed",
            token_id=token.token_id,
            response_length=len(progress.raw),
            display_length=len(progress.display),
            has_thinking=thinking.has_thinking_content,
        )
        return StreamEvent(
            type="complete",
            filtered_text=progress.display,
            thinking_text=thinking.current_thinking_content,
            full_text=progress.raw,
            context=context,
            streaming_state=streaming_state,
            thinking_state=thinking,
        )

    def _cancelled_event(self, token: CancellationToken, progress: _Progress) -> StreamEvent:
        logger.info("generation_cancelled", token_id=token.token_id, response_length=len(progress.raw))
        if self._is_current(token):
            self._phase = StreamPhase.CANCELLED
            self._reset_states()
        thinking = progress.thinking or ThinkingState.initial()
        return StreamEvent(
            type="cancelled",
            filtered_text=progress.display,
            thinking_text=thinking.current_thinking_content,
            full_text=progress.raw,
            streaming_state=StreamingState.cancelled(progress.raw, progress.display),
            thinking_state=thinking,
        )

    def _failed_event(
        self,
        error: BaseException,
        token: CancellationToken,
        progress: _Progress,
    ) -> StreamEvent:
        error_state = create_error_state(
            error,
            operation="generate_streaming_message",
            context={"token_id": token.token_id},
        )
        logger.error(
            "generation_failed",
            token_id=token.token_id,
            error_type=error_state.error_type.value,
            error=str(error),
        )
        if self._is_current(token):
            self._phase = StreamPhase.FAILED
            self._reset_states()
        thinking = progress.thinking or ThinkingState.initial()
        return StreamEvent(
            type="error",
            filtered_text=progress.display,
            thinking_text=thinking.current_thinking_content,
            full_text=progress.raw,
            streaming_state=StreamingState(
                current_response=progress.raw,
                display_response=progress.display,
            ),
            thinking_state=thinking,
            error_state=error_state,
        )

    async def _report_error(self, error: BaseException, operation: str) -> None:
        if self.recovery_service is None:
            return
        await self.recovery_service.handle_service_error(
            self.config.service_name, error, operation=operation
        )

    def _begin_generation(self) -> CancellationToken:
        previous = self._token
        if previous is not None and not previous.is_cancelled:
            if self._phase in _ACTIVE_PHASES:
                logger.info("previous_generation_cancelled", token_id=previous.token_id)
            # Finished generations are retired the same way so the manager forgets them.
            self._cancellation.cancel_token(previous.token_id)
        self._cancellation.cleanup()

        token = self._cancellation.create_token()
        self._token = token
        self._generation_count += 1
        self._phase = StreamPhase.REQUESTING

        self._set_streaming_state(StreamingState.initial())
        self._set_thinking_state(
            self.processor.initialize_thinking_state().model_copy(
                update={"expanded_bubbles": dict(self._thinking_state.expanded_bubbles)}
            )
        )
        return token

    def _abandon(self, token: CancellationToken, reason: str) -> None:
        """Stop a generation whose consumer went away."""
        if token.is_cancelled:
            return
        logger.info(reason, token_id=token.token_id)
        token.cancel()
        if self._is_current(token):
            self._phase = StreamPhase.CANCELLED
            self._reset_states()

    def _is_current(self, token: CancellationToken) -> bool:
        return self._token is token and not self._disposed

    def _reset_states(self) -> None:
        self._set_streaming_state(StreamingState.initial())
        self._set_thinking_state(self.processor.reset_thinking_state(self._thinking_state))

    def _set_streaming_state(self, state: StreamingState) -> None:
        if state == self._streaming_state:
            return
        self._streaming_state = state
        self._notify(self._streaming_listeners, state)

    def _set_thinking_state(self, state: ThinkingState) -> None:
        if state == self._thinking_state:
            return
        self._thinking_state = state
        self._notify(self._thinking_listeners, state)

    def _notify(self, listeners: List[StateListener], state: Any) -> None:
        for listener in list(listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error("state_listener_failed", error=str(e))

    def _add_listener(
        self,
        listeners: List[StateListener],
        listener: StateListener,
    ) -> Callable[[], None]:
        listeners.append(listener)

        def remove() -> None:
            if listener in listeners:
                listeners.remove(listener)

        return remove

    def _ensure_not_disposed(self) -> None:
        if self._disposed:
            raise ServiceDisposedError("MessageStreamingService has been disposed")
