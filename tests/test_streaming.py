"""Tests for thinkstream.core.streaming."""
import asyncio

import pytest

from thinkstream.config import CircuitBreakerConfig, RetryConfig
from thinkstream.core.recovery import ErrorRecoveryService
from thinkstream.core.streaming import MessageStreamingService, StreamPhase
from thinkstream.models.api import ChatMessage
from thinkstream.models.internal import BackendChunk, ErrorType
from thinkstream.utils.errors import (
    BackendApiError,
    BackendConnectionError,
    FormatError,
    ServiceDisposedError,
    ServiceUnavailableError,
)

from .conftest import FakeBackend, collect


class TestStreamingGeneration:
    @pytest.mark.asyncio
    async def test_thinking_split_across_chunks(self, backend, streaming_service):
        backend.chunks = ["<thi", "nking>Step 1</thinking>Hello"]
        backend.context = [1, 2, 3]

        events = await collect(streaming_service.generate_streaming_message("hi"))

        assert [e.type for e in events] == ["partial", "partial", "complete"]
        assert events[0].filtered_text == ""
        assert events[0].delta == ""
        assert events[0].thinking_state.is_thinking_phase
        assert events[1].filtered_text == "Hello"
        assert events[1].thinking_text == "Step 1"
        complete = events[-1]
        assert complete.filtered_text == "Hello"
        assert complete.thinking_text == "Step 1"
        assert complete.full_text == "<thinking>Step 1</thinking>Hello"
        assert complete.context == [1, 2, 3]
        assert complete.streaming_state.is_complete

    @pytest.mark.asyncio
    async def test_partial_events_carry_deltas(self, backend, streaming_service):
        backend.chunks = ["Hel", "lo", " world"]

        events = await collect(streaming_service.generate_streaming_message("hi"))

        assert [e.delta for e in events if e.type == "partial"] == ["Hel", "lo", " world"]

    @pytest.mark.asyncio
    async def test_plain_angle_bracket_is_shown_once_resolved(self, backend, streaming_service):
        backend.chunks = ["a <", " b"]

        events = await collect(streaming_service.generate_streaming_message("hi"))
        partials = [e for e in events if e.type == "partial"]

        assert [e.filtered_text for e in partials] == ["a ", "a < b"]
        assert [e.delta for e in partials] == ["a ", "< b"]
        assert events[-1].filtered_text == "a < b"

    @pytest.mark.asyncio
    async def test_unfinished_tag_at_end_of_stream_is_kept(self, backend, streaming_service):
        backend.chunks = ["Answer <thi"]

        events = await collect(streaming_service.generate_streaming_message("hi"))

        assert events[0].filtered_text == "Answer "
        assert events[-1].filtered_text == "Answer <thi"

    @pytest.mark.asyncio
    async def test_open_block_keeps_thinking_phase(self, backend, streaming_service):
        backend.chunks = ["<think>planning", " more", "</think>Answer"]

        events = await collect(streaming_service.generate_streaming_message("hi"))
        partials = [e for e in events if e.type == "partial"]

        assert partials[0].thinking_state.is_inside_thinking_block
        assert partials[0].thinking_state.is_thinking_phase
        assert partials[1].thinking_text == "planning more"
        assert not partials[2].thinking_state.is_thinking_phase
        assert partials[2].filtered_text == "Answer"

    @pytest.mark.asyncio
    async def test_empty_chunks_emit_nothing(self, backend, streaming_service):
        backend.chunks = ["", "text", ""]

        events = await collect(streaming_service.generate_streaming_message("hi"))

        assert [e.type for e in events] == ["partial", "complete"]

    @pytest.mark.asyncio
    async def test_request_is_forwarded(self, backend, streaming_service):
        history = [ChatMessage(role="system", content="Be brief")]

        await collect(streaming_service.generate_streaming_message(
            "hi",
            model="other",
            conversation_history=history,
            context=[9],
            context_length=4096,
        ))

        call = backend.stream_calls[0]
        assert call["prompt"] == "hi"
        assert call["model"] == "other"
        assert call["conversation_history"] == history
        assert call["context"] == [9]
        assert call["context_length"] == 4096

    @pytest.mark.asyncio
    async def test_default_model_from_config(self, backend, streaming_service):
        await collect(streaming_service.generate_streaming_message("hi"))

        assert backend.stream_calls[0]["model"] == "test-model"

    @pytest.mark.asyncio
    async def test_completion_resets_thinking_but_keeps_bubbles(self, backend, streaming_service):
        streaming_service.toggle_thinking_bubble("m1")
        backend.chunks = ["<think>x</think>y"]

        await collect(streaming_service.generate_streaming_message("hi"))

        assert streaming_service.phase is StreamPhase.COMPLETED
        assert streaming_service.thinking_state.current_thinking_content == ""
        assert streaming_service.is_thinking_bubble_expanded("m1")
        assert streaming_service.validate_state()


class TestNonStreamingGeneration:
    @pytest.mark.asyncio
    async def test_single_complete_event(self, backend, streaming_service):
        backend.response = "<reasoning>why</reasoning>Because."
        backend.context = [4, 5]

        events = await collect(
            streaming_service.generate_streaming_message("hi", show_live_response=False)
        )

        assert len(events) == 1
        event = events[0]
        assert event.type == "complete"
        assert event.filtered_text == "Because."
        assert event.thinking_text == "why"
        assert event.full_text == "<reasoning>why</reasoning>Because."
        assert event.context == [4, 5]
        assert backend.stream_calls == []

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, backend, streaming_service):
        backend.response = "ok"
        backend.failures = [BackendConnectionError("blip")]

        events = await collect(
            streaming_service.generate_streaming_message("hi", show_live_response=False)
        )

        assert events[0].filtered_text == "ok"
        assert len(backend.once_calls) == 2


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self, backend, streaming_service):
        backend.chunks = ["one ", "two ", "three ", "four ", "five"]
        events = []

        async for event in streaming_service.generate_streaming_message("hi"):
            events.append(event)
            if len(events) == 2:
                streaming_service.cancel_streaming()

        assert [e.type for e in events] == ["partial", "partial", "cancelled"]
        assert events[-1].filtered_text == "one two "
        assert events[-1].streaming_state.is_cancelled
        assert backend.chunks_sent == 2
        assert backend.stream_closed
        assert streaming_service.phase is StreamPhase.CANCELLED
        assert streaming_service.is_cancelled
        assert not streaming_service.streaming_state.has_content

    @pytest.mark.asyncio
    async def test_new_generation_cancels_previous(self, backend, streaming_service):
        backend.chunks = ["a", "b", "c"]
        first = streaming_service.generate_streaming_message("first")
        first_event = await first.__anext__()

        second_events = await collect(streaming_service.generate_streaming_message("second"))
        rest_of_first = await collect(first)

        assert first_event.type == "partial"
        assert [e.type for e in rest_of_first] == ["cancelled"]
        assert second_events[-1].type == "complete"
        assert streaming_service.phase is StreamPhase.COMPLETED

    @pytest.mark.asyncio
    async def test_abandoned_iterator_cancels_generation(self, backend, streaming_service):
        backend.chunks = ["a", "b", "c"]
        events = streaming_service.generate_streaming_message("hi")
        await events.__anext__()

        await events.aclose()

        assert streaming_service.is_cancelled
        assert backend.stream_closed
        assert streaming_service.phase is StreamPhase.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_interrupts_pending_response(self, backend, streaming_service):
        started = asyncio.Event()

        async def hanging_once(prompt, model, **kwargs):
            started.set()
            await asyncio.Event().wait()

        backend.generate_once = hanging_once
        events = streaming_service.generate_streaming_message("hi", show_live_response=False)
        consumer = asyncio.create_task(collect(events))
        await started.wait()

        streaming_service.cancel_streaming()
        # Well below the handler's five second operation timeout.
        result = await asyncio.wait_for(consumer, timeout=1.0)

        assert [e.type for e in result] == ["cancelled"]
        assert streaming_service.phase is StreamPhase.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_interrupts_stalled_stream(
        self, backend, streaming_config, recovery_service
    ):
        backend.chunks = ["one ", "two ", "three "]
        backend.stall_after = 2
        service = MessageStreamingService(
            backend, recovery_service=recovery_service, config=streaming_config
        )
        events = []

        async def consume():
            async for event in service.generate_streaming_message("hi"):
                events.append(event)
                if len(events) == 2:
                    asyncio.get_running_loop().call_later(0.05, service.cancel_streaming)

        await asyncio.wait_for(consume(), timeout=1.0)

        assert [e.type for e in events] == ["partial", "partial", "cancelled"]
        assert events[-1].filtered_text == "one two "
        assert backend.stream_closed
        assert service.phase is StreamPhase.CANCELLED
        breaker = recovery_service.get_circuit_breaker("ollama")
        assert breaker.consecutive_error_count == 0
        assert not recovery_service.has_service_error("ollama")
        service.dispose()


class TestFailures:
    @pytest.mark.asyncio
    async def test_error_event_then_raise(self, backend, streaming_service):
        backend.failures = [FormatError("garbled")]
        events = []

        with pytest.raises(FormatError):
            async for event in streaming_service.generate_streaming_message("hi"):
                events.append(event)

        assert [e.type for e in events] == ["error"]
        assert events[0].error_state.error_type is ErrorType.FORMAT
        assert events[0].error_state.suggestions
        assert streaming_service.phase is StreamPhase.FAILED

    @pytest.mark.asyncio
    async def test_mid_stream_failure_keeps_partial_text(self, streaming_config, error_handler):
        class BrokenBackend(FakeBackend):
            async def generate_stream(self, prompt, model, **kwargs):
                yield BackendChunk(partial_text="partial ")
                raise BackendApiError("stream dropped", status_code=500)

        service = MessageStreamingService(
            BrokenBackend(), config=streaming_config, error_handler=error_handler
        )
        events = []

        with pytest.raises(BackendApiError):
            async for event in service.generate_streaming_message("hi"):
                events.append(event)

        assert [e.type for e in events] == ["partial", "error"]
        assert events[-1].full_text == "partial "
        service.dispose()

    @pytest.mark.asyncio
    async def test_recovery_service_records_failures(self, backend, streaming_config):
        recovery = ErrorRecoveryService(
            config=CircuitBreakerConfig(failure_threshold=1, cooldown=60.0),
            retry_config=RetryConfig(max_retries=0, base_delay=0, max_delay=0),
        )
        service = MessageStreamingService(
            backend, recovery_service=recovery, config=streaming_config
        )
        backend.failures = [BackendConnectionError("down")]

        with pytest.raises(BackendConnectionError):
            await collect(service.generate_streaming_message("hi"))
        assert recovery.has_service_error("ollama")

        with pytest.raises(ServiceUnavailableError):
            await collect(service.generate_streaming_message("hi"))
        assert len(backend.stream_calls) == 1

        service.dispose()
        recovery.dispose()


class TestListenersAndStats:
    @pytest.mark.asyncio
    async def test_listeners_see_each_change_once(self, backend, streaming_service):
        backend.chunks = ["a", "b"]
        seen = []
        streaming_service.add_streaming_state_listener(seen.append)

        await collect(streaming_service.generate_streaming_message("hi"))

        responses = [(s.current_response, s.is_streaming, s.is_complete) for s in seen]
        assert responses == [
            ("", True, False),
            ("a", True, False),
            ("ab", True, False),
            ("ab", False, True),
        ]

    def test_failing_listener_is_contained(self, streaming_service):
        calls = []

        def broken(state):
            raise RuntimeError("listener bug")

        streaming_service.add_thinking_state_listener(broken)
        streaming_service.add_thinking_state_listener(calls.append)

        streaming_service.toggle_thinking_bubble("m1")

        assert len(calls) == 1

    def test_removed_listener(self, streaming_service):
        calls = []
        remove = streaming_service.add_thinking_state_listener(calls.append)
        remove()

        streaming_service.toggle_thinking_bubble("m1")

        assert calls == []

    def test_toggle_returns_new_value(self, streaming_service):
        assert streaming_service.toggle_thinking_bubble("m1") is True
        assert streaming_service.toggle_thinking_bubble("m1") is False
        assert not streaming_service.is_thinking_bubble_expanded("m1")

    def test_stats(self, streaming_service):
        stats = streaming_service.get_streaming_stats()

        assert stats["phase"] == "idle"
        assert stats["is_streaming"] is False
        assert stats["generation_count"] == 0
        assert "thinking_stats" in stats
        assert streaming_service.get_thinking_stats()["is_valid"] is True


class TestDispose:
    def test_generation_after_dispose_fails_fast(self, streaming_service):
        streaming_service.dispose()

        with pytest.raises(ServiceDisposedError):
            streaming_service.generate_streaming_message("hi")

    @pytest.mark.asyncio
    async def test_dispose_cancels_generation_in_flight(self, backend, streaming_service):
        backend.chunks = ["a", "b", "c"]
        events = streaming_service.generate_streaming_message("hi")
        await events.__anext__()

        streaming_service.dispose()
        rest = await collect(events)

        assert [e.type for e in rest] == ["cancelled"]
        assert streaming_service.is_disposed
