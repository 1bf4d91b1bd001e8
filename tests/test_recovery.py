"""Tests for thinkstream.core.recovery."""
import asyncio
from unittest.mock import AsyncMock

import pytest

from thinkstream.config import CircuitBreakerConfig, RetryConfig
from thinkstream.core.recovery import CircuitBreaker, CircuitState, ErrorRecoveryService
from thinkstream.models.internal import (
    ErrorType,
    RecoveryResult,
    ServiceHealthStatus,
    SystemHealthStatus,
)
from thinkstream.utils.errors import (
    BackendApiError,
    BackendConnectionError,
    CancellationError,
    ServiceUnavailableError,
    StateError,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_strategy(success: bool, message: str = ""):
    strategy = AsyncMock()
    if success:
        strategy.recover.return_value = RecoveryResult.succeeded(message or "recovered")
    else:
        strategy.recover.return_value = RecoveryResult.failed(message or "still broken")
    return strategy


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(clock):
    service = ErrorRecoveryService(
        config=CircuitBreakerConfig(failure_threshold=5, cooldown=30.0, error_reset_window=300.0),
        retry_config=RetryConfig(max_retries=0, base_delay=0, max_delay=0, operation_timeout=5.0),
        clock=clock,
    )
    yield service
    service.dispose()


async def record_errors(service, name, count, error=None):
    for _ in range(count):
        await service.handle_service_error(name, error or BackendConnectionError("down"))


class TestCircuitBreaker:
    def test_opens_at_threshold(self, clock):
        breaker = CircuitBreaker(3, cooldown=10.0, error_reset_window=100.0, clock=clock)
        for _ in range(2):
            breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED

        breaker.record_failure()

        assert breaker.state is CircuitState.OPEN
        assert breaker.try_acquire() is False

    def test_single_probe_after_cooldown(self, clock):
        breaker = CircuitBreaker(1, cooldown=10.0, error_reset_window=100.0, clock=clock)
        breaker.record_failure()
        clock.advance(11)

        assert breaker.try_acquire() is True
        assert breaker.try_acquire() is False

    def test_probe_failure_reopens(self, clock):
        breaker = CircuitBreaker(1, cooldown=10.0, error_reset_window=100.0, clock=clock)
        breaker.record_failure()
        clock.advance(11)
        breaker.try_acquire()

        breaker.record_failure()

        assert breaker.is_open()

    def test_probe_success_closes(self, clock):
        breaker = CircuitBreaker(1, cooldown=10.0, error_reset_window=100.0, clock=clock)
        breaker.record_failure()
        clock.advance(11)
        breaker.try_acquire()

        breaker.record_success()

        assert breaker.state is CircuitState.CLOSED
        assert breaker.consecutive_error_count == 0

    def test_old_errors_expire(self, clock):
        breaker = CircuitBreaker(2, cooldown=10.0, error_reset_window=100.0, clock=clock)
        breaker.record_failure()
        clock.advance(101)

        assert breaker.record_failure() == 1
        assert not breaker.is_open()


class TestHandleServiceError:
    @pytest.mark.asyncio
    async def test_records_error(self, service):
        result = await service.handle_service_error("ollama", BackendApiError("bad"))

        assert result is None
        assert service.has_service_error("ollama")
        assert service.get_service_error("ollama").error_type is ErrorType.API

    @pytest.mark.asyncio
    async def test_successful_strategy_clears_error_and_runs_action(self, service):
        strategy = make_strategy(True)
        action = AsyncMock(return_value="retried")
        service.register_recovery_strategy("ollama", strategy)

        result = await service.handle_service_error(
            "ollama", BackendConnectionError("down"), recovery_action=action
        )

        assert result == "retried"
        action.assert_awaited_once()
        strategy.recover.assert_awaited_once()
        assert not service.has_service_error("ollama")

    @pytest.mark.asyncio
    async def test_failed_strategy_keeps_error(self, service):
        action = AsyncMock()
        service.register_recovery_strategy("ollama", make_strategy(False))

        result = await service.handle_service_error(
            "ollama", BackendConnectionError("down"), recovery_action=action
        )

        assert result is None
        action.assert_not_awaited()
        assert service.has_service_error("ollama")

    @pytest.mark.asyncio
    async def test_raising_strategy_is_contained(self, service):
        strategy = AsyncMock()
        strategy.recover.side_effect = RuntimeError("strategy bug")
        service.register_recovery_strategy("ollama", strategy)

        result = await service.handle_service_error("ollama", BackendConnectionError("down"))

        assert result is None
        assert service.has_service_error("ollama")

    @pytest.mark.asyncio
    async def test_last_registration_wins(self, service):
        first = make_strategy(True)
        second = make_strategy(True)
        service.register_recovery_strategy("ollama", first)
        service.register_recovery_strategy("ollama", second)

        await service.handle_service_error("ollama", BackendConnectionError("down"))

        first.recover.assert_not_awaited()
        second.recover.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancellation_is_ignored(self, service):
        strategy = make_strategy(True)
        service.register_recovery_strategy("ollama", strategy)

        await service.handle_service_error("ollama", CancellationError("stop"))

        assert not service.has_service_error("ollama")
        assert service.get_circuit_breaker("ollama").consecutive_error_count == 0
        strategy.recover.assert_not_awaited()


class TestCircuitBreakerIntegration:
    @pytest.mark.asyncio
    async def test_five_errors_open_breaker_and_block_operation(self, service):
        await record_errors(service, "ollama", 5)
        operation = AsyncMock(return_value="never")

        assert service.is_service_circuit_breaker_open("ollama")
        with pytest.raises(ServiceUnavailableError) as exc_info:
            await service.execute_service_operation("ollama", operation)

        assert exc_info.value.service_name == "ollama"
        operation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_four_errors_keep_breaker_closed(self, service):
        await record_errors(service, "ollama", 4)

        assert not service.is_service_circuit_breaker_open("ollama")

    @pytest.mark.asyncio
    async def test_probe_after_cooldown_closes_breaker(self, service, clock):
        await record_errors(service, "ollama", 5)
        clock.advance(31)
        operation = AsyncMock(return_value="ok")

        result = await service.execute_service_operation("ollama", operation)

        assert result == "ok"
        assert not service.is_service_circuit_breaker_open("ollama")
        assert not service.has_service_error("ollama")

    @pytest.mark.asyncio
    async def test_failed_probe_reopens_breaker(self, service, clock):
        await record_errors(service, "ollama", 5)
        clock.advance(31)
        operation = AsyncMock(side_effect=BackendConnectionError("still down"))

        with pytest.raises(BackendConnectionError):
            await service.execute_service_operation("ollama", operation)

        assert service.is_service_circuit_breaker_open("ollama")

    @pytest.mark.asyncio
    async def test_success_resets_count(self, service):
        await record_errors(service, "ollama", 4)

        await service.execute_service_operation("ollama", AsyncMock(return_value=1))
        await record_errors(service, "ollama", 4)

        assert not service.is_service_circuit_breaker_open("ollama")

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_reraised(self, service):
        operation = AsyncMock(side_effect=BackendApiError("bad", status_code=500))

        with pytest.raises(BackendApiError):
            await service.execute_service_operation("ollama", operation, operation_name="generate")

        error_state = service.get_service_error("ollama")
        assert error_state.operation == "generate"
        assert service.get_circuit_breaker("ollama").consecutive_error_count == 1

    @pytest.mark.asyncio
    async def test_timeout_applies(self, service):
        async def slow():
            await asyncio.sleep(10)

        with pytest.raises(TimeoutError):
            await service.execute_service_operation("ollama", slow, timeout=0.01)

        assert service.get_service_error("ollama").error_type is ErrorType.TIMEOUT

    @pytest.mark.asyncio
    async def test_services_are_independent(self, service):
        await record_errors(service, "ollama", 5)

        assert await service.execute_service_operation("other", AsyncMock(return_value=2)) == 2


class TestHealth:
    @pytest.mark.asyncio
    async def test_service_health_levels(self, service):
        assert service.get_service_health("ollama") is ServiceHealthStatus.HEALTHY

        await record_errors(service, "ollama", 1)
        assert service.get_service_health("ollama") is ServiceHealthStatus.DEGRADED

        await record_errors(service, "ollama", 4)
        assert service.get_service_health("ollama") is ServiceHealthStatus.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_system_health_aggregation(self, service):
        assert service.get_system_health() is SystemHealthStatus.HEALTHY

        await record_errors(service, "a", 1)
        assert service.get_system_health() is SystemHealthStatus.WARNING

        await record_errors(service, "b", 1)
        assert service.get_system_health() is SystemHealthStatus.DEGRADED

        await record_errors(service, "c", 5)
        assert service.get_system_health() is SystemHealthStatus.CRITICAL

    @pytest.mark.asyncio
    async def test_clear_errors(self, service):
        await record_errors(service, "a", 1)
        await record_errors(service, "b", 1)

        service.clear_service_error("a")
        assert set(service.current_error_states) == {"b"}

        service.clear_all_errors()
        assert service.current_error_states == {}


class TestErrorStatistics:
    @pytest.mark.asyncio
    async def test_counts_by_type_and_service(self, service):
        await record_errors(service, "ollama", 2)
        await service.handle_service_error("ollama", BackendApiError("bad"))
        await service.handle_service_error("search", StateError("stale"))

        stats = service.get_error_statistics()

        assert stats["total_errors"] == 4
        assert stats["errors_by_type"] == {"connection": 2, "api": 1, "state": 1}
        assert stats["errors_by_service"] == {"ollama": 3, "search": 1}
        assert stats["critical_errors"] == 1
        assert stats["recent_errors"] == 4
        assert stats["last_error_time"] is not None

    @pytest.mark.asyncio
    async def test_old_errors_are_not_recent(self, service, clock):
        await record_errors(service, "ollama", 1)
        clock.advance(3601)
        await record_errors(service, "ollama", 1)

        stats = service.get_error_statistics()

        assert stats["total_errors"] == 2
        assert stats["recent_errors"] == 1

    @pytest.mark.asyncio
    async def test_cancellation_is_not_counted(self, service):
        await service.handle_service_error("ollama", CancellationError("stop"))

        assert service.get_error_statistics()["total_errors"] == 0

    @pytest.mark.asyncio
    async def test_clearing_errors_keeps_statistics(self, service):
        await record_errors(service, "ollama", 2)

        service.clear_all_errors()

        assert service.get_error_statistics()["total_errors"] == 2

    @pytest.mark.asyncio
    async def test_export_is_newest_first(self, service):
        await service.handle_service_error("ollama", BackendConnectionError("down"))
        await service.handle_service_error("ollama", BackendApiError("bad"))

        report = service.export_error_report()

        assert [e["error_type"] for e in report["errors"]] == ["api", "connection"]
        assert report["errors"][0]["service"] == "ollama"
        assert report["errors"][0]["severity"] == "error"
        assert report["statistics"]["total_errors"] == 2
        assert len(service.export_error_report(limit=1)["errors"]) == 1

    @pytest.mark.asyncio
    async def test_clear_error_history(self, service):
        await record_errors(service, "ollama", 3)

        service.clear_error_history()

        stats = service.get_error_statistics()
        assert stats["total_errors"] == 0
        assert stats["errors_by_type"] == {}
        assert service.export_error_report()["errors"] == []

    def test_repeated_errors_are_logged_once_per_window(self, service, clock):
        assert service._should_throttle("ollama", ErrorType.CONNECTION) is False
        assert service._should_throttle("ollama", ErrorType.CONNECTION) is True
        assert service._should_throttle("ollama", ErrorType.API) is False

        clock.advance(61)

        assert service._should_throttle("ollama", ErrorType.CONNECTION) is False


class TestErrorStateStream:
    @pytest.mark.asyncio
    async def test_snapshots_follow_changes(self, service):
        queue = service.subscribe()

        await service.handle_service_error("ollama", BackendConnectionError("down"))
        service.clear_service_error("ollama")

        first = queue.get_nowait()
        second = queue.get_nowait()
        assert set(first) == {"ollama"}
        assert second == {}

    @pytest.mark.asyncio
    async def test_stream_ends_on_dispose(self, service):
        received = []

        async def consume():
            async for snapshot in service.error_state_stream():
                received.append(snapshot)

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)
        await service.handle_service_error("ollama", BackendConnectionError("down"))
        service.dispose()
        await asyncio.wait_for(consumer, timeout=1.0)

        assert len(received) == 1
        assert "ollama" in received[0]
