"""Per-service error tracking, circuit breaking and recovery."""
import asyncio
import threading
import time
from collections import deque
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Deque,
    Dict,
    List,
    Optional,
    Tuple,
    TypeVar,
)

from thinkstream.config import CircuitBreakerConfig, RetryConfig, app_config
from thinkstream.models.internal import (
    ErrorSeverity,
    ErrorState,
    ErrorType,
    ServiceHealthStatus,
    SystemHealthStatus,
)
from thinkstream.utils.cancellation import CancellationToken
from thinkstream.utils.errors import ServiceUnavailableError
from thinkstream.utils.logging import get_logger
from thinkstream.utils.retry import (
    ErrorHandler,
    RetryCallback,
    classify_error,
    create_error_state,
    log_error,
)
from .strategies import RecoveryStrategy

logger = get_logger(__name__)

T = TypeVar("T")

# Error reports kept for statistics and export.
ERROR_HISTORY_SIZE = 100
# Repeats of the same service and error type inside this window log at debug.
ERROR_LOG_COOLDOWN = 60.0
RECENT_ERROR_WINDOW = 3600.0


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"


class CircuitBreaker:
    """Consecutive-failure counter for one service.

    The breaker opens once ``failure_threshold`` failures pile up without a
    success in between. While open, calls are refused until ``cooldown``
    seconds have passed since the last failure; then a single probe call is
    let through. The probe's outcome closes or re-opens the breaker.
    """

    def __init__(
        self,
        failure_threshold: int,
        cooldown: float,
        error_reset_window: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self.error_reset_window = error_reset_window
        self._clock = clock
        self._lock = threading.Lock()
        self._count = 0
        self._last_error_time: Optional[float] = None
        self._probe_in_flight = False

    @property
    def consecutive_error_count(self) -> int:
        return self._count

    @property
    def last_error_time(self) -> Optional[float]:
        return self._last_error_time

    @property
    def state(self) -> CircuitState:
        return CircuitState.OPEN if self.is_open() else CircuitState.CLOSED

    def record_failure(self) -> int:
        """Count a failure and return the new consecutive count."""
        with self._lock:
            now = self._clock()
            if (
                self._last_error_time is not None
                and now - self._last_error_time > self.error_reset_window
            ):
                self._count = 0
            self._count += 1
            self._last_error_time = now
            self._probe_in_flight = False
            return self._count

    def record_success(self) -> None:
        with self._lock:
            self._count = 0
            self._last_error_time = None
            self._probe_in_flight = False

    def release_probe(self) -> None:
        """Give up a probe slot without recording an outcome."""
        with self._lock:
            self._probe_in_flight = False

    def is_open(self) -> bool:
        with self._lock:
            return self._is_open_locked()

    def try_acquire(self) -> bool:
        """Whether a call may proceed; claims the probe slot when half-open."""
        with self._lock:
            if self._count < self.failure_threshold:
                return True
            if self._is_open_locked():
                return False
            self._probe_in_flight = True
            return True

    def _is_open_locked(self) -> bool:
        if self._count < self.failure_threshold or self._last_error_time is None:
            return False
        if self._probe_in_flight:
            return True
        return self._clock() - self._last_error_time < self.cooldown

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consecutive_error_count": self._count,
            "last_error_time": self._last_error_time,
            "state": self.state.value,
        }


class ErrorRecoveryService:
    """Track errors per named service and coordinate recovery.

    Each service gets a circuit breaker, created on first use. Registered
    recovery strategies get a chance to heal a service before its error is
    reported. Observers can follow the error-state map through
    ``error_state_stream()``.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        retry_config: Optional[RetryConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize with breaker and retry policies."""
        self.config = config or app_config.circuit_breaker
        self.error_handler = ErrorHandler(retry_config or app_config.retry)
        self._clock = clock
        self._service_errors: Dict[str, ErrorState] = {}
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._strategies: Dict[str, RecoveryStrategy] = {}
        self._subscribers: List[asyncio.Queue] = []
        self._error_history: Deque[Tuple[float, str, ErrorState]] = deque(maxlen=ERROR_HISTORY_SIZE)
        self._errors_by_type: Dict[str, int] = {}
        self._errors_by_service: Dict[str, int] = {}
        self._total_errors = 0
        self._last_logged: Dict[Tuple[str, ErrorType], float] = {}
        self._disposed = False

    @property
    def current_error_states(self) -> Dict[str, ErrorState]:
        return dict(self._service_errors)

    def has_service_error(self, service_name: str) -> bool:
        return service_name in self._service_errors

    def get_service_error(self, service_name: str) -> Optional[ErrorState]:
        return self._service_errors.get(service_name)

    def get_circuit_breaker(self, service_name: str) -> CircuitBreaker:
        """The breaker for a service, created on first use."""
        breaker = self._breakers.get(service_name)
        if breaker is None:
            breaker = self._breakers.setdefault(
                service_name,
                CircuitBreaker(
                    self.config.failure_threshold,
                    self.config.cooldown,
                    self.config.error_reset_window,
                    clock=self._clock,
                ),
            )
        return breaker

    def is_service_circuit_breaker_open(self, service_name: str) -> bool:
        breaker = self._breakers.get(service_name)
        return breaker is not None and breaker.is_open()

    def register_recovery_strategy(self, service_name: str, strategy: RecoveryStrategy) -> None:
        """Associate a strategy with a service, replacing any previous one."""
        self._strategies[service_name] = strategy
        logger.info("recovery_strategy_registered", service=service_name)

    async def handle_service_error(
        self,
        service_name: str,
        error: BaseException,
        recovery_action: Optional[Callable[[], Awaitable[T]]] = None,
        operation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[T]:
        """Record an error for a service and try to recover.

        Returns the result of ``recovery_action`` when a registered strategy
        succeeds, otherwise None. Never raises. Cancellations are not
        failures and are ignored.
        """
        if classify_error(error) is ErrorType.CANCELLATION:
            return None

        count = self.get_circuit_breaker(service_name).record_failure()
        error_state = create_error_state(error, operation=operation, context=context)
        self._service_errors[service_name] = error_state
        self._record_statistics(service_name, error_state)
        self._notify_error_state_change()

        if self._should_throttle(service_name, error_state.error_type):
            logger.debug(
                "service_error_repeated",
                service=service_name,
                error_type=error_state.error_type.value,
                count=count,
            )
        else:
            label = f"{service_name}.{operation}" if operation else service_name
            log_error(label, error, context=context)
            logger.warning(
                "service_error_recorded",
                service=service_name,
                count=count,
                threshold=self.config.failure_threshold,
            )

        strategy = self._strategies.get(service_name)
        if strategy is None:
            return None
        return await self._attempt_recovery(service_name, error_state, strategy, recovery_action)

    async def execute_service_operation(
        self,
        service_name: str,
        operation: Callable[[], Awaitable[T]],
        operation_name: Optional[str] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
        cancellation_token: Optional[CancellationToken] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> T:
        """Run an operation behind the service's circuit breaker.

        Raises ServiceUnavailableError without calling ``operation`` while the
        breaker is open. Otherwise the operation runs with retries, each
        attempt bounded by ``timeout``. Success clears the service's error
        record; failure is recorded and handed to recovery before it is
        re-raised.
        """
        breaker = self.get_circuit_breaker(service_name)
        if not breaker.try_acquire():
            logger.warning("circuit_breaker_rejected", service=service_name)
            raise ServiceUnavailableError(
                f"Service {service_name} is temporarily unavailable due to repeated errors",
                service_name=service_name,
            )

        label = f"{service_name}.{operation_name}" if operation_name else service_name
        succeeded = False
        try:
            result = await self.error_handler.execute(
                operation,
                max_retries=max_retries,
                timeout=timeout,
                on_retry=on_retry,
                cancellation_token=cancellation_token,
                operation_name=label,
            )
            succeeded = True
        except Exception as error:
            await self.handle_service_error(service_name, error, operation=operation_name)
            raise
        finally:
            if not succeeded:
                breaker.release_probe()

        if breaker.consecutive_error_count:
            logger.info("service_recovered", service=service_name)
        breaker.record_success()
        self.clear_service_error(service_name)
        return result

    def clear_service_error(self, service_name: str) -> None:
        if self._service_errors.pop(service_name, None) is not None:
            self._notify_error_state_change()
            logger.info("service_error_cleared", service=service_name)

    def clear_all_errors(self) -> None:
        if self._service_errors:
            self._service_errors.clear()
            self._notify_error_state_change()
            logger.info("all_service_errors_cleared")

    def get_service_health(self, service_name: str) -> ServiceHealthStatus:
        if self.is_service_circuit_breaker_open(service_name):
            return ServiceHealthStatus.UNAVAILABLE
        if self.has_service_error(service_name):
            return ServiceHealthStatus.DEGRADED
        return ServiceHealthStatus.HEALTHY

    def get_all_service_health(self) -> Dict[str, ServiceHealthStatus]:
        """Health of every service that has been seen."""
        names = set(self._service_errors) | {
            name for name, breaker in self._breakers.items()
            if breaker.consecutive_error_count
        }
        return {name: self.get_service_health(name) for name in sorted(names)}

    def get_system_health(self) -> SystemHealthStatus:
        """Aggregate health: any unavailable service is critical."""
        health = list(self.get_all_service_health().values())
        if ServiceHealthStatus.UNAVAILABLE in health:
            return SystemHealthStatus.CRITICAL
        degraded = health.count(ServiceHealthStatus.DEGRADED)
        if degraded > 1:
            return SystemHealthStatus.DEGRADED
        if degraded == 1:
            return SystemHealthStatus.WARNING
        return SystemHealthStatus.HEALTHY

    def get_error_statistics(self) -> Dict[str, Any]:
        """Counts of every error recorded since startup or the last clear."""
        now = self._clock()
        history = list(self._error_history)
        last = history[-1][2].timestamp.isoformat() if history else None
        return {
            "total_errors": self._total_errors,
            "recent_errors": sum(
                1 for recorded_at, _, _ in history
                if now - recorded_at < RECENT_ERROR_WINDOW
            ),
            "critical_errors": sum(
                1 for _, _, state in history
                if state.severity is ErrorSeverity.CRITICAL
            ),
            "errors_by_type": dict(self._errors_by_type),
            "errors_by_service": dict(self._errors_by_service),
            "last_error_time": last,
        }

    def export_error_report(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """Statistics plus the retained error history, newest first."""
        history = list(reversed(self._error_history))
        if limit is not None:
            history = history[:limit]
        return {
            "statistics": self.get_error_statistics(),
            "errors": [
                {
                    "service": service_name,
                    "error_type": state.error_type.value,
                    "severity": state.severity.value,
                    "message": state.message,
                    "operation": state.operation,
                    "can_retry": state.can_retry,
                    "timestamp": state.timestamp.isoformat(),
                }
                for _, service_name, state in history
            ],
        }

    def clear_error_history(self) -> None:
        self._error_history.clear()
        self._errors_by_type.clear()
        self._errors_by_service.clear()
        self._total_errors = 0
        self._last_logged.clear()
        logger.info("error_history_cleared")

    def subscribe(self) -> "asyncio.Queue[Optional[Dict[str, ErrorState]]]":
        """Queue receiving a snapshot of the error map on every change."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def error_state_stream(self) -> AsyncIterator[Dict[str, ErrorState]]:
        """Yield the error map after every change until disposal."""
        queue = self.subscribe()
        try:
            while True:
                snapshot = await queue.get()
                if snapshot is None:
                    return
                yield snapshot
        finally:
            self.unsubscribe(queue)

    def dispose(self) -> None:
        """Close observer streams and forget all state."""
        if self._disposed:
            return
        self._disposed = True
        for queue in list(self._subscribers):
            queue.put_nowait(None)
        self._subscribers.clear()
        self._service_errors.clear()
        self._breakers.clear()
        self._strategies.clear()
        self._error_history.clear()
        self._last_logged.clear()
        logger.info("error_recovery_service_disposed")

    async def _attempt_recovery(
        self,
        service_name: str,
        error_state: ErrorState,
        strategy: RecoveryStrategy,
        recovery_action: Optional[Callable[[], Awaitable[T]]],
    ) -> Optional[T]:
        logger.info("recovery_attempt", service=service_name)
        try:
            result = await strategy.recover(error_state)
            if not result.success:
                logger.warning("recovery_failed", service=service_name, message=result.message)
                return None

            logger.info("recovery_succeeded", service=service_name, message=result.message)
            self.clear_service_error(service_name)
            if recovery_action is not None:
                return await recovery_action()
            return None
        except Exception as e:
            logger.error("recovery_error", service=service_name, error=str(e))
            return None

    def _record_statistics(self, service_name: str, error_state: ErrorState) -> None:
        error_type = error_state.error_type.value
        self._error_history.append((self._clock(), service_name, error_state))
        self._errors_by_type[error_type] = self._errors_by_type.get(error_type, 0) + 1
        self._errors_by_service[service_name] = self._errors_by_service.get(service_name, 0) + 1
        self._total_errors += 1

    def _should_throttle(self, service_name: str, error_type: ErrorType) -> bool:
        key = (service_name, error_type)
        now = self._clock()
        last = self._last_logged.get(key)
        if last is not None and now - last < ERROR_LOG_COOLDOWN:
            return True
        self._last_logged[key] = now
        return False

    def _notify_error_state_change(self) -> None:
        if self._disposed:
            return
        snapshot = dict(self._service_errors)
        for queue in self._subscribers:
            queue.put_nowait(snapshot)
