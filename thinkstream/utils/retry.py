"""Error classification, retry and timeout utilities using tenacity."""
import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

import aiohttp
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from thinkstream.config import RetryConfig
from thinkstream.models.internal import ErrorState, ErrorType
from .cancellation import CancellationToken
from .errors import (
    BackendApiError,
    BackendConnectionError,
    CancellationError,
    FormatError,
    OperationTimeoutError,
    ServiceUnavailableError,
    StateError,
)
from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
RetryCallback = Callable[[BaseException, int], None]

RETRYABLE_ERROR_TYPES = frozenset({
    ErrorType.CONNECTION,
    ErrorType.API,
    ErrorType.TIMEOUT,
})

USER_FRIENDLY_MESSAGES: Dict[ErrorType, str] = {
    ErrorType.CONNECTION: "Unable to connect to the server. Please check your connection settings.",
    ErrorType.API: "An error occurred while communicating with the server.",
    ErrorType.TIMEOUT: "The operation timed out. Please try again.",
    ErrorType.CANCELLATION: "Operation was cancelled.",
    ErrorType.VALIDATION: "Invalid input provided. Please check your data.",
    ErrorType.STATE: "Invalid operation state. Please refresh and try again.",
    ErrorType.FORMAT: "Data format error. Please try again.",
    ErrorType.UNKNOWN: "An unexpected error occurred. Please try again.",
}

_GENERIC_SUGGESTIONS = [
    "Try the operation again",
    "Restart the application",
    "Check application logs for details",
]

RECOVERY_SUGGESTIONS: Dict[ErrorType, List[str]] = {
    ErrorType.CONNECTION: [
        "Check your internet connection",
        "Verify the Ollama server is running",
        "Check server URL and port settings",
        "Try refreshing the connection",
    ],
    ErrorType.API: [
        "Check if the selected model is available",
        "Verify server configuration",
        "Try with a different model",
        "Check server logs for details",
    ],
    ErrorType.TIMEOUT: [
        "Try again with a shorter request",
        "Check your internet connection speed",
        "Increase timeout settings if available",
    ],
    ErrorType.CANCELLATION: [
        "Send the message again to restart generation",
    ],
    ErrorType.VALIDATION: [
        "Check your input data",
        "Ensure all required fields are filled",
        "Verify file formats are supported",
    ],
    ErrorType.STATE: [
        "Refresh the application",
        "Try creating a new chat",
        "Restart the application if needed",
    ],
    ErrorType.FORMAT: _GENERIC_SUGGESTIONS,
    ErrorType.UNKNOWN: _GENERIC_SUGGESTIONS,
}


def classify_error(error: BaseException) -> ErrorType:
    """Map an exception to an ErrorType.

    Order matters: several library exceptions sit in more than one branch
    of the builtin hierarchy (aiohttp's ServerTimeoutError is both a
    connection error and a TimeoutError, JSONDecodeError is a ValueError).
    """
    if isinstance(error, (CancellationError, asyncio.CancelledError)):
        return ErrorType.CANCELLATION
    if isinstance(error, (OperationTimeoutError, asyncio.TimeoutError, TimeoutError)):
        return ErrorType.TIMEOUT
    if isinstance(error, (
        BackendConnectionError,
        ServiceUnavailableError,
        aiohttp.ClientConnectionError,
        ConnectionError,
    )):
        return ErrorType.CONNECTION
    if isinstance(error, (BackendApiError, aiohttp.ClientResponseError)):
        return ErrorType.API
    if isinstance(error, (StateError, asyncio.InvalidStateError)):
        return ErrorType.STATE
    if isinstance(error, (FormatError, json.JSONDecodeError, UnicodeError)):
        return ErrorType.FORMAT
    if isinstance(error, (ValueError, TypeError)):
        return ErrorType.VALIDATION
    return ErrorType.UNKNOWN


def is_retryable_error(error: BaseException) -> bool:
    """Transient kinds (connection, api, timeout) are retryable."""
    return classify_error(error) in RETRYABLE_ERROR_TYPES


def _as_error_type(error: Union[BaseException, ErrorType]) -> ErrorType:
    if isinstance(error, ErrorType):
        return error
    return classify_error(error)


def get_user_friendly_message(error: Union[BaseException, ErrorType]) -> str:
    """Human-readable message for an error or error type."""
    return USER_FRIENDLY_MESSAGES[_as_error_type(error)]


def get_recovery_suggestions(error: Union[BaseException, ErrorType]) -> List[str]:
    """Suggested user actions for an error or error type."""
    return list(RECOVERY_SUGGESTIONS[_as_error_type(error)])


def create_error_state(
    error: BaseException,
    operation: Optional[str] = None,
    can_retry: Optional[bool] = None,
    context: Optional[Dict[str, Any]] = None,
) -> ErrorState:
    """Build an ErrorState for an exception."""
    error_type = classify_error(error)
    return ErrorState(
        error=error,
        error_type=error_type,
        message=get_user_friendly_message(error_type),
        suggestions=get_recovery_suggestions(error_type),
        can_retry=is_retryable_error(error) if can_retry is None else can_retry,
        operation=operation,
        context=context,
    )


def log_error(
    operation: str,
    error: BaseException,
    context: Optional[Dict[str, Any]] = None,
) -> None:
    """Log an error with its classification."""
    error_type = classify_error(error)
    if error_type is ErrorType.CANCELLATION:
        logger.info("operation_cancelled", operation=operation, context=context)
        return
    logger.error(
        "operation_error",
        operation=operation,
        error_type=error_type.value,
        error=str(error),
        context=context,
    )


async def sleep_with_cancellation(
    delay: float,
    cancellation_token: Optional[CancellationToken] = None,
) -> None:
    """Sleep for ``delay`` seconds, waking early with CancellationError."""
    if cancellation_token is None:
        await asyncio.sleep(delay)
        return

    cancellation_token.raise_if_cancelled("Delay cancelled")
    try:
        await asyncio.wait_for(cancellation_token.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise CancellationError("Delay cancelled")


async def execute_with_retry(
    operation: Operation,
    max_retries: int = 3,
    on_retry: Optional[RetryCallback] = None,
    cancellation_token: Optional[CancellationToken] = None,
    operation_name: Optional[str] = None,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
) -> T:
    """Run ``operation`` with up to ``max_retries`` retries.

    Attempts are numbered from 1. ``on_retry(error, attempt)`` is called
    after a failed attempt that will be retried. Waits grow as
    ``base_delay * 2 ** (attempt - 1)``, capped at ``max_delay``.
    Cancellation is checked before every attempt and during waits.
    """
    name = operation_name or "operation"
    predicate = should_retry or is_retryable_error
    attempts = 0

    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        logger.warning(
            "operation_retrying",
            operation=name,
            attempt=retry_state.attempt_number,
            max_retries=max_retries,
            delay=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(error),
        )
        if on_retry is not None:
            on_retry(error, retry_state.attempt_number)

    async def sleep(seconds: float) -> None:
        await sleep_with_cancellation(seconds, cancellation_token)

    async def attempt_operation():
        nonlocal attempts
        if cancellation_token is not None:
            cancellation_token.raise_if_cancelled()
        attempts += 1
        return await operation()

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception(
            lambda e: not isinstance(e, CancellationError) and predicate(e)
        ),
        before_sleep=before_sleep,
        sleep=sleep,
        reraise=True,
    )

    try:
        result = await retrying(attempt_operation)
    except CancellationError:
        logger.info("operation_cancelled", operation=name, attempts=attempts)
        raise
    except Exception as e:
        logger.error(
            "operation_failed",
            operation=name,
            attempts=attempts,
            error_type=classify_error(e).value,
            error=str(e),
        )
        raise

    if attempts > 1:
        logger.info("operation_succeeded_after_retry", operation=name, attempts=attempts)
    return result


async def execute_with_timeout(
    operation: Operation,
    timeout: Optional[float],
    operation_name: Optional[str] = None,
) -> T:
    """Race ``operation`` against a timer.

    When the timer wins the operation is cancelled and its result, if any,
    is discarded.
    """
    name = operation_name or "operation"
    try:
        return await asyncio.wait_for(operation(), timeout=timeout)
    except OperationTimeoutError:
        raise
    except asyncio.TimeoutError as e:
        logger.warning("operation_timed_out", operation=name, timeout=timeout)
        raise OperationTimeoutError(
            f"{name} timed out after {timeout}s", timeout
        ) from e


async def _cancel_and_wait(task: "asyncio.Future") -> None:
    if not task.done():
        task.cancel()
        await asyncio.wait({task})


async def execute_cancellable(
    operation: Operation,
    cancellation_token: Optional[CancellationToken],
    operation_name: Optional[str] = None,
) -> T:
    """Race ``operation`` against ``cancellation_token``.

    If the token is cancelled first the operation is cancelled, awaited until
    it has unwound, and CancellationError is raised. Whatever the operation
    produced after the cancel, result or error, is discarded.
    """
    if cancellation_token is None:
        return await operation()

    name = operation_name or "operation"
    cancellation_token.raise_if_cancelled(f"{name} cancelled")
    work = asyncio.ensure_future(operation())
    cancelled = asyncio.ensure_future(cancellation_token.wait())
    try:
        await asyncio.wait({work, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        cancelled.cancel()
        await _cancel_and_wait(work)
        raise
    cancelled.cancel()

    if cancellation_token.is_cancelled:
        await _cancel_and_wait(work)
        if not work.cancelled():
            # Retrieve it so the loop does not report an unhandled error.
            work.exception()
        logger.info("operation_interrupted", operation=name)
        raise CancellationError(f"{name} cancelled")
    return work.result()


class ErrorHandler:
    """Retry and timeout policy bound to a RetryConfig."""

    classify_error = staticmethod(classify_error)
    is_retryable_error = staticmethod(is_retryable_error)
    get_user_friendly_message = staticmethod(get_user_friendly_message)
    get_recovery_suggestions = staticmethod(get_recovery_suggestions)
    create_error_state = staticmethod(create_error_state)
    log_error = staticmethod(log_error)

    def __init__(self, config: Optional[RetryConfig] = None):
        """Initialize with a retry policy."""
        self.config = config or RetryConfig()

    async def execute_with_retry(
        self,
        operation: Operation,
        max_retries: Optional[int] = None,
        on_retry: Optional[RetryCallback] = None,
        cancellation_token: Optional[CancellationToken] = None,
        operation_name: Optional[str] = None,
    ) -> T:
        """Retry ``operation`` using this handler's delays."""
        return await execute_with_retry(
            operation,
            max_retries=self.config.max_retries if max_retries is None else max_retries,
            on_retry=on_retry,
            cancellation_token=cancellation_token,
            operation_name=operation_name,
            base_delay=self.config.base_delay,
            max_delay=self.config.max_delay,
        )

    async def execute_with_timeout(
        self,
        operation: Operation,
        timeout: Optional[float] = None,
        operation_name: Optional[str] = None,
    ) -> T:
        """Run ``operation`` under this handler's default timeout."""
        return await execute_with_timeout(
            operation,
            self.config.operation_timeout if timeout is None else timeout,
            operation_name=operation_name,
        )

    async def execute(
        self,
        operation: Operation,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
        on_retry: Optional[RetryCallback] = None,
        cancellation_token: Optional[CancellationToken] = None,
        operation_name: Optional[str] = None,
    ) -> T:
        """Retry ``operation`` with every attempt bounded by the timeout.

        A cancel on ``cancellation_token`` interrupts the attempt in flight.
        """
        async def timed_attempt():
            return await execute_cancellable(
                lambda: self.execute_with_timeout(operation, timeout, operation_name),
                cancellation_token,
                operation_name,
            )

        return await self.execute_with_retry(
            timed_attempt,
            max_retries=max_retries,
            on_retry=on_retry,
            cancellation_token=cancellation_token,
            operation_name=operation_name,
        )
