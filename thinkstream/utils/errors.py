"""Exception hierarchy for the streaming pipeline."""
from typing import Optional


class ThinkstreamError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class BackendConnectionError(ThinkstreamError):
    """The backend could not be reached."""

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.original_error = original_error

    def __str__(self) -> str:
        if self.original_error is not None:
            return f"{self.message} (Error: {self.original_error})"
        return self.message


class BackendApiError(ThinkstreamError):
    """The backend answered with an error."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.original_error = original_error

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.message} (Status code: {self.status_code})"
        return self.message


class OperationTimeoutError(ThinkstreamError, TimeoutError):
    """An operation did not finish within its time limit."""

    def __init__(self, message: str, timeout: Optional[float] = None):
        super().__init__(message)
        self.timeout = timeout


class CancellationError(ThinkstreamError):
    """An operation was cancelled through its cancellation token."""


class StateError(ThinkstreamError):
    """An operation was attempted in an invalid state."""


class ServiceDisposedError(StateError):
    """A disposed service was used."""


class FormatError(ThinkstreamError, ValueError):
    """Backend data could not be parsed."""


class ServiceUnavailableError(ThinkstreamError):
    """A service's circuit breaker is open."""

    def __init__(self, message: str, service_name: Optional[str] = None):
        super().__init__(message)
        self.service_name = service_name
