"""Utility modules."""
from .cancellation import CancellationManager, CancellationToken
from .logging import setup_logging, get_logger
from .retry import (
    ErrorHandler,
    classify_error,
    create_error_state,
    execute_cancellable,
    execute_with_retry,
    execute_with_timeout,
    get_recovery_suggestions,
    get_user_friendly_message,
    is_retryable_error,
    log_error,
)

__all__ = [
    "CancellationManager",
    "CancellationToken",
    "setup_logging",
    "get_logger",
    "ErrorHandler",
    "classify_error",
    "create_error_state",
    "execute_cancellable",
    "execute_with_retry",
    "execute_with_timeout",
    "get_recovery_suggestions",
    "get_user_friendly_message",
    "is_retryable_error",
    "log_error",
]
