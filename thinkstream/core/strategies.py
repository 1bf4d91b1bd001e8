"""Recovery strategies consulted before an error is surfaced."""
import asyncio
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from thinkstream.config import RecoveryConfig, app_config
from thinkstream.models.internal import ErrorState, ErrorType, RecoveryResult
from thinkstream.utils.logging import get_logger

logger = get_logger(__name__)


class RecoveryStrategy(ABC):
    """Something that tries to bring a failing service back."""

    @abstractmethod
    async def recover(self, error_state: ErrorState) -> RecoveryResult:
        """Attempt to recover from ``error_state``."""


class ConnectionRecoveryStrategy(RecoveryStrategy):
    """Recover by checking that the backend answers again."""

    def __init__(self, client, test_timeout: Optional[float] = None):
        """``client`` needs an async ``test_connection() -> bool``."""
        self.client = client
        self.test_timeout = (
            app_config.recovery.connection_test_timeout if test_timeout is None else test_timeout
        )

    async def recover(self, error_state: ErrorState) -> RecoveryResult:
        logger.info("connection_recovery_start", error_type=error_state.error_type.value)
        try:
            connected = await asyncio.wait_for(
                self.client.test_connection(), timeout=self.test_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("connection_recovery_timeout", timeout=self.test_timeout)
            return RecoveryResult.failed("Connection test timed out")
        except Exception as e:
            logger.error("connection_recovery_failed", error=str(e))
            return RecoveryResult.failed(f"Connection recovery failed: {e}")

        if connected:
            logger.info("connection_recovery_complete")
            return RecoveryResult.succeeded("Connection restored")
        return RecoveryResult.failed("Connection test failed")


class StreamingRecoveryStrategy(RecoveryStrategy):
    """Give the backend a cooldown before the caller retries the stream."""

    def __init__(self, cooldown: Optional[float] = None):
        """Initialize with a cooldown in seconds."""
        self.cooldown = app_config.recovery.streaming_cooldown if cooldown is None else cooldown

    async def recover(self, error_state: ErrorState) -> RecoveryResult:
        logger.info("streaming_recovery_start", cooldown=self.cooldown)
        await asyncio.sleep(self.cooldown)
        return RecoveryResult.succeeded(
            "Streaming service ready for retry",
            {"cooldown": self.cooldown},
        )


class StateRecoveryStrategy(RecoveryStrategy):
    """Reset local state and let it settle."""

    def __init__(
        self,
        reset_state_callback: Optional[Callable[[], None]] = None,
        settle_delay: Optional[float] = None,
    ):
        """Initialize with an optional reset callback."""
        self.reset_state_callback = reset_state_callback
        self.settle_delay = (
            app_config.recovery.state_settle_delay if settle_delay is None else settle_delay
        )

    async def recover(self, error_state: ErrorState) -> RecoveryResult:
        logger.info("state_recovery_start")
        try:
            if self.reset_state_callback is not None:
                self.reset_state_callback()
        except Exception as e:
            logger.error("state_recovery_failed", error=str(e))
            return RecoveryResult.failed(f"State recovery failed: {e}")

        await asyncio.sleep(self.settle_delay)
        return RecoveryResult.succeeded("State reset successfully")


class InputRecoveryStrategy(RecoveryStrategy):
    """Refuse to self-heal errors that need the user to change their input."""

    async def recover(self, error_state: ErrorState) -> RecoveryResult:
        if error_state.error_type in (ErrorType.VALIDATION, ErrorType.FORMAT):
            return RecoveryResult.failed("Error requires user intervention")
        return RecoveryResult.succeeded("Ready for retry")


class CompositeRecoveryStrategy(RecoveryStrategy):
    """Try strategies in order until one succeeds."""

    def __init__(self, strategies: List[RecoveryStrategy]):
        """Initialize with an ordered list of strategies."""
        self.strategies = list(strategies)

    async def recover(self, error_state: ErrorState) -> RecoveryResult:
        failures: List[str] = []
        total = len(self.strategies)

        for index, strategy in enumerate(self.strategies, start=1):
            logger.info("composite_recovery_attempt", strategy=index, total=total)
            try:
                result = await strategy.recover(error_state)
            except Exception as e:
                logger.error("composite_recovery_strategy_error", strategy=index, error=str(e))
                failures.append(f"Strategy {index} failed: {e}")
                continue

            if result.success:
                logger.info("composite_recovery_success", strategy=index)
                return result
            failures.append(result.message or "Unknown error")

        return RecoveryResult.failed(
            "All recovery strategies failed: " + "; ".join(failures)
        )


def create_recovery_strategy(
    service_name: str,
    client=None,
    reset_state_callback: Optional[Callable[[], None]] = None,
    config: Optional[RecoveryConfig] = None,
) -> RecoveryStrategy:
    """Pick a strategy suited to a named service."""
    config = config or app_config.recovery
    connection: List[RecoveryStrategy] = []
    if client is not None:
        connection.append(
            ConnectionRecoveryStrategy(client, test_timeout=config.connection_test_timeout)
        )
    state = StateRecoveryStrategy(reset_state_callback, settle_delay=config.state_settle_delay)

    name = service_name.lower()
    if name in ("ollama", "connection"):
        return connection[0] if connection else state
    if name in ("streaming", "messagestreaming"):
        return CompositeRecoveryStrategy(
            connection + [StreamingRecoveryStrategy(config.streaming_cooldown)]
        )
    if name in ("fileprocessing", "input"):
        return InputRecoveryStrategy()
    if name in ("state", "chatstate"):
        return state
    return CompositeRecoveryStrategy(connection + [state])
