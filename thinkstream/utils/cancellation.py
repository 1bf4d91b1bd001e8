"""Cooperative cancellation tokens."""
import asyncio
import itertools
from typing import Callable, Dict, List, Optional

from .errors import CancellationError, StateError
from .logging import get_logger

logger = get_logger(__name__)


class CancellationToken:
    """A shared flag that in-flight operations poll to detect cancellation.

    The token never touches the operations it is shared with. Holders either
    check ``is_cancelled`` between steps or register a listener. Listeners
    run exactly once, on the first call to ``cancel()``; a listener added
    after cancellation runs immediately.
    """

    def __init__(self, token_id: Optional[str] = None):
        self.token_id = token_id
        self._cancelled = False
        self._listeners: List[Callable[[], None]] = []
        self._event: Optional[asyncio.Event] = None

    @property
    def is_cancelled(self) -> bool:
        """Whether cancellation has been requested."""
        return self._cancelled

    def cancel(self) -> None:
        """Request cancellation and notify listeners once."""
        if self._cancelled:
            return
        self._cancelled = True

        if self._event is not None:
            self._event.set()

        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            self._run_listener(listener)

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a callback for cancellation.

        Returns a function that unregisters the callback.
        """
        if self._cancelled:
            self._run_listener(listener)
            return lambda: None

        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def raise_if_cancelled(self, message: str = "Operation cancelled") -> None:
        """Raise CancellationError if cancellation was requested."""
        if self._cancelled:
            raise CancellationError(message)

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        if self._cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    def _run_listener(self, listener: Callable[[], None]) -> None:
        try:
            listener()
        except Exception as e:
            logger.error("cancellation_listener_failed", error=str(e))

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled})"


class CancellationManager:
    """Hand out cancellation tokens and cancel them in bulk."""

    def __init__(self):
        """Initialize with no active tokens."""
        self._active_tokens: Dict[str, CancellationToken] = {}
        self._ids = itertools.count(1)
        self._disposed = False

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def active_token_count(self) -> int:
        return 0 if self._disposed else len(self._active_tokens)

    @property
    def has_active_tokens(self) -> bool:
        return self.active_token_count > 0

    def create_token(self) -> CancellationToken:
        """Create and track a new token."""
        if self._disposed:
            raise StateError("CancellationManager has been disposed")

        token_id = f"token-{next(self._ids)}"
        token = CancellationToken(token_id)
        self._active_tokens[token_id] = token
        logger.debug("cancellation_token_created", token_id=token_id)
        return token

    def cancel_token(self, token_id: str) -> None:
        """Cancel and forget a single token."""
        if self._disposed:
            return
        token = self._active_tokens.pop(token_id, None)
        if token is not None:
            token.cancel()
            logger.debug("cancellation_token_cancelled", token_id=token_id)

    def cancel_all(self) -> None:
        """Cancel every active token."""
        if self._disposed:
            return
        logger.info("cancelling_all_tokens", count=len(self._active_tokens))
        for token in self._active_tokens.values():
            token.cancel()
        self._cleanup()

    def is_token_cancelled(self, token_id: str) -> bool:
        """Unknown tokens count as cancelled."""
        if self._disposed:
            return True
        token = self._active_tokens.get(token_id)
        return token is None or token.is_cancelled

    def cleanup(self) -> None:
        """Forget tokens that were already cancelled."""
        if not self._disposed:
            self._cleanup()

    def get_status(self) -> Dict[str, object]:
        """Snapshot of the tracked tokens."""
        if self._disposed:
            return {"disposed": True, "active_tokens": 0, "tokens": {}}
        return {
            "disposed": False,
            "active_tokens": len(self._active_tokens),
            "tokens": {
                token_id: token.is_cancelled
                for token_id, token in self._active_tokens.items()
            },
        }

    def dispose(self) -> None:
        """Cancel everything and refuse new tokens."""
        if self._disposed:
            return
        logger.info("cancellation_manager_disposed")
        self.cancel_all()
        self._disposed = True

    def _cleanup(self) -> None:
        cancelled = [
            token_id
            for token_id, token in self._active_tokens.items()
            if token.is_cancelled
        ]
        for token_id in cancelled:
            del self._active_tokens[token_id]
        if cancelled:
            logger.debug("cancellation_tokens_cleaned", count=len(cancelled))
