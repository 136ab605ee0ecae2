"""Cooperative cancellation token shared between a task and its stream."""

import asyncio
import logging
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """A one-shot cancellation signal.

    The token is passed explicitly through every async boundary of a task.
    Consumers poll ``cancelled`` between events, await ``wait()``, or
    register callbacks that fire once when ``cancel()`` is first called.
    A user ``/stop`` and a timeout use the same token type; ``reason``
    tells them apart.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        """Whether cancel() has been called."""
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        """Reason passed to the first cancel() call."""
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Trigger the token.

        Args:
            reason: Short machine-readable reason, e.g. "user" or "timeout"

        Returns:
            True if this call triggered the token, False if it was already cancelled
        """
        if self._event.is_set():
            return False

        self._reason = reason
        self._event.set()

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Cancellation callback failed: {e}", exc_info=True)
        return True

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback to run on cancellation.

        The callback runs immediately if the token is already cancelled.

        Args:
            callback: Zero-argument callable

        Returns:
            A function that unregisters the callback
        """
        if self._event.is_set():
            callback()
            return lambda: None

        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    async def wait(self) -> None:
        """Wait until the token is cancelled."""
        await self._event.wait()
