"""Throttle for outbound render calls.

The first call in a quiet period runs immediately and opens a window.
Calls inside the window replace each other; only the latest one runs when
the window ends. A flush bypasses the window.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional, Set

logger = logging.getLogger(__name__)

Thunk = Callable[[], Any]


class RateLimiter:
    """Keeps at most one call per interval, never losing the latest one.

    Thunks may be plain callables or return an awaitable; awaitables run as
    tasks and their failures are logged rather than raised.
    """

    def __init__(self, interval: float):
        """Initialize the limiter.

        Args:
            interval: Minimum spacing between calls, in seconds
        """
        self._interval = interval
        self._pending: Optional[Thunk] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._window_ends_at = 0.0
        self._inflight: Set["asyncio.Future[Any]"] = set()

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def has_pending(self) -> bool:
        """Whether a call is waiting for the window to end."""
        return self._pending is not None

    def schedule(self, fn: Thunk) -> None:
        """Run fn now, or keep it as the pending call if a window is open."""
        if self._timer is None:
            self._run(fn)
            self._start_window()
        else:
            self._pending = fn

    async def flush(self) -> None:
        """Run the pending call immediately and wait for in-flight calls."""
        fn, self._pending = self._pending, None
        if fn is not None:
            self._cancel_timer()
            self._run(fn)
            self._start_window()
        await self._wait_inflight()

    def cancel(self) -> None:
        """Drop the pending call without running it."""
        self._pending = None

    async def cancel_and_wait(self) -> None:
        """Drop the pending call and wait out the current window.

        After this returns no throttled call can land, so a manual render
        sent next is guaranteed to be the last one.
        """
        self._pending = None
        if self._timer is not None:
            remaining = self._window_ends_at - asyncio.get_running_loop().time()
            if remaining > 0:
                await asyncio.sleep(remaining)
        await self._wait_inflight()

    def _start_window(self) -> None:
        loop = asyncio.get_running_loop()
        self._window_ends_at = loop.time() + self._interval
        self._timer = loop.call_later(self._interval, self._on_window_end)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_window_end(self) -> None:
        self._timer = None
        fn, self._pending = self._pending, None
        if fn is not None:
            self._run(fn)
            self._start_window()

    def _run(self, fn: Thunk) -> None:
        try:
            result = fn()
        except Exception as e:
            logger.error(f"Rate-limited call failed: {e}", exc_info=True)
            return

        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._inflight.add(future)
            future.add_done_callback(self._on_done)

    def _on_done(self, future: "asyncio.Future[Any]") -> None:
        self._inflight.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Rate-limited call failed: {error}", exc_info=error)

    async def _wait_inflight(self) -> None:
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
