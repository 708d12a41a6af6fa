"""
Backoff Timer

Cancellable retry scheduler driven by a finite backoff sequence. Once the
sequence is exhausted the final delay repeats indefinitely.
"""

import asyncio
import inspect
from typing import Any, Callable, Sequence


class Timer:
    """
    Schedules a callback after successive backoff delays.

    Used by the connection manager for reconnects and by each channel for
    rejoins. The callback may be a plain function or a coroutine function;
    coroutines run as tasks owned by the timer.
    """

    def __init__(self, callback: Callable[[], Any], backoff: Sequence[float]) -> None:
        if not backoff:
            raise ValueError("backoff sequence must not be empty")

        self.callback = callback
        self.backoff = tuple(float(delay) for delay in backoff)
        self.tries = 0

        self._handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        """Whether an invocation is scheduled."""
        return self._handle is not None

    def next_delay(self) -> float:
        """Delay the next schedule_timeout() call will use."""
        return self.backoff[min(self.tries, len(self.backoff) - 1)]

    def schedule_timeout(self) -> None:
        """Cancel any pending invocation and schedule the next one."""
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.next_delay(), self._fire)

    def reset(self) -> None:
        """Cancel any pending invocation and rewind the backoff position."""
        self.tries = 0
        self.cancel()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self.tries += 1
        result = self.callback()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
