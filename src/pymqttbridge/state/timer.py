"""Single-shot rearmable timer driven by the asyncio event loop."""

from __future__ import annotations

import asyncio
from collections.abc import Callable


class QuietPeriodTimer:
    """Fire *callback* once the loop has been quiet for *delay* seconds.

    Every :meth:`arm` restarts the countdown; at most one pending handle
    exists at any time.
    """

    def __init__(
        self,
        delay: float,
        callback: Callable[[], None],
        *,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        if delay < 0:
            raise ValueError("delay must be >= 0")
        self._delay = delay
        self._callback = callback
        self._loop = loop
        self._handle: asyncio.TimerHandle | None = None

    @property
    def delay(self) -> float:
        return self._delay

    @property
    def armed(self) -> bool:
        """Whether a countdown is pending."""
        return self._handle is not None

    def arm(self) -> None:
        """Start the countdown, restarting it if already pending."""
        self.cancel()
        loop = self._loop or asyncio.get_running_loop()
        self._handle = loop.call_later(self._delay, self._fire)

    def cancel(self) -> None:
        handle = self._handle
        self._handle = None
        if handle is not None:
            handle.cancel()

    def _fire(self) -> None:
        self._handle = None
        self._callback()
