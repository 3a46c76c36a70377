"""Coalescing of local state mutations into debounced publishes.

The coalescer owns the authoritative local snapshot. Each :meth:`mutate`
merges a partial update, queues the caller's completion callback and
restarts the quiet-period timer. When the timer fires, one flush publishes
the fully merged snapshot and resolves every queued callback with the same
outcome.

Mutations that arrive while a flush is in flight land in a fresh queue and
are carried by the next flush; a callback is never resolved twice and never
dropped.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from pymqttbridge._logfmt import summarize_for_log
from pymqttbridge.config import DEFAULT_QUIET_PERIOD
from pymqttbridge.exceptions import BridgeConnectionError, BridgePublishError
from pymqttbridge.gateway import encode_state
from pymqttbridge.models import FlushResult
from pymqttbridge.state.timer import QuietPeriodTimer

_logger = logging.getLogger(__name__)

CompletionCallback = Callable[[BaseException | None], None]
Publisher = Callable[[dict[str, Any]], Awaitable[None]]


class StateCoalescer:
    """Merge partial state updates and publish them once per quiet period.

    All methods must be called from the event loop thread.
    """

    def __init__(
        self,
        publish: Publisher,
        *,
        quiet_period: float = DEFAULT_QUIET_PERIOD,
        initial_state: Mapping[str, Any] | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._publish = publish
        self._logger = logger or _logger
        self._state: dict[str, Any] = copy.deepcopy(dict(initial_state)) if initial_state else {}
        self._pending: list[CompletionCallback] = []
        self._timer = QuietPeriodTimer(quiet_period, self._on_quiet_period, loop=loop)
        self._flush_lock = asyncio.Lock()
        self._flush_tasks: set[asyncio.Task[None]] = set()
        self._sequence = 0
        self._last_flush: FlushResult | None = None
        self._closed = False

    @property
    def snapshot(self) -> dict[str, Any]:
        """Copy of the current merged state."""
        return copy.deepcopy(self._state)

    @property
    def pending(self) -> int:
        """Number of callbacks waiting for the next flush."""
        return len(self._pending)

    @property
    def flush_pending(self) -> bool:
        """Whether a flush is scheduled or running."""
        return self._timer.armed or bool(self._flush_tasks)

    @property
    def last_flush(self) -> FlushResult | None:
        return self._last_flush

    def mutate(self, partial: Mapping[str, Any], on_complete: CompletionCallback) -> None:
        """Merge *partial* into the snapshot and schedule a publish.

        *on_complete* is called exactly once, after the flush carrying this
        update finished, with ``None`` on success or the flush error.

        A partial that cannot be encoded raises :class:`BridgePublishError`
        here; nothing is queued and the snapshot is left as it was.
        """
        if self._closed:
            raise BridgeConnectionError("State coalescer is closed")

        update = copy.deepcopy(dict(partial))
        encode_state(update)
        self._logger.debug("Setting state %s", summarize_for_log(update))
        self._pending.append(on_complete)
        self._state.update(update)
        self._timer.arm()

    async def set_state(self, partial: Mapping[str, Any]) -> None:
        """Awaitable form of :meth:`mutate`; raises the flush error on failure."""
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def _on_complete(error: BaseException | None) -> None:
            if future.done():
                return
            if error is None:
                future.set_result(None)
            else:
                future.set_exception(error)

        self.mutate(partial, _on_complete)
        await future

    def reset(self, state: Mapping[str, Any]) -> None:
        """Replace the snapshot wholesale, e.g. after remote reconciliation.

        Queued callbacks and the timer are left untouched.
        """
        self._state = copy.deepcopy(dict(state))

    async def aclose(self) -> None:
        """Stop scheduling flushes and settle every outstanding callback.

        A flush already running is awaited. Callbacks still queued behind
        the cancelled timer fail with :class:`BridgePublishError`.
        """
        self._closed = True
        self._timer.cancel()
        if self._flush_tasks:
            await asyncio.gather(*self._flush_tasks, return_exceptions=True)
        batch, self._pending = self._pending, []
        if batch:
            self._resolve(batch, BridgePublishError("Bridge closed before state was published"))

    def _on_quiet_period(self) -> None:
        task = asyncio.get_running_loop().create_task(self._flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def _flush(self) -> None:
        async with self._flush_lock:
            batch, self._pending = self._pending, []
            snapshot = copy.deepcopy(self._state)
            self._sequence += 1
            sequence = self._sequence
            self._logger.debug(
                "Flush #%d publishing %d field(s) for %d caller(s)",
                sequence,
                len(snapshot),
                len(batch),
            )

            error: BaseException | None = None
            try:
                await self._publish(snapshot)
            except asyncio.CancelledError:
                self._resolve(batch, BridgePublishError("Flush cancelled before the broker acknowledged it"))
                raise
            except Exception as exc:
                self._logger.warning("Flush #%d failed: %s", sequence, exc)
                error = exc

            self._last_flush = FlushResult(
                sequence=sequence,
                snapshot=snapshot,
                batch_size=len(batch),
                error=error,
            )
            self._resolve(batch, error)

    def _resolve(self, batch: list[CompletionCallback], error: BaseException | None) -> None:
        for callback in batch:
            try:
                callback(error)
            except Exception:
                self._logger.exception("State completion callback raised")
