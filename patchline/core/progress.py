"""Best-effort progress delivery to a single subscriber.

Events are queued and handed to the subscriber by a background task, so a
slow or failing subscriber never stalls the download and apply path. When
the queue is full new events are dropped.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from collections.abc import Callable

import structlog

from patchline.core.types import ProgressEvent
from patchline.core.utils import clamp_percent

logger = structlog.get_logger()

ProgressCallback = Callable[[ProgressEvent], object]

_STOP = object()


class ProgressReporter:
    """Queue-backed progress channel.

    Args:
        callback: Subscriber, sync or async; None discards every event
        max_pending: Queue capacity before events are dropped
    """

    def __init__(self, callback: ProgressCallback | None = None, max_pending: int = 256):
        self.callback = callback
        self.dropped = 0
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=max_pending)
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        """Start the delivery task on the running event loop."""
        if self.callback is not None and self._task is None:
            self._task = asyncio.create_task(self._drain())

    def emit(self, event: ProgressEvent) -> None:
        """Queue an event without waiting."""
        if self.callback is None:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1

    def report(
        self,
        phase: str,
        percent: float,
        message_key: str,
        bytes_downloaded: int = 0,
        bytes_total: int = 0,
        *args: object,
    ) -> None:
        """Build and queue an event."""
        self.emit(
            ProgressEvent(
                phase=phase,
                percent=clamp_percent(percent),
                message_key=message_key,
                bytes_downloaded=bytes_downloaded,
                bytes_total=bytes_total,
                args=list(args),
            )
        )

    async def _drain(self) -> None:
        assert self.callback is not None
        while True:
            event = await self._queue.get()
            if event is _STOP:
                return
            try:
                result = self.callback(event)  # type: ignore[arg-type]
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning("progress_subscriber_failed", error=str(e))

    async def aclose(self, timeout: float = 5.0) -> None:
        """Deliver pending events and stop the delivery task.

        Args:
            timeout: Seconds to wait for the subscriber before giving up
        """
        task = self._task
        if task is None:
            return
        self._task = None
        try:
            await asyncio.wait_for(self._queue.put(_STOP), timeout)
            await asyncio.wait_for(task, timeout)
        except TimeoutError:
            logger.warning("progress_flush_timeout", pending=self._queue.qsize())
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self.dropped:
            logger.debug("progress_events_dropped", count=self.dropped)

    async def __aenter__(self) -> ProgressReporter:
        self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()
