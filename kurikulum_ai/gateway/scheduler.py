"""Request Scheduler — single-lane FIFO queue for generation calls.

One worker task drains the queue strictly one item at a time:
  1. wait on the in-process RequestPacer
  2. run the call and resolve the caller's future
  3. sleep the inter-call delay before the next item

Bursts therefore never reach the remote service concurrently from one process,
regardless of how many credentials the pool holds. A whole retry/fallback saga
runs inside a single slot.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from kurikulum_ai.gateway.errors import SchedulerClosedError
from kurikulum_ai.gateway.rate_limiter import RequestPacer
from kurikulum_ai.gateway.types import RequestEnvelope

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestScheduler:
    """Serialized FIFO executor with global pacing.

    Usage:
        scheduler = RequestScheduler(RequestPacer(15), inter_call_delay=0.5)
        await scheduler.start()
        result = await scheduler.enqueue(lambda: do_call(), operation="generate_tp")
        await scheduler.stop()
    """

    def __init__(self, pacer: RequestPacer | None = None, inter_call_delay: float = 0.5):
        self.pacer = pacer or RequestPacer()
        self.inter_call_delay = inter_call_delay
        self._queue: asyncio.Queue[RequestEnvelope] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._in_flight: RequestEnvelope | None = None
        self._closed = False

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def queue_size(self) -> int:
        """Pending items plus the one currently executing."""
        return self._queue.qsize() + (1 if self._in_flight is not None else 0)

    async def start(self) -> None:
        if self.running:
            return
        self._closed = False
        self._worker = asyncio.create_task(self._run(), name="generation-scheduler")
        logger.info("Request scheduler started (delay=%.2fs)", self.inter_call_delay)

    async def stop(self) -> None:
        """Cancel the worker and fail everything still waiting."""
        self._closed = True
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        dropped = 0
        while not self._queue.empty():
            envelope = self._queue.get_nowait()
            if envelope.future is not None and not envelope.future.done():
                envelope.future.set_exception(SchedulerClosedError("Scheduler stopped before the request ran"))
            dropped += 1
        if dropped:
            logger.warning("Scheduler stopped with %d pending request(s)", dropped)
        logger.info("Request scheduler stopped")

    async def enqueue(self, fn: Callable[[], Awaitable[T]], operation: str = "") -> T:
        """Queue ``fn`` and wait for its result (or exception)."""
        if self._closed:
            raise SchedulerClosedError("Scheduler is stopped")
        if not self.running:
            await self.start()

        envelope = RequestEnvelope(payload=fn, operation=operation)
        envelope.future = asyncio.get_running_loop().create_future()
        await self._queue.put(envelope)

        logger.debug(
            "Enqueued %s request %s (queue=%d)",
            operation or "generation",
            envelope.request_id,
            self.queue_size,
            extra={"request_id": envelope.request_id},
        )
        return await envelope.future

    async def _run(self) -> None:
        while True:
            envelope = await self._queue.get()
            self._in_flight = envelope
            try:
                await self._execute(envelope)
            finally:
                self._in_flight = None
                self._queue.task_done()
            await asyncio.sleep(self.inter_call_delay)

    async def _execute(self, envelope: RequestEnvelope) -> None:
        future = envelope.future
        if future is not None and future.done():
            # Caller went away (cancelled) before its turn
            return

        result: Any = None
        try:
            await self.pacer.acquire()
            result = await envelope.payload()
        except asyncio.CancelledError:
            if future is not None and not future.done():
                future.set_exception(SchedulerClosedError("Scheduler stopped while the request was running"))
            raise
        except Exception as e:
            if future is not None and not future.done():
                future.set_exception(e)
            return

        if future is not None and not future.done():
            future.set_result(result)

    def get_stats(self) -> dict:
        return {
            "queue_size": self.queue_size,
            "running": self.running,
            **self.pacer.get_stats(),
        }
