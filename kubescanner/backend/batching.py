"""Batching upload pipeline.

Reconcilers hand events to :meth:`BatchingPipeline.add`.  Events accumulate in
one shared buffer which is flushed as a single Batch when it holds
``max_items`` events or ``max_interval`` seconds after its first event arrived,
whichever happens first.  Each flush swaps the buffer out under the lock and
uploads it outside the lock, so new events immediately start the next batch
while earlier uploads are still in flight.

``add`` waits for the batch its event ended up in and re-raises that batch's
upload error, which makes the control loop retry the reconciliation.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Protocol

from kubescanner.errors import PipelineClosedError
from kubescanner.models.events import Batch, UpsertEvent
from kubescanner.observability.logging import get_logger

_log = get_logger("backend.batching")


class BatchSender(Protocol):
    async def send(self, batch: Batch) -> None: ...


class _PendingBatch:
    """A batch still accepting events, with the future its producers wait on."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self.batch = Batch()
        self.done: asyncio.Future[None] = loop.create_future()
        self.timer: asyncio.TimerHandle | None = None


def _consume_exception(future: asyncio.Future[None]) -> None:
    # producers may have been cancelled; keep asyncio from warning about an
    # exception nobody retrieved
    if not future.cancelled():
        future.exception()


class BatchingPipeline:
    """Aggregates events from concurrent reconcilers into bounded batches.

    Args:
        sender:       Uploads one batch; usually an UploadClient.
        max_items:    Flush as soon as the buffer holds this many events.
        max_interval: Flush this many seconds after the buffer's first event.
    """

    def __init__(self, sender: BatchSender, max_items: int = 100, max_interval: float = 10.0) -> None:
        if max_items < 1:
            raise ValueError("max_items must be at least 1")
        self._sender = sender
        self._max_items = max_items
        self._max_interval = max_interval
        self._lock = threading.Lock()
        self._pending: _PendingBatch | None = None
        self._inflight: set[asyncio.Task[None]] = set()
        self._closed = False

    async def add(self, event: UpsertEvent) -> None:
        """Buffer *event* and wait until the batch containing it was uploaded.

        Raises:
            PipelineClosedError: the pipeline is shutting down.
            UploadError:         the batch containing *event* failed to upload.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._closed:
                raise PipelineClosedError("pipeline is closed, event not accepted")
            pending = self._pending
            if pending is None:
                pending = _PendingBatch(loop)
                pending.done.add_done_callback(_consume_exception)
                pending.timer = loop.call_later(self._max_interval, self._flush_due, pending)
                self._pending = pending
            pending.batch.events.append(event)
            full = len(pending.batch) >= self._max_items
            if full:
                self._pending = None

        if full:
            self._launch(pending, reason="size")
        await asyncio.shield(pending.done)

    def _flush_due(self, pending: _PendingBatch) -> None:
        with self._lock:
            if self._pending is not pending:
                # already flushed because it filled up
                return
            self._pending = None
        self._launch(pending, reason="interval")

    def _launch(self, pending: _PendingBatch, reason: str) -> None:
        if pending.timer is not None:
            pending.timer.cancel()
        task = asyncio.ensure_future(self._upload(pending))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        _log.debug(
            "flushing batch",
            request_id=pending.batch.request_id,
            objects=len(pending.batch),
            event_request_ids=pending.batch.event_request_ids,
            reason=reason,
        )

    async def _upload(self, pending: _PendingBatch) -> None:
        try:
            await self._sender.send(pending.batch)
        except asyncio.CancelledError:
            pending.done.cancel()
            raise
        except Exception as exc:
            _log.warning(
                "batch upload failed",
                request_id=pending.batch.request_id,
                objects=len(pending.batch),
                event_request_ids=pending.batch.event_request_ids,
                error=str(exc),
            )
            pending.done.set_exception(exc)
        else:
            pending.done.set_result(None)

    async def flush(self) -> None:
        """Upload whatever is buffered now and wait for every in-flight upload."""
        with self._lock:
            pending, self._pending = self._pending, None
        if pending is not None:
            self._launch(pending, reason="flush")
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    async def stop(self) -> None:
        """Stop accepting events, then flush the buffer so nothing is dropped."""
        with self._lock:
            self._closed = True
        await self.flush()
        _log.info("batching pipeline stopped")

    @property
    def buffered(self) -> int:
        with self._lock:
            return len(self._pending.batch) if self._pending is not None else 0
