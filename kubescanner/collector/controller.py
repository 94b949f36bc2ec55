"""Per-kind control loop: list + watch feeding a worker pool.

KindController lists every object of its kind once, then watches from the
list's resourceVersion.  Each ADDED/MODIFIED/DELETED notification enqueues the
object's ObjectRef; a fixed number of workers drain the queue into the
Reconciler and apply the requeue instruction it returns.

Watch recovery:
    stream closed by the server -> re-watch from the last seen resourceVersion
    410 Gone                    -> re-list immediately
    any other error             -> re-list after exponential back-off (1s .. 60s)
"""

from __future__ import annotations

import asyncio
from typing import Any

from kubescanner.collector.client import ApiStatusError, ClusterClient
from kubescanner.collector.queue import WorkQueue
from kubescanner.collector.reconciler import Reconciler
from kubescanner.models.resources import ObjectRef, ResourceKind
from kubescanner.observability.logging import get_logger

_log = get_logger("collector.controller")

_BACKOFF_INITIAL = 1.0
_BACKOFF_MAX = 60.0
_HTTP_GONE = 410


class KindController:
    """Drives one Reconciler from the watch stream of its kind.

    Args:
        client:     Cluster client used for list/watch.
        reconciler: Reconciler for the kind; its WatchTarget selects the kind.
        workers:    Number of concurrent reconciliation workers.
    """

    def __init__(self, client: ClusterClient, reconciler: Reconciler, workers: int = 4) -> None:
        self._client = client
        self._reconciler = reconciler
        self._workers = workers
        self._queue: WorkQueue[ObjectRef] = WorkQueue()
        self._tasks: list[asyncio.Task[None]] = []
        kind = reconciler.kind
        self._log = _log.bind(group=kind.group, version=kind.version, kind=kind.kind)

    @property
    def kind(self) -> ResourceKind:
        return self._reconciler.kind

    @property
    def queue(self) -> WorkQueue[ObjectRef]:
        return self._queue

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not any(task.done() for task in self._tasks)

    async def start(self) -> None:
        name = f"{self.kind.api_version}/{self.kind.kind}"
        self._tasks.append(asyncio.create_task(self._watch_loop(), name=f"watch:{name}"))
        for i in range(self._workers):
            self._tasks.append(asyncio.create_task(self._worker(), name=f"worker:{name}:{i}"))
        self._log.info("controller started", workers=self._workers)

    async def stop(self) -> None:
        self._queue.shutdown()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._log.info("controller stopped")

    # ------------------------------------------------------------------
    # Watch
    # ------------------------------------------------------------------

    def _enqueue(self, obj: dict[str, Any]) -> str:
        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        if name:
            self._queue.add(ObjectRef(namespace=str(metadata.get("namespace") or ""), name=str(name)))
        return str(metadata.get("resourceVersion") or "")

    async def _watch_loop(self) -> None:
        resource_version = ""
        backoff = _BACKOFF_INITIAL
        while True:
            try:
                if not resource_version:
                    items, resource_version = await self._client.list_objects(self.kind)
                    for item in items:
                        self._enqueue(item)
                    self._log.info("listed objects", count=len(items), resource_version=resource_version)

                async for event_type, obj in self._client.watch_objects(self.kind, resource_version):
                    if event_type == "BOOKMARK":
                        resource_version = str((obj.get("metadata") or {}).get("resourceVersion") or resource_version)
                        continue
                    resource_version = self._enqueue(obj) or resource_version
                backoff = _BACKOFF_INITIAL
            except asyncio.CancelledError:
                raise
            except ApiStatusError as exc:
                resource_version = ""
                if exc.status == _HTTP_GONE:
                    self._log.info("watch expired, relisting")
                    continue
                self._log.warning("watch failed", code=exc.status, error=str(exc), retry_in=backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _BACKOFF_MAX)
            except Exception as exc:
                resource_version = ""
                self._log.warning("watch failed", error=str(exc), retry_in=backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _BACKOFF_MAX)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self) -> None:
        while True:
            ref = await self._queue.get()
            try:
                await self.process(ref)
            except asyncio.CancelledError:
                raise
            except Exception:
                self._log.exception("worker failed to process item", name=ref.name, namespace=ref.namespace)
            finally:
                self._queue.done(ref)

    async def process(self, ref: ObjectRef) -> None:
        """Reconcile *ref* once and schedule its next visit."""
        try:
            result = await self._reconciler.reconcile(ref)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            delay = self._queue.add_rate_limited(ref)
            self._log.warning(
                "reconciliation failed, retrying",
                name=ref.name,
                namespace=ref.namespace,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in=delay,
            )
            return

        self._queue.forget(ref)
        if result.requeue_after:
            self._queue.add_after(ref, result.requeue_after)
