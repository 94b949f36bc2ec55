"""Reconciliation adapter: one object notification -> one upsert or deletion event.

The reconciler keeps no state between invocations.  The decisions it makes are
exposed as plain functions so they can be tested without a cluster:

    namespace_allowed     -- is the object inside the namespace allow-list?
    build_upsert_event    -- event for an object that exists.
    build_deletion_event  -- placeholder event for an object that is gone.
"""

from __future__ import annotations

from collections.abc import Callable, Collection
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import uuid4

import structlog

from kubescanner.collector.client import ApiStatusError
from kubescanner.errors import TransientFetchError, UploadError
from kubescanner.models.events import UpsertEvent
from kubescanner.models.resources import ObjectRef, ResourceKind, WatchTarget
from kubescanner.observability.logging import get_logger

_log = get_logger("collector.reconciler")


@dataclass(frozen=True)
class ReconcileResult:
    """What the control loop should do with the object next.

    ``requeue_after`` set: reconcile again after that many seconds.
    ``None``: done until the next change notification.
    Errors are raised instead and mean "retry with backoff".
    """

    requeue_after: float | None = None


class ObjectReader(Protocol):
    async def get_object(self, kind: ResourceKind, ref: ObjectRef) -> dict[str, Any]: ...


class EventSink(Protocol):
    async def add(self, event: UpsertEvent) -> None: ...


def namespace_allowed(namespace: str, allowed: Collection[str] | None) -> bool:
    """Cluster-scoped objects and a missing allow-list always pass.

    An empty (but present) allow-list rejects every namespaced object.
    """
    if not namespace or allowed is None:
        return True
    return namespace in allowed


def build_upsert_event(kind: ResourceKind, obj: dict[str, Any], request_id: str) -> UpsertEvent:
    return UpsertEvent(obj=obj, preferred_version=kind.preferred_version, deleted_at=None, request_id=request_id)


def build_deletion_event(
    kind: ResourceKind,
    ref: ObjectRef,
    deleted_at: datetime,
    request_id: str,
) -> UpsertEvent:
    """Placeholder body for a vanished object: type meta, name and namespace only."""
    metadata: dict[str, Any] = {"name": ref.name}
    if ref.namespace:
        metadata["namespace"] = ref.namespace
    obj = {"apiVersion": kind.api_version, "kind": kind.kind, "metadata": metadata}
    return UpsertEvent(obj=obj, preferred_version=kind.preferred_version, deleted_at=deleted_at, request_id=request_id)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _batch_request_id(exc: Exception) -> str:
    return exc.request_id if isinstance(exc, UploadError) else ""


class Reconciler:
    """Reconciles objects of one watch target into the event sink.

    Args:
        target:        Kind and namespace allow-list to reconcile.
        reader:        Fetches live objects (a ClusterClient in production).
        sink:          Receives events (the BatchingPipeline in production).
        requeue_after: Poll interval after a successful upsert, in seconds.
    """

    def __init__(
        self,
        target: WatchTarget,
        reader: ObjectReader,
        sink: EventSink,
        requeue_after: float,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._kind = target.kind
        self._namespaces = target.namespaces
        self._reader = reader
        self._sink = sink
        self._requeue_after = requeue_after
        self._clock = clock

    @property
    def kind(self) -> ResourceKind:
        return self._kind

    async def reconcile(self, ref: ObjectRef) -> ReconcileResult:
        """Fetch *ref* and forward its snapshot (or its deletion).

        Raises:
            TransientFetchError: the object could not be read.
            UploadError / PipelineClosedError: the event could not be delivered.
        """
        request_id = str(uuid4())
        log: structlog.stdlib.BoundLogger = _log.bind(
            group=self._kind.group,
            version=self._kind.version,
            kind=self._kind.kind,
            name=ref.name,
            namespace=ref.namespace,
            request_id=request_id,
        )
        log.info("reconciling resource")

        if not namespace_allowed(ref.namespace, self._namespaces):
            log.debug("skipping resource as namespace is ignored")
            return ReconcileResult()

        try:
            obj = await self._reader.get_object(self._kind, ref)
        except ApiStatusError as exc:
            if not exc.not_found:
                log.error("could not get object from api server", code=exc.status, error=str(exc))
                raise TransientFetchError(f"could not get referenced object {ref}: {exc}", exc.status) from exc
            obj = None
        except Exception as exc:
            log.error("could not get object from api server", error=str(exc))
            raise TransientFetchError(f"could not get referenced object {ref}: {exc}") from exc

        if obj is None:
            event = build_deletion_event(self._kind, ref, self._clock(), request_id)
            try:
                await self._sink.add(event)
            except Exception as exc:
                log.error(
                    "could not publish deletion to store",
                    error=str(exc),
                    batch_request_id=_batch_request_id(exc),
                )
                raise
            log.info("published deletion")
            # nothing left to revisit
            return ReconcileResult()

        uid = (obj.get("metadata") or {}).get("uid", "")
        log = log.bind(uid=uid)
        try:
            await self._sink.add(build_upsert_event(self._kind, obj, request_id))
        except Exception as exc:
            log.error(
                "could not publish upsert to store",
                error=str(exc),
                batch_request_id=_batch_request_id(exc),
            )
            raise

        log.info("successful reconciliation")
        return ReconcileResult(requeue_after=self._requeue_after)
