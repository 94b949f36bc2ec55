"""Unit tests for the Reconciler and its event-building helpers."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock

import pytest
from structlog.testing import capture_logs

from kubescanner.collector.client import ApiStatusError
from kubescanner.collector.reconciler import (
    ReconcileResult,
    Reconciler,
    build_deletion_event,
    build_upsert_event,
    namespace_allowed,
)
from kubescanner.errors import TransientFetchError, UploadStatusError
from kubescanner.models.events import UpsertEvent
from kubescanner.models.resources import ObjectRef, ResourceKind, WatchTarget

_NOW = datetime(2023, 2, 20, 16, 41, 17, tzinfo=UTC)

_DEPLOYMENTS = ResourceKind(
    group="apps", version="v1", kind="Deployment", preferred_version="v1", resource="deployments"
)
_ROLES_BETA = ResourceKind(
    group="rbac.authorization.k8s.io",
    version="v1beta1",
    kind="Role",
    preferred_version="v1",
    resource="roles",
)
_NODES = ResourceKind(group="", version="v1", kind="Node", preferred_version="v1", resource="nodes", namespaced=False)


def _deployment(name: str = "web", namespace: str = "default") -> dict[str, Any]:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{name}"},
        "spec": {"replicas": 2},
    }


class _Sink:
    def __init__(self, error: Exception | None = None) -> None:
        self.events: list[UpsertEvent] = []
        self._error = error

    async def add(self, event: UpsertEvent) -> None:
        self.events.append(event)
        if self._error is not None:
            raise self._error


def _reconciler(
    reader: AsyncMock,
    sink: _Sink,
    kind: ResourceKind = _DEPLOYMENTS,
    namespaces: frozenset[str] | None = None,
) -> Reconciler:
    return Reconciler(
        WatchTarget(kind=kind, namespaces=namespaces),
        reader=reader,
        sink=sink,
        requeue_after=3600,
        clock=lambda: _NOW,
    )


def _reader(result: Any = None, error: Exception | None = None) -> AsyncMock:
    reader = AsyncMock()
    if error is not None:
        reader.get_object.side_effect = error
    else:
        reader.get_object.return_value = result
    return reader


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestNamespaceAllowed:
    def test_no_allow_list_accepts_everything(self) -> None:
        assert namespace_allowed("kube-system", None)

    def test_cluster_scoped_always_allowed(self) -> None:
        assert namespace_allowed("", frozenset())
        assert namespace_allowed("", frozenset({"default"}))

    def test_allow_list_membership(self) -> None:
        allowed = frozenset({"default", "prod"})
        assert namespace_allowed("prod", allowed)
        assert not namespace_allowed("kube-system", allowed)

    def test_empty_allow_list_rejects_namespaced(self) -> None:
        assert not namespace_allowed("default", frozenset())


class TestBuildEvents:
    def test_upsert_carries_object_and_preferred_version(self) -> None:
        obj = {"apiVersion": "rbac.authorization.k8s.io/v1beta1", "kind": "Role", "metadata": {"name": "r"}}
        event = build_upsert_event(_ROLES_BETA, obj, "req-1")
        assert event.obj is obj
        assert event.preferred_version == "v1"
        assert event.deleted_at is None
        assert event.request_id == "req-1"

    def test_deletion_placeholder_namespaced(self) -> None:
        event = build_deletion_event(_DEPLOYMENTS, ObjectRef("default", "web"), _NOW, "req-2")
        assert event.obj == {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": "web", "namespace": "default"},
        }
        assert event.deleted_at == _NOW
        assert event.is_deletion

    def test_deletion_placeholder_cluster_scoped(self) -> None:
        event = build_deletion_event(_NODES, ObjectRef("", "node-1"), _NOW, "req-3")
        assert event.obj == {"apiVersion": "v1", "kind": "Node", "metadata": {"name": "node-1"}}
        assert event.identity == "v1/Node//node-1"


# ---------------------------------------------------------------------------
# Reconcile
# ---------------------------------------------------------------------------


class TestReconcile:
    async def test_existing_object_is_upserted_and_requeued(self) -> None:
        obj = _deployment()
        reader = _reader(result=obj)
        sink = _Sink()

        result = await _reconciler(reader, sink).reconcile(ObjectRef("default", "web"))

        assert result == ReconcileResult(requeue_after=3600)
        reader.get_object.assert_awaited_once_with(_DEPLOYMENTS, ObjectRef("default", "web"))
        assert len(sink.events) == 1
        assert sink.events[0].obj is obj
        assert sink.events[0].preferred_version == "v1"
        assert not sink.events[0].is_deletion

    async def test_non_preferred_version_reports_group_preferred(self) -> None:
        reader = _reader(result={"apiVersion": "rbac.authorization.k8s.io/v1beta1", "kind": "Role", "metadata": {}})
        sink = _Sink()

        await _reconciler(reader, sink, kind=_ROLES_BETA).reconcile(ObjectRef("default", "r"))

        assert sink.events[0].preferred_version == "v1"

    async def test_missing_object_becomes_deletion_without_requeue(self) -> None:
        reader = _reader(error=ApiStatusError(404, "/apis/apps/v1/namespaces/default/deployments/web"))
        sink = _Sink()

        result = await _reconciler(reader, sink).reconcile(ObjectRef("default", "web"))

        assert result == ReconcileResult()
        assert result.requeue_after is None
        assert len(sink.events) == 1
        event = sink.events[0]
        assert event.deleted_at == _NOW
        assert event.obj["metadata"] == {"name": "web", "namespace": "default"}

    async def test_ignored_namespace_is_skipped_without_fetch(self) -> None:
        reader = _reader(result=_deployment(namespace="kube-system"))
        sink = _Sink()

        result = await _reconciler(reader, sink, namespaces=frozenset({"default"})).reconcile(
            ObjectRef("kube-system", "coredns")
        )

        assert result == ReconcileResult()
        reader.get_object.assert_not_awaited()
        assert sink.events == []

    async def test_cluster_scoped_passes_namespace_filter(self) -> None:
        reader = _reader(result={"apiVersion": "v1", "kind": "Node", "metadata": {"name": "node-1", "uid": "n1"}})
        sink = _Sink()

        result = await _reconciler(reader, sink, kind=_NODES, namespaces=frozenset()).reconcile(
            ObjectRef("", "node-1")
        )

        assert result.requeue_after == 3600
        assert len(sink.events) == 1

    @pytest.mark.parametrize("status", [403, 500, 503])
    async def test_other_api_errors_are_transient(self, status: int) -> None:
        reader = _reader(error=ApiStatusError(status, "/apis/apps/v1/namespaces/default/deployments/web"))
        sink = _Sink()

        with pytest.raises(TransientFetchError) as exc_info:
            await _reconciler(reader, sink).reconcile(ObjectRef("default", "web"))

        assert exc_info.value.status == status
        assert sink.events == []

    async def test_connection_error_is_transient(self) -> None:
        reader = _reader(error=ConnectionResetError("reset by peer"))
        sink = _Sink()

        with pytest.raises(TransientFetchError):
            await _reconciler(reader, sink).reconcile(ObjectRef("default", "web"))

    async def test_sink_error_on_upsert_propagates(self) -> None:
        reader = _reader(result=_deployment())
        sink = _Sink(error=UploadStatusError(400))

        with pytest.raises(UploadStatusError):
            await _reconciler(reader, sink).reconcile(ObjectRef("default", "web"))

    async def test_sink_error_on_deletion_propagates(self) -> None:
        reader = _reader(error=ApiStatusError(404, "/x"))
        sink = _Sink(error=UploadStatusError(500))

        with pytest.raises(UploadStatusError):
            await _reconciler(reader, sink).reconcile(ObjectRef("default", "web"))

    async def test_sink_error_logs_failed_batch_id(self) -> None:
        reader = _reader(error=ApiStatusError(404, "/x"))
        sink = _Sink(error=UploadStatusError(500, request_id="batch-7"))

        with capture_logs() as logs:
            with pytest.raises(UploadStatusError):
                await _reconciler(reader, sink).reconcile(ObjectRef("default", "web"))

        failed = [e for e in logs if e["event"] == "could not publish deletion to store"]
        assert len(failed) == 1
        assert failed[0]["batch_request_id"] == "batch-7"
        assert failed[0]["request_id"]

    async def test_each_reconciliation_gets_fresh_request_id(self) -> None:
        reader = _reader(result=_deployment())
        sink = _Sink()
        reconciler = _reconciler(reader, sink)

        await reconciler.reconcile(ObjectRef("default", "web"))
        await reconciler.reconcile(ObjectRef("default", "web"))

        assert sink.events[0].request_id != sink.events[1].request_id
