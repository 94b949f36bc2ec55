"""Unit tests for KindController: requeue handling and watch recovery."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from kubescanner.collector import controller as controller_module
from kubescanner.collector.client import ApiStatusError
from kubescanner.collector.controller import KindController
from kubescanner.collector.reconciler import ReconcileResult
from kubescanner.errors import TransientFetchError
from kubescanner.models.resources import ObjectRef, ResourceKind

_PODS = ResourceKind(group="", version="v1", kind="Pod", preferred_version="v1", resource="pods")


def _pod(name: str, rv: str, namespace: str = "default") -> dict[str, Any]:
    return {"metadata": {"name": name, "namespace": namespace, "resourceVersion": rv}}


class _FakeReconciler:
    kind = _PODS

    def __init__(self, result: ReconcileResult | None = None, error: Exception | None = None) -> None:
        self.result = result or ReconcileResult()
        self.error = error
        self.seen: list[ObjectRef] = []

    async def reconcile(self, ref: ObjectRef) -> ReconcileResult:
        self.seen.append(ref)
        if self.error is not None:
            raise self.error
        return self.result


class _FakeCluster:
    """Scripted list/watch responses; an exhausted script blocks forever."""

    def __init__(
        self,
        lists: list[tuple[list[dict[str, Any]], str]],
        watches: list[list[Any]],
    ) -> None:
        self._lists = list(lists)
        self._watches = list(watches)
        self.list_calls = 0
        self.watch_versions: list[str] = []

    async def list_objects(self, kind: ResourceKind) -> tuple[list[dict[str, Any]], str]:
        self.list_calls += 1
        if self._lists:
            return self._lists.pop(0)
        return [], "999"

    async def watch_objects(self, kind: ResourceKind, resource_version: str) -> AsyncIterator[tuple[str, dict]]:
        self.watch_versions.append(resource_version)
        if not self._watches:
            await asyncio.Event().wait()
            return
        for item in self._watches.pop(0):
            if isinstance(item, Exception):
                raise item
            yield item


async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# process()
# ---------------------------------------------------------------------------


class TestProcess:
    async def test_requeue_after_schedules_next_visit(self) -> None:
        reconciler = _FakeReconciler(result=ReconcileResult(requeue_after=0.02))
        ctrl = KindController(_FakeCluster([], []), reconciler)  # type: ignore[arg-type]
        ref = ObjectRef("default", "a")
        ctrl.queue.backoff(ref)

        await ctrl.process(ref)

        assert ctrl.queue.num_requeues(ref) == 0
        assert len(ctrl.queue) == 0
        assert await asyncio.wait_for(ctrl.queue.get(), timeout=1) == ref

    async def test_plain_result_forgets_key(self) -> None:
        reconciler = _FakeReconciler(result=ReconcileResult())
        ctrl = KindController(_FakeCluster([], []), reconciler)  # type: ignore[arg-type]
        ref = ObjectRef("default", "a")
        ctrl.queue.backoff(ref)

        await ctrl.process(ref)

        assert ctrl.queue.num_requeues(ref) == 0
        await asyncio.sleep(0.05)
        assert len(ctrl.queue) == 0

    async def test_error_after_many_failures_is_still_retried(self) -> None:
        reconciler = _FakeReconciler(error=TransientFetchError("api server unavailable", 503))
        ctrl = KindController(_FakeCluster([], []), reconciler)  # type: ignore[arg-type]
        ref = ObjectRef("default", "a")
        for _ in range(1030):
            ctrl.queue.backoff(ref)

        try:
            await ctrl.process(ref)
            assert ctrl.queue.num_requeues(ref) == 1031
            assert len(ctrl.queue) == 0
        finally:
            ctrl.queue.shutdown()

    async def test_error_retries_with_growing_backoff(self) -> None:
        reconciler = _FakeReconciler(error=TransientFetchError("api server unavailable", 503))
        ctrl = KindController(_FakeCluster([], []), reconciler)  # type: ignore[arg-type]
        ref = ObjectRef("default", "a")

        await ctrl.process(ref)
        assert ctrl.queue.num_requeues(ref) == 1
        assert await asyncio.wait_for(ctrl.queue.get(), timeout=1) == ref
        ctrl.queue.done(ref)

        await ctrl.process(ref)
        assert ctrl.queue.num_requeues(ref) == 2


# ---------------------------------------------------------------------------
# Watch loop
# ---------------------------------------------------------------------------


class TestWatchLoop:
    async def test_list_then_watch_enqueues_every_object(self) -> None:
        cluster = _FakeCluster(
            lists=[([_pod("a", "5"), _pod("b", "7")], "10")],
            watches=[[("ADDED", _pod("c", "11")), ("MODIFIED", _pod("a", "12"))]],
        )
        reconciler = _FakeReconciler()
        ctrl = KindController(cluster, reconciler, workers=2)  # type: ignore[arg-type]

        await ctrl.start()
        try:
            assert ctrl.running
            await _eventually(lambda: {r.name for r in reconciler.seen} >= {"a", "b", "c"})
            await _eventually(lambda: len(cluster.watch_versions) == 2)
        finally:
            await ctrl.stop()

        assert cluster.list_calls == 1
        assert cluster.watch_versions == ["10", "12"]
        assert not ctrl.running

    async def test_bookmark_advances_version_without_enqueue(self) -> None:
        cluster = _FakeCluster(
            lists=[([], "10")],
            watches=[[("BOOKMARK", {"metadata": {"resourceVersion": "15"}})]],
        )
        reconciler = _FakeReconciler()
        ctrl = KindController(cluster, reconciler)  # type: ignore[arg-type]

        await ctrl.start()
        try:
            await _eventually(lambda: len(cluster.watch_versions) == 2)
        finally:
            await ctrl.stop()

        assert cluster.watch_versions == ["10", "15"]
        assert reconciler.seen == []

    async def test_gone_relists_immediately(self) -> None:
        cluster = _FakeCluster(
            lists=[([_pod("a", "5")], "10"), ([_pod("a", "5"), _pod("d", "19")], "20")],
            watches=[[ApiStatusError(410, "/api/v1/pods", "too old resource version")]],
        )
        reconciler = _FakeReconciler()
        ctrl = KindController(cluster, reconciler)  # type: ignore[arg-type]

        await ctrl.start()
        try:
            await _eventually(lambda: cluster.watch_versions == ["10", "20"], timeout=0.5)
            await _eventually(lambda: "d" in {r.name for r in reconciler.seen})
        finally:
            await ctrl.stop()

        assert cluster.list_calls == 2

    async def test_other_errors_relist_after_backoff(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(controller_module, "_BACKOFF_INITIAL", 0.01)
        cluster = _FakeCluster(
            lists=[([], "10"), ([], "30")],
            watches=[[ConnectionResetError("connection reset")]],
        )
        ctrl = KindController(cluster, _FakeReconciler())  # type: ignore[arg-type]

        await ctrl.start()
        try:
            await _eventually(lambda: cluster.watch_versions == ["10", "30"])
        finally:
            await ctrl.stop()

        assert cluster.list_calls == 2

    async def test_stop_drops_pending_retries(self) -> None:
        cluster = _FakeCluster(lists=[([_pod("a", "5")], "10")], watches=[])
        reconciler = _FakeReconciler(result=ReconcileResult(requeue_after=0.05))
        ctrl = KindController(cluster, reconciler)  # type: ignore[arg-type]

        await ctrl.start()
        await _eventually(lambda: len(reconciler.seen) == 1)
        await ctrl.stop()
        await asyncio.sleep(0.1)

        assert len(reconciler.seen) == 1


# ---------------------------------------------------------------------------
# Workers
# ---------------------------------------------------------------------------


class TestWorkers:
    async def test_worker_survives_unexpected_error(self) -> None:
        cluster = _FakeCluster(lists=[([_pod("a", "5")], "10")], watches=[])
        ctrl = KindController(cluster, _FakeReconciler(), workers=1)  # type: ignore[arg-type]
        handled: list[str] = []

        async def process(ref: ObjectRef) -> None:
            handled.append(ref.name)
            if ref.name == "a":
                raise OverflowError("int too large to convert to float")

        ctrl.process = process  # type: ignore[method-assign]

        await ctrl.start()
        try:
            await _eventually(lambda: handled == ["a"])
            ctrl.queue.add(ObjectRef("default", "b"))
            await _eventually(lambda: handled == ["a", "b"])
            assert ctrl.running
        finally:
            await ctrl.stop()

    async def test_not_running_once_a_task_ends(self) -> None:
        ctrl = KindController(_FakeCluster([], []), _FakeReconciler(), workers=2)  # type: ignore[arg-type]

        await ctrl.start()
        try:
            assert ctrl.running
            ctrl._tasks[-1].cancel()
            await _eventually(lambda: not ctrl.running)
        finally:
            await ctrl.stop()
