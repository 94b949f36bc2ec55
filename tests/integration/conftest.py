"""Shared fixtures for kubernetes-scanner integration tests.

Wires the real reconciler, batching pipeline, upload client and failure
tracker together against a scripted in-memory backend (httpx MockTransport)
so the whole upload path can be exercised without a cluster or network.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest
from prometheus_client import CollectorRegistry

from kubescanner.backend import BatchingPipeline, FailureTracker, UploadClient
from kubescanner.models.config import EgressConfig
from kubescanner.models.resources import ResourceKind

SCANNED_AT = datetime(2023, 2, 20, 16, 41, 17, tzinfo=UTC)
ORGANIZATION_ID = "11111111-2222-3333-4444-555555555555"

PODS = ResourceKind(group="", version="v1", kind="Pod", preferred_version="v1", resource="pods")


def make_pod(name: str, namespace: str = "default", uid: str = "", rv: str = "1") -> dict[str, Any]:
    """Create a minimal Pod manifest."""
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "namespace": namespace, "uid": uid or f"uid-{name}", "resourceVersion": rv},
        "spec": {"containers": [{"name": "app", "image": "nginx:1.25"}]},
    }


class ScriptedBackend:
    """In-memory upload endpoint.

    Answers with the queued status codes in order and 200 once the script is
    exhausted.  Every request body is decoded and kept for assertions.
    """

    def __init__(self) -> None:
        self.script: list[int] = []
        self.requests: list[httpx.Request] = []
        self.bodies: list[dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.bodies.append(json.loads(request.content))
        status = self.script.pop(0) if self.script else 200
        return httpx.Response(status, json={} if status < 300 else {"errors": [{"status": str(status)}]})

    def resources(self) -> list[dict[str, Any]]:
        return [r for body in self.bodies for r in body["data"]["attributes"]["resources"]]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def tracker(registry: CollectorRegistry) -> FailureTracker:
    return FailureTracker(registry)


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
async def upload_client(tracker: FailureTracker, backend: ScriptedBackend) -> AsyncIterator[UploadClient]:
    client = UploadClient(
        cluster_name="integration",
        organization_id=ORGANIZATION_ID,
        egress=EgressConfig(api_base_url="https://backend.test", service_account_token="token"),
        failures=tracker,
        transport=httpx.MockTransport(backend),
        clock=lambda: SCANNED_AT,
    )
    yield client
    await client.stop()


@pytest.fixture
async def pipeline(upload_client: UploadClient) -> AsyncIterator[BatchingPipeline]:
    pipe = BatchingPipeline(upload_client, max_items=10, max_interval=0.02)
    yield pipe
    await pipe.stop()
