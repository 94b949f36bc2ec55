"""HTTP client that upserts batches of resource snapshots into the backend.

One batch becomes one JSON:API style POST.  The outcome of the request is
recorded for every object of the batch in the FailureTracker before any
error is raised, so the metrics stay exact even when the caller gives up.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx

from kubescanner.backend.failures import FailureTracker
from kubescanner.errors import UploadStatusError, UploadTransportError
from kubescanner.models.config import EgressConfig
from kubescanner.models.events import Batch, UpsertEvent
from kubescanner.observability.logging import get_logger

_log = get_logger("backend.client")

CONTENT_TYPE = "application/vnd.api+json"
REQUEST_ID_HEADER = "snyk-request-id"
API_VERSION = "2023-02-20~experimental"
RESOURCE_TYPE = "kubernetes_resource"

# metav1.Time wire format: RFC 3339, UTC, second precision
_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(_TIME_FORMAT)


def build_request_body(cluster_name: str, events: list[UpsertEvent], scanned_at: datetime) -> dict[str, Any]:
    """Build the upsert document for *events*, preserving their order."""
    resources: list[dict[str, Any]] = []
    for event in events:
        entry: dict[str, Any] = {
            "manifest_blob": event.obj,
            "preferred_version": event.preferred_version,
            "scanned_at": format_timestamp(scanned_at),
        }
        if event.deleted_at is not None:
            entry["deleted_at"] = format_timestamp(event.deleted_at)
        resources.append(entry)

    return {
        "data": {
            "type": RESOURCE_TYPE,
            "attributes": {
                "cluster_name": cluster_name,
                "resources": resources,
            },
        },
    }


class UploadClient:
    """Sends batches to ``{base}/hidden/orgs/{org}/kubernetes_resources``.

    Args:
        cluster_name:    Friendly name of the cluster the snapshots come from.
        organization_id: Organization the data is routed to.
        egress:          Base URL, token and timeout.
        failures:        Tracker receiving the per-object outcome.
        transport:       Optional httpx transport (tests use MockTransport).
        clock:           Returns the current time for ``scanned_at``.
    """

    def __init__(
        self,
        cluster_name: str,
        organization_id: str,
        egress: EgressConfig,
        failures: FailureTracker,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._cluster_name = cluster_name
        self._endpoint = f"{egress.api_base_url.rstrip('/')}/hidden/orgs/{organization_id}/kubernetes_resources"
        self._token = egress.service_account_token
        self._failures = failures
        self._clock = clock
        # the default transport honours HTTP(S)_PROXY from the environment
        self._client = httpx.AsyncClient(timeout=egress.http_client_timeout_seconds, transport=transport)

    @property
    def endpoint(self) -> str:
        return self._endpoint

    async def send(self, batch: Batch) -> None:
        """POST *batch* and record the outcome for each of its objects.

        Raises:
            UploadTransportError: no response was received (recorded as code 0).
            UploadStatusError:    the backend answered with a non-2xx status.
        """
        body = build_request_body(self._cluster_name, batch.events, self._clock())
        headers = {
            "Content-Type": CONTENT_TYPE,
            "Authorization": f"token {self._token}",
            REQUEST_ID_HEADER: batch.request_id,
        }
        log = _log.bind(request_id=batch.request_id, objects=len(batch), event_request_ids=batch.event_request_ids)

        try:
            response = await self._client.post(
                self._endpoint,
                params={"version": API_VERSION},
                content=json.dumps(body).encode("utf-8"),
                headers=headers,
            )
        except httpx.HTTPError as exc:
            for event in batch.events:
                self._failures.record_failure(event.identity, 0)
            log.warning("backend_request_failed", error=str(exc), error_type=type(exc).__name__)
            raise UploadTransportError(f"could not post resources: {exc}", batch.request_id) from exc

        if not response.is_success:
            for event in batch.events:
                self._failures.record_failure(event.identity, response.status_code)
            log.error(
                "backend_non_2xx_response",
                code=response.status_code,
                response_headers=dict(response.headers),
                body=response.text[:200],
            )
            raise UploadStatusError(response.status_code, response.text[:1024], batch.request_id)

        for event in batch.events:
            self._failures.record_success(event.identity)
        log.debug("backend_upsert_succeeded", code=response.status_code)

    async def stop(self) -> None:
        await self._client.aclose()
