"""Thin REST client for arbitrary resource kinds on top of kubernetes-asyncio.

The generated typed APIs only cover built-in kinds; the scanner needs to read
whatever kinds discovery reports, so requests go through
``ApiClient.call_api`` with paths built from the ResourceKind.  Responses are
always read unprocessed (``_preload_content=False``) and decoded as plain
JSON documents.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import quote

from kubescanner.models.resources import ObjectRef, ResourceKind
from kubescanner.observability.logging import get_logger

_log = get_logger("collector.client")

_LIST_PAGE_SIZE = 500
_WATCH_SERVER_TIMEOUT = 290
_AUTH_SETTINGS = ["BearerToken"]


class ApiStatusError(Exception):
    """The API server answered with a non-2xx status."""

    def __init__(self, status: int, path: str, body: str = "") -> None:
        super().__init__(f"GET {path} returned HTTP {status}: {body[:200]}")
        self.status = status
        self.path = path
        self.body = body

    @property
    def not_found(self) -> bool:
        return self.status == 404


def group_version_path(group: str, version: str) -> str:
    """Return the discovery/base path of a group version (core group under /api)."""
    if not group:
        return f"/api/{quote(version, safe='')}"
    return f"/apis/{quote(group, safe='')}/{quote(version, safe='')}"


def collection_path(kind: ResourceKind, namespace: str = "") -> str:
    base = group_version_path(kind.group, kind.version)
    if namespace and kind.namespaced:
        base = f"{base}/namespaces/{quote(namespace, safe='')}"
    return f"{base}/{quote(kind.resource, safe='')}"


def object_path(kind: ResourceKind, ref: ObjectRef) -> str:
    return f"{collection_path(kind, ref.namespace)}/{quote(ref.name, safe='')}"


class ClusterClient:
    """Reads JSON documents from the API server.

    Args:
        api_client:      A configured ``kubernetes_asyncio.client.ApiClient``.
        request_timeout: Total timeout in seconds for non-watch requests.
    """

    def __init__(self, api_client: Any, request_timeout: float = 30.0) -> None:
        self._api_client = api_client
        self._request_timeout = request_timeout

    async def _open(
        self,
        path: str,
        query: list[tuple[str, str]] | None = None,
        timeout: float | None = None,
    ) -> Any:
        return await self._api_client.call_api(
            path,
            "GET",
            query_params=query or [],
            header_params={"Accept": "application/json"},
            auth_settings=_AUTH_SETTINGS,
            _preload_content=False,
            _request_timeout=timeout or self._request_timeout,
        )

    async def get_json(self, path: str, query: list[tuple[str, str]] | None = None) -> dict[str, Any]:
        """GET *path* and decode the body.

        Raises:
            ApiStatusError: on any non-2xx response.
        """
        response = await self._open(path, query)
        try:
            body = await response.read()
            if not 200 <= response.status <= 299:
                raise ApiStatusError(response.status, path, body.decode("utf-8", "replace"))
            return json.loads(body)
        finally:
            response.release()

    async def get_object(self, kind: ResourceKind, ref: ObjectRef) -> dict[str, Any]:
        obj = await self.get_json(object_path(kind, ref))
        # aggregated API servers do not always fill in the type meta
        obj.setdefault("apiVersion", kind.api_version)
        obj.setdefault("kind", kind.kind)
        return obj

    async def list_objects(self, kind: ResourceKind) -> tuple[list[dict[str, Any]], str]:
        """List every object of *kind* across all namespaces.

        Returns the items and the list's resourceVersion to watch from.
        """
        items: list[dict[str, Any]] = []
        path = collection_path(kind)
        continue_token = ""
        while True:
            query = [("limit", str(_LIST_PAGE_SIZE))]
            if continue_token:
                query.append(("continue", continue_token))
            page = await self.get_json(path, query)
            items.extend(page.get("items") or [])
            metadata = page.get("metadata") or {}
            continue_token = metadata.get("continue") or ""
            if not continue_token:
                return items, str(metadata.get("resourceVersion", ""))

    async def watch_objects(
        self,
        kind: ResourceKind,
        resource_version: str,
    ) -> AsyncIterator[tuple[str, dict[str, Any]]]:
        """Yield ``(event_type, object)`` pairs until the server closes the stream.

        Raises:
            ApiStatusError: when the watch cannot be opened or the server sends
                an ERROR event (``410`` when the resourceVersion is too old).
        """
        path = collection_path(kind)
        query = [
            ("watch", "true"),
            ("allowWatchBookmarks", "true"),
            ("timeoutSeconds", str(_WATCH_SERVER_TIMEOUT)),
        ]
        if resource_version:
            query.append(("resourceVersion", resource_version))

        response = await self._open(path, query, timeout=_WATCH_SERVER_TIMEOUT + 10)
        try:
            if not 200 <= response.status <= 299:
                body = await response.read()
                raise ApiStatusError(response.status, path, body.decode("utf-8", "replace"))

            buffer = b""
            async for chunk in response.content.iter_any():
                buffer += chunk
                while b"\n" in buffer:
                    line, buffer = buffer.split(b"\n", 1)
                    if not line.strip():
                        continue
                    event = json.loads(line)
                    event_type = event.get("type", "")
                    obj = event.get("object") or {}
                    if event_type == "ERROR":
                        raise ApiStatusError(int(obj.get("code") or 500), path, str(obj.get("message", "")))
                    yield event_type, obj
        finally:
            response.release()
