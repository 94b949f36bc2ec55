"""Discovery resolver: which groups, versions and kinds this API server serves.

The group list is fetched once when the resolver is created and never
refreshed.  Resource lists per group/version are fetched on first use and then
answered from memory for the rest of the process lifetime; observing
server-side API changes requires a restart.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from kubescanner.collector.client import ApiStatusError, ClusterClient, group_version_path
from kubescanner.errors import NotFoundInCluster
from kubescanner.models.resources import ResourceKind
from kubescanner.observability.logging import get_logger

_log = get_logger("discovery.resolver")


@dataclass(frozen=True)
class APIGroup:
    """An API group as reported by the server."""

    name: str
    versions: tuple[str, ...]
    preferred_version: str


@dataclass(frozen=True)
class APIResource:
    """One resource served within a group/version."""

    name: str
    kind: str
    namespaced: bool = True
    verbs: tuple[str, ...] = ()

    @property
    def watchable(self) -> bool:
        return "list" in self.verbs and "watch" in self.verbs


class DiscoverySource(Protocol):
    """Where the resolver gets its raw discovery documents from."""

    async def server_groups(self) -> list[APIGroup]: ...

    async def server_resources(self, group: str, version: str) -> list[APIResource]:
        """Raise NotFoundInCluster if the group/version is not served."""
        ...


class Discovery(Protocol):
    """Capability interface consumed by the scan-type expander."""

    def preferred_version(self, group: str) -> str: ...

    def all_versions(self, group: str) -> list[str]: ...

    async def find_kind(self, group: str, version: str, resource: str) -> ResourceKind: ...


def parse_api_groups(core: dict[str, Any], groups: dict[str, Any]) -> list[APIGroup]:
    """Turn the ``/api`` and ``/apis`` documents into APIGroup entries.

    The legacy core group has the empty name and is listed first.
    """
    result: list[APIGroup] = []
    core_versions = tuple(str(v) for v in core.get("versions") or [])
    if core_versions:
        result.append(APIGroup(name="", versions=core_versions, preferred_version=core_versions[0]))

    for raw in groups.get("groups") or []:
        versions = tuple(str(v.get("version", "")) for v in raw.get("versions") or [])
        preferred = (raw.get("preferredVersion") or {}).get("version") or (versions[0] if versions else "")
        result.append(APIGroup(name=str(raw.get("name", "")), versions=versions, preferred_version=preferred))
    return result


def parse_api_resources(document: dict[str, Any]) -> list[APIResource]:
    return [
        APIResource(
            name=str(raw.get("name", "")),
            kind=str(raw.get("kind", "")),
            namespaced=bool(raw.get("namespaced", False)),
            verbs=tuple(raw.get("verbs") or ()),
        )
        for raw in document.get("resources") or []
    ]


class KubeDiscoverySource:
    """DiscoverySource backed by the live API server."""

    def __init__(self, client: ClusterClient) -> None:
        self._client = client

    async def server_groups(self) -> list[APIGroup]:
        core = await self._client.get_json("/api")
        groups = await self._client.get_json("/apis")
        return parse_api_groups(core, groups)

    async def server_resources(self, group: str, version: str) -> list[APIResource]:
        try:
            document = await self._client.get_json(group_version_path(group, version))
        except ApiStatusError as exc:
            if exc.not_found:
                raise NotFoundInCluster(group, version) from exc
            raise
        return parse_api_resources(document)


class DiscoveryResolver:
    """Resolves groups, versions and resources against cached discovery data.

    Use :meth:`create` to build one; it performs the single group-list fetch.
    """

    def __init__(self, source: DiscoverySource, groups: list[APIGroup]) -> None:
        self._source = source
        self._groups = {group.name: group for group in groups}
        self._resources: dict[tuple[str, str], list[APIResource]] = {}

    @classmethod
    async def create(cls, source: DiscoverySource) -> DiscoveryResolver:
        groups = await source.server_groups()
        _log.info("discovered api groups", groups=len(groups))
        return cls(source, groups)

    def _group(self, group: str) -> APIGroup:
        try:
            return self._groups[group]
        except KeyError:
            raise NotFoundInCluster(group) from None

    def preferred_version(self, group: str) -> str:
        return self._group(group).preferred_version

    def all_versions(self, group: str) -> list[str]:
        return list(self._group(group).versions)

    async def resources_for(self, group: str, version: str) -> list[APIResource]:
        """Return the resources served in *group*/*version*, fetching on first use."""
        key = (group, version)
        cached = self._resources.get(key)
        if cached is not None:
            return cached
        resources = await self._source.server_resources(group, version)
        self._resources[key] = resources
        return resources

    async def find_kind(self, group: str, version: str, resource: str) -> ResourceKind:
        """Resolve a plural resource name to its concrete kind.

        Raises:
            NotFoundInCluster: the group/version is not served, or serves no
                resource of that name that can be listed and watched.
        """
        for res in await self.resources_for(group, version):
            if res.name == resource:
                if not res.watchable:
                    _log.info(
                        "resource cannot be listed and watched",
                        group=group,
                        version=version,
                        resource=resource,
                        verbs=list(res.verbs),
                    )
                    break
                preferred = self._groups[group].preferred_version if group in self._groups else version
                return ResourceKind(
                    group=group,
                    version=version,
                    kind=res.kind,
                    preferred_version=preferred,
                    resource=res.name,
                    namespaced=res.namespaced,
                )
        raise NotFoundInCluster(group, version, resource)
