"""Expands declarative scan types into the concrete kinds to watch."""

from __future__ import annotations

from collections.abc import Iterable

from kubescanner.discovery.resolver import Discovery
from kubescanner.errors import NotFoundInCluster
from kubescanner.models.config import ScanType
from kubescanner.models.resources import ResourceKind, WatchTarget
from kubescanner.observability.logging import get_logger

_log = get_logger("discovery.scan_types")

ALL_VERSIONS = "*"


def versions_for(scan_type: ScanType, group: str, discovery: Discovery) -> list[str]:
    """Resolve the version list a scan type declares for *group*.

    Raises:
        NotFoundInCluster: the group does not exist and the versions had to be
            looked up on the server.
    """
    if not scan_type.versions:
        return [discovery.preferred_version(group)]
    if ALL_VERSIONS in scan_type.versions:
        return discovery.all_versions(group)
    return list(scan_type.versions)


async def kinds_for(scan_type: ScanType, discovery: Discovery) -> list[ResourceKind]:
    """Return every kind of *scan_type* that the server actually serves.

    Missing groups and missing group/version/resource combinations are logged
    and skipped; any other error propagates.
    """
    kinds: list[ResourceKind] = []
    for group in scan_type.api_groups:
        try:
            versions = versions_for(scan_type, group, discovery)
        except NotFoundInCluster:
            _log.info("skipping group as it does not exist", group=group)
            continue

        for version in versions:
            for resource in scan_type.resources:
                try:
                    kind = await discovery.find_kind(group, version, resource)
                except NotFoundInCluster:
                    _log.info(
                        "skipping resource as it does not exist within groupversion",
                        group=group,
                        version=version,
                        resource=resource,
                    )
                    continue
                kinds.append(kind)
    return kinds


def _merge_namespaces(
    current: frozenset[str] | None,
    extra: tuple[str, ...] | None,
) -> frozenset[str] | None:
    if current is None or extra is None:
        return None
    return current | frozenset(extra)


async def expand_scan_types(scan_types: Iterable[ScanType], discovery: Discovery) -> list[WatchTarget]:
    """Expand all scan types into a deduplicated list of watch targets.

    A kind produced by several scan types is watched once; its namespace
    allow-list is the union of theirs, where "all namespaces" absorbs any list.
    """
    merged: dict[ResourceKind, frozenset[str] | None] = {}
    for scan_type in scan_types:
        for kind in await kinds_for(scan_type, discovery):
            if kind in merged:
                merged[kind] = _merge_namespaces(merged[kind], scan_type.namespaces)
            else:
                merged[kind] = None if scan_type.namespaces is None else frozenset(scan_type.namespaces)

    targets = [WatchTarget(kind=kind, namespaces=namespaces) for kind, namespaces in merged.items()]
    _log.info("expanded scan types", kinds=[str(target.kind) for target in targets])
    return targets
