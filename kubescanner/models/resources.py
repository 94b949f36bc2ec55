"""Identities of resource kinds and of the objects the scanner watches."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ResourceKind:
    """A concrete kind served by the API server.

    ``resource`` is the plural REST name (``deployments``) and ``namespaced``
    tells whether objects of the kind live in a namespace; both come from
    discovery and are needed to build request paths.
    """

    group: str
    version: str
    kind: str
    preferred_version: str
    resource: str = ""
    namespaced: bool = True

    @property
    def api_version(self) -> str:
        """The ``apiVersion`` string of objects of this kind."""
        return f"{self.group}/{self.version}" if self.group else self.version

    def __str__(self) -> str:
        return f"{self.api_version}, Kind={self.kind}"


@dataclass(frozen=True)
class WatchTarget:
    """A kind to watch together with its namespace allow-list."""

    kind: ResourceKind
    namespaces: frozenset[str] | None = None


@dataclass(frozen=True, order=True)
class ObjectRef:
    """Namespace and name of a single object; the control loop's unit of work."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name
