"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_CONFIG_FILE = "/etc/kubernetes-scanner/config.yaml"
DEFAULT_API_BASE_URL = "https://app.snyk.io"


@dataclass(frozen=True)
class ScanType:
    """A declarative rule selecting which kinds of cluster resources to watch.

    ``versions``: empty means the group's preferred version, ``"*"`` means
    every version the group serves.

    ``namespaces``: ``None`` allows every namespace; an empty tuple allows
    none, so only cluster-scoped objects are scanned.
    """

    api_groups: tuple[str, ...]
    resources: tuple[str, ...]
    versions: tuple[str, ...] = ()
    namespaces: tuple[str, ...] | None = None


@dataclass
class ScanningConfig:
    """What to scan and how often to revisit objects."""

    types: list[ScanType] = field(default_factory=list)
    requeue_after_seconds: float = 3600.0
    workers: int = 4


@dataclass
class EgressConfig:
    """Everything related to sending data to the backend."""

    api_base_url: str = DEFAULT_API_BASE_URL
    service_account_token: str = ""
    http_client_timeout_seconds: float = 5.0
    batch_size: int = 100
    batch_interval_seconds: float = 10.0


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class ScannerConfig:
    """Top-level kubernetes-scanner configuration."""

    cluster_name: str = ""
    organization_id: str = ""
    metrics_address: str = ":8080"
    # empty: probes are served on metrics_address only
    probe_address: str = ""
    scanning: ScanningConfig = field(default_factory=ScanningConfig)
    egress: EgressConfig = field(default_factory=EgressConfig)
    log: LogConfig = field(default_factory=LogConfig)
