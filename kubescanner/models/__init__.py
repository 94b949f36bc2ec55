"""Core data structures for kubernetes-scanner."""

from kubescanner.models.config import (
    EgressConfig,
    LogConfig,
    ScannerConfig,
    ScanningConfig,
    ScanType,
)
from kubescanner.models.events import Batch, UpsertEvent
from kubescanner.models.resources import ObjectRef, ResourceKind, WatchTarget

__all__ = [
    "Batch",
    "EgressConfig",
    "LogConfig",
    "ObjectRef",
    "ResourceKind",
    "ScanType",
    "ScannerConfig",
    "ScanningConfig",
    "UpsertEvent",
    "WatchTarget",
]
