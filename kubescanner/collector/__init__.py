"""Collector package for kubernetes-scanner.

Watches the cluster and turns object changes into upsert events.

Submodules
----------
client     -- ClusterClient: JSON GET/list/watch for any discovered kind.
queue      -- WorkQueue: deduplicating, rate-limited work queue.
reconciler -- Reconciler: one notification -> one upsert or deletion event.
controller -- KindController: list/watch loop and worker pool per kind.
"""

from kubescanner.collector.client import ApiStatusError, ClusterClient
from kubescanner.collector.controller import KindController
from kubescanner.collector.queue import WorkQueue
from kubescanner.collector.reconciler import Reconciler, ReconcileResult

__all__ = [
    "ApiStatusError",
    "ClusterClient",
    "KindController",
    "ReconcileResult",
    "Reconciler",
    "WorkQueue",
]
