"""kubernetes-scanner: forwards Kubernetes resource snapshots to a remote ingestion API."""

__version__ = "0.1.0"
