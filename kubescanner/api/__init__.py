"""HTTP surface of kubernetes-scanner: health probes and Prometheus metrics."""

from kubescanner.api.app import create_app

__all__ = ["create_app"]
