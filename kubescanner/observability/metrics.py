"""Prometheus registry shared by the scanner's instruments.

Every instrument is created against an explicit registry so that tests can
hand each component a fresh ``CollectorRegistry`` instead of the global one.
"""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

METRICS_NAMESPACE = "kubernetes_scanner"


def new_registry() -> CollectorRegistry:
    """Return an empty registry for the scanner's instruments."""
    return CollectorRegistry(auto_describe=True)


def render_latest(registry: CollectorRegistry) -> tuple[bytes, str]:
    """Render *registry* in the Prometheus text format.

    Returns the payload and its content type.
    """
    return generate_latest(registry), CONTENT_TYPE_LATEST
