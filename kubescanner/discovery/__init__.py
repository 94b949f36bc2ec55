"""Discovery of the kinds an API server serves, and scan-type expansion.

Submodules
----------
resolver   -- DiscoveryResolver: cached group/version/resource lookups.
scan_types -- expand_scan_types: scan types -> watch targets.
"""

from kubescanner.discovery.resolver import DiscoveryResolver, KubeDiscoverySource
from kubescanner.discovery.scan_types import expand_scan_types

__all__ = ["DiscoveryResolver", "KubeDiscoverySource", "expand_scan_types"]
