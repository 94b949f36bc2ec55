"""Entry point for `python -m kubescanner`.

Usage:
    python -m kubescanner --config /etc/kubernetes-scanner/config.yaml
"""

from __future__ import annotations

from kubescanner.cli import cli

cli()
