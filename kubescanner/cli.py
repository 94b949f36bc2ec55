"""kubernetes-scanner command-line interface.

Exposes:
    cli -- Click command (registered as the ``kubescanner`` script).
"""

from __future__ import annotations

import asyncio

import click

from kubescanner import __version__
from kubescanner.app import main


@click.command("kubescanner")
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Config file location (default: $KUBESCANNER_CONFIG or /etc/kubernetes-scanner/config.yaml)",
)
@click.version_option(__version__, prog_name="kubernetes-scanner")
def cli(config_file: str | None) -> None:
    """Forward snapshots of Kubernetes resources to the backend."""
    asyncio.run(main(config_file=config_file))
