"""Application bootstrap for kubernetes-scanner.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → K8s client → discovery/expansion
              → failure tracker → upload client → pipeline → controllers → REST

Shutdown runs in reverse: controllers stop producing first, then the pipeline
flushes whatever is still buffered, then the HTTP and K8s clients close.
Each component's stop error is caught and logged independently so that a
single failure does not keep the rest from shutting down cleanly.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Any

from kubescanner.config import load_config
from kubescanner.errors import ConfigurationError
from kubescanner.models.config import ScannerConfig
from kubescanner.observability.logging import get_logger, setup_logging
from kubescanner.observability.metrics import new_registry

if TYPE_CHECKING:
    import structlog

    from kubescanner.backend import BatchingPipeline, FailureTracker, UploadClient
    from kubescanner.collector import ClusterClient, KindController
    from kubescanner.models.resources import WatchTarget

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


def parse_address(address: str) -> tuple[str, int]:
    """Split ``host:port`` (host optional, ``:8080`` binds all interfaces)."""
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ConfigurationError(f"invalid listen address {address!r}, expected host:port")
    return host or "0.0.0.0", int(port)


def listen_addresses(config: ScannerConfig) -> list[tuple[str, int]]:
    """Addresses the REST app listens on: the metrics address, plus the probe address if it differs."""
    addresses = [parse_address(config.metrics_address)]
    if config.probe_address:
        probe = parse_address(config.probe_address)
        if probe not in addresses:
            addresses.append(probe)
    return addresses


class ScannerApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    Calling ``stop()`` on an app that was never started (or already stopped)
    is safe.
    """

    def __init__(self, config_file: str | None = None) -> None:
        self._config_file = config_file
        self.config: ScannerConfig | None = None
        self.registry = new_registry()

        self._api_client: Any = None
        self._cluster: ClusterClient | None = None
        self._targets: list[WatchTarget] = []
        self._failures: FailureTracker | None = None
        self._upload_client: UploadClient | None = None
        self._pipeline: BatchingPipeline | None = None
        self._controllers: list[KindController] = []
        self._rest_servers: list[Any] = []

        self._background_tasks: list[asyncio.Task[None]] = []

        self._running = False
        self._stopped = False
        self._log: structlog.stdlib.BoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    def is_ready(self) -> bool:
        return self._running and all(controller.running for controller in self._controllers)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises ConfigurationError for a bad config and _ComponentError if a
        mandatory component cannot start.
        """
        # --- 1. Configuration -------------------------------------------
        self.config = load_config(self._config_file)
        addresses = listen_addresses(self.config)

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info("kubernetes-scanner starting", version=_scanner_version())

        # --- 3. Kubernetes client ----------------------------------------
        await self._start_k8s_client()

        # --- 4. Discovery and scan-type expansion -------------------------
        await self._start_discovery()

        # --- 5. Backend: failure tracker, upload client, pipeline --------
        await self._start_backend()

        # --- 6. Controllers ----------------------------------------------
        await self._start_controllers()

        # --- 7. REST API (probes + metrics) ------------------------------
        await self._start_rest(addresses)

        self._running = True
        self._log.info(
            "kubernetes-scanner started",
            kinds=len(self._controllers),
            ports=[port for _, port in addresses],
        )

    async def _start_k8s_client(self) -> None:
        """Initialise the kubernetes-asyncio client from in-cluster config or kubeconfig."""
        assert self._log is not None
        self._log.debug("starting k8s client")
        try:
            import kubernetes_asyncio.config as k8s_config  # type: ignore[import-untyped]
            from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]

            from kubescanner.collector import ClusterClient

            try:
                # load_incluster_config() is synchronous in kubernetes-asyncio
                k8s_config.load_incluster_config()
                self._log.info("k8s client configured from in-cluster service account")
            except k8s_config.ConfigException:
                # load_kube_config() is async in kubernetes-asyncio
                await k8s_config.load_kube_config()
                self._log.info("k8s client configured from kubeconfig")

            self._api_client = k8s_client.ApiClient()
            self._cluster = ClusterClient(self._api_client)
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    async def _start_discovery(self) -> None:
        """Resolve the configured scan types into the kinds to watch."""
        assert self._log is not None
        assert self.config is not None
        assert self._cluster is not None
        self._log.debug("starting discovery")
        try:
            from kubescanner.discovery import DiscoveryResolver, KubeDiscoverySource, expand_scan_types

            resolver = await DiscoveryResolver.create(KubeDiscoverySource(self._cluster))
            self._targets = await expand_scan_types(self.config.scanning.types, resolver)
        except Exception as exc:
            raise _ComponentError("discovery", exc) from exc

        if not self._targets:
            self._log.warning("no resource kinds to scan; check scanning.types")

    async def _start_backend(self) -> None:
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting backend")
        try:
            from kubescanner.backend import BatchingPipeline, FailureTracker, UploadClient

            self._failures = FailureTracker(self.registry)
            self._upload_client = UploadClient(
                cluster_name=self.config.cluster_name,
                organization_id=self.config.organization_id,
                egress=self.config.egress,
                failures=self._failures,
            )
            self._pipeline = BatchingPipeline(
                self._upload_client,
                max_items=self.config.egress.batch_size,
                max_interval=self.config.egress.batch_interval_seconds,
            )
            self._log.info(
                "backend started",
                endpoint=self._upload_client.endpoint,
                batch_size=self.config.egress.batch_size,
                batch_interval=self.config.egress.batch_interval_seconds,
            )
        except Exception as exc:
            raise _ComponentError("backend", exc) from exc

    async def _start_controllers(self) -> None:
        """Start one controller per watch target."""
        assert self._log is not None
        assert self.config is not None
        assert self._cluster is not None
        assert self._pipeline is not None
        self._log.debug("starting controllers")
        try:
            from kubescanner.collector import KindController, Reconciler

            for target in self._targets:
                reconciler = Reconciler(
                    target,
                    reader=self._cluster,
                    sink=self._pipeline,
                    requeue_after=self.config.scanning.requeue_after_seconds,
                )
                controller = KindController(self._cluster, reconciler, workers=self.config.scanning.workers)
                await controller.start()
                self._controllers.append(controller)
        except Exception as exc:
            raise _ComponentError("controllers", exc) from exc

    async def _start_rest(self, addresses: list[tuple[str, int]]) -> None:
        """Start one uvicorn server per address, all serving the probes and metrics app."""
        assert self._log is not None
        self._log.debug("starting rest api")
        try:
            import uvicorn  # type: ignore[import-untyped]

            from kubescanner.api import create_app

            fastapi_app = create_app(registry=self.registry, is_ready=self.is_ready)
            for host, port in addresses:
                uv_config = uvicorn.Config(
                    app=fastapi_app,
                    host=host,
                    port=port,
                    log_config=None,  # structlog handles all logging
                    access_log=False,
                )
                server = uvicorn.Server(uv_config)
                # signals are handled by main(), not by uvicorn
                server.install_signal_handlers = lambda: None  # type: ignore[method-assign]
                task = asyncio.create_task(server.serve(), name=f"rest-server-{port}")
                self._background_tasks.append(task)
                self._rest_servers.append(server)
                self._log.info("rest api started", host=host, port=port)
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Gracefully stop all components in reverse startup order."""
        if self._stopped or (not self._running and self._log is None):
            # never started or already stopped
            return
        self._stopped = True

        log = self._log or get_logger("app")
        log.info("kubernetes-scanner shutting down")

        self._running = False

        # Controllers first so no new events enter the pipeline
        for controller in reversed(self._controllers):
            await self._stop_component(f"controller {controller.kind}", controller)
        self._controllers.clear()

        # Flush the buffer before the HTTP client goes away
        await self._stop_component("pipeline", self._pipeline)
        await self._stop_component("upload_client", self._upload_client)

        for server in self._rest_servers:
            server.should_exit = True
        self._rest_servers.clear()
        for task in reversed(self._background_tasks):
            try:
                await asyncio.wait_for(task, timeout=_SHUTDOWN_GRACE_SECONDS)
            except TimeoutError:
                task.cancel()
            except Exception as exc:
                log.debug("background task ended with error", task=task.get_name(), error=str(exc))
        self._background_tasks.clear()

        await self._stop_k8s_client()

        log.info("kubernetes-scanner stopped")

    async def _stop_component(self, name: str, component: object | None) -> None:
        """Call stop() on a component if it has that method, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        stop_fn = getattr(component, "stop", None)
        if stop_fn is None:
            return
        try:
            result = stop_fn()
            if asyncio.iscoroutine(result):
                await asyncio.wait_for(result, timeout=_SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component stop timed out", component=name, timeout=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component stop raised an error", component=name, error=str(exc))

    async def _stop_k8s_client(self) -> None:
        """Close the kubernetes-asyncio ApiClient connection pool."""
        if self._api_client is None:
            return
        log = self._log or get_logger("app")
        try:
            await self._api_client.close()
        except Exception as exc:
            log.debug("k8s client close raised (non-fatal)", error=str(exc))
        self._api_client = None


def _scanner_version() -> str:
    from kubescanner import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main(config_file: str | None = None) -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = ScannerApp(config_file)
    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_requested.set)

    try:
        await app.start()
        await stop_requested.wait()
    except ConfigurationError as exc:
        setup_logging()
        get_logger("app").critical("invalid configuration", error=str(exc))
        raise SystemExit(1) from exc
    except _ComponentError as exc:
        # A mandatory component failed; log and exit non-zero
        get_logger("app").critical("fatal startup error", component=exc.component, error=str(exc.cause))
        raise SystemExit(1) from exc
    finally:
        await app.stop()
