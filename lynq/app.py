"""Application bootstrap for the Lynq controller.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → K8s client → controller manager → HTTP server

Shutdown is graceful: components are stopped in reverse startup order.
Each component's stop error is caught and logged independently so that a
single component failure does not prevent the rest from shutting down cleanly.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

from lynq.config import load_config
from lynq.models.config import LynqConfig
from lynq.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class LynqApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    Calling ``stop()`` on an app that was never started (or already stopped)
    is safe.
    """

    def __init__(self) -> None:
        self.config: LynqConfig | None = None

        self._api_client: object | None = None
        self._kube: object | None = None
        self._manager: object | None = None
        self._http_server: object | None = None

        self._background_tasks: list[asyncio.Task[None]] = []

        self._running = False
        self._log: structlog.stdlib.BoundLogger | None = None

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        """
        # --- 1. Configuration -------------------------------------------
        self.config = load_config()

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info("lynq_starting", version=_lynq_version())

        # --- 3. Kubernetes client ----------------------------------------
        await self._start_k8s_client()

        # --- 4. Controller manager ----------------------------------------
        await self._start_manager()

        # --- 5. Probe / metrics / webhook server -------------------------
        await self._start_http()

        self._running = True
        self._log.info("lynq_started", port=self.config.api.port)

    async def _start_k8s_client(self) -> None:
        """Initialise kubernetes-asyncio from in-cluster config or kubeconfig."""
        assert self._log is not None
        self._log.debug("starting_k8s_client")
        try:
            import kubernetes_asyncio.config as k8s_config
            from kubernetes_asyncio import client as k8s_client

            from lynq.cluster import KubernetesClient

            try:
                k8s_config.load_incluster_config()
                self._log.info("k8s_client_configured", source="in-cluster")
            except k8s_config.ConfigException:
                await k8s_config.load_kube_config()
                self._log.info("k8s_client_configured", source="kubeconfig")

            api_client = k8s_client.ApiClient()
            self._api_client = api_client
            kube = KubernetesClient(api_client)
            await kube.start()
            self._kube = kube
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    async def _start_manager(self) -> None:
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting_manager")
        try:
            from lynq.controller import ControllerManager

            manager = ControllerManager(self._kube, self._api_client, self.config.controller)  # type: ignore[arg-type]
            await manager.start()
            self._manager = manager
        except Exception as exc:
            raise _ComponentError("manager", exc) from exc

    async def _start_http(self) -> None:
        """Start the uvicorn server for probes, metrics and the webhook."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting_http_server")
        try:
            import uvicorn

            from lynq.api import create_app

            fastapi_app = create_app(manager=self._manager, client=self._kube, config=self.config)
            uv_config = uvicorn.Config(
                app=fastapi_app,
                host="0.0.0.0",
                port=self.config.api.port,
                log_config=None,  # structlog handles all logging
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            task = asyncio.create_task(server.serve(), name="http-server")
            self._background_tasks.append(task)
            self._http_server = server
            self._log.info("http_server_started", port=self.config.api.port)
        except Exception as exc:
            raise _ComponentError("http", exc) from exc

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Gracefully stop all components in reverse startup order."""
        if not self._running and self._log is None:
            return

        log = self._log or get_logger("app")
        log.info("lynq_shutting_down")

        self._running = False

        if self._http_server is not None:
            self._http_server.should_exit = True  # type: ignore[attr-defined]

        await self._stop_component("manager", self._manager)

        if self._background_tasks:
            _, pending = await asyncio.wait(self._background_tasks, timeout=_SHUTDOWN_GRACE_SECONDS)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        await self._stop_component("kube_client", self._kube)
        self._kube = None
        self._api_client = None

        log.info("lynq_stopped")

    async def _stop_component(self, name: str, component: object | None) -> None:
        """Call stop() or close() on a component, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        stop_fn = getattr(component, "stop", None) or getattr(component, "close", None)
        if stop_fn is None:
            return
        try:
            result = stop_fn()
            if asyncio.iscoroutine(result):
                await asyncio.wait_for(result, timeout=_SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component_stop_timed_out", component=name, timeout=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component_stop_failed", component=name, error=str(exc))


def _lynq_version() -> str:
    from lynq import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main() -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = LynqApp()
    loop = asyncio.get_running_loop()

    shutdown_task: asyncio.Task[None] | None = None

    def _request_shutdown() -> None:
        nonlocal shutdown_task
        if shutdown_task is None:
            shutdown_task = asyncio.create_task(app.stop(), name="shutdown")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await app.start()
        while app._running:
            await asyncio.sleep(1)
        if shutdown_task is not None:
            await shutdown_task
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical("fatal_startup_error", component=exc.component, error=str(exc.cause))
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if app._running:
            await app.stop()
