"""Application bootstrap for fleetguard.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → store → manifests → runner → reconcilers
              → reconcile loop → REST

Shutdown runs in reverse startup order.  Each component's stop error is
caught and logged independently so that a single failure does not prevent
the rest from shutting down cleanly.
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import TYPE_CHECKING

from fleetguard.config import load_config
from fleetguard.models.config import FleetGuardConfig
from fleetguard.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog

    from fleetguard.controller import ReconcileLoop
    from fleetguard.runner import AnsibleRunnerJobRunner
    from fleetguard.store import InMemoryRecordStore
    from fleetguard.tracking import ServiceTrackingStore

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class FleetGuardApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    Calling ``stop()`` on an app that was never started, or already stopped,
    is safe.
    """

    def __init__(self, config: FleetGuardConfig | None = None, serve_api: bool = True) -> None:
        self.config = config
        self._serve_api = serve_api

        self.store: InMemoryRecordStore | None = None
        self.tracking: ServiceTrackingStore | None = None
        self._runner: AnsibleRunnerJobRunner | None = None
        self._reconcilers: dict[str, object] = {}
        self._loop: ReconcileLoop | None = None
        self._rest_server: object | None = None

        self._background_tasks: list[asyncio.Task[None]] = []

        self._running = False
        self._log: structlog.stdlib.BoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        """
        # --- 1. Configuration -------------------------------------------
        if self.config is None:
            self.config = load_config()

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level, self.config.log.format)
        self._log = get_logger("app")
        self._log.info("fleetguard starting", version=_fleetguard_version())

        # --- 3. Record store --------------------------------------------
        await self._start_store()

        # --- 4. Manifests -----------------------------------------------
        await self._load_manifests()

        # --- 5. Job runner ----------------------------------------------
        await self._start_runner()

        # --- 6. Reconcilers ---------------------------------------------
        await self._start_reconcilers()

        # --- 7. Reconcile loop and store watches ------------------------
        await self._start_loop()

        # --- 8. REST API ------------------------------------------------
        if self._serve_api:
            await self._start_rest()

        self._running = True
        self._log.info("fleetguard started", port=self.config.api.port)

    # ------------------------------------------------------------------
    # Component startup helpers
    # ------------------------------------------------------------------

    async def _start_store(self) -> None:
        assert self._log is not None
        assert self.config is not None
        try:
            from fleetguard.rollout import admit
            from fleetguard.store import InMemoryRecordStore
            from fleetguard.tracking import ServiceTrackingStore

            self.store = InMemoryRecordStore(admission=admit)
            self.tracking = ServiceTrackingStore(self.store, self.config.rollout.conflict_retries)
            self._log.info("record store started")
        except Exception as exc:
            raise _ComponentError("store", exc) from exc

    async def _load_manifests(self) -> None:
        """Seed the store from FLEETGUARD_MANIFEST_DIR, when set."""
        assert self._log is not None
        assert self.config is not None
        assert self.store is not None
        if not self.config.store.manifest_dir:
            self._log.info("no manifest directory configured")
            return
        try:
            from fleetguard.store import load_manifests

            count = load_manifests(self.store, Path(self.config.store.manifest_dir))
            self._log.info("manifests loaded", records=count)
        except Exception as exc:
            raise _ComponentError("manifests", exc) from exc

    async def _start_runner(self) -> None:
        assert self._log is not None
        assert self.config is not None
        assert self.store is not None
        store = self.store
        try:
            from fleetguard.models.fleet import Secret
            from fleetguard.runner import AnsibleRunnerJobRunner

            def read_secret(namespace: str, name: str) -> dict[str, str]:
                return store.get(Secret, namespace, name).data

            Path(self.config.runner.work_dir).mkdir(parents=True, exist_ok=True)
            self._runner = AnsibleRunnerJobRunner(self.config.runner, secret_reader=read_secret)
            self._log.info("job runner started", command=self.config.runner.command)
        except Exception as exc:
            raise _ComponentError("runner", exc) from exc

    async def _start_reconcilers(self) -> None:
        assert self._log is not None
        assert self.config is not None
        assert self.store is not None
        assert self.tracking is not None
        assert self._runner is not None
        try:
            from fleetguard.credentials import CredentialGuardManager
            from fleetguard.models.fleet import NodeGroup
            from fleetguard.models.rollout import RolloutRequest
            from fleetguard.rollout import Deployer, NodeGroupReconciler, RolloutAggregator, Sequencer
            from fleetguard.runner import JobDispatcher

            rollout = self.config.rollout
            guard = CredentialGuardManager(
                self.store, self.tracking, self.config.guard.prefix, rollout.conflict_retries
            )
            deployer = Deployer(
                self.store,
                JobDispatcher(self._runner),
                self.tracking,
                image=self.config.runner.image,
                backoff_limit=rollout.backoff_limit,
            )
            aggregator = RolloutAggregator(
                self.store, deployer, Sequencer(self.store, rollout.conflict_retries), rollout
            )
            node_groups = NodeGroupReconciler(self.store, self.tracking, guard, rollout.conflict_retries)
            self._reconcilers = {
                RolloutRequest.kind: aggregator.reconcile,
                NodeGroup.kind: node_groups.reconcile,
            }
            self._log.info("reconcilers started", kinds=sorted(self._reconcilers))
        except Exception as exc:
            raise _ComponentError("reconcilers", exc) from exc

    async def _start_loop(self) -> None:
        assert self._log is not None
        assert self.store is not None
        try:
            from fleetguard.controller import ReconcileLoop, StoreWatcher

            self._loop = ReconcileLoop(self._reconcilers)  # type: ignore[arg-type]
            watcher = StoreWatcher(self.store, self._loop)
            watcher.attach()
            await self._loop.start()
            watcher.prime()
            self._log.info("reconcile loop started")
        except Exception as exc:
            raise _ComponentError("reconcile_loop", exc) from exc

    async def _start_rest(self) -> None:
        """Start the uvicorn REST server."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting rest api")
        try:
            import uvicorn

            from fleetguard.api import create_app

            fastapi_app = create_app(
                store=self.store,
                tracking=self.tracking,
                config=self.config,
                reconcile_loop=self._loop,
            )
            uv_config = uvicorn.Config(
                app=fastapi_app,
                host="0.0.0.0",
                port=self.config.api.port,
                log_config=None,  # structlog handles all logging
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            task = asyncio.create_task(server.serve(), name="rest-server")
            self._background_tasks.append(task)
            self._rest_server = server
            self._log.info("rest api started", port=self.config.api.port)
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Gracefully stop all components in reverse startup order."""
        if not self._running and self._log is None:
            return

        log = self._log or get_logger("app")
        log.info("fleetguard shutting down")

        self._running = False

        if self._rest_server is not None:
            self._rest_server.should_exit = True  # type: ignore[attr-defined]
        if self._background_tasks:
            _done, pending = await asyncio.wait(self._background_tasks, timeout=_SHUTDOWN_GRACE_SECONDS)
            for task in pending:
                task.cancel()
        self._background_tasks.clear()
        self._rest_server = None

        await self._stop_component("reconcile_loop", self._loop)
        self._reconcilers = {}
        await self._stop_component("runner", self._runner)

        log.info("fleetguard stopped")

    async def _stop_component(self, name: str, component: object | None) -> None:
        """Call stop() or shutdown() on a component, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        stop_fn = getattr(component, "stop", None) or getattr(component, "shutdown", None)
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


def _fleetguard_version() -> str:
    from fleetguard import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main(config: FleetGuardConfig | None = None) -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = FleetGuardApp(config)
    loop = asyncio.get_running_loop()

    shutdown_triggered = False

    def _request_shutdown() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            return
        shutdown_triggered = True
        asyncio.create_task(app.stop(), name="shutdown")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await app.start()
        while app.running:
            await asyncio.sleep(1)
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical(
            "fatal startup error",
            component=exc.component,
            error=str(exc.cause),
        )
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if app.running:
            await app.stop()
