"""agentlabd entry point.

    agentlabd -version
    agentlabd -config /etc/agentlab/config.yaml

Startup failures (config, database open, migrations, listener bind) exit
with status 1. SIGINT/SIGTERM stop the coordinators and close the store,
exiting 0.
"""

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import dataclass

from agentlab import version_string
from agentlab.adapters.hypervisor import create_hypervisor
from agentlab.adapters.secrets import FileSecretStore
from agentlab.app.config import DEFAULT_CONFIG_PATH, Settings, load_settings, split_host_port
from agentlab.app.logging import setup_logging
from agentlab.app.metrics import start_metrics_server
from agentlab.app.profiles import load_profiles
from agentlab.control import run_control_plane
from agentlab.control.artifact_upload import ArtifactUploadService
from agentlab.control.bootstrap import BootstrapService
from agentlab.control.coordinator import (
    ArtifactGC,
    CoordinatorBase,
    LeaseReconciler,
    StateReconciler,
)
from agentlab.control.job_orchestrator import JobOrchestrator
from agentlab.control.sandbox_manager import SandboxManager
from agentlab.control.workspace_lease import WorkspaceLeaseManager
from agentlab.core.clock import Clock, IdSource
from agentlab.core.errors import AgentLabError
from agentlab.core.interfaces import Hypervisor
from agentlab.core.logging_schema import LogEvent
from agentlab.infra.sqlite import Store

logger = logging.getLogger(__name__)


def artifact_upload_url(settings: Settings) -> str:
    """Upload URL handed to guests; derived from artifact_listen when unset."""
    if settings.artifact_upload_url.strip():
        return settings.artifact_upload_url.strip()
    listen = settings.artifact_listen.strip()
    if not listen:
        return ""
    try:
        host, port = split_host_port(listen)
    except ValueError:
        return f"http://{listen}/upload"
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{port}/upload"


@dataclass
class Controller:
    """Wired controller components sharing one store."""

    store: Store
    hypervisor: Hypervisor
    sandboxes: SandboxManager
    leases: WorkspaceLeaseManager
    orchestrator: JobOrchestrator
    bootstrap: BootstrapService
    artifacts: ArtifactUploadService
    lease_reconciler: LeaseReconciler
    state_reconciler: StateReconciler
    artifact_gc: ArtifactGC

    @property
    def coordinators(self) -> list[CoordinatorBase]:
        return [self.lease_reconciler, self.state_reconciler, self.artifact_gc]

    async def close(self) -> None:
        await self.orchestrator.shutdown()
        close = getattr(self.hypervisor, "close", None)
        if close is not None:
            await close()
        await self.store.close()


def build_controller(
    settings: Settings,
    store: Store,
    hypervisor: Hypervisor | None = None,
    clock: Clock | None = None,
) -> Controller:
    """Wire components from settings.

    Raises:
        ValidationError: If a profile file is invalid
    """
    clock = clock or Clock()
    ids = IdSource()
    hypervisor = hypervisor or create_hypervisor(settings)
    profiles = load_profiles(settings.profiles_dir)

    sandboxes = SandboxManager(
        store, hypervisor, clock=clock, command_timeout=settings.proxmox_command_timeout
    )
    leases = WorkspaceLeaseManager(store, clock=clock, ids=ids, ttl=settings.workspace_lease_ttl)
    orchestrator = JobOrchestrator(
        store,
        sandboxes,
        leases,
        profiles,
        clock=clock,
        ids=ids,
        vmid_start=settings.vmid_start,
        bootstrap_token_ttl=settings.bootstrap_token_ttl,
        provisioning_timeout=settings.provisioning_timeout,
        cleanup_timeout=settings.coordinator.cleanup_timeout,
    )
    secrets = FileSecretStore(
        settings.secrets_dir,
        age_key_path=settings.secrets_age_key_path,
        sops_path=settings.secrets_sops_path,
        allow_plaintext=settings.secrets_allow_plaintext,
    )
    bootstrap = BootstrapService(
        store,
        secrets,
        orchestrator,
        secrets_bundle=settings.secrets_bundle,
        artifact_endpoint=artifact_upload_url(settings),
        artifact_token_ttl=settings.artifact_token_ttl,
        agent_subnet=settings.agent_subnet,
        clock=clock,
    )
    artifacts = ArtifactUploadService(
        store, settings.artifact_dir, max_bytes=settings.artifact_max_bytes, clock=clock
    )
    lease_reconciler = LeaseReconciler(
        store,
        orchestrator.expire_sandbox,
        clock=clock,
        interval=settings.coordinator.lease_interval,
        min_interval=settings.coordinator.min_interval,
    )
    state_reconciler = StateReconciler(
        store,
        sandboxes,
        orchestrator.reclaim_sandbox,
        clock=clock,
        interval=settings.coordinator.state_interval,
        min_interval=settings.coordinator.min_interval,
    )
    artifact_gc = ArtifactGC(
        store,
        profiles,
        settings.artifact_dir,
        clock=clock,
        interval=settings.coordinator.gc_interval,
        min_interval=settings.coordinator.min_interval,
    )
    return Controller(
        store=store,
        hypervisor=hypervisor,
        sandboxes=sandboxes,
        leases=leases,
        orchestrator=orchestrator,
        bootstrap=bootstrap,
        artifacts=artifacts,
        lease_reconciler=lease_reconciler,
        state_reconciler=state_reconciler,
        artifact_gc=artifact_gc,
    )


async def run_daemon(settings: Settings, stop: asyncio.Event | None = None) -> int:
    """Run until ``stop`` is set or a signal arrives. Returns the exit code."""
    try:
        store = await Store.open(settings.db_path)
    except AgentLabError as e:
        logger.error("Database open failed: %s", e, extra={"event": LogEvent.DB_ERROR})
        return 1
    try:
        applied = await store.migrate()
    except Exception as e:
        logger.error("Migrations failed: %s", e, extra={"event": LogEvent.DB_ERROR})
        await store.close()
        return 1
    if applied:
        logger.info("Applied migrations %s", applied)

    try:
        controller = build_controller(settings, store)
    except AgentLabError as e:
        logger.error("Startup failed: %s", e, extra={"event": LogEvent.CONFIG_INVALID})
        await store.close()
        return 1

    try:
        start_metrics_server(settings.metrics_listen)
    except OSError as e:
        logger.error(
            "Metrics listener failed on %s: %s",
            settings.metrics_listen,
            e,
            extra={"event": LogEvent.APP_STOPPED},
        )
        await controller.close()
        return 1

    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info(
        "agentlabd started",
        extra={"event": LogEvent.APP_STARTED, "db_path": settings.db_path},
    )
    control_task = asyncio.create_task(
        run_control_plane(controller.coordinators)
    )

    try:
        await stop.wait()
    finally:
        logger.info("Shutting down agentlabd", extra={"event": LogEvent.APP_STOPPED})
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        control_task.cancel()
        try:
            await control_task
        except asyncio.CancelledError:
            pass
        await controller.close()
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="agentlabd", description="agentlab controller daemon")
    parser.add_argument("-version", "--version", action="store_true", help="print version and exit")
    parser.add_argument("-config", "--config", default=DEFAULT_CONFIG_PATH, help="config file path")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if args.version:
        print(version_string())
        return 0

    try:
        settings = load_settings(args.config)
    except AgentLabError as e:
        setup_logging()
        logger.error("Invalid configuration: %s", e, extra={"event": LogEvent.CONFIG_INVALID})
        return 1

    setup_logging(settings.logging)
    return asyncio.run(run_daemon(settings))


if __name__ == "__main__":
    sys.exit(main())
