"""
Host reconciliation agent.

Two independent loops converge a host toward the control plane's desired
state:

1. Config pass: fetch the rendered Traefik configuration and rewrite the
   local dynamic-config file when its content changes
2. Reconcile pass: fetch the desired services, drive the container runtime to
   match each one and clean up anything labelled as a platform service that
   is no longer desired

No applied state is cached between passes; every decision is made from what
the runtime (and the compose files on disk) report.
"""

import asyncio
import hashlib
import logging
import os
import shutil
import tempfile
from collections.abc import Awaitable, Callable
from pathlib import Path

from mdp_client.client import ControlPlaneClient
from mdp_common.errors import ControlPlaneError, RuntimeCommandError
from mdp_common.models import Service

from .runtime import (
    COMPOSE_FILE_NAME,
    SERVICE_LABEL,
    ContainerRuntime,
    compose_project,
    container_name,
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 80


def _write_atomic(path: Path, content: bytes) -> None:
    """Write ``content`` to ``path`` via a temp file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


class ReconciliationAgent:
    """
    Agent that reconciles a host's containers with the desired service list.

    The control-plane client is synchronous; its calls run in a worker thread
    so both loops stay responsive.
    """

    def __init__(
        self,
        client: ControlPlaneClient,
        runtime: ContainerRuntime,
        traefik_path: str | Path = "./traefik.yml",
        compose_dir: str | Path = "./compose",
        poll_interval: float = 15.0,
        reconcile_interval: float = 20.0,
    ):
        """
        Initialize the agent.

        Args:
            client: Control-plane API client
            runtime: Container runtime to drive
            traefik_path: Where the Traefik dynamic configuration is written
            compose_dir: Directory holding one sub-directory per compose service
            poll_interval: Seconds between config passes
            reconcile_interval: Seconds between reconcile passes
        """
        self.client = client
        self.runtime = runtime
        self.traefik_path = Path(traefik_path)
        self.compose_dir = Path(compose_dir)
        self.poll_interval = poll_interval
        self.reconcile_interval = reconcile_interval

        self._config_hash: str | None = None
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        """Start the config and reconcile loops."""
        if self._tasks:
            logger.warning("Agent already running")
            return

        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(
                self._run_loop("config", self.config_pass, self.poll_interval)
            ),
            asyncio.create_task(
                self._run_loop(
                    "reconcile", self.reconcile_pass, self.reconcile_interval
                )
            ),
        ]
        logger.info("Reconciliation agent started")

    async def stop(self) -> None:
        """Signal both loops to stop and wait for in-flight passes to finish."""
        if not self._tasks:
            return

        logger.info("Stopping reconciliation agent...")
        self._stop_event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Reconciliation agent stopped")

    async def _run_loop(
        self, name: str, run_pass: Callable[[], Awaitable[object]], interval: float
    ) -> None:
        while not self._stop_event.is_set():
            try:
                await run_pass()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in {name} pass: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Config pass
    # ------------------------------------------------------------------

    async def config_pass(self) -> bool:
        """
        Refresh the Traefik dynamic configuration file.

        Returns:
            True if the file was rewritten, False if content was unchanged or
            the fetch failed
        """
        try:
            content = await asyncio.to_thread(self.client.get_traefik_config)
        except ControlPlaneError as e:
            logger.error(f"Failed to fetch traefik config: {e}")
            return False

        digest = hashlib.sha256(content).hexdigest()
        if digest == self._config_hash:
            logger.debug("Traefik config unchanged")
            return False

        await asyncio.to_thread(_write_atomic, self.traefik_path, content)
        self._config_hash = digest
        logger.info(f"Traefik config updated ({self.traefik_path})")
        return True

    # ------------------------------------------------------------------
    # Reconcile pass
    # ------------------------------------------------------------------

    async def reconcile_pass(self) -> None:
        """
        Perform one reconciliation cycle.

        A failed desired-state fetch aborts the whole pass, including cleanup,
        so a control-plane outage never tears down running services.
        """
        try:
            services = await asyncio.to_thread(self.client.get_desired_services)
        except ControlPlaneError as e:
            logger.error(f"Failed to fetch desired services: {e}")
            return

        logger.debug(f"Reconciliation: {len(services)} desired services")
        for service in services:
            try:
                await self.reconcile_service(service)
            except Exception as e:
                logger.error(
                    f"Error reconciling service {service.id}: {e}", exc_info=True
                )

        await self.cleanup({service.id for service in services})

    async def reconcile_service(self, service: Service) -> None:
        if service.is_compose:
            await self._reconcile_compose(service)
        else:
            await self._reconcile_container(service)

    def _service_dir(self, service_id: str) -> Path:
        if not service_id or "/" in service_id or service_id in (".", ".."):
            raise ValueError(f"invalid service id: {service_id!r}")
        return self.compose_dir / service_id

    async def _reconcile_compose(self, service: Service) -> None:
        name = container_name(service.id)
        if await self.runtime.inspect(name) is not None:
            logger.info(f"Removing single container {name} (service uses compose)")
            await self.runtime.remove(name)

        compose_file = self._service_dir(service.id) / COMPOSE_FILE_NAME
        project = compose_project(service.id)
        content = service.compose.encode()

        unchanged = compose_file.exists() and compose_file.read_bytes() == content
        if unchanged and await self.runtime.compose_running(project, compose_file):
            logger.debug(f"Compose stack {project} is up to date")
            return

        if not unchanged:
            await asyncio.to_thread(_write_atomic, compose_file, content)

        try:
            await self.runtime.compose_pull(project, compose_file)
        except RuntimeCommandError as e:
            logger.warning(f"compose pull failed for {project}: {e}")

        await self.runtime.compose_up(project, compose_file)
        logger.info(f"Compose stack {project} is up")

    async def _reconcile_container(self, service: Service) -> None:
        image = service.image.strip()
        if not image:
            logger.debug(f"Service {service.id} has no image, skipping")
            return

        service_dir = self._service_dir(service.id)
        if service_dir.is_dir():
            await self._teardown_compose(service.id, service_dir)

        name = container_name(service.id)
        state = await self.runtime.inspect(name)
        if state is not None and state.image == image and state.running:
            logger.debug(f"Container {name} already runs {image}")
            return

        await self.runtime.pull(image)
        if state is not None:
            await self.runtime.remove(name)
        port = service.internal_port or DEFAULT_PORT
        await self.runtime.run(name, image, port, {SERVICE_LABEL: service.id})
        logger.info(f"Started {name} with image {image} on 127.0.0.1:{port}")

    async def _teardown_compose(self, service_id: str, service_dir: Path) -> None:
        compose_file = service_dir / COMPOSE_FILE_NAME
        try:
            await self.runtime.compose_down(
                compose_project(service_id),
                compose_file if compose_file.exists() else None,
            )
        except RuntimeCommandError as e:
            logger.warning(f"compose down failed for service {service_id}: {e}")
        await asyncio.to_thread(shutil.rmtree, service_dir)
        logger.info(f"Removed compose stack for service {service_id}")

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def cleanup(self, desired_ids: set[str]) -> None:
        """
        Remove labelled containers and compose stacks that are not desired.

        Each resource is cleaned up independently; failures are logged.
        """
        try:
            containers = await self.runtime.list_service_containers()
        except RuntimeCommandError as e:
            logger.error(f"Failed to list service containers: {e}")
            containers = []

        for container in containers:
            if container.service_id in desired_ids:
                continue
            try:
                logger.info(
                    f"Removing container {container.name} "
                    f"(service {container.service_id} no longer desired)"
                )
                await self.runtime.remove(container.name)
            except Exception as e:
                logger.error(f"Error removing container {container.name}: {e}")

        if not self.compose_dir.is_dir():
            return

        for entry in sorted(self.compose_dir.iterdir()):
            if not entry.is_dir() or entry.name in desired_ids:
                continue
            try:
                await self._teardown_compose(entry.name, entry)
            except Exception as e:
                logger.error(f"Error removing compose stack {entry.name}: {e}")
