"""
Container runtime abstraction for the reconciliation agent.

The agent only talks to the runtime through ContainerRuntime so that
reconciliation logic can be tested against an in-memory fake. DockerRuntime
drives the ``docker`` CLI (including the ``docker compose`` plugin).
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from mdp_common.errors import RuntimeCommandError

logger = logging.getLogger(__name__)

SERVICE_LABEL = "mdp.service"
CONTAINER_PREFIX = "svc-"
COMPOSE_PROJECT_PREFIX = "mdp-"
COMPOSE_FILE_NAME = "docker-compose.yml"


def container_name(service_id: str) -> str:
    """Name of the single container that runs a service."""
    return f"{CONTAINER_PREFIX}{service_id}"


def compose_project(service_id: str) -> str:
    """Compose project name of a service's stack."""
    return f"{COMPOSE_PROJECT_PREFIX}{service_id}"


def _lines(output: str) -> set[str]:
    return {line.strip() for line in output.splitlines() if line.strip()}


@dataclass
class ContainerState:
    """Observed state of a named container."""

    name: str
    image: str
    running: bool
    status: str = ""


@dataclass
class ServiceContainer:
    """A container carrying the service label, as listed by the runtime."""

    name: str
    service_id: str


class ContainerRuntime(ABC):
    """
    Operations the agent needs from a container runtime.

    Mutating operations raise RuntimeCommandError when the runtime reports a
    failure.
    """

    @abstractmethod
    async def inspect(self, name: str) -> ContainerState | None:
        """
        Look up a container by name.

        Returns:
            The container state, or None if no such container exists
        """
        pass

    @abstractmethod
    async def pull(self, image: str) -> None:
        """Pull an image."""
        pass

    @abstractmethod
    async def run(
        self, name: str, image: str, port: int, labels: dict[str, str]
    ) -> None:
        """
        Start a detached container.

        The container restarts unless stopped and publishes ``port`` on the
        loopback interface only.
        """
        pass

    @abstractmethod
    async def remove(self, name: str) -> None:
        """Force-remove a container; removing a missing container is not an error."""
        pass

    @abstractmethod
    async def compose_pull(self, project: str, compose_file: Path) -> None:
        pass

    @abstractmethod
    async def compose_up(self, project: str, compose_file: Path) -> None:
        """Bring a stack up detached, removing orphaned stack containers."""
        pass

    @abstractmethod
    async def compose_down(self, project: str, compose_file: Path | None) -> None:
        """Tear a stack down; ``compose_file`` may be None if it is gone."""
        pass

    @abstractmethod
    async def compose_running(self, project: str, compose_file: Path) -> bool:
        """Return True if every service declared in the stack has a running container."""
        pass

    @abstractmethod
    async def list_service_containers(self) -> list[ServiceContainer]:
        """List every container (running or not) that carries the service label."""
        pass


class DockerRuntime(ContainerRuntime):
    """ContainerRuntime backed by the docker CLI."""

    def __init__(
        self, docker_bin: str = "docker", command_timeout: float | None = None
    ):
        """
        Initialize the runtime.

        Args:
            docker_bin: Docker executable
            command_timeout: Seconds before a single command is killed
                             (None waits indefinitely)
        """
        self.docker_bin = docker_bin
        self.command_timeout = command_timeout

    async def _exec(self, *args: str) -> tuple[int, str, str]:
        """Run a docker command and return (returncode, stdout, stderr)."""
        command = [self.docker_bin, *args]
        logger.debug(f"Running: {' '.join(command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RuntimeCommandError(command, None, str(e)) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.command_timeout
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise RuntimeCommandError(
                command, None, f"timed out after {self.command_timeout}s"
            ) from e

        assert process.returncode is not None
        return process.returncode, stdout.decode(), stderr.decode()

    async def _run(self, *args: str) -> str:
        returncode, stdout, stderr = await self._exec(*args)
        if returncode != 0:
            raise RuntimeCommandError([self.docker_bin, *args], returncode, stderr)
        return stdout

    def _compose_args(self, project: str, compose_file: Path | None) -> list[str]:
        args = ["compose", "-p", project]
        if compose_file is not None:
            args += ["-f", str(compose_file)]
        return args

    async def inspect(self, name: str) -> ContainerState | None:
        returncode, stdout, stderr = await self._exec(
            "inspect", "--type", "container", name
        )
        if returncode != 0:
            if "No such" in stderr:
                return None
            raise RuntimeCommandError(
                [self.docker_bin, "inspect", name], returncode, stderr
            )

        try:
            data = json.loads(stdout)
            if not data:
                return None
            container = data[0]
            state = container.get("State") or {}
            return ContainerState(
                name=name,
                image=(container.get("Config") or {}).get("Image", ""),
                running=bool(state.get("Running")),
                status=str(state.get("Status", "")).lower(),
            )
        except (json.JSONDecodeError, AttributeError, IndexError) as e:
            raise RuntimeCommandError(
                [self.docker_bin, "inspect", name],
                returncode,
                f"unparsable output: {e}",
            ) from e

    async def pull(self, image: str) -> None:
        await self._run("pull", image)

    async def run(
        self, name: str, image: str, port: int, labels: dict[str, str]
    ) -> None:
        args = ["run", "-d", "--restart", "unless-stopped", "--name", name]
        for key, value in sorted(labels.items()):
            args += ["--label", f"{key}={value}"]
        args += ["-p", f"127.0.0.1:{port}:{port}", image]
        await self._run(*args)

    async def remove(self, name: str) -> None:
        returncode, _, stderr = await self._exec("rm", "-f", name)
        # Ignore "already removed" errors
        if returncode != 0 and "No such container" not in stderr:
            raise RuntimeCommandError(
                [self.docker_bin, "rm", "-f", name], returncode, stderr
            )

    async def compose_pull(self, project: str, compose_file: Path) -> None:
        await self._run(*self._compose_args(project, compose_file), "pull")

    async def compose_up(self, project: str, compose_file: Path) -> None:
        await self._run(
            *self._compose_args(project, compose_file), "up", "-d", "--remove-orphans"
        )

    async def compose_down(self, project: str, compose_file: Path | None) -> None:
        await self._run(
            *self._compose_args(project, compose_file), "down", "--remove-orphans"
        )

    async def compose_running(self, project: str, compose_file: Path) -> bool:
        args = self._compose_args(project, compose_file)
        declared = _lines(await self._run(*args, "config", "--services"))
        running = _lines(
            await self._run(*args, "ps", "--services", "--status", "running")
        )
        return bool(declared) and declared <= running

    async def list_service_containers(self) -> list[ServiceContainer]:
        stdout = await self._run(
            "ps",
            "-a",
            "--filter",
            f"label={SERVICE_LABEL}",
            "--format",
            f'{{{{.Names}}}} {{{{.Label "{SERVICE_LABEL}"}}}}',
        )
        containers = []
        for line in stdout.splitlines():
            parts = line.strip().split(maxsplit=1)
            if len(parts) != 2:
                continue
            containers.append(ServiceContainer(name=parts[0], service_id=parts[1]))
        return containers
