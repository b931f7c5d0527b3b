"""
Unit tests for ReconciliationAgent.

These tests drive the agent against an in-memory container runtime and a
mocked control-plane client to test the reconciliation logic in isolation.
"""

import asyncio
from pathlib import Path
from unittest.mock import Mock

import pytest
import yaml

from mdp_agent.reconciler import ReconciliationAgent
from mdp_agent.runtime import (
    SERVICE_LABEL,
    ContainerRuntime,
    ContainerState,
    ServiceContainer,
)
from mdp_common.errors import ControlPlaneError, RuntimeCommandError
from mdp_common.models import Service

COMPOSE = "services:\n  app:\n    image: nginx:1.25\n"
TWO_SERVICES = COMPOSE + "  db:\n    image: postgres:16\n"


class FakeRuntime(ContainerRuntime):
    """In-memory runtime that records every mutating call."""

    def __init__(self):
        self.containers: dict[str, dict] = {}
        # project -> services with a running container
        self.stacks: dict[str, set[str]] = {}
        # project -> services declared by the last compose file brought up
        self.declared: dict[str, set[str]] = {}
        self.calls: list[tuple] = []
        self.fail_run_for: set[str] = set()
        self.fail_compose_pull = False
        self.fail_compose_down = False

    @property
    def mutations(self) -> list[tuple]:
        return [c for c in self.calls if c[0] != "compose_running"]

    async def inspect(self, name):
        container = self.containers.get(name)
        if container is None:
            return None
        return ContainerState(
            name=name, image=container["image"], running=container["running"]
        )

    async def pull(self, image):
        self.calls.append(("pull", image))

    async def run(self, name, image, port, labels):
        self.calls.append(("run", name, image, port))
        if name in self.fail_run_for:
            raise RuntimeCommandError(["docker", "run", name], 125, "port in use")
        self.containers[name] = {
            "image": image,
            "running": True,
            "service_id": labels[SERVICE_LABEL],
        }

    async def remove(self, name):
        self.calls.append(("remove", name))
        self.containers.pop(name, None)

    async def compose_pull(self, project, compose_file):
        self.calls.append(("compose_pull", project))
        if self.fail_compose_pull:
            raise RuntimeCommandError(["docker", "compose", "pull"], 1, "offline")

    async def compose_up(self, project, compose_file):
        content = Path(compose_file).read_text()
        self.calls.append(("compose_up", project, content))
        services = set(yaml.safe_load(content)["services"])
        self.declared[project] = services
        self.stacks[project] = set(services)

    async def compose_down(self, project, compose_file):
        self.calls.append(("compose_down", project))
        if self.fail_compose_down:
            raise RuntimeCommandError(["docker", "compose", "down"], 1, "daemon busy")
        self.stacks.pop(project, None)
        self.declared.pop(project, None)

    async def compose_running(self, project, compose_file):
        self.calls.append(("compose_running", project))
        declared = self.declared.get(project, set())
        return bool(declared) and declared <= self.stacks.get(project, set())

    async def list_service_containers(self):
        return [
            ServiceContainer(name=name, service_id=c["service_id"])
            for name, c in self.containers.items()
        ]


def single(service_id, image="nginx:1.25", port=8080):
    return Service(
        id=service_id, project_id="p1", name=service_id, image=image, internal_port=port
    )


def compose(service_id, text=COMPOSE):
    return Service(id=service_id, project_id="p1", name=service_id, compose=text)


class TestReconciliationAgent:
    """Test suite for ReconciliationAgent class."""

    @pytest.fixture
    def runtime(self):
        return FakeRuntime()

    @pytest.fixture
    def client(self):
        """Create a mock control-plane client."""
        client = Mock()
        client.get_desired_services = Mock(return_value=[])
        client.get_traefik_config = Mock(return_value=b"http: {}\n")
        return client

    @pytest.fixture
    def agent(self, client, runtime, tmp_path):
        return ReconciliationAgent(
            client=client,
            runtime=runtime,
            traefik_path=tmp_path / "traefik" / "dynamic.yml",
            compose_dir=tmp_path / "compose",
            poll_interval=0.05,
            reconcile_interval=0.05,
        )

    @pytest.mark.asyncio
    async def test_starts_missing_container(self, agent, client, runtime):
        client.get_desired_services.return_value = [single("s1")]

        await agent.reconcile_pass()

        assert runtime.calls == [
            ("pull", "nginx:1.25"),
            ("run", "svc-s1", "nginx:1.25", 8080),
        ]

    @pytest.mark.asyncio
    async def test_second_pass_is_idempotent(self, agent, client, runtime, tmp_path):
        """Test that an unchanged desired state causes zero runtime mutations."""
        client.get_desired_services.return_value = [single("s1"), compose("s2")]

        await agent.reconcile_pass()
        assert runtime.mutations
        runtime.calls.clear()

        await agent.reconcile_pass()
        assert runtime.mutations == []
        assert (tmp_path / "compose" / "s2" / "docker-compose.yml").read_text() == COMPOSE

    @pytest.mark.asyncio
    async def test_image_change_replaces_container(self, agent, client, runtime):
        runtime.containers["svc-s1"] = {
            "image": "nginx:1.24",
            "running": True,
            "service_id": "s1",
        }
        client.get_desired_services.return_value = [single("s1", image="nginx:1.25")]

        await agent.reconcile_pass()

        assert runtime.calls == [
            ("pull", "nginx:1.25"),
            ("remove", "svc-s1"),
            ("run", "svc-s1", "nginx:1.25", 8080),
        ]

    @pytest.mark.asyncio
    async def test_stopped_container_is_recreated(self, agent, client, runtime):
        runtime.containers["svc-s1"] = {
            "image": "nginx:1.25",
            "running": False,
            "service_id": "s1",
        }
        client.get_desired_services.return_value = [single("s1")]

        await agent.reconcile_pass()

        assert ("run", "svc-s1", "nginx:1.25", 8080) in runtime.calls
        assert runtime.containers["svc-s1"]["running"]

    @pytest.mark.asyncio
    async def test_blank_image_is_skipped(self, agent, client, runtime):
        client.get_desired_services.return_value = [single("s1", image="  ")]

        await agent.reconcile_pass()

        assert runtime.calls == []

    @pytest.mark.asyncio
    async def test_port_zero_defaults_to_80(self, agent, client, runtime):
        client.get_desired_services.return_value = [single("s1", port=0)]

        await agent.reconcile_pass()

        assert ("run", "svc-s1", "nginx:1.25", 80) in runtime.calls

    @pytest.mark.asyncio
    async def test_cleanup_removes_undesired(self, agent, client, runtime, tmp_path):
        """Test that labelled containers and compose dirs not desired are removed."""
        runtime.containers["svc-old"] = {
            "image": "x",
            "running": True,
            "service_id": "old",
        }
        stale_dir = tmp_path / "compose" / "gone"
        stale_dir.mkdir(parents=True)
        (stale_dir / "docker-compose.yml").write_text(COMPOSE)
        runtime.stacks["mdp-gone"] = {"app"}
        client.get_desired_services.return_value = [single("s1")]

        await agent.reconcile_pass()

        assert set(runtime.containers) == {"svc-s1"}
        assert not stale_dir.exists()
        assert ("compose_down", "mdp-gone") in runtime.calls

        runtime.calls.clear()
        await agent.reconcile_pass()
        assert runtime.mutations == []

    @pytest.mark.asyncio
    async def test_switch_to_compose_removes_single_container(
        self, agent, client, runtime
    ):
        runtime.containers["svc-s1"] = {
            "image": "nginx:1.25",
            "running": True,
            "service_id": "s1",
        }
        client.get_desired_services.return_value = [compose("s1")]

        await agent.reconcile_pass()

        assert runtime.calls[0] == ("remove", "svc-s1")
        assert ("compose_up", "mdp-s1", COMPOSE) in runtime.calls
        assert "svc-s1" not in runtime.containers

    @pytest.mark.asyncio
    async def test_switch_to_single_tears_down_stack(
        self, agent, client, runtime, tmp_path
    ):
        client.get_desired_services.return_value = [compose("s1")]
        await agent.reconcile_pass()

        client.get_desired_services.return_value = [single("s1")]
        runtime.calls.clear()
        await agent.reconcile_pass()

        assert runtime.calls[0] == ("compose_down", "mdp-s1")
        assert not (tmp_path / "compose" / "s1").exists()
        assert runtime.containers["svc-s1"]["image"] == "nginx:1.25"

    @pytest.mark.asyncio
    async def test_compose_change_is_applied(self, agent, client, runtime, tmp_path):
        client.get_desired_services.return_value = [compose("s1")]
        await agent.reconcile_pass()

        updated = COMPOSE.replace("1.25", "1.26")
        client.get_desired_services.return_value = [compose("s1", updated)]
        runtime.calls.clear()
        await agent.reconcile_pass()

        assert ("compose_up", "mdp-s1", updated) in runtime.calls
        assert (tmp_path / "compose" / "s1" / "docker-compose.yml").read_text() == updated

    @pytest.mark.asyncio
    async def test_stopped_stack_is_restarted(self, agent, client, runtime):
        client.get_desired_services.return_value = [compose("s1")]
        await agent.reconcile_pass()

        runtime.stacks["mdp-s1"] = set()
        runtime.calls.clear()
        await agent.reconcile_pass()

        assert ("compose_up", "mdp-s1", COMPOSE) in runtime.calls

    @pytest.mark.asyncio
    async def test_partly_down_stack_is_brought_up(self, agent, client, runtime):
        """Test that one exited service in an unchanged stack triggers compose up."""
        client.get_desired_services.return_value = [compose("s1", TWO_SERVICES)]
        await agent.reconcile_pass()

        runtime.stacks["mdp-s1"].discard("db")
        runtime.calls.clear()
        await agent.reconcile_pass()

        assert ("compose_up", "mdp-s1", TWO_SERVICES) in runtime.calls
        assert runtime.stacks["mdp-s1"] == {"app", "db"}

        runtime.calls.clear()
        await agent.reconcile_pass()
        assert runtime.mutations == []

    @pytest.mark.asyncio
    async def test_failed_teardown_still_starts_container(
        self, agent, client, runtime, tmp_path
    ):
        client.get_desired_services.return_value = [compose("s1")]
        await agent.reconcile_pass()

        runtime.fail_compose_down = True
        client.get_desired_services.return_value = [single("s1")]
        await agent.reconcile_pass()

        assert runtime.containers["svc-s1"]["image"] == "nginx:1.25"
        assert not (tmp_path / "compose" / "s1").exists()

    @pytest.mark.asyncio
    async def test_compose_pull_failure_still_brings_stack_up(
        self, agent, client, runtime
    ):
        runtime.fail_compose_pull = True
        client.get_desired_services.return_value = [compose("s1")]

        await agent.reconcile_pass()

        assert runtime.stacks["mdp-s1"]

    @pytest.mark.asyncio
    async def test_service_failure_is_isolated(self, agent, client, runtime):
        """Test that one failing service does not stop the rest of the pass."""
        runtime.fail_run_for = {"svc-bad"}
        runtime.containers["svc-old"] = {
            "image": "x",
            "running": True,
            "service_id": "old",
        }
        client.get_desired_services.return_value = [single("bad"), single("good")]

        await agent.reconcile_pass()

        assert "svc-good" in runtime.containers
        assert "svc-bad" not in runtime.containers
        assert "svc-old" not in runtime.containers

    @pytest.mark.asyncio
    async def test_fetch_failure_skips_pass(self, agent, client, runtime):
        """Test that a failed fetch changes nothing, including cleanup."""
        runtime.containers["svc-s1"] = {
            "image": "x",
            "running": True,
            "service_id": "s1",
        }
        client.get_desired_services.side_effect = ControlPlaneError("boom", 502)

        await agent.reconcile_pass()

        assert runtime.calls == []
        assert "svc-s1" in runtime.containers

    @pytest.mark.asyncio
    async def test_config_pass_writes_on_change_only(self, agent, client, tmp_path):
        path = tmp_path / "traefik" / "dynamic.yml"

        assert await agent.config_pass() is True
        assert path.read_bytes() == b"http: {}\n"

        path.write_bytes(b"edited locally")
        assert await agent.config_pass() is False
        assert path.read_bytes() == b"edited locally"

        client.get_traefik_config.return_value = b"http:\n  routers: {}\n"
        assert await agent.config_pass() is True
        assert path.read_bytes() == b"http:\n  routers: {}\n"

    @pytest.mark.asyncio
    async def test_config_fetch_failure_keeps_file(self, agent, client, tmp_path):
        client.get_traefik_config.side_effect = ControlPlaneError("down")

        assert await agent.config_pass() is False
        assert not (tmp_path / "traefik" / "dynamic.yml").exists()

    @pytest.mark.asyncio
    async def test_start_stop(self, agent, client):
        """Test that both loops run and stop cleanly."""
        await agent.start()
        assert agent.running

        await asyncio.sleep(0.12)
        await agent.stop()

        assert not agent.running
        assert client.get_traefik_config.call_count >= 1
        assert client.get_desired_services.call_count >= 2
