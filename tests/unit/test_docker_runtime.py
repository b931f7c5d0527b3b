"""
Unit tests for DockerRuntime.

The docker CLI is never invoked: asyncio.create_subprocess_exec is patched and
the tests assert on the argument vectors and on output parsing.
"""

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, Mock, patch

import pytest

from mdp_agent.runtime import DockerRuntime, compose_project, container_name
from mdp_common.errors import RuntimeCommandError


def fake_process(returncode=0, stdout=b"", stderr=b""):
    process = Mock()
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.wait = AsyncMock(return_value=returncode)
    return process


class TestDockerRuntime:
    """Test suite for DockerRuntime class."""

    @pytest.fixture
    def runtime(self):
        return DockerRuntime()

    def test_naming(self):
        assert container_name("abc") == "svc-abc"
        assert compose_project("abc") == "mdp-abc"

    @pytest.mark.asyncio
    async def test_run_arguments(self, runtime):
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(return_value=fake_process(stdout=b"cid\n")),
        ) as mock_exec:
            await runtime.run("svc-s1", "nginx:1.25", 8080, {"mdp.service": "s1"})

        args = mock_exec.call_args[0]
        assert list(args) == [
            "docker",
            "run",
            "-d",
            "--restart",
            "unless-stopped",
            "--name",
            "svc-s1",
            "--label",
            "mdp.service=s1",
            "-p",
            "127.0.0.1:8080:8080",
            "nginx:1.25",
        ]

    @pytest.mark.asyncio
    async def test_failure_raises_runtime_command_error(self, runtime):
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(return_value=fake_process(returncode=1, stderr=b"manifest unknown")),
        ):
            with pytest.raises(RuntimeCommandError) as exc_info:
                await runtime.pull("nginx:nope")

        assert exc_info.value.returncode == 1
        assert exc_info.value.stderr == "manifest unknown"
        assert exc_info.value.command == ["docker", "pull", "nginx:nope"]

    @pytest.mark.asyncio
    async def test_missing_binary_raises_runtime_command_error(self, runtime):
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(side_effect=FileNotFoundError("docker")),
        ):
            with pytest.raises(RuntimeCommandError):
                await runtime.pull("nginx")

    @pytest.mark.asyncio
    async def test_timeout_kills_command(self):
        runtime = DockerRuntime(command_timeout=0.01)
        process = fake_process()

        async def hang():
            await asyncio.sleep(10)

        process.communicate = hang
        process.kill = Mock()
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(RuntimeCommandError) as exc_info:
                await runtime.pull("nginx")

        process.kill.assert_called_once()
        assert "timed out" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_inspect_parses_state(self, runtime):
        output = json.dumps(
            [
                {
                    "Id": "abc",
                    "Config": {"Image": "nginx:1.25"},
                    "State": {"Running": True, "Status": "running"},
                }
            ]
        ).encode()
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(return_value=fake_process(stdout=output)),
        ):
            state = await runtime.inspect("svc-s1")

        assert state.image == "nginx:1.25"
        assert state.running
        assert state.status == "running"

    @pytest.mark.asyncio
    async def test_inspect_missing_container(self, runtime):
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(
                return_value=fake_process(
                    returncode=1, stderr=b"Error: No such container: svc-s1"
                )
            ),
        ):
            assert await runtime.inspect("svc-s1") is None

    @pytest.mark.asyncio
    async def test_remove_ignores_missing_container(self, runtime):
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(
                return_value=fake_process(
                    returncode=1, stderr=b"Error: No such container: svc-s1"
                )
            ),
        ):
            await runtime.remove("svc-s1")

    @pytest.mark.asyncio
    async def test_compose_commands(self, runtime):
        compose_file = Path("/srv/compose/s1/docker-compose.yml")
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(return_value=fake_process(stdout=b"abc123\n")),
        ) as mock_exec:
            await runtime.compose_up("mdp-s1", compose_file)
            running = await runtime.compose_running("mdp-s1", compose_file)
            await runtime.compose_down("mdp-s1", None)

        calls = [list(call[0]) for call in mock_exec.call_args_list]
        assert calls[0] == [
            "docker",
            "compose",
            "-p",
            "mdp-s1",
            "-f",
            str(compose_file),
            "up",
            "-d",
            "--remove-orphans",
        ]
        assert running is True
        assert calls[1][-2:] == ["config", "--services"]
        assert calls[2][-4:] == ["ps", "--services", "--status", "running"]
        assert calls[3] == ["docker", "compose", "-p", "mdp-s1", "down", "--remove-orphans"]

    @pytest.mark.asyncio
    async def test_compose_not_running(self, runtime):
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(return_value=fake_process(stdout=b"\n")),
        ):
            assert await runtime.compose_running("mdp-s1", Path("x.yml")) is False

    @pytest.mark.asyncio
    async def test_partly_running_stack_is_not_running(self, runtime):
        """Test that one exited service makes the whole stack count as down."""
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(
                side_effect=[
                    fake_process(stdout=b"app\ndb\n"),
                    fake_process(stdout=b"app\n"),
                ]
            ),
        ):
            assert await runtime.compose_running("mdp-s1", Path("x.yml")) is False

    @pytest.mark.asyncio
    async def test_fully_running_stack(self, runtime):
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(
                side_effect=[
                    fake_process(stdout=b"app\ndb\n"),
                    fake_process(stdout=b"db\napp\n"),
                ]
            ),
        ):
            assert await runtime.compose_running("mdp-s1", Path("x.yml")) is True

    @pytest.mark.asyncio
    async def test_list_service_containers(self, runtime):
        output = b"svc-a a\nsvc-b b\n\nweird\n"
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(return_value=fake_process(stdout=output)),
        ) as mock_exec:
            containers = await runtime.list_service_containers()

        assert [(c.name, c.service_id) for c in containers] == [
            ("svc-a", "a"),
            ("svc-b", "b"),
        ]
        args = list(mock_exec.call_args[0])
        assert args[:5] == ["docker", "ps", "-a", "--filter", "label=mdp.service"]
        assert args[-1] == '{{.Names}} {{.Label "mdp.service"}}'
