"""Tests for DockerSandboxProvider against a mocked Docker client."""

import io
import tarfile
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from ptc_bridge.docker_sandbox import (
    RUNNER_SCRIPT,
    DockerSandboxConfig,
    DockerSandboxProvider,
    _pip_requirement,
)
from ptc_bridge.exceptions import ContainerError
from ptc_bridge.types import SandboxConfig, SandboxState


def _exec_result(exit_code=0, stdout=b"", stderr=b""):
    return SimpleNamespace(exit_code=exit_code, output=(stdout, stderr))


def _untar(archive: bytes) -> dict[str, bytes]:
    with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
        return {m.name: tar.extractfile(m).read() for m in tar.getmembers()}


@pytest.fixture
def container():
    container = MagicMock()
    container.id = "abcdef1234567890"
    container.exec_run.return_value = _exec_result()
    container.put_archive.return_value = True
    return container


@pytest.fixture
def docker_client(container):
    client = MagicMock()
    client.containers.run.return_value = container
    client.containers.list.return_value = []
    return client


@pytest.fixture
async def provider(docker_client):
    provider = DockerSandboxProvider(docker_client=docker_client)
    await provider.initialize()
    return provider


class TestInitialize:

    async def test_container_config(self, docker_client):
        provider = DockerSandboxProvider(docker_client=docker_client)
        await provider.initialize(SandboxConfig(
            labels={"team": "data"},
            options={"mem_limit": "1g"},
        ))
        kwargs = docker_client.containers.run.call_args.kwargs
        assert kwargs["image"] == "python:3.11-slim"
        assert kwargs["command"] == ["sleep", "infinity"]
        assert kwargs["network_disabled"] is False
        assert kwargs["labels"] == {"purpose": "code-execution", "team": "data"}
        assert kwargs["cap_drop"] == ["ALL"]
        assert kwargs["mem_limit"] == "1g"
        assert kwargs["extra_hosts"] == {"host.docker.internal": "host-gateway"}
        assert await provider.get_state() == SandboxState.RUNNING

    async def test_network_block_all(self, docker_client):
        provider = DockerSandboxProvider(docker_client=docker_client)
        await provider.initialize(SandboxConfig(network_block_all=True))
        kwargs = docker_client.containers.run.call_args.kwargs
        assert kwargs["network_disabled"] is True
        assert "extra_hosts" not in kwargs

    async def test_runner_uploaded(self, provider, container):
        path, archive = container.put_archive.call_args.args
        assert path == "/workspace/.ptc"
        assert _untar(archive) == {"runner.py": RUNNER_SCRIPT.encode()}

    async def test_reuse_existing(self, docker_client, container):
        docker_client.containers.list.return_value = [container]
        provider = DockerSandboxProvider(DockerSandboxConfig(reuse_existing=True), docker_client=docker_client)
        await provider.initialize()
        docker_client.containers.run.assert_not_called()
        assert provider.container is container

    async def test_start_failure(self, docker_client):
        docker_client.containers.run.side_effect = RuntimeError("no such image")
        provider = DockerSandboxProvider(docker_client=docker_client)
        with pytest.raises(ContainerError):
            await provider.initialize()
        assert await provider.get_state() == SandboxState.ERROR

    async def test_allow_list_warns(self, docker_client, caplog):
        provider = DockerSandboxProvider(docker_client=docker_client)
        await provider.initialize(SandboxConfig(network_allow_list=["api.internal"]))
        assert any("allow list" in r.message for r in caplog.records)


class TestExecute:

    async def test_success(self, provider, container):
        container.exec_run.return_value = _exec_result(stdout=b"hello\n")
        result = await provider.execute_code("print('hello')")
        assert result.success
        assert result.output == "hello\n"
        assert result.error is None

        commands = [c.args[0] for c in container.exec_run.call_args_list]
        run_cmd = commands[-2]
        assert run_cmd[:3] == ["python", "-u", "/workspace/.ptc/runner.py"]
        assert commands[-1][:2] == ["rm", "-f"]
        assert commands[-1][2] == run_cmd[3]

        code_dir, archive = container.put_archive.call_args.args
        assert code_dir == "/workspace/.ptc"
        assert list(_untar(archive).values()) == [b"print('hello')"]

    async def test_failure_uses_stderr(self, provider, container):
        container.exec_run.return_value = _exec_result(exit_code=1, stderr=b"Traceback...\nNameError: x\n")
        result = await provider.execute_code("x")
        assert not result.success
        assert result.exit_code == 1
        assert result.error == "Traceback...\nNameError: x"

    async def test_cleanup(self, provider, container):
        await provider.cleanup()
        container.stop.assert_called_once_with(timeout=5)
        container.remove.assert_called_once_with(force=True)
        assert await provider.get_state() == SandboxState.DESTROYED


class TestDependencies:

    @pytest.mark.parametrize("name, version, expected", [
        ("httpx", ">=0.27", "httpx>=0.27"),
        ("httpx", "0.27.0", "httpx==0.27.0"),
        ("httpx", "*", "httpx"),
        ("httpx", "", "httpx"),
    ])
    def test_pip_requirement(self, name, version, expected):
        assert _pip_requirement(name, version) == expected

    async def test_pip_install(self, provider, container):
        await provider.install_dependencies({"httpx": ">=0.27"})
        cmd = container.exec_run.call_args.args[0]
        assert cmd[:2] == ["pip", "install"]
        assert cmd[-1] == "httpx>=0.27"

    async def test_pip_failure(self, provider, container):
        container.exec_run.return_value = _exec_result(exit_code=1, stderr=b"No matching distribution")
        with pytest.raises(ContainerError, match="No matching distribution"):
            await provider.install_dependencies({"nope": "1.0"})


class TestFiles:

    async def test_upload_relative_path(self, provider, container):
        await provider.upload_file("a,b", "data/in.csv")
        assert container.exec_run.call_args.args[0] == ["mkdir", "-p", "/workspace/data"]
        path, archive = container.put_archive.call_args.args
        assert path == "/workspace/data"
        assert _untar(archive) == {"in.csv": b"a,b"}

    async def test_download(self, provider, container):
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            info = tarfile.TarInfo("out.txt")
            info.size = 5
            tar.addfile(info, io.BytesIO(b"hello"))
        container.get_archive.return_value = (iter([buffer.getvalue()]), {})
        assert await provider.download_file("/tmp/out.txt") == "hello"

    async def test_execute_command(self, provider, container):
        container.exec_run.return_value = _exec_result(stdout=b"ok")
        result = await provider.execute_command("ls", cwd="/tmp")
        assert result.stdout == "ok"
        assert container.exec_run.call_args.args[0] == ["sh", "-c", "ls"]
        assert container.exec_run.call_args.kwargs["workdir"] == "/tmp"
