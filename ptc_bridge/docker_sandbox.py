"""
Docker sandbox provider - executes code in an isolated Docker container

Core mechanism:
1. One long-lived container per provider, started at initialize()
2. Each execution uploads the code as a file and runs it with ``exec``
3. The generated stub inside the code reaches the tool bridge over HTTP;
   the container never sees host credentials, only the execution token
4. Dependencies are pip-installed into the container once

Hardening: memory/CPU limits, ``no-new-privileges``, all capabilities
dropped. Networking stays enabled unless ``network_block_all`` is set,
because tool calls travel over the network to the bridge.
"""

import asyncio
import functools
import io
import logging
import tarfile
import time as time_module
import uuid
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any

from .exceptions import ContainerError, SandboxError
from .sandbox_provider import CommandResult, SandboxProvider
from .types import CodeExecutionResult, SandboxConfig

logger = logging.getLogger(__name__)

# Runs a code file with top-level await enabled
RUNNER_SCRIPT = '''\
import ast
import asyncio
import sys

with open(sys.argv[1], encoding="utf-8") as f:
    source = f.read()

code = compile(source, "<sandbox>", "exec", flags=ast.PyCF_ALLOW_TOP_LEVEL_AWAIT)
result = eval(code, {"__name__": "__main__", "__builtins__": __builtins__})
if asyncio.iscoroutine(result):
    asyncio.run(result)
'''


@dataclass
class DockerSandboxConfig:
    """Docker-specific settings"""
    image: str = "python:3.11-slim"
    memory_limit: str = "256m"
    cpu_quota: int = 50000  # 50% of one CPU
    cpu_period: int = 100000
    working_dir: str = "/workspace"
    # Lets sandboxed code reach a bridge served on the Docker host
    extra_hosts: dict[str, str] = field(
        default_factory=lambda: {"host.docker.internal": "host-gateway"}
    )
    # Reuse a running container carrying the same "purpose" label
    reuse_existing: bool = False
    sandbox_label: str = "code-execution"
    pip_timeout_seconds: float = 300.0


def _tar_single_file(name: str, data: bytes) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        info = tarfile.TarInfo(name=name)
        info.size = len(data)
        info.mode = 0o644
        info.mtime = int(time_module.time())
        tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def _pip_requirement(name: str, version: str) -> str:
    version = (version or "").strip()
    if not version or version in ("*", "latest"):
        return name
    if version[0].isdigit():
        return f"{name}=={version}"
    return f"{name}{version}"


def _decode(data: bytes | None) -> str:
    return data.decode("utf-8", errors="replace") if data else ""


class DockerSandboxProvider(SandboxProvider):
    """
    Docker isolation provider

    Usage:
        provider = DockerSandboxProvider(DockerSandboxConfig(image="python:3.12-slim"))
        await provider.initialize(SandboxConfig(labels={"team": "data"}))
        result = await provider.execute_code("print('hello')")
        await provider.cleanup()
    """

    name = "docker"

    def __init__(self, docker_config: DockerSandboxConfig | None = None, docker_client: Any = None):
        super().__init__()
        self.docker_config = docker_config or DockerSandboxConfig()
        self._docker_client = docker_client
        self._container = None

    @property
    def docker_client(self):
        """Lazily created Docker client"""
        if self._docker_client is None:
            try:
                import docker
                self._docker_client = docker.from_env()
            except ImportError:
                raise SandboxError(
                    "Docker SDK not installed. Run: pip install docker"
                )
            except Exception as e:
                raise ContainerError(f"Failed to connect to Docker: {e}")
        return self._docker_client

    @property
    def container(self):
        if self._container is None:
            raise ContainerError("Container not started")
        return self._container

    @property
    def _runtime_dir(self) -> PurePosixPath:
        return PurePosixPath(self.docker_config.working_dir) / ".ptc"

    async def _run_blocking(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    def _container_config(self, config: SandboxConfig) -> dict:
        labels = {"purpose": self.docker_config.sandbox_label}
        labels.update(config.labels)

        container_config = {
            "image": self.docker_config.image,
            "command": ["sleep", "infinity"],
            "detach": True,
            "network_disabled": config.network_block_all,
            "mem_limit": self.docker_config.memory_limit,
            "cpu_period": self.docker_config.cpu_period,
            "cpu_quota": self.docker_config.cpu_quota,
            "working_dir": self.docker_config.working_dir,
            "labels": labels,
            "security_opt": ["no-new-privileges"],
            "cap_drop": ["ALL"],
        }
        if not config.network_block_all and self.docker_config.extra_hosts:
            container_config["extra_hosts"] = dict(self.docker_config.extra_hosts)
        container_config.update(config.options)
        return container_config

    def _find_existing(self):
        containers = self.docker_client.containers.list(
            filters={"label": f"purpose={self.docker_config.sandbox_label}", "status": "running"}
        )
        return containers[0] if containers else None

    async def _do_initialize(self, config: SandboxConfig) -> None:
        if config.network_allow_list:
            logger.warning(
                "Docker provider cannot restrict egress to an allow list; "
                f"ignoring network_allow_list={config.network_allow_list}"
            )
        if config.auto_stop_interval is not None:
            logger.debug("auto_stop_interval is not supported by the Docker provider")

        if self.docker_config.reuse_existing:
            existing = await self._run_blocking(self._find_existing)
            if existing is not None:
                self._container = existing
                logger.info(f"Reusing sandbox container: {existing.id[:12]}")
                await self._prepare_runtime()
                return

        container_config = self._container_config(config)
        logger.info(f"Creating sandbox container from {container_config['image']}")
        try:
            self._container = await self._run_blocking(
                self.docker_client.containers.run, **container_config
            )
        except SandboxError:
            raise
        except Exception as e:
            raise ContainerError(f"Failed to start container: {e}")

        logger.info(f"Sandbox container started: {self._container.id[:12]}")
        await self._prepare_runtime()

    async def _prepare_runtime(self) -> None:
        result = await self._exec(["mkdir", "-p", str(self._runtime_dir)])
        if result.exit_code != 0:
            raise ContainerError(f"Failed to create runtime dir: {result.stderr}")
        await self._put_file(self._runtime_dir / "runner.py", RUNNER_SCRIPT.encode("utf-8"))

    async def _exec(self, cmd: list[str], workdir: str | None = None) -> CommandResult:
        exec_result = await self._run_blocking(
            self.container.exec_run,
            cmd,
            demux=True,
            workdir=workdir or self.docker_config.working_dir,
        )
        stdout, stderr = exec_result.output if exec_result.output else (None, None)
        return CommandResult(
            stdout=_decode(stdout),
            stderr=_decode(stderr),
            exit_code=exec_result.exit_code,
        )

    async def _put_file(self, path: PurePosixPath, data: bytes) -> None:
        archive = _tar_single_file(path.name, data)
        ok = await self._run_blocking(self.container.put_archive, str(path.parent), archive)
        if not ok:
            raise ContainerError(f"Failed to upload {path}")

    async def _do_execute_code(self, code: str) -> CodeExecutionResult:
        start_time = time_module.time()
        code_path = self._runtime_dir / f"exec_{uuid.uuid4().hex[:12]}.py"
        await self._put_file(code_path, code.encode("utf-8"))
        try:
            result = await self._exec(
                ["python", "-u", str(self._runtime_dir / "runner.py"), str(code_path)]
            )
        finally:
            await self._exec(["rm", "-f", str(code_path)])

        success = result.exit_code == 0
        return CodeExecutionResult(
            success=success,
            output=result.stdout,
            exit_code=result.exit_code,
            error=None if success else (result.stderr.strip() or "Code execution failed"),
            execution_time_ms=(time_module.time() - start_time) * 1000,
        )

    async def _do_cleanup(self) -> None:
        if self._container is None:
            return
        container, self._container = self._container, None
        try:
            await self._run_blocking(container.stop, timeout=5)
            await self._run_blocking(container.remove, force=True)
        except Exception as e:
            raise ContainerError(f"Failed to cleanup container: {e}")

    async def install_dependencies(self, packages: dict[str, str]) -> None:
        if not packages:
            return
        requirements = [_pip_requirement(name, version) for name, version in packages.items()]
        logger.info(f"Installing sandbox dependencies: {requirements}")
        result = await asyncio.wait_for(
            self._exec(["pip", "install", "--quiet", "--disable-pip-version-check", *requirements]),
            timeout=self.docker_config.pip_timeout_seconds,
        )
        if result.exit_code != 0:
            raise ContainerError(f"Failed to install dependencies: {result.stderr or result.stdout}")
        logger.info("Sandbox dependencies installed")

    def _container_path(self, path: str) -> PurePosixPath:
        target = PurePosixPath(path)
        if not target.is_absolute():
            target = PurePosixPath(self.docker_config.working_dir) / target
        return target

    async def upload_file(self, content: str | bytes, path: str) -> None:
        data = content.encode("utf-8") if isinstance(content, str) else content
        target = self._container_path(path)
        await self._exec(["mkdir", "-p", str(target.parent)])
        await self._put_file(target, data)

    async def download_file(self, path: str) -> str:
        target = self._container_path(path)
        try:
            stream, _ = await self._run_blocking(self.container.get_archive, str(target))
        except Exception as e:
            raise SandboxError(f"File not found in sandbox: {path} ({e})")
        raw = b"".join(stream)
        with tarfile.open(fileobj=io.BytesIO(raw)) as tar:
            member = tar.getmember(target.name)
            extracted = tar.extractfile(member)
            if extracted is None:
                raise SandboxError(f"Not a regular file: {path}")
            return extracted.read().decode("utf-8")

    async def execute_command(self, command: str, cwd: str | None = None) -> CommandResult:
        return await self._exec(["sh", "-c", command], workdir=cwd)
