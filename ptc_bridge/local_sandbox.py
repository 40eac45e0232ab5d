"""
Local Sandbox Provider - Execute code in the local Python process without Docker

A simple alternative to DockerSandboxProvider for development/testing or
environments where Docker is not available.

Key differences from DockerSandboxProvider:
- No Docker dependency - code runs in the same Python process and event loop
- No network/filesystem isolation (less secure)
- Faster startup (no container overhead)
- Dependencies are checked for importability, never installed

Warning:
- This provider provides NO security isolation
- Only use with trusted code or in development environments
- For untrusted code, use DockerSandboxProvider
"""

import ast
import asyncio
import builtins
import importlib.util
import inspect
import json
import logging
import shutil
import sys
import tempfile
import time as time_module
import traceback
from dataclasses import dataclass
from pathlib import Path

from .exceptions import SandboxError
from .sandbox_provider import CommandResult, SandboxProvider
from .types import CodeExecutionResult, SandboxConfig

logger = logging.getLogger(__name__)


@dataclass
class LocalSandboxConfig:
    """Local sandbox configuration"""
    max_output_size: int = 100000  # Max characters for captured output
    # Directory for upload/download/execute_command; a temp dir when None
    working_dir: str | None = None


class OutputCapture:
    """Capture print() output"""

    def __init__(self, max_size: int = 100000):
        self.outputs: list[str] = []
        self.max_size = max_size
        self._current_size = 0

    def write(self, text: str) -> None:
        if self._current_size < self.max_size:
            self.outputs.append(text)
            self._current_size += len(text)

    def flush(self) -> None:
        pass

    def get_output(self) -> str:
        return "".join(self.outputs)


def _make_print(capture: OutputCapture):
    def sandbox_print(*args, sep=" ", end="\n", file=None, flush=False):
        if file is not None and file is not sys.stdout:
            builtins.print(*args, sep=sep, end=end, file=file, flush=flush)
            return
        capture.write((sep if sep is not None else " ").join(str(a) for a in args) + (end if end is not None else "\n"))

    return sandbox_print


class LocalSandboxProvider(SandboxProvider):
    """
    Local Sandbox Provider - Execute code without Docker

    Every execution gets fresh globals, so no state is shared between runs.
    ``print`` is captured per execution; top-level ``await`` is supported.

    Usage:
        provider = LocalSandboxProvider()
        await provider.initialize()
        result = await provider.execute_code("print(await asyncio.sleep(0, 'hi'))")
    """

    name = "local"

    def __init__(self, local_config: LocalSandboxConfig | None = None):
        super().__init__()
        self.local_config = local_config or LocalSandboxConfig()
        self._working_dir: Path | None = None
        self._owns_working_dir = False

    @property
    def working_dir(self) -> Path:
        if self._working_dir is None:
            raise SandboxError("Local sandbox not initialized")
        return self._working_dir

    async def _do_initialize(self, config: SandboxConfig) -> None:
        if self.local_config.working_dir:
            self._working_dir = Path(self.local_config.working_dir)
            self._working_dir.mkdir(parents=True, exist_ok=True)
            self._owns_working_dir = False
        else:
            self._working_dir = Path(tempfile.mkdtemp(prefix="ptc_local_"))
            self._owns_working_dir = True
        logger.debug(f"Local sandbox working dir: {self._working_dir}")

    async def _do_execute_code(self, code: str) -> CodeExecutionResult:
        start_time = time_module.time()
        output_capture = OutputCapture(self.local_config.max_output_size)
        exec_globals = {
            "__builtins__": builtins,
            "__name__": "__sandbox__",
            "asyncio": asyncio,
            "json": json,
            "print": _make_print(output_capture),
        }

        error = None
        exit_code = 0
        try:
            compiled = compile(code, "<sandbox>", "exec", flags=ast.PyCF_ALLOW_TOP_LEVEL_AWAIT)
            result = eval(compiled, exec_globals)
            if inspect.isawaitable(result):
                await result
        except SystemExit as e:
            exit_code = e.code if isinstance(e.code, int) else (0 if e.code is None else 1)
            if exit_code != 0:
                error = f"SystemExit: {e.code}"
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            exit_code = 1
            logger.debug(f"Code execution error: {error}")
            logger.debug(traceback.format_exc())

        return CodeExecutionResult(
            success=exit_code == 0,
            output=output_capture.get_output(),
            exit_code=exit_code,
            error=error,
            execution_time_ms=(time_module.time() - start_time) * 1000,
        )

    async def _do_cleanup(self) -> None:
        if self._working_dir is not None and self._owns_working_dir:
            shutil.rmtree(self._working_dir, ignore_errors=True)
        self._working_dir = None

    async def install_dependencies(self, packages: dict[str, str]) -> None:
        """Verify the packages are importable in this process; nothing is installed"""
        missing = [name for name in packages if importlib.util.find_spec(name) is None]
        if missing:
            raise SandboxError(
                f"Local sandbox cannot install packages; missing: {', '.join(missing)}. "
                f"Install them into the host environment."
            )
        logger.debug(f"Local sandbox dependencies available: {list(packages)}")

    def _resolve(self, path: str) -> Path:
        return self.working_dir / path.lstrip("/")

    async def upload_file(self, content: str | bytes, path: str) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content, encoding="utf-8")

    async def download_file(self, path: str) -> str:
        target = self._resolve(path)
        if not target.is_file():
            raise SandboxError(f"File not found in sandbox: {path}")
        return target.read_text(encoding="utf-8")

    async def execute_command(self, command: str, cwd: str | None = None) -> CommandResult:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(self._resolve(cwd) if cwd else self.working_dir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        return CommandResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=process.returncode,
        )
