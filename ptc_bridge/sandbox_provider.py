"""
Isolation provider base class

A provider owns one isolated runtime and exposes:
    initialize(config)            -> None
    execute_code(code)            -> CodeExecutionResult
    install_dependencies(pkgs)    -> None
    upload_file / download_file / execute_command   (optional)
    cleanup()                     -> None
    get_state()                   -> SandboxState

Subclasses implement ``_do_initialize``, ``_do_execute_code`` and
``_do_cleanup``; the base class tracks state, makes initialization
single-flight, applies timeouts, and turns execution failures into results.
"""

import asyncio
import logging
import time as time_module
from abc import ABC, abstractmethod
from dataclasses import dataclass

from .exceptions import ExecutionTimeoutError, SandboxNotReadyError
from .types import CodeExecutionResult, SandboxConfig, SandboxState

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Shell command result"""
    stdout: str
    stderr: str
    exit_code: int


class SandboxProvider(ABC):
    """
    Base class for isolation providers

    Usage:
        class MyProvider(SandboxProvider):
            name = "my-sandbox"

            async def _do_initialize(self, config): ...
            async def _do_execute_code(self, code): ...
            async def _do_cleanup(self): ...
    """

    name = "base"

    def __init__(self):
        self.config: SandboxConfig | None = None
        self._state = SandboxState.UNINITIALIZED
        self._init_task: asyncio.Task | None = None

    async def initialize(self, config: SandboxConfig | None = None) -> None:
        """
        Bring the runtime up. Concurrent callers await the same attempt; a
        failed attempt leaves the state at ``error`` and may be retried.
        """
        if self._init_task is None:
            self.config = config or SandboxConfig()
            self._state = SandboxState.CREATING
            self._init_task = asyncio.ensure_future(self._run_initialize(self.config))
        await asyncio.shield(self._init_task)

    async def _run_initialize(self, config: SandboxConfig) -> None:
        try:
            await self._do_initialize(config)
        except Exception as e:
            self._state = SandboxState.ERROR
            self._init_task = None
            logger.error(f"Failed to initialize sandbox provider '{self.name}': {e}")
            raise
        self._state = SandboxState.RUNNING
        logger.info(f"Sandbox provider '{self.name}' initialized")

    async def is_ready(self) -> bool:
        return self._state == SandboxState.RUNNING

    async def get_state(self) -> SandboxState:
        return self._state

    async def execute_code(self, code: str, timeout_ms: int | None = None) -> CodeExecutionResult:
        """
        Run ``code`` in the sandbox.

        Args:
            code: Python source; top-level ``await`` is allowed
            timeout_ms: Overrides ``SandboxConfig.timeout_seconds`` for this run

        Raises:
            SandboxNotReadyError: provider is not running

        Any other failure, including a timeout, is returned as an
        unsuccessful result with exit code 1.
        """
        if self._state != SandboxState.RUNNING:
            raise SandboxNotReadyError(self._state.value)

        if timeout_ms is not None:
            timeout = timeout_ms / 1000
        else:
            timeout = self.config.timeout_seconds if self.config else None

        start_time = time_module.time()
        try:
            if timeout:
                try:
                    result = await asyncio.wait_for(self._do_execute_code(code), timeout=timeout)
                except asyncio.TimeoutError:
                    raise ExecutionTimeoutError(timeout)
            else:
                result = await self._do_execute_code(code)
        except Exception as e:
            logger.error(f"Code execution failed: {e}")
            return CodeExecutionResult(
                success=False,
                output="",
                exit_code=1,
                error=str(e) or type(e).__name__,
                execution_time_ms=(time_module.time() - start_time) * 1000,
            )

        logger.debug(
            f"Code execution completed: success={result.success}, "
            f"{(time_module.time() - start_time) * 1000:.0f}ms"
        )
        return result

    async def cleanup(self) -> None:
        logger.info(f"Cleaning up sandbox provider '{self.name}'")
        try:
            await self._do_cleanup()
        except Exception as e:
            logger.error(f"Failed to cleanup sandbox provider '{self.name}': {e}")
            raise
        self._state = SandboxState.DESTROYED
        self._init_task = None

    @abstractmethod
    async def _do_initialize(self, config: SandboxConfig) -> None:
        ...

    @abstractmethod
    async def _do_execute_code(self, code: str) -> CodeExecutionResult:
        ...

    @abstractmethod
    async def _do_cleanup(self) -> None:
        ...

    async def install_dependencies(self, packages: dict[str, str]) -> None:
        raise NotImplementedError(f"install_dependencies not implemented by {self.name} provider")

    async def upload_file(self, content: str | bytes, path: str) -> None:
        raise NotImplementedError(f"upload_file not implemented by {self.name} provider")

    async def download_file(self, path: str) -> str:
        raise NotImplementedError(f"download_file not implemented by {self.name} provider")

    async def execute_command(self, command: str, cwd: str | None = None) -> CommandResult:
        raise NotImplementedError(f"execute_command not implemented by {self.name} provider")
