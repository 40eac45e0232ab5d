"""
Programmatic Tool Calling orchestrator

Responsible for:
1. Binding an isolation provider to a tool bridge protocol and registry
2. Minting a scoped execution token for every code execution
3. Injecting the bridge client stub ahead of the caller's code
4. Rebuilding a structured tool call trace from the sandbox output
"""

import asyncio
import logging
import time as time_module
from typing import Callable

from .exceptions import NotInitializedError, SandboxNotReadyError
from .markers import parse_tool_calls
from .protocol import RequestHandler, ToolBridgeProtocol
from .sandbox_provider import SandboxProvider
from .token import generate_session_id
from .tool_registry import ToolRegistry
from .types import (
    ANONYMOUS_USER,
    WILDCARD_SCOPE,
    CodeExecutionResult,
    ExecutionConfig,
    ExecutionContext,
    SandboxConfig,
    SandboxState,
    ToolBridgeConfig,
    ToolDefinition,
)

logger = logging.getLogger(__name__)


CODE_MODE_SYSTEM_PROMPT = """You are an AI assistant that can execute Python code in a secure sandbox environment.

## When to Use Code Execution

Use code execution when you need to:
- Call several tools, or the same tool in a loop
- Filter, aggregate or transform what tools return before looking at it
- Decide the next step based on intermediate results
- Perform calculations or data analysis

## How to Write Code

- Tools are async methods on the predefined `tools` object and take one dict:
  `result = await tools.query_sales({"region": "East"})`
- Top-level `await` is allowed; do not call `asyncio.run()`
- Use `print()` to output results; it is the only thing you will see
- A rejected tool call raises `ToolCallError` (with `.code`); catch it if you can recover

## Example

```python
results = {}
for region in ["East", "West", "Central"]:
    rows = await tools.query_sales({"region": region})
    results[region] = sum(row["revenue"] for row in rows)
print(f"Regional revenue: {results}")
```
"""


def build_system_prompt(
    tool_type_declarations: str | None = None,
    custom_instructions: str | None = None
) -> str:
    """Assemble the code-mode system prompt with the tool declarations appended"""
    prompt = CODE_MODE_SYSTEM_PROMPT

    if tool_type_declarations:
        prompt += "\n## Available Tools\n\n"
        prompt += "Signatures of the `tools` object (TypeScript notation):\n\n```typescript\n"
        prompt += tool_type_declarations
        prompt += "\n```\n"

    if custom_instructions:
        prompt += f"\n## Additional Instructions\n\n{custom_instructions}\n"

    return prompt


class ProgrammaticToolOrchestrator:
    """
    Programmatic Tool Calling orchestrator

    Ties one isolation provider and one bridge protocol to a tool registry.
    Concurrent ``execute_code`` calls are independent: each gets its own
    context, token and trace.

    Usage:
        orchestrator = ProgrammaticToolOrchestrator(
            sandbox_provider=LocalSandboxProvider(),
            bridge_protocol=HTTPToolBridgeProtocol(),
            bridge_config=ToolBridgeConfig(
                server_url="http://localhost:8080/api/tool-bridge",
                token_config=TokenConfig(secret_key=os.environ["BRIDGE_SECRET"]),
            ),
        )

        @orchestrator.tool(description="Query the sales database")
        async def query_sales(region: str) -> list[dict]:
            ...

        await orchestrator.initialize()
        result = await orchestrator.execute_code(code, ExecutionConfig(user_id="u1"))
    """

    def __init__(
        self,
        sandbox_provider: SandboxProvider,
        bridge_protocol: ToolBridgeProtocol,
        bridge_config: ToolBridgeConfig,
        sandbox_config: SandboxConfig | None = None,
        tools: list[ToolDefinition] | None = None,
        registry: ToolRegistry | None = None
    ):
        self.sandbox_provider = sandbox_provider
        self.bridge_protocol = bridge_protocol
        self.bridge_config = bridge_config
        self.sandbox_config = sandbox_config or SandboxConfig()
        self._registry = registry or ToolRegistry()

        for tool in tools or []:
            self._registry.register(tool)

        self._initialized = False
        self._init_task: asyncio.Task | None = None
        self._dependencies_installed = False
        self._dependencies_lock: asyncio.Lock | None = None

    @property
    def tool_registry(self) -> ToolRegistry:
        return self._registry

    def register_tool(self, tool: ToolDefinition) -> None:
        self._registry.register(tool)

    def tool(self, **kwargs) -> Callable:
        """Shortcut for ``self.tool_registry.tool(...)``"""
        return self._registry.tool(**kwargs)

    def get_tool_type_declarations(self) -> str:
        """Typed API for every registered tool; include it in the model's system prompt"""
        return self._registry.generate_type_declarations()

    async def initialize(self) -> None:
        """
        Initialize the isolation provider, then the bridge protocol.

        Idempotent. Concurrent callers await the same in-flight attempt.
        """
        if self._initialized:
            return
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._do_initialize())
        try:
            await asyncio.shield(self._init_task)
        except Exception:
            self._init_task = None
            raise

    async def _do_initialize(self) -> None:
        logger.info("Initializing orchestrator...")
        await self.sandbox_provider.initialize(self.sandbox_config)
        self.bridge_protocol.initialize(self.bridge_config, self._registry)
        self._initialized = True
        logger.info(
            f"Orchestrator initialized (sandbox={self.sandbox_provider.name}, "
            f"protocol={self.bridge_protocol.name}, tools={len(self._registry)})"
        )

    def _build_context(self, config: ExecutionConfig) -> ExecutionContext:
        return ExecutionContext(
            user_id=config.user_id or ANONYMOUS_USER,
            session_id=config.session_id or generate_session_id(),
            scopes=tuple(config.scopes) if config.scopes is not None else (WILDCARD_SCOPE,),
            organization_id=config.organization_id,
            metadata=config.metadata,
        )

    async def _ensure_dependencies(self) -> None:
        if self._dependencies_installed:
            return
        if self._dependencies_lock is None:
            self._dependencies_lock = asyncio.Lock()
        async with self._dependencies_lock:
            if self._dependencies_installed:
                return
            dependencies = self.bridge_protocol.sandbox_dependencies()
            if dependencies:
                await self.sandbox_provider.install_dependencies(dependencies)
            self._dependencies_installed = True

    async def execute_code(
        self,
        code: str,
        config: ExecutionConfig | None = None
    ) -> CodeExecutionResult:
        """
        Execute caller code in the sandbox with tool access.

        Args:
            code: Python source; tools are reached through ``await tools.<name>({...})``
            config: Identity, session, scopes and timeout for this execution

        Returns:
            CodeExecutionResult with marker lines stripped from ``output`` and the
            reconstructed ``tool_calls`` trace

        Raises:
            NotInitializedError: initialize() has not completed
            SandboxNotReadyError: the provider is not running
        """
        if not self._initialized:
            raise NotInitializedError("Orchestrator not initialized. Call initialize() first.")

        config = config or ExecutionConfig()
        start_time = time_module.time()

        context = self._build_context(config)
        token = self.bridge_protocol.create_execution_token(context)

        await self._ensure_dependencies()

        stub = self.bridge_protocol.generate_client_stub(
            self.bridge_config.server_url,
            token,
            self._registry.list_names()
        )
        wrapped_code = f"{stub}\n\n# User code\n{code}"

        state = await self.sandbox_provider.get_state()
        if state != SandboxState.RUNNING:
            raise SandboxNotReadyError(state.value)

        logger.debug(f"Executing code for user '{context.user_id}' in session '{context.session_id}'")
        result = await self.sandbox_provider.execute_code(wrapped_code, timeout_ms=config.timeout_ms)

        clean_output, tool_calls = parse_tool_calls(result.output)
        return CodeExecutionResult(
            success=result.success,
            output=clean_output or result.output,
            exit_code=result.exit_code,
            error=result.error,
            execution_time_ms=(time_module.time() - start_time) * 1000,
            tool_calls=tool_calls,
        )

    def get_request_handler(self) -> RequestHandler:
        """Bridge endpoint; mount it with ``create_asgi_app`` or any adapter"""
        if not self._initialized:
            raise NotInitializedError("Orchestrator not initialized. Call initialize() first.")
        return self.bridge_protocol.create_request_handler()

    async def is_ready(self) -> bool:
        return self._initialized and await self.sandbox_provider.is_ready()

    async def cleanup(self) -> None:
        logger.info("Cleaning up orchestrator...")
        await self.sandbox_provider.cleanup()
        self._initialized = False
        self._init_task = None
        self._dependencies_installed = False
