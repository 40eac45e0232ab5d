"""Tests for ProgrammaticToolOrchestrator.

Coverage:
  execute_code before initialize fails
  Concurrent initialize brings the provider up once
  Stub + caller code are submitted together, with a fresh scoped token
  Default context is anonymous with the wildcard scope
  Marker lines are stripped and turned into a tool call trace
  Sandbox dependencies are installed once across concurrent executions
  cleanup resets readiness
"""

import asyncio
import re

import jwt
import pytest

from ptc_bridge.exceptions import NotInitializedError, SandboxNotReadyError
from ptc_bridge.http_protocol import HTTPToolBridgeProtocol
from ptc_bridge.markers import format_call_marker, format_result_marker
from ptc_bridge.orchestrator import (
    CODE_MODE_SYSTEM_PROMPT,
    ProgrammaticToolOrchestrator,
    build_system_prompt,
)
from ptc_bridge.types import ExecutionConfig, SandboxConfig, SandboxState, ToolDefinition

from conftest import BRIDGE_URL, ECHO_INPUT_SCHEMA, SECRET_KEY, FakeSandboxProvider

TOKEN_RE = re.compile(r"^_EXECUTION_TOKEN = '([^']+)'$", re.MULTILINE)


def _submitted_claims(provider: FakeSandboxProvider, index: int = -1) -> dict:
    token = TOKEN_RE.search(provider.executed[index]).group(1)
    return jwt.decode(token, SECRET_KEY, algorithms=["HS256"], audience="tool-bridge")


@pytest.fixture
def orchestrator(fake_provider, bridge_config, registry):
    return ProgrammaticToolOrchestrator(
        sandbox_provider=fake_provider,
        bridge_protocol=HTTPToolBridgeProtocol(),
        bridge_config=bridge_config,
        registry=registry,
    )


class TestInitialize:

    async def test_execute_requires_initialize(self, orchestrator):
        with pytest.raises(NotInitializedError):
            await orchestrator.execute_code("print(1)")

    async def test_request_handler_requires_initialize(self, orchestrator):
        with pytest.raises(NotInitializedError):
            orchestrator.get_request_handler()

    async def test_concurrent_initialize_single_flight(self, orchestrator, fake_provider):
        await asyncio.gather(*(orchestrator.initialize() for _ in range(5)))
        await orchestrator.initialize()
        assert fake_provider.init_calls == 1
        assert await orchestrator.is_ready()
        assert orchestrator.bridge_protocol.registry is orchestrator.tool_registry

    async def test_sandbox_config_forwarded(self, fake_provider, bridge_config):
        sandbox_config = SandboxConfig(labels={"team": "data"})
        orchestrator = ProgrammaticToolOrchestrator(
            fake_provider, HTTPToolBridgeProtocol(), bridge_config, sandbox_config=sandbox_config
        )
        await orchestrator.initialize()
        assert fake_provider.config is sandbox_config

    async def test_failed_initialize_can_be_retried(self, bridge_config):
        class Flaky(FakeSandboxProvider):
            async def _do_initialize(self, config):
                self.init_calls += 1
                if self.init_calls == 1:
                    raise RuntimeError("docker unavailable")

        provider = Flaky()
        orchestrator = ProgrammaticToolOrchestrator(provider, HTTPToolBridgeProtocol(), bridge_config)
        with pytest.raises(RuntimeError):
            await orchestrator.initialize()
        assert not await orchestrator.is_ready()

        await orchestrator.initialize()
        assert await orchestrator.is_ready()

    async def test_cleanup_resets(self, orchestrator, fake_provider):
        await orchestrator.initialize()
        await orchestrator.cleanup()
        assert fake_provider.cleanup_calls == 1
        assert not await orchestrator.is_ready()
        with pytest.raises(NotInitializedError):
            await orchestrator.execute_code("print(1)")


class TestRegistration:

    def test_tools_argument_and_register_tool(self, fake_provider, bridge_config):
        def echo_tool(name):
            return ToolDefinition(
                name=name,
                description="Echo",
                input_schema=ECHO_INPUT_SCHEMA,
                execute=lambda tool_input, context: tool_input,
            )

        orchestrator = ProgrammaticToolOrchestrator(
            fake_provider, HTTPToolBridgeProtocol(), bridge_config, tools=[echo_tool("first")]
        )
        orchestrator.register_tool(echo_tool("second"))

        @orchestrator.tool(description="Third tool")
        def third() -> int:
            return 3

        assert orchestrator.tool_registry.list_names() == ["first", "second", "third"]
        declarations = orchestrator.get_tool_type_declarations()
        assert "  third: (input: ThirdInput) => Promise<unknown>;" in declarations


class TestExecuteCode:

    async def test_stub_prepended_to_code(self, orchestrator, fake_provider):
        await orchestrator.initialize()
        await orchestrator.execute_code("print('user code')")

        submitted = fake_provider.executed[0]
        stub, user_code = submitted.split("\n\n# User code\n")
        assert user_code == "print('user code')"
        assert f"_TOOL_BRIDGE_URL = {BRIDGE_URL!r}" in stub
        for name in ("echo", "limited", "boom", "whoami"):
            assert f"async def {name}(self, input=None):" in stub

    async def test_default_context(self, orchestrator, fake_provider):
        await orchestrator.initialize()
        await orchestrator.execute_code("pass")
        claims = _submitted_claims(fake_provider)
        assert claims["userId"] == "anonymous"
        assert claims["sub"] == "anonymous"
        assert claims["scopes"] == ["*"]
        assert claims["sessionId"].startswith("session-")

    async def test_explicit_context(self, orchestrator, fake_provider):
        await orchestrator.initialize()
        await orchestrator.execute_code("pass", ExecutionConfig(
            user_id="user-7",
            session_id="s-7",
            organization_id="org-1",
            scopes=["echo:use"],
        ))
        claims = _submitted_claims(fake_provider)
        assert claims["userId"] == "user-7"
        assert claims["sessionId"] == "s-7"
        assert claims["organizationId"] == "org-1"
        assert claims["scopes"] == ["echo:use"]

    async def test_empty_scopes_are_kept_empty(self, orchestrator, fake_provider):
        await orchestrator.initialize()
        await orchestrator.execute_code("pass", ExecutionConfig(scopes=[]))
        assert _submitted_claims(fake_provider)["scopes"] == []

    async def test_each_execution_gets_fresh_session(self, orchestrator, fake_provider):
        await orchestrator.initialize()
        await asyncio.gather(*(orchestrator.execute_code("pass") for _ in range(3)))
        sessions = {_submitted_claims(fake_provider, i)["sessionId"] for i in range(3)}
        assert len(sessions) == 3

    async def test_trace_parsed_from_output(self, orchestrator, fake_provider):
        fake_provider.output = "\n".join([
            format_call_marker("echo", {"message": "hi"}),
            format_result_marker("echo", 5),
            "Total: 42",
        ])
        await orchestrator.initialize()
        result = await orchestrator.execute_code("...")

        assert result.success
        assert result.output == "Total: 42"
        assert len(result.tool_calls) == 1
        assert result.tool_calls[0].tool == "echo"
        assert result.tool_calls[0].duration_ms == 5
        assert result.execution_time_ms >= 0

    async def test_raw_output_kept_when_only_markers(self, orchestrator, fake_provider):
        fake_provider.output = format_call_marker("echo", {"message": "hi"})
        await orchestrator.initialize()
        result = await orchestrator.execute_code("...")
        assert result.output == fake_provider.output
        assert len(result.tool_calls) == 1

    async def test_failed_execution_passes_through(self, orchestrator, fake_provider):
        fake_provider.exit_code = 1
        fake_provider.error = "ZeroDivisionError: division by zero"
        await orchestrator.initialize()
        result = await orchestrator.execute_code("1 / 0")
        assert not result.success
        assert result.exit_code == 1
        assert result.error == "ZeroDivisionError: division by zero"

    async def test_provider_not_running(self, orchestrator, fake_provider):
        await orchestrator.initialize()
        fake_provider._state = SandboxState.STOPPED
        with pytest.raises(SandboxNotReadyError):
            await orchestrator.execute_code("pass")

    async def test_timeout_forwarded_to_provider(self, orchestrator, fake_provider):
        seen = {}
        original = fake_provider.execute_code

        async def capture(code, timeout_ms=None):
            seen["timeout_ms"] = timeout_ms
            return await original(code, timeout_ms=timeout_ms)

        fake_provider.execute_code = capture
        await orchestrator.initialize()
        await orchestrator.execute_code("pass", ExecutionConfig(timeout_ms=1500))
        assert seen == {"timeout_ms": 1500}


class TestDependencies:

    async def test_installed_once_under_concurrency(self, fake_provider, bridge_config, registry):
        orchestrator = ProgrammaticToolOrchestrator(
            fake_provider,
            HTTPToolBridgeProtocol(use_httpx_client=True),
            bridge_config,
            registry=registry,
        )
        await orchestrator.initialize()
        await asyncio.gather(*(orchestrator.execute_code("pass") for _ in range(4)))
        assert fake_provider.installed == [{"httpx": ">=0.27"}]
        assert "import httpx as _httpx" in fake_provider.executed[0]

    async def test_nothing_installed_for_urllib_stub(self, orchestrator, fake_provider):
        await orchestrator.initialize()
        await orchestrator.execute_code("pass")
        assert fake_provider.installed == []


class TestSystemPrompt:

    def test_base_prompt(self):
        assert build_system_prompt() == CODE_MODE_SYSTEM_PROMPT

    def test_with_declarations_and_instructions(self, registry):
        prompt = build_system_prompt(
            registry.generate_type_declarations(),
            custom_instructions="Answer in French.",
        )
        assert "## Available Tools" in prompt
        assert "```typescript\n// ====" in prompt
        assert "echo: (input: EchoInput) => Promise<EchoOutput>;" in prompt
        assert prompt.endswith("## Additional Instructions\n\nAnswer in French.\n")
