"""Test fixtures: sample tools, bridge config, fake isolation provider, controllable clock.

All tests should use these fixtures for consistency.
"""

import asyncio

import pytest

from ptc_bridge.http_protocol import HTTPToolBridgeProtocol
from ptc_bridge.rate_limiter import InMemoryRateLimiter
from ptc_bridge.sandbox_provider import SandboxProvider
from ptc_bridge.tool_registry import ToolRegistry
from ptc_bridge.types import (
    CodeExecutionResult,
    ExecutionContext,
    TokenConfig,
    ToolBridgeConfig,
    ToolDefinition,
)

SECRET_KEY = "test-secret-key-with-at-least-32-bytes!!"
BRIDGE_URL = "http://bridge.test/api/tool-bridge"

ECHO_INPUT_SCHEMA = {
    "type": "object",
    "properties": {
        "message": {"type": "string", "description": "Text to echo back"},
    },
    "required": ["message"],
}
ECHO_OUTPUT_SCHEMA = {
    "type": "object",
    "properties": {"echo": {"type": "string"}},
    "required": ["echo"],
}


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSandboxProvider(SandboxProvider):
    """Records submitted code and replies with a canned result."""

    name = "fake"

    def __init__(self, output: str = "", exit_code: int = 0, error: str | None = None):
        super().__init__()
        self.output = output
        self.exit_code = exit_code
        self.error = error
        self.executed: list[str] = []
        self.installed: list[dict] = []
        self.init_calls = 0
        self.cleanup_calls = 0

    async def _do_initialize(self, config):
        self.init_calls += 1
        await asyncio.sleep(0)

    async def _do_execute_code(self, code):
        self.executed.append(code)
        return CodeExecutionResult(
            success=self.exit_code == 0,
            output=self.output,
            exit_code=self.exit_code,
            error=self.error,
        )

    async def _do_cleanup(self):
        self.cleanup_calls += 1

    async def install_dependencies(self, packages):
        await asyncio.sleep(0)
        self.installed.append(dict(packages))


async def _echo(tool_input, context):
    return {"echo": tool_input["message"]}


def _boom(tool_input, context):
    raise RuntimeError("database unavailable")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token_config():
    return TokenConfig(secret_key=SECRET_KEY)


@pytest.fixture
def bridge_config(token_config):
    return ToolBridgeConfig(server_url=BRIDGE_URL, token_config=token_config)


@pytest.fixture
def registry():
    """Registry with echo (scoped), limited (1/min), boom (raises) and whoami."""
    reg = ToolRegistry()
    reg.register(ToolDefinition(
        name="echo",
        description="Echo a message back",
        input_schema=ECHO_INPUT_SCHEMA,
        output_schema=ECHO_OUTPUT_SCHEMA,
        execute=_echo,
        required_scopes=("echo:use",),
    ))
    reg.register(ToolDefinition(
        name="limited",
        description="Tool allowed once per minute",
        input_schema={"type": "object", "properties": {}},
        execute=lambda tool_input, context: "ok",
        rate_limit_per_minute=1,
    ))
    reg.register(ToolDefinition(
        name="boom",
        description="Always fails",
        input_schema={"type": "object", "properties": {}},
        execute=_boom,
    ))

    @reg.tool(description="Return the calling user")
    def whoami(context=None) -> dict:
        return {"user": context.user_id, "session": context.session_id}

    return reg


@pytest.fixture
def rate_limiter(clock):
    return InMemoryRateLimiter(clock=clock)


@pytest.fixture
def protocol(bridge_config, registry, clock, rate_limiter):
    """Initialized HTTP protocol sharing the fake clock for tokens and rate limits."""
    proto = HTTPToolBridgeProtocol(rate_limiter=rate_limiter, clock=clock)
    proto.initialize(bridge_config, registry)
    return proto


@pytest.fixture
def echo_context():
    return ExecutionContext(user_id="user-1", session_id="session-1", scopes=("echo:use",))


@pytest.fixture
def other_context():
    return ExecutionContext(user_id="user-2", session_id="session-2", scopes=("other",))


@pytest.fixture
def fake_provider():
    return FakeSandboxProvider()
