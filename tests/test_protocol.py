"""Tests for the protocol-independent authorize / rate-limit / dispatch pipeline."""

import logging

import pytest

from ptc_bridge.exceptions import AlreadyInitializedError, NotInitializedError
from ptc_bridge.http_protocol import HTTPToolBridgeProtocol
from ptc_bridge.rate_limiter import InMemoryRateLimiter
from ptc_bridge.tool_registry import ToolRegistry
from ptc_bridge.types import ExecutionContext, ToolBridgeConfig

from conftest import FakeClock


def _ctx(*scopes, user="u") -> ExecutionContext:
    return ExecutionContext(user_id=user, session_id="s", scopes=scopes)


class TestInitialize:

    def test_rebinding_same_pair_is_noop(self, protocol, bridge_config, registry):
        protocol.initialize(bridge_config, registry)
        assert protocol.registry is registry

    def test_rebinding_different_registry_fails(self, protocol, bridge_config):
        with pytest.raises(AlreadyInitializedError):
            protocol.initialize(bridge_config, ToolRegistry())

    def test_rebinding_different_config_fails(self, protocol, registry, token_config):
        with pytest.raises(AlreadyInitializedError):
            protocol.initialize(ToolBridgeConfig(server_url="http://x", token_config=token_config), registry)

    def test_tokens_require_initialization(self, echo_context):
        with pytest.raises(NotInitializedError):
            HTTPToolBridgeProtocol().create_execution_token(echo_context)

    async def test_dispatch_before_initialize(self, echo_context):
        result = await HTTPToolBridgeProtocol().dispatch("echo", {"message": "hi"}, echo_context)
        assert not result.success
        assert result.error.code == "NOT_INITIALIZED"


class TestAuthorize:

    @pytest.mark.parametrize("scopes, required, expected", [
        ((), (), True),
        (("a",), (), True),
        ((), ("*",), True),
        (("*",), ("x",), True),
        (("a",), ("a",), True),
        (("a", "b"), ("b", "c"), True),
        (("a",), ("b",), False),
        ((), ("b",), False),
        (("a",), ("b", "c"), False),
    ])
    def test_any_scope_matches(self, protocol, scopes, required, expected):
        assert protocol.authorize(_ctx(*scopes), list(required)) is expected


class TestCheckRateLimit:

    def test_keyed_by_user(self, protocol):
        assert protocol.check_rate_limit("alice", 1).allowed
        assert not protocol.check_rate_limit("alice", 1).allowed
        assert protocol.check_rate_limit("bob", 1).allowed

    def test_keyed_by_user_and_tool(self, protocol):
        assert protocol.check_rate_limit("alice", 1, tool_name="a").allowed
        assert protocol.check_rate_limit("alice", 1, tool_name="b").allowed
        assert not protocol.check_rate_limit("alice", 1, tool_name="a").allowed


class TestDispatch:

    async def test_echo_with_scope_succeeds(self, protocol, echo_context):
        result = await protocol.dispatch("echo", {"message": "hi"}, echo_context)
        assert result.success
        assert result.result == {"echo": "hi"}
        assert result.error is None
        assert result.execution_time_ms >= 0

    async def test_echo_without_scope_forbidden(self, protocol, other_context, caplog):
        with caplog.at_level(logging.WARNING, logger="ptc_bridge.protocol"):
            result = await protocol.dispatch("echo", {"message": "hi"}, other_context)
        assert not result.success
        assert result.error.code == "FORBIDDEN"
        assert result.error.message == "Missing required scope. Required: echo:use"
        assert any("Forbidden" in r.message for r in caplog.records)

    async def test_unknown_tool(self, protocol, echo_context):
        result = await protocol.dispatch("missing", {}, echo_context)
        assert result.error.code == "NOT_FOUND"
        assert result.execution_time_ms >= 0

    async def test_tool_rate_limit(self, protocol, echo_context):
        first = await protocol.dispatch("limited", {}, echo_context)
        second = await protocol.dispatch("limited", {}, echo_context)
        assert first.success
        assert not second.success
        assert second.error.code == "RATE_LIMITED"
        assert second.error.retry_after_seconds > 0
        assert second.error.message.startswith("Rate limit exceeded. Try again in ")

    async def test_rate_limit_window_resets(self, protocol, clock, echo_context):
        await protocol.dispatch("limited", {}, echo_context)
        denied = await protocol.dispatch("limited", {}, echo_context)
        clock.advance(denied.error.retry_after_seconds + 1)
        assert (await protocol.dispatch("limited", {}, echo_context)).success

    async def test_default_limit_applies(self, bridge_config, registry, echo_context):
        bridge_config.default_rate_limit = 2
        proto = HTTPToolBridgeProtocol(rate_limiter=InMemoryRateLimiter(clock=FakeClock()))
        proto.initialize(bridge_config, registry)
        outcomes = [(await proto.dispatch("echo", {"message": "x"}, echo_context)).success for _ in range(3)]
        assert outcomes == [True, True, False]

    async def test_rate_limiting_disabled(self, bridge_config, registry, echo_context):
        bridge_config.enable_rate_limiting = False
        proto = HTTPToolBridgeProtocol()
        proto.initialize(bridge_config, registry)
        for _ in range(3):
            assert (await proto.dispatch("limited", {}, echo_context)).success

    async def test_per_tool_keys(self, bridge_config, registry, echo_context):
        bridge_config.rate_limit_per_tool = True
        bridge_config.default_rate_limit = 1
        proto = HTTPToolBridgeProtocol(rate_limiter=InMemoryRateLimiter(clock=FakeClock()))
        proto.initialize(bridge_config, registry)
        assert (await proto.dispatch("echo", {"message": "x"}, echo_context)).success
        assert (await proto.dispatch("boom", {}, echo_context)).error.code == "EXECUTION_ERROR"
        assert (await proto.dispatch("echo", {"message": "x"}, echo_context)).error.code == "RATE_LIMITED"

    async def test_executor_error_wrapped(self, protocol, echo_context):
        result = await protocol.dispatch("boom", {}, echo_context)
        assert not result.success
        assert result.error.code == "EXECUTION_ERROR"
        assert result.error.message == "database unavailable"

    async def test_invalid_input_wrapped_with_details(self, protocol, echo_context):
        result = await protocol.dispatch("echo", {"message": 1}, echo_context)
        assert result.error.code == "EXECUTION_ERROR"
        assert result.error.details == {"fieldErrors": ["message: 1 is not of type 'string'"]}

    async def test_context_reaches_tool(self, protocol, echo_context):
        result = await protocol.dispatch("whoami", {}, echo_context)
        assert result.result == {"user": "user-1", "session": "session-1"}

    def test_result_serialization(self):
        from ptc_bridge.protocol import BridgeErrorInfo, ToolBridgeResult

        ok = ToolBridgeResult(success=True, result=[1], execution_time_ms=2.5)
        assert ok.to_dict() == {"success": True, "result": [1], "executionTimeMs": 2.5}

        failed = ToolBridgeResult(
            success=False,
            error=BridgeErrorInfo(code="RATE_LIMITED", message="slow down", retry_after_seconds=30),
            execution_time_ms=1,
        )
        assert failed.to_dict() == {
            "success": False,
            "executionTimeMs": 1,
            "error": {"code": "RATE_LIMITED", "message": "slow down", "retryAfterSeconds": 30},
        }
