"""
Tool bridge protocol

The authorization / rate-limit / dispatch pipeline every bridge transport
shares. Concrete protocols add two things:
1. the client stub injected into the sandbox (``generate_client_stub``)
2. the framework-free endpoint that serves it (``create_request_handler``)
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from .exceptions import (
    AlreadyInitializedError,
    BridgeError,
    ForbiddenError,
    NotInitializedError,
    RateLimitedError,
    ToolExecutionError,
    UnknownToolError,
)
from .rate_limiter import InMemoryRateLimiter, RateLimiter, RateLimitStatus
from .token import ExecutionTokenService
from .tool_registry import ToolRegistry
from .types import WILDCARD_SCOPE, ExecutionContext, ToolBridgeConfig

logger = logging.getLogger(__name__)


@dataclass
class BridgeRequest:
    """Transport-neutral inbound request"""
    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup"""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


@dataclass
class BridgeResponse:
    """Transport-neutral outbound response"""
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


RequestHandler = Callable[[BridgeRequest], Awaitable[BridgeResponse]]


@dataclass
class BridgeErrorInfo:
    code: str
    message: str
    retry_after_seconds: int | None = None
    details: dict | None = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.retry_after_seconds is not None:
            data["retryAfterSeconds"] = self.retry_after_seconds
        if self.details:
            data["details"] = self.details
        return data

    @classmethod
    def from_exception(cls, error: BridgeError) -> "BridgeErrorInfo":
        return cls(
            code=error.code,
            message=str(error),
            retry_after_seconds=getattr(error, "retry_after_seconds", None),
            details=error.details or None,
        )


@dataclass
class ToolBridgeResult:
    """Outcome of one dispatched tool call"""
    success: bool
    result: Any = None
    error: BridgeErrorInfo | None = None
    execution_time_ms: float = 0

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "success": self.success,
            "executionTimeMs": self.execution_time_ms,
        }
        if self.success:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data


class ToolBridgeProtocol(ABC):
    """
    Base class for tool bridge protocols

    An instance is bound once, through ``initialize``, to one bridge
    configuration and one registry. Binding again to the same pair is a
    no-op; binding to a different pair raises ``AlreadyInitializedError``.

    Subclasses implement:
        generate_client_stub(bridge_url, token, tool_names) -> source text
        create_request_handler() -> async (BridgeRequest) -> BridgeResponse
    """

    name = "base"
    content_type = "application/json"

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            rate_limiter: Call counter store; in-memory by default
            clock: Epoch clock used for execution tokens
        """
        self.rate_limiter = rate_limiter or InMemoryRateLimiter()
        self._clock = clock
        self._config: ToolBridgeConfig | None = None
        self._registry: ToolRegistry | None = None
        self._token_service: ExecutionTokenService | None = None

    def initialize(self, config: ToolBridgeConfig, registry: ToolRegistry) -> None:
        if self._config is not None:
            if config is self._config and registry is self._registry:
                return
            raise AlreadyInitializedError(
                f"Protocol '{self.name}' is already bound to a registry and config"
            )

        self._token_service = ExecutionTokenService(config.token_config, clock=self._clock)
        self._config = config
        self._registry = registry
        logger.info(f"Tool bridge protocol '{self.name}' initialized with {len(registry)} tools")

    @property
    def is_initialized(self) -> bool:
        return self._config is not None

    @property
    def config(self) -> ToolBridgeConfig:
        if self._config is None:
            raise NotInitializedError("Protocol not initialized. Call initialize() first.")
        return self._config

    @property
    def registry(self) -> ToolRegistry:
        if self._registry is None:
            raise NotInitializedError("Protocol not initialized. Call initialize() first.")
        return self._registry

    @property
    def token_service(self) -> ExecutionTokenService:
        if self._token_service is None:
            raise NotInitializedError("Protocol not initialized. Call initialize() first.")
        return self._token_service

    def create_execution_token(self, context: ExecutionContext) -> str:
        return self.token_service.issue(context)

    def verify_execution_token(self, token: str | None) -> ExecutionContext | None:
        return self.token_service.verify(token)

    def sandbox_dependencies(self) -> dict[str, str]:
        """Packages the generated stub needs inside the sandbox (name -> version spec)"""
        return {}

    def authorize(self, context: ExecutionContext, required_scopes) -> bool:
        """Any one matching scope authorizes; ``"*"`` on either side always does"""
        if not required_scopes or WILDCARD_SCOPE in required_scopes:
            return True
        if WILDCARD_SCOPE in context.scopes:
            return True
        return any(scope in context.scopes for scope in required_scopes)

    def check_rate_limit(
        self,
        user_id: str,
        max_per_minute: int,
        tool_name: str | None = None
    ) -> RateLimitStatus:
        """Count one call against the user's (or user+tool's) current window"""
        key = f"rate:{user_id}"
        if tool_name is not None:
            key = f"{key}:{tool_name}"
        return self.rate_limiter.check(key, max_per_minute)

    async def dispatch(
        self,
        tool_name: str,
        tool_input: Any,
        context: ExecutionContext
    ) -> ToolBridgeResult:
        """
        Authorize, rate-limit and execute one tool call.

        Never raises for tool-level problems; every outcome becomes a
        ``ToolBridgeResult`` carrying the elapsed time since the call started.
        """
        start = time.perf_counter()

        def elapsed_ms() -> float:
            return round((time.perf_counter() - start) * 1000, 3)

        def failure(error: BridgeError) -> ToolBridgeResult:
            return ToolBridgeResult(
                success=False,
                error=BridgeErrorInfo.from_exception(error),
                execution_time_ms=elapsed_ms(),
            )

        if self._registry is None or self._config is None:
            return failure(NotInitializedError("Protocol not initialized"))

        tool = self._registry.get(tool_name)
        if tool is None:
            return failure(UnknownToolError(tool_name))

        if not self.authorize(context, tool.required_scopes):
            logger.warning(
                f"Forbidden: user '{context.user_id}' called '{tool_name}' "
                f"without any of scopes {list(tool.required_scopes)}"
            )
            return failure(ForbiddenError(tool_name, list(tool.required_scopes)))

        if self._config.enable_rate_limiting:
            limit = (
                tool.rate_limit_per_minute
                if tool.rate_limit_per_minute is not None
                else self._config.default_rate_limit
            )
            status = self.check_rate_limit(
                context.user_id,
                limit,
                tool_name if self._config.rate_limit_per_tool else None
            )
            if not status.allowed:
                logger.warning(
                    f"Rate limited: user '{context.user_id}' on '{tool_name}', "
                    f"resets in {status.reset_in_seconds}s"
                )
                return failure(RateLimitedError(status.reset_in_seconds))

        try:
            result = await self._registry.execute_tool(tool_name, tool_input, context)
        except Exception as e:
            logger.error(f"Tool '{tool_name}' failed: {e}")
            error = ToolExecutionError(tool_name, str(e), original_error=e)
            if isinstance(e, BridgeError):
                error.details = e.details
            return failure(error)

        return ToolBridgeResult(success=True, result=result, execution_time_ms=elapsed_ms())

    @abstractmethod
    def generate_client_stub(self, bridge_url: str, token: str, tool_names: list[str]) -> str:
        """Source text defining the sandbox-side ``tools`` proxy"""

    @abstractmethod
    def create_request_handler(self) -> RequestHandler:
        """Endpoint that authenticates and dispatches stub calls"""
