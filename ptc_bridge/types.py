"""
Shared data types

Execution identity, tool definitions, execution results and the
configuration dataclasses used across the bridge.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping, Union

ANONYMOUS_USER = "anonymous"
WILDCARD_SCOPE = "*"
DEFAULT_AUDIENCE = "tool-bridge"
DEFAULT_TOKEN_EXPIRATION_SECONDS = 300


@dataclass(frozen=True)
class ExecutionContext:
    """
    Identity, session and scopes behind one code execution.

    Created once per execution and handed by value to every tool call in it.
    ``scopes`` is normalized to a tuple and ``metadata`` to a read-only
    mapping so the context cannot be mutated after creation.
    """
    user_id: str
    session_id: str
    scopes: tuple[str, ...] = ()
    organization_id: str | None = None
    metadata: Mapping[str, Any] | None = None

    def __post_init__(self):
        object.__setattr__(self, "scopes", tuple(self.scopes))
        if self.metadata is not None:
            object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes or WILDCARD_SCOPE in self.scopes

    def to_claims(self) -> dict:
        """Token payload fields for this context"""
        claims: dict[str, Any] = {
            "userId": self.user_id,
            "sessionId": self.session_id,
            "scopes": list(self.scopes),
        }
        if self.organization_id is not None:
            claims["organizationId"] = self.organization_id
        if self.metadata is not None:
            claims["metadata"] = dict(self.metadata)
        return claims

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "ExecutionContext":
        user_id = claims["userId"]
        session_id = claims["sessionId"]
        scopes = claims.get("scopes", [])
        if not isinstance(user_id, str) or not isinstance(session_id, str):
            raise ValueError("userId and sessionId must be strings")
        if not isinstance(scopes, list) or not all(isinstance(s, str) for s in scopes):
            raise ValueError("scopes must be a list of strings")
        return cls(
            user_id=user_id,
            session_id=session_id,
            scopes=tuple(scopes),
            organization_id=claims.get("organizationId"),
            metadata=claims.get("metadata"),
        )


ToolExecutor = Callable[[Any, ExecutionContext], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class ToolDefinition:
    """
    A host-defined capability callable from sandboxed code.

    ``execute(input, context)`` may be a plain function or a coroutine
    function. An empty ``required_scopes`` or one containing ``"*"`` means
    any execution context may call the tool.
    """
    name: str
    description: str
    input_schema: dict
    execute: ToolExecutor
    output_schema: dict | None = None
    required_scopes: tuple[str, ...] = ()
    rate_limit_per_minute: int | None = None

    def __post_init__(self):
        object.__setattr__(self, "required_scopes", tuple(self.required_scopes))

    @property
    def restricts_scopes(self) -> bool:
        return bool(self.required_scopes) and WILDCARD_SCOPE not in self.required_scopes


@dataclass
class ToolCallRecord:
    """One tool call reconstructed from sandbox output"""
    tool: str
    input: Any
    output: Any = None
    duration_ms: float = 0
    success: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        data = {
            "tool": self.tool,
            "input": self.input,
            "output": self.output,
            "durationMs": self.duration_ms,
            "success": self.success,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class CodeExecutionResult:
    """Code execution result"""
    success: bool
    output: str
    exit_code: int
    error: str | None = None
    execution_time_ms: float = 0
    tool_calls: list[ToolCallRecord] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "exitCode": self.exit_code,
            "executionTimeMs": self.execution_time_ms,
            "toolCalls": [call.to_dict() for call in self.tool_calls],
        }


@dataclass
class ExecutionConfig:
    """Per-execution settings supplied by the caller"""
    user_id: str | None = None
    session_id: str | None = None
    organization_id: str | None = None
    scopes: list[str] | None = None
    # Advisory: forwarded to the isolation provider, never enforced here
    timeout_ms: int | None = None
    metadata: dict | None = None


@dataclass
class TokenConfig:
    """Execution token signing settings"""
    secret_key: str
    expiration_seconds: int = DEFAULT_TOKEN_EXPIRATION_SECONDS
    audience: str = DEFAULT_AUDIENCE
    algorithm: str = "HS256"
    # Failure reasons go to the debug log only, never to the caller
    log_verification_failures: bool = True


@dataclass
class ToolBridgeConfig:
    """Tool bridge configuration (protocol independent)"""
    server_url: str
    token_config: TokenConfig
    enable_rate_limiting: bool = True
    default_rate_limit: int = 60
    # Count calls per (user, tool) instead of per user
    rate_limit_per_tool: bool = False


@dataclass
class SandboxConfig:
    """Provider-agnostic sandbox configuration"""
    options: dict = field(default_factory=dict)
    auto_stop_interval: int | None = None
    network_block_all: bool = False
    network_allow_list: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float | None = None


class SandboxState(str, Enum):
    """Lifecycle state of an isolation provider"""
    UNINITIALIZED = "uninitialized"
    CREATING = "creating"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    DESTROYED = "destroyed"
