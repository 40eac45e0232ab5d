# Programmatic tool calling bridge
# Sandboxed code calls host tools through an authenticated, scoped,
# rate-limited bridge; every call is traced back to the caller.

from .orchestrator import (
    ProgrammaticToolOrchestrator,
    CODE_MODE_SYSTEM_PROMPT,
    build_system_prompt,
)
from .tool_registry import ToolRegistry
from .schema_adapter import to_type_expression, to_interface_declaration, SchemaValidator
from .token import (
    ExecutionTokenService,
    issue_execution_token,
    verify_execution_token,
    generate_session_id,
)
from .rate_limiter import RateLimiter, InMemoryRateLimiter, RateLimitStatus
from .protocol import (
    ToolBridgeProtocol,
    ToolBridgeResult,
    BridgeErrorInfo,
    BridgeRequest,
    BridgeResponse,
)
from .http_protocol import HTTPToolBridgeProtocol
from .asgi import create_asgi_app
from .markers import parse_tool_calls
from .sandbox_provider import SandboxProvider, CommandResult
from .local_sandbox import LocalSandboxProvider, LocalSandboxConfig
from .docker_sandbox import DockerSandboxProvider, DockerSandboxConfig
from .agent import CodeModeAgent, AgentConfig
from .visualize import show_execution_result
from .types import (
    ExecutionContext,
    ToolDefinition,
    ToolCallRecord,
    CodeExecutionResult,
    ExecutionConfig,
    TokenConfig,
    ToolBridgeConfig,
    SandboxConfig,
    SandboxState,
)
from .exceptions import (
    BridgeError,
    UnknownToolError,
    InvalidInputError,
    OutputValidationError,
    UnauthenticatedError,
    BadRequestError,
    MethodNotAllowedError,
    EndpointNotFoundError,
    ForbiddenError,
    RateLimitedError,
    ToolExecutionError,
    NotInitializedError,
    AlreadyInitializedError,
    SandboxError,
    SandboxNotReadyError,
    ExecutionTimeoutError,
    ContainerError,
)

__all__ = [
    # Core
    "ProgrammaticToolOrchestrator",
    "CODE_MODE_SYSTEM_PROMPT",
    "build_system_prompt",
    "parse_tool_calls",
    # Tool management
    "ToolRegistry",
    "ToolDefinition",
    "to_type_expression",
    "to_interface_declaration",
    "SchemaValidator",
    # Execution tokens
    "ExecutionTokenService",
    "issue_execution_token",
    "verify_execution_token",
    "generate_session_id",
    # Bridge protocol
    "ToolBridgeProtocol",
    "HTTPToolBridgeProtocol",
    "ToolBridgeResult",
    "BridgeErrorInfo",
    "BridgeRequest",
    "BridgeResponse",
    "create_asgi_app",
    "RateLimiter",
    "InMemoryRateLimiter",
    "RateLimitStatus",
    # Isolation providers
    "SandboxProvider",
    "CommandResult",
    "LocalSandboxProvider",
    "LocalSandboxConfig",
    "DockerSandboxProvider",
    "DockerSandboxConfig",
    # Agent
    "CodeModeAgent",
    "AgentConfig",
    "show_execution_result",
    # Types and config
    "ExecutionContext",
    "ToolCallRecord",
    "CodeExecutionResult",
    "ExecutionConfig",
    "TokenConfig",
    "ToolBridgeConfig",
    "SandboxConfig",
    "SandboxState",
    # Exceptions
    "BridgeError",
    "UnknownToolError",
    "InvalidInputError",
    "OutputValidationError",
    "UnauthenticatedError",
    "BadRequestError",
    "MethodNotAllowedError",
    "EndpointNotFoundError",
    "ForbiddenError",
    "RateLimitedError",
    "ToolExecutionError",
    "NotInitializedError",
    "AlreadyInitializedError",
    "SandboxError",
    "SandboxNotReadyError",
    "ExecutionTimeoutError",
    "ContainerError",
]
