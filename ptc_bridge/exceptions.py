"""Exception types for the tool bridge and the isolation providers."""


class BridgeError(Exception):
    """Base class for tool bridge errors.

    ``code`` is the stable identifier reported to sandboxed callers.
    """
    code = "BRIDGE_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        self.details = details or {}
        super().__init__(message)


class UnknownToolError(BridgeError):
    """No tool is registered under the requested name"""
    code = "NOT_FOUND"

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Unknown tool: {tool_name}")


class InvalidInputError(BridgeError):
    """Tool input failed schema validation"""
    code = "INVALID_INPUT"

    def __init__(self, tool_name: str, field_errors: list[str]):
        self.tool_name = tool_name
        self.field_errors = field_errors
        super().__init__(
            f"Invalid input for tool '{tool_name}': {', '.join(field_errors)}",
            details={"fieldErrors": field_errors}
        )


class OutputValidationError(BridgeError):
    """Tool output failed schema validation (strict mode only)"""
    code = "INVALID_OUTPUT"

    def __init__(self, tool_name: str, field_errors: list[str]):
        self.tool_name = tool_name
        self.field_errors = field_errors
        super().__init__(
            f"Tool '{tool_name}' returned invalid output: {', '.join(field_errors)}",
            details={"fieldErrors": field_errors}
        )


class UnauthenticatedError(BridgeError):
    """Token missing, malformed, expired or otherwise not accepted.

    The message is intentionally the same for every failure reason.
    """
    code = "UNAUTHENTICATED"

    def __init__(self, message: str = "Missing or invalid execution token"):
        super().__init__(message)


class BadRequestError(BridgeError):
    """Request body is not a JSON object of the form ``{"input": ...}``"""
    code = "BAD_REQUEST"

    def __init__(self, message: str = 'Request body must be a JSON object of the form {"input": ...}'):
        super().__init__(message)


class MethodNotAllowedError(BridgeError):
    code = "METHOD_NOT_ALLOWED"

    def __init__(self, method: str):
        self.method = method
        super().__init__(f"Method {method} not allowed")


class EndpointNotFoundError(BridgeError):
    """Request path does not name a tool under the bridge endpoint"""
    code = "NOT_FOUND"

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"No tool at path: {path}")


class ForbiddenError(BridgeError):
    """Execution context lacks every scope the tool accepts"""
    code = "FORBIDDEN"

    def __init__(self, tool_name: str, required_scopes: list[str]):
        self.tool_name = tool_name
        self.required_scopes = required_scopes
        super().__init__(
            f"Missing required scope. Required: {' or '.join(required_scopes)}"
        )


class RateLimitedError(BridgeError):
    """Per-minute call budget exhausted"""
    code = "RATE_LIMITED"

    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Rate limit exceeded. Try again in {retry_after_seconds} seconds",
            details={"retryAfterSeconds": retry_after_seconds}
        )


class ToolExecutionError(BridgeError):
    """A tool's own executor raised"""
    code = "EXECUTION_ERROR"

    def __init__(self, tool_name: str, message: str, original_error: Exception | None = None):
        self.tool_name = tool_name
        self.original_error = original_error
        super().__init__(message)


class NotInitializedError(BridgeError):
    """Operation attempted before ``initialize()``"""
    code = "NOT_INITIALIZED"


class AlreadyInitializedError(BridgeError):
    """Protocol was already bound to a different registry or config"""
    code = "ALREADY_INITIALIZED"


class SandboxError(Exception):
    """Base class for isolation provider errors"""
    pass


class SandboxNotReadyError(SandboxError):
    """Provider is not in the ``running`` state"""
    def __init__(self, state: str):
        self.state = state
        super().__init__(f"Sandbox is not ready. Current state: {state}. Call initialize() first.")


class ExecutionTimeoutError(SandboxError):
    """Execution timed out"""
    def __init__(self, timeout_seconds: float, operation: str = "code execution"):
        self.timeout_seconds = timeout_seconds
        self.operation = operation
        super().__init__(f"{operation} timed out after {timeout_seconds} seconds")


class ContainerError(SandboxError):
    """Docker container errors"""
    pass
