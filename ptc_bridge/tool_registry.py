"""
Tool registry - manages the tools callable from sandboxed code

Responsible for:
1. Registering tool definitions (directly or through the ``tool`` decorator)
2. Validating tool input, and optionally output, against JSON Schema
3. Generating the typed API declarations shown to the code-writing caller
4. Executing tools with the caller's execution context
"""

import copy
import dataclasses
import inspect
import logging
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Mapping

from .exceptions import InvalidInputError, OutputValidationError, UnknownToolError
from .schema_adapter import (
    SchemaValidator,
    _doc_text,
    capitalize,
    schema_from_function,
    to_interface_declaration,
    to_type_expression,
)
from .types import ExecutionContext, ToolDefinition

logger = logging.getLogger(__name__)

# Tool names become proxy method names and marker tags
TOOL_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_HEADER_RULE = "// " + "=" * 77


def is_valid_tool_name(name: str) -> bool:
    """Identifier usable as a ``_Tools`` method name; dunder names are excluded"""
    return bool(TOOL_NAME_RE.match(name)) and not (name.startswith("__") and name.endswith("__"))


@dataclass
class _RegisteredTool:
    definition: ToolDefinition
    input_validator: SchemaValidator
    output_validator: SchemaValidator | None


def _bind_callable(func: Callable) -> Callable:
    """Adapt ``func(**input)`` to the ``execute(input, context)`` contract"""
    accepts_context = "context" in inspect.signature(func).parameters

    async def execute(tool_input: Any, context: ExecutionContext) -> Any:
        kwargs = dict(tool_input or {})
        if accepts_context:
            kwargs["context"] = context
        result = func(**kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    return execute


class ToolRegistry:
    """
    Tool registry

    Registration order is preserved everywhere (``list_names``, generated
    declarations) so prompts built from the registry are reproducible.

    Usage:
        registry = ToolRegistry()

        @registry.tool(description="Echo a message back", required_scopes=["echo:use"])
        def echo(message: str) -> dict:
            return {"message": message}

        result = await registry.execute_tool("echo", {"message": "hi"}, context)
    """

    def __init__(
        self,
        validate_outputs: bool = True,
        strict_output_validation: bool = False
    ):
        self.validate_outputs = validate_outputs
        self.strict_output_validation = strict_output_validation
        self._tools: dict[str, _RegisteredTool] = {}

    def register(self, tool: ToolDefinition) -> None:
        """Register a tool; an existing tool with the same name is replaced"""
        if not is_valid_tool_name(tool.name):
            raise ValueError(
                f"Invalid tool name '{tool.name}': must be a valid identifier and not a dunder name"
            )

        definition = dataclasses.replace(
            tool,
            input_schema=copy.deepcopy(tool.input_schema),
            output_schema=copy.deepcopy(tool.output_schema),
        )
        registered = _RegisteredTool(
            definition=definition,
            input_validator=SchemaValidator(definition.input_schema),
            output_validator=(
                SchemaValidator(definition.output_schema)
                if definition.output_schema is not None else None
            ),
        )

        if tool.name in self._tools:
            logger.warning(f"Tool '{tool.name}' is already registered, overwriting")
        self._tools[tool.name] = registered
        logger.debug(f"Registered tool: {tool.name}")

    def tool(
        self,
        name: str | None = None,
        description: str | None = None,
        input_schema: dict | None = None,
        output_schema: dict | None = None,
        required_scopes: list[str] | tuple[str, ...] = (),
        rate_limit_per_minute: int | None = None
    ) -> Callable:
        """
        Decorator: register a function as a tool

        The input schema is inferred from the signature when not given. The
        function receives validated input as keyword arguments, plus the
        ``ExecutionContext`` if it declares a ``context`` parameter.

        Usage:
            @registry.tool(description="Query the sales database")
            async def query_sales(region: str, limit: int = 10) -> list[dict]:
                ...
        """
        def decorator(func: Callable) -> Callable:
            tool_name = name or func.__name__
            tool_desc = description or inspect.getdoc(func) or f"Tool: {tool_name}"

            self.register(ToolDefinition(
                name=tool_name,
                description=tool_desc.strip(),
                input_schema=input_schema or schema_from_function(func),
                execute=_bind_callable(func),
                output_schema=output_schema,
                required_scopes=tuple(required_scopes),
                rate_limit_per_minute=rate_limit_per_minute,
            ))
            return func

        return decorator

    def get(self, name: str) -> ToolDefinition | None:
        registered = self._tools.get(name)
        return registered.definition if registered else None

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_names(self) -> list[str]:
        return list(self._tools.keys())

    @property
    def tools(self) -> Mapping[str, ToolDefinition]:
        """Read-only view of name -> definition"""
        return MappingProxyType({name: r.definition for name, r in self._tools.items()})

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def generate_type_declarations(self) -> str:
        """
        Generate the typed API declarations for every registered tool.

        Emits a ``declare const tools`` block with one documented method
        signature per tool, followed by the input/output declarations.
        """
        lines = [
            _HEADER_RULE,
            "// Custom Tools API - Available functions you can call in your code",
            _HEADER_RULE,
            "",
            "declare const tools: {",
        ]

        for name, registered in self._tools.items():
            tool = registered.definition
            input_type = to_type_expression(tool.input_schema, f"{capitalize(name)}Input")
            output_type = (
                to_type_expression(tool.output_schema, f"{capitalize(name)}Output")
                if tool.output_schema is not None else "unknown"
            )

            lines.append("  /**")
            for doc_line in tool.description.splitlines() or [""]:
                lines.append(f"   * {_doc_text(doc_line)}".rstrip())
            if tool.restricts_scopes:
                lines.append(f"   * @requires scopes: {', '.join(tool.required_scopes)}")
            lines.append("   */")
            lines.append(f"  {name}: (input: {input_type}) => Promise<{output_type}>;")
            lines.append("")

        lines.append("};")
        lines.append("")
        lines.append("// Tool input/output types")

        for name, registered in self._tools.items():
            tool = registered.definition
            lines.append(to_interface_declaration(tool.input_schema, f"{capitalize(name)}Input"))
            if tool.output_schema is not None:
                lines.append(
                    to_interface_declaration(tool.output_schema, f"{capitalize(name)}Output")
                )

        return "\n".join(lines)

    async def execute_tool(
        self,
        name: str,
        raw_input: Any,
        context: ExecutionContext
    ) -> Any:
        """
        Validate input and run a tool.

        Raises:
            UnknownToolError: no tool registered under ``name``
            InvalidInputError: input does not match the input schema
            OutputValidationError: output mismatch with strict validation on

        Output mismatches are only logged unless ``strict_output_validation``
        is set; the tool's raw result is returned either way.
        """
        registered = self._tools.get(name)
        if registered is None:
            raise UnknownToolError(name)

        validated_input, errors = registered.input_validator.validate(raw_input)
        if errors:
            raise InvalidInputError(name, errors)

        result = registered.definition.execute(validated_input, context)
        if inspect.isawaitable(result):
            result = await result

        if self.validate_outputs and registered.output_validator is not None:
            output_errors = registered.output_validator.field_errors(result)
            if output_errors:
                if self.strict_output_validation:
                    raise OutputValidationError(name, output_errors)
                logger.error(f"Tool '{name}' returned invalid output: {output_errors}")

        return result
