"""
Schema adapter

Turns a tool's JSON Schema into:
1. a validator (backed by ``jsonschema``) used at call time
2. TypeScript-style type declarations shown to the code-writing caller

The schema is introspected once into a tagged variant (``SchemaNode``
subclasses); rendering then matches exhaustively on the variant. Schema
constructs with no counterpart (``$ref``, ``allOf``, unknown ``type`` values)
become ``UnknownNode`` and render as the placeholder type name, so
declaration generation never fails.
"""

import copy
import inspect
import json
import logging
import re
import types as builtin_types
from dataclasses import dataclass
from typing import Any, Callable, Literal, Union, get_args, get_origin, get_type_hints

from jsonschema.validators import Draft202012Validator, validator_for

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")


# ============================================================================
# Tagged variant
# ============================================================================

class SchemaNode:
    """Base class of the schema variant"""
    description: str | None = None


@dataclass(frozen=True)
class StringNode(SchemaNode):
    description: str | None = None


@dataclass(frozen=True)
class NumberNode(SchemaNode):
    description: str | None = None


@dataclass(frozen=True)
class BooleanNode(SchemaNode):
    description: str | None = None


@dataclass(frozen=True)
class NullNode(SchemaNode):
    description: str | None = None


@dataclass(frozen=True)
class AnyNode(SchemaNode):
    """Schema with no constraints (``{}``)"""
    description: str | None = None


@dataclass(frozen=True)
class ArrayNode(SchemaNode):
    items: SchemaNode
    description: str | None = None


@dataclass(frozen=True)
class OptionalNode(SchemaNode):
    """A value that may be absent (non-required or defaulted property)"""
    inner: SchemaNode
    description: str | None = None


@dataclass(frozen=True)
class NullableNode(SchemaNode):
    inner: SchemaNode
    description: str | None = None


@dataclass(frozen=True)
class RecordNode(SchemaNode):
    """Object without declared properties"""
    description: str | None = None


@dataclass(frozen=True)
class EnumNode(SchemaNode):
    values: tuple
    description: str | None = None


@dataclass(frozen=True)
class LiteralNode(SchemaNode):
    values: tuple
    description: str | None = None


@dataclass(frozen=True)
class UnionNode(SchemaNode):
    options: tuple
    description: str | None = None


@dataclass(frozen=True)
class FieldNode:
    name: str
    schema: SchemaNode
    description: str | None = None

    @property
    def optional(self) -> bool:
        return isinstance(self.schema, OptionalNode)


@dataclass(frozen=True)
class ObjectNode(SchemaNode):
    fields: tuple
    description: str | None = None


@dataclass(frozen=True)
class UnknownNode(SchemaNode):
    """Schema construct the adapter cannot express"""
    raw: str = ""
    description: str | None = None


_STRUCTURAL_KEYS = {"$ref", "allOf", "not", "if", "then", "else", "patternProperties"}


def parse_schema(schema: Any) -> SchemaNode:
    """Introspect a JSON Schema into the tagged variant"""
    if isinstance(schema, SchemaNode):
        return schema
    if schema is True or schema == {}:
        return AnyNode()
    if not isinstance(schema, dict):
        return UnknownNode(raw=repr(schema))

    description = schema.get("description")

    if "const" in schema:
        return LiteralNode(values=(schema["const"],), description=description)

    if "enum" in schema:
        values = tuple(schema["enum"])
        present = tuple(v for v in values if v is not None)
        node = EnumNode(values=present, description=description)
        if len(present) != len(values):
            return NullableNode(inner=node, description=description)
        return node

    for key in ("anyOf", "oneOf"):
        if key in schema:
            return _parse_alternatives([parse_schema(b) for b in schema[key]], description)

    schema_type = schema.get("type")

    if isinstance(schema_type, list):
        branches = []
        for kind in schema_type:
            branch = dict(schema)
            branch["type"] = kind
            branch.pop("description", None)
            branches.append(parse_schema(branch))
        return _parse_alternatives(branches, description)

    if schema_type == "string":
        return StringNode(description=description)
    if schema_type in ("number", "integer"):
        return NumberNode(description=description)
    if schema_type == "boolean":
        return BooleanNode(description=description)
    if schema_type == "null":
        return NullNode(description=description)
    if schema_type == "array":
        return ArrayNode(items=parse_schema(schema.get("items", {})), description=description)
    if schema_type == "object" or (schema_type is None and "properties" in schema):
        if "properties" not in schema:
            return RecordNode(description=description)
        return _parse_object(schema, description)

    if schema_type is None and not (_STRUCTURAL_KEYS & schema.keys()):
        return AnyNode(description=description)

    return UnknownNode(raw=json.dumps(schema, sort_keys=True, default=str), description=description)


def _parse_alternatives(branches: list[SchemaNode], description: str | None) -> SchemaNode:
    present = [b for b in branches if not isinstance(b, NullNode)]
    if not present:
        return NullNode(description=description)
    if len(present) == 1:
        inner = present[0]
    else:
        inner = UnionNode(options=tuple(present), description=description)
    if len(present) != len(branches):
        return NullableNode(inner=inner, description=description)
    return inner


def _parse_object(schema: dict, description: str | None) -> ObjectNode:
    required = set(schema.get("required", []))
    fields = []
    for name, prop in schema["properties"].items():
        node = parse_schema(prop)
        prop_description = prop.get("description") if isinstance(prop, dict) else None
        if name not in required or (isinstance(prop, dict) and "default" in prop):
            node = OptionalNode(inner=node)
        fields.append(FieldNode(name=name, schema=node, description=prop_description))
    return ObjectNode(fields=tuple(fields), description=description)


# ============================================================================
# Type declaration rendering
# ============================================================================

def capitalize(value: str) -> str:
    return value[:1].upper() + value[1:]


def _literal(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _property_key(name: str) -> str:
    return name if _IDENTIFIER_RE.match(name) else json.dumps(name)


def _doc_text(text: str) -> str:
    return " ".join(text.split()).replace("*/", "*\\/")


class _Renderer:
    """Renders nodes, remembering nested object types that need an interface"""

    def __init__(self):
        self.nested: list[tuple[str, ObjectNode]] = []
        self._seen: set[str] = set()

    def type_expression(self, node: SchemaNode, type_name: str) -> str:
        if isinstance(node, ObjectNode):
            if type_name not in self._seen:
                self._seen.add(type_name)
                self.nested.append((type_name, node))
            return type_name
        if isinstance(node, StringNode):
            return "string"
        if isinstance(node, NumberNode):
            return "number"
        if isinstance(node, BooleanNode):
            return "boolean"
        if isinstance(node, NullNode):
            return "null"
        if isinstance(node, AnyNode):
            return "unknown"
        if isinstance(node, ArrayNode):
            element = self.type_expression(node.items, f"{type_name}Item")
            if " | " in element:
                element = f"({element})"
            return f"{element}[]"
        if isinstance(node, OptionalNode):
            return f"{self.type_expression(node.inner, type_name)} | undefined"
        if isinstance(node, NullableNode):
            return f"{self.type_expression(node.inner, type_name)} | null"
        if isinstance(node, RecordNode):
            return "Record<string, unknown>"
        if isinstance(node, (EnumNode, LiteralNode)):
            if not node.values:
                return "never"
            return " | ".join(_literal(v) for v in node.values)
        if isinstance(node, UnionNode):
            return " | ".join(
                self.type_expression(option, f"{type_name}{index}")
                for index, option in enumerate(node.options)
            )
        if isinstance(node, UnknownNode):
            return type_name
        raise TypeError(f"Unhandled schema node: {type(node).__name__}")

    def interface_body(self, node: ObjectNode, interface_name: str) -> str:
        lines = [f"interface {interface_name} {{"]
        for schema_field in node.fields:
            inner = schema_field.schema
            if isinstance(inner, OptionalNode):
                inner = inner.inner
            field_type = self.type_expression(
                inner, f"{interface_name}{capitalize(schema_field.name)}"
            )
            if schema_field.description:
                lines.append(f"  /** {_doc_text(schema_field.description)} */")
            optional_marker = "?" if schema_field.optional else ""
            lines.append(f"  {_property_key(schema_field.name)}{optional_marker}: {field_type};")
        lines.append("}")
        return "\n".join(lines)


def to_type_expression(schema: Any, type_name: str = "Unknown") -> str:
    """
    Render a schema as an inline type expression.

    Object schemas render as ``type_name``; everything else renders inline.
    """
    return _Renderer().type_expression(parse_schema(schema), type_name)


def to_interface_declaration(schema: Any, name: str) -> str:
    """
    Render a schema as a named declaration.

    Object schemas produce ``interface Name { ... }``, anything else
    ``type Name = ...;``. Interfaces for nested object types follow the main
    declaration in first-seen order.
    """
    node = parse_schema(schema)
    renderer = _Renderer()
    blocks = []

    if isinstance(node, ObjectNode):
        renderer._seen.add(name)
        blocks.append(renderer.interface_body(node, name))
    else:
        blocks.append(f"type {name} = {renderer.type_expression(node, name)};")

    index = 0
    while index < len(renderer.nested):
        nested_name, nested_node = renderer.nested[index]
        if nested_name != name:
            blocks.append(renderer.interface_body(nested_node, nested_name))
        index += 1

    return "\n".join(blocks)


# ============================================================================
# Validation
# ============================================================================

def _format_path(path) -> str:
    return ".".join(str(p) for p in path) or "(root)"


def apply_defaults(instance: Any, schema: Any) -> Any:
    """Return a copy of ``instance`` with absent object properties defaulted"""
    if not isinstance(schema, dict) or not isinstance(instance, dict):
        return instance
    result = dict(instance)
    for name, prop in schema.get("properties", {}).items():
        if not isinstance(prop, dict):
            continue
        if name not in result and "default" in prop:
            result[name] = copy.deepcopy(prop["default"])
        elif name in result:
            result[name] = apply_defaults(result[name], prop)
    return result


class SchemaValidator:
    """
    Call-time validator for one JSON Schema.

    The schema itself is checked on construction, so malformed tool
    definitions are rejected at registration rather than at call time.
    """

    def __init__(self, schema: dict):
        validator_cls = validator_for(schema, default=Draft202012Validator)
        validator_cls.check_schema(schema)
        self.schema = schema
        self._validator = validator_cls(schema)

    def field_errors(self, instance: Any) -> list[str]:
        """Per-field messages, ``"path: message"``, in path order"""
        errors = sorted(
            self._validator.iter_errors(instance),
            key=lambda e: [str(p) for p in e.absolute_path]
        )
        return [f"{_format_path(e.absolute_path)}: {e.message}" for e in errors]

    def validate(self, instance: Any) -> tuple[Any, list[str]]:
        """Apply defaults, then validate. Returns ``(value, errors)``."""
        value = apply_defaults(instance, self.schema)
        return value, self.field_errors(value)


# ============================================================================
# Schema inference from Python callables
# ============================================================================

_PYTHON_TYPE_TO_JSON_SCHEMA: dict[type, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
    type(None): "null",
}

# Parameters never exposed as tool input
_RESERVED_PARAMETERS = ("self", "cls", "context")


def python_type_to_json_schema(py_type: Any) -> dict[str, Any]:
    """
    Convert a Python type annotation to a JSON Schema fragment.

    Args:
        py_type: str, int, list[str], Optional[int], Literal["a", "b"], ...

    Returns:
        JSON Schema dict; unknown types fall back to ``{"type": "string"}``
    """
    if py_type in _PYTHON_TYPE_TO_JSON_SCHEMA:
        return {"type": _PYTHON_TYPE_TO_JSON_SCHEMA[py_type]}

    origin = get_origin(py_type)
    args = get_args(py_type)

    if origin is list:
        schema: dict[str, Any] = {"type": "array"}
        if args:
            schema["items"] = python_type_to_json_schema(args[0])
        return schema

    if origin is dict:
        return {"type": "object"}

    if origin is Union or isinstance(py_type, builtin_types.UnionType):
        branches = [python_type_to_json_schema(t) for t in args]
        if len(branches) == 1:
            return branches[0]
        return {"anyOf": branches}

    if origin is Literal and args:
        return {"enum": list(args)}

    return {"type": "string"}


def _is_json_value(value: Any) -> bool:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return False
    return True


def schema_from_function(func: Callable) -> dict[str, Any]:
    """
    Infer an object JSON Schema from a function signature and type hints.

    Parameters without a default are required; JSON-serializable defaults are
    recorded as ``default``. ``context`` is reserved for the execution context.
    """
    sig = inspect.signature(func)
    hints = get_type_hints(func) if hasattr(func, "__annotations__") else {}

    properties: dict[str, Any] = {}
    required: list[str] = []

    for param_name, param in sig.parameters.items():
        if param_name in _RESERVED_PARAMETERS:
            continue
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue

        if param_name in hints:
            prop_schema = python_type_to_json_schema(hints[param_name])
        else:
            prop_schema = {"type": "string"}

        if param.default is inspect.Parameter.empty:
            required.append(param_name)
        elif param.default is not None and _is_json_value(param.default):
            prop_schema["default"] = param.default

        properties[param_name] = prop_schema

    return {
        "type": "object",
        "properties": properties,
        "required": required
    }
