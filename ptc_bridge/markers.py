"""
Tool call markers

The generated client stub prints one tagged line per tool call event:

    [TOOL_CALL:<name>] <json input>
    [TOOL_RESULT:<name>] {"durationMs":<int>,"success":true}
    [TOOL_ERROR:<name>] {"durationMs":<int>,"success":false,"error":"<msg>"}

``parse_tool_calls`` turns captured sandbox output back into clean output
plus a list of ``ToolCallRecord``.
"""

import json
import logging
import re
from typing import Any

from .types import ToolCallRecord

logger = logging.getLogger(__name__)

TOOL_CALL_TAG = "TOOL_CALL"
TOOL_RESULT_TAG = "TOOL_RESULT"
TOOL_ERROR_TAG = "TOOL_ERROR"

TOOL_CALL_RE = re.compile(rf"\[{TOOL_CALL_TAG}:(\w+)\]\s*(.*)")
TOOL_RESULT_RE = re.compile(rf"\[{TOOL_RESULT_TAG}:(\w+)\]\s*(.*)")
TOOL_ERROR_RE = re.compile(rf"\[{TOOL_ERROR_TAG}:(\w+)\]\s*(.*)")


def _compact(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), default=str)


def format_call_marker(tool_name: str, tool_input: Any) -> str:
    return f"[{TOOL_CALL_TAG}:{tool_name}] {_compact(tool_input)}"


def format_result_marker(tool_name: str, duration_ms: int) -> str:
    return f"[{TOOL_RESULT_TAG}:{tool_name}] {_compact({'durationMs': duration_ms, 'success': True})}"


def format_error_marker(tool_name: str, duration_ms: int, error: str) -> str:
    payload = {"durationMs": duration_ms, "success": False, "error": error}
    return f"[{TOOL_ERROR_TAG}:{tool_name}] {_compact(payload)}"


def _pending_call(records: list[ToolCallRecord], pending: list[int], tool_name: str) -> ToolCallRecord | None:
    """Pop the oldest unresolved call of ``tool_name``"""
    for position, index in enumerate(pending):
        if records[index].tool == tool_name:
            del pending[position]
            return records[index]
    return None


def parse_tool_calls(output: str) -> tuple[str, list[ToolCallRecord]]:
    """
    Split raw sandbox output into clean output and a tool call trace.

    Every line matching a marker is removed from the clean output, including
    lines whose JSON payload is malformed (those contribute no record). A
    result or error marker resolves the oldest pending call of the same tool;
    one with no pending call is ignored. Calls that never resolve keep
    ``success=False`` and a duration of 0.

    Args:
        output: Raw stdout captured from the sandbox

    Returns:
        (clean_output, tool_calls)
    """
    records: list[ToolCallRecord] = []
    pending: list[int] = []
    clean_lines: list[str] = []

    for line in output.split("\n"):
        call_match = TOOL_CALL_RE.search(line)
        if call_match:
            name, payload = call_match.groups()
            try:
                tool_input = json.loads(payload)
            except json.JSONDecodeError:
                logger.debug(f"Skipping malformed {TOOL_CALL_TAG} marker for '{name}'")
                continue
            records.append(ToolCallRecord(tool=name, input=tool_input))
            pending.append(len(records) - 1)
            continue

        result_match = TOOL_RESULT_RE.search(line)
        error_match = None if result_match else TOOL_ERROR_RE.search(line)
        match = result_match or error_match
        if match:
            name, payload = match.groups()
            try:
                data = json.loads(payload)
            except json.JSONDecodeError:
                logger.debug(f"Skipping malformed marker for '{name}'")
                continue
            if not isinstance(data, dict):
                continue
            record = _pending_call(records, pending, name)
            if record is None:
                continue
            record.duration_ms = data.get("durationMs", 0)
            if result_match:
                record.success = True
            else:
                record.success = False
                record.error = data.get("error")
            continue

        clean_lines.append(line)

    return "\n".join(clean_lines).strip(), records
