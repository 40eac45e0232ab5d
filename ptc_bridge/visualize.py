"""
Terminal rendering of code execution results
"""

import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.text import Text
from rich.tree import Tree

from .types import CodeExecutionResult, ToolCallRecord


def truncate(text: str, max_length: int) -> str:
    if len(text) > max_length:
        return text[:max_length] + "\n... (truncated)"
    return text


def format_json(data: Any, max_length: int = 500) -> str:
    """Format data as JSON string, truncating if too long."""
    return truncate(json.dumps(data, indent=2, ensure_ascii=False, default=str), max_length)


def render_tool_call(call: ToolCallRecord, tree: Tree, index: int) -> None:
    """Render one reconstructed tool call."""
    status = "[green]ok[/green]" if call.success else "[red]failed[/red]"
    call_node = tree.add(
        f"[dim white]{index}.[/dim white] [bold yellow]{call.tool}[/bold yellow] "
        f"{status} [dim white]{call.duration_ms}ms[/dim white]"
    )

    if call.input not in (None, {}):
        input_node = call_node.add("[green]Input:[/green]")
        input_node.add(Syntax(format_json(call.input), "json", theme="monokai", line_numbers=False))

    if call.error:
        call_node.add(Text(call.error, style="red"))


def build_result_tree(result: CodeExecutionResult) -> Tree:
    status = (
        f"[green]Success (exit {result.exit_code})[/green]"
        if result.success
        else f"[red]Error (exit {result.exit_code})[/red]"
    )
    tree = Tree(
        f"[bold cyan]Code Execution[/bold cyan] {status} "
        f"[dim white]│[/dim white] [yellow]{result.execution_time_ms:,.0f}ms[/yellow]"
    )

    if result.output:
        output_node = tree.add("[green]Output:[/green]")
        output_node.add(Text(truncate(result.output, 2000), style="white"))

    if result.error:
        error_node = tree.add("[red]Error:[/red]")
        error_node.add(Text(truncate(result.error, 2000), style="white"))

    if not result.output and not result.error:
        tree.add("[dim white](no output)[/dim white]")

    if result.tool_calls:
        calls_node = tree.add(f"[bold white]Tool Calls[/bold white] ({len(result.tool_calls)})")
        for i, call in enumerate(result.tool_calls, 1):
            render_tool_call(call, calls_node, i)

    return tree


def show_execution_result(result: CodeExecutionResult, console: Console | None = None) -> None:
    """
    Print a code execution result with its tool call trace.

    Args:
        result: Result returned by ``ProgrammaticToolOrchestrator.execute_code``
        console: Target console; a new one writing to stdout by default
    """
    if console is None:
        console = Console()

    panel = Panel(
        build_result_tree(result),
        title="[bold]Sandbox Execution[/bold]",
        border_style="cyan" if result.success else "red",
        expand=False,
    )
    console.print(panel)
