"""Tools command - List and inspect supported tools."""

import typer
from rich.console import Console
from rich.table import Table

from autotask.core.domain.gateway import TOOL_SPECS

app = typer.Typer(help="Tool management")
console = Console()


@app.command("list")
def list_tools():
    """List supported tools."""
    table = Table(title="Available Tools")
    table.add_column("Name", style="cyan")
    table.add_column("Required", style="white")
    table.add_column("Attempts", justify="right")
    table.add_column("Description", style="dim")

    for spec in TOOL_SPECS.values():
        table.add_row(spec.name, ", ".join(spec.required), str(spec.max_attempts), spec.description)

    console.print(table)


@app.command("inspect")
def inspect_tool(tool_name: str = typer.Argument(..., help="Tool name to inspect")):
    """Inspect a tool's parameters and retry policy."""
    spec = TOOL_SPECS.get(tool_name)

    if not spec:
        console.print(f"[red]Tool '{tool_name}' not found[/red]")
        raise typer.Exit(1)

    console.print(f"\n[bold cyan]{spec.name}[/bold cyan]")
    console.print(f"{spec.description}\n")
    console.print(f"[bold]Required:[/bold] {', '.join(spec.required)}")
    console.print(f"[bold]Optional:[/bold] {', '.join(spec.optional) or '-'}")
    console.print(f"[bold]Max attempts:[/bold] {spec.max_attempts}")
    retryable = sorted(category.value for category in spec.retryable_categories)
    console.print(f"[bold]Retried on:[/bold] {', '.join(retryable) or 'never'}")
