"""Config command - Show, validate and export settings."""

from pathlib import Path

import typer
import yaml
from rich.console import Console
from rich.table import Table

from autotask.application.config import Settings

app = typer.Typer(help="Configuration management")
console = Console()


def _settings(ctx: typer.Context) -> Settings:
    return (ctx.obj or {}).get("settings") or Settings()


def _flatten(data: dict, prefix: str = "") -> list[tuple[str, object]]:
    rows = []
    for key, value in data.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict) and value and key != "aliases":
            rows.extend(_flatten(value, f"{name}."))
        else:
            rows.append((name, value))
    return rows


@app.command("show")
def show_config(
    ctx: typer.Context,
    as_yaml: bool = typer.Option(False, "--yaml", help="Print YAML instead of a table"),
):
    """
    Show the effective configuration.

    Examples:
        autotask config show
        autotask --config settings.yaml config show --yaml
    """
    data = _settings(ctx).model_dump()
    if as_yaml:
        console.print(yaml.dump(data, default_flow_style=False, sort_keys=False), end="")
        return

    table = Table(title="Autotask Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="white")
    for name, value in _flatten(data):
        if isinstance(value, list):
            value = ", ".join(str(item) for item in value)
        table.add_row(name, str(value))
    console.print(table)


@app.command("validate")
def validate_config(ctx: typer.Context):
    """Check the configuration; exits with status 1 when it has problems."""
    problems = _settings(ctx).validate_settings()
    if not problems:
        console.print("[green]Configuration is valid[/green]")
        return
    console.print(f"[red]Configuration has {len(problems)} problem(s):[/red]")
    for problem in problems:
        console.print(f"  - {problem}")
    raise typer.Exit(1)


@app.command("export")
def export_config(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Destination YAML file"),
):
    """Write the effective configuration to a YAML file."""
    _settings(ctx).save_to_file(path)
    console.print(f"[green]Configuration written to {path}[/green]")
