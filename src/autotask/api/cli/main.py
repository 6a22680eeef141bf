"""Autotask CLI entry point."""

from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console

from autotask.api.cli.commands import config, run, tools
from autotask.api.cli.logging_setup import setup_logging
from autotask.application.config import Settings

app = typer.Typer(
    name="autotask",
    help="Autotask - autonomous task orchestrator",
    add_completion=True,
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

# Register commands
app.command("run", help="Execute a task")(run.run_task)
app.add_typer(tools.app, name="tools", help="Tool management")
app.add_typer(config.app, name="config", help="Configuration management")


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML settings file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
):
    """Autotask CLI."""
    load_dotenv()
    setup_logging(verbose)
    settings = Settings.load_from_file(config_file) if config_file else Settings()
    # Store global options in context for subcommands
    ctx.obj = {"verbose": verbose, "settings": settings, "config_file": config_file}


@app.command()
def version():
    """Show Autotask version."""
    from autotask import __version__

    console.print(f"[bold blue]Autotask[/bold blue] version [cyan]{__version__}[/cyan]")


if __name__ == "__main__":
    app()
