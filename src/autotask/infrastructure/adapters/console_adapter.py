"""
Console notification adapter.

Shows tool messages on a rich Console. When interactive, messages with
choices prompt the user and return the selected choice.
"""

import asyncio
from pathlib import Path

import structlog
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.syntax import Syntax

_STYLES = {"info": "cyan", "warning": "yellow", "error": "bold red"}


class ConsoleNotificationAdapter:
    """NotificationCapability backed by a rich Console."""

    def __init__(self, console: Console | None = None, interactive: bool = True, preview_lines: int = 40):
        self.console = console or Console()
        self.interactive = interactive
        self.preview_lines = preview_lines
        self.logger = structlog.get_logger().bind(component="console_notifications")

    async def notify(self, level: str, message: str, choices: list[str] | None = None) -> str | None:
        style = _STYLES.get(level, "white")
        self.console.print(Panel(message, title=level.upper(), border_style=style))
        if not choices or not self.interactive:
            return None

        answer = await asyncio.to_thread(Prompt.ask, "Select", choices=list(choices), console=self.console)
        self.logger.info("notification_answered", level=level, answer=answer)
        return answer

    async def open_file(self, path: Path) -> None:
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        syntax = Syntax.from_path(str(path), line_numbers=True, line_range=(1, self.preview_lines))
        self.console.print(Panel(syntax, title=path.name, border_style="cyan"))
