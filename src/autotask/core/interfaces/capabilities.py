"""
Host capability protocols.

The tool gateway depends only on these interfaces. Concrete adapters live in
autotask.infrastructure.adapters; tests substitute mocks.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol


@dataclass(frozen=True)
class CommandOutput:
    """Outcome of a finished command."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class SearchMatch:
    """One line matching a find-in-files query."""

    path: str
    line: int
    text: str


class FileCapability(Protocol):
    """File operations on already validated absolute paths."""

    async def read(self, path: Path) -> str:
        ...

    async def write(self, path: Path, content: str) -> int:
        """Write content, returning the number of characters written."""
        ...

    async def append(self, path: Path, content: str) -> int:
        ...

    async def create(self, path: Path, content: str = "") -> None:
        """Create a new file. Fails if the file already exists."""
        ...

    async def delete(self, path: Path) -> None:
        ...

    async def search(self, pattern: str, max_results: int = 100) -> list[str]:
        """Workspace-relative paths matching a glob pattern."""
        ...

    async def find_in_files(
        self, search_term: str, include: str | None = None, max_results: int = 100
    ) -> list[SearchMatch]:
        ...


class ProcessCapability(Protocol):
    async def run(self, command: str, cwd: Path, timeout_ms: int) -> CommandOutput:
        ...


class TerminalCapability(Protocol):
    """Interactive terminals. Output is never observed."""

    async def send_text(self, terminal_name: str, text: str) -> None:
        ...


class NotificationCapability(Protocol):
    async def notify(self, level: str, message: str, choices: list[str] | None = None) -> str | None:
        """Show a message; returns the user's choice when choices are offered."""
        ...

    async def open_file(self, path: Path) -> None:
        """Present a file to the user."""
        ...


class HostCommandCapability(Protocol):
    async def invoke(self, command: str, *args: Any) -> Any:
        ...
