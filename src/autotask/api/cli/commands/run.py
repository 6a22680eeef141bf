"""Run command - Drive a task to completion."""

import asyncio
import contextlib
import threading
import uuid
from pathlib import Path
from typing import Callable, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from autotask.application.config import Settings
from autotask.application.factory import build_orchestrator
from autotask.core.domain.orchestrator import ExecuteRequest, Orchestrator
from autotask.core.domain.results import TurnResult
from autotask.core.domain.verification import VerificationGate, VerificationRequest

console = Console()

CONTINUE_PROMPT = "Continue with the task."

_STATUS_STYLES = {"pending": "white", "in_progress": "yellow", "done": "green", "failed": "red"}


def run_task(
    ctx: typer.Context,
    task: str = typer.Argument(..., help="Task description"),
    workspace: Path = typer.Option(Path("."), "--workspace", "-w", help="Workspace root"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model alias or name"),
    max_turns: int = typer.Option(30, "--max-turns", min=1, help="Stop after this many turns"),
    auto_approve: bool = typer.Option(False, "--auto-approve", help="Approve every verification"),
):
    """Execute a task.

    Examples:
        autotask run "Add a README with build instructions"

        autotask run "Fix the failing test" --workspace ./project --max-turns 10
    """
    global_opts = ctx.obj or {}
    settings: Settings = global_opts.get("settings") or Settings()

    orchestrator = build_orchestrator(
        settings,
        workspace,
        verification_listener=_auto_listener if auto_approve else ConfirmListener(),
        console=console,
    )
    model_id = model or settings.model.default_model

    console.print(Panel(task, title="Task", border_style="blue"))
    final = asyncio.run(drive(orchestrator, task, model_id, max_turns))

    if final.error is not None:
        raise typer.Exit(1)
    if not final.complete:
        console.print(f"[yellow]Stopped after {max_turns} turns without completing the task[/yellow]")
        raise typer.Exit(2)
    console.print("[bold green]Task completed[/bold green]")


async def drive(orchestrator: Orchestrator, task: str, model_id: str, max_turns: int) -> TurnResult:
    """Execute turns until the task completes, a turn fails fatally or max_turns is reached."""
    session_id: Optional[str] = None
    prompt = task
    turns = 0
    try:
        while True:
            result = await orchestrator.execute(
                ExecuteRequest(
                    model_id=model_id,
                    prompt=prompt,
                    request_id=uuid.uuid4().hex,
                    session_id=session_id,
                )
            )
            turns += 1
            render_turn(result)
            if result.error is not None or result.complete or turns >= max_turns:
                return result
            session_id = result.session_id
            prompt = CONTINUE_PROMPT
    finally:
        await orchestrator.shutdown()


def render_turn(result: TurnResult) -> None:
    if result.error is not None:
        console.print(f"[bold red]{result.text}[/bold red]")
        for suggestion in result.error.suggestions:
            console.print(f"  [dim]- {suggestion}[/dim]")
        return

    outcome = result.execution_result
    style = "green" if outcome is None or outcome.success else "red"
    console.print(f"[bold cyan]{(result.phase or '').upper()}[/bold cyan] [{style}]{result.text}[/{style}]")
    if result.todos:
        console.print(todo_table(result.todos))


def todo_table(todos: list[dict]) -> Table:
    table = Table(title="TODOs")
    table.add_column("ID", style="dim")
    table.add_column("Status")
    table.add_column("Description", style="white")
    table.add_column("Result", style="dim")
    for todo in todos:
        status = todo.get("status", "pending")
        table.add_row(
            todo.get("id", ""),
            f"[{_STATUS_STYLES.get(status, 'white')}]{status}[/]",
            todo.get("description", ""),
            str(todo.get("result") or ""),
        )
    return table


class ConsoleLineReader:
    """
    Reads console lines on a daemon thread.

    Only one read is outstanding at a time. A read whose caller was cancelled
    (listener stopped, gate timed out) keeps running and answers the next
    prompt instead of a second thread competing for stdin. A line that arrives
    while nobody is waiting is dropped.
    """

    def __init__(self, console: Console, read: Optional[Callable[[], str]] = None):
        self.console = console
        self._read = read or (lambda: console.input(""))
        self._pending: Optional[asyncio.Future] = None

    async def readline(self, prompt: str) -> str:
        self.console.print(prompt, end="", markup=False, highlight=False)
        if self._pending is None or self._pending.done():
            self._pending = self._start()
        line = await asyncio.shield(self._pending)
        self._pending = None
        return line

    def _start(self) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def deliver(line: Optional[str], error: Optional[BaseException]) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(line)

        def worker() -> None:
            line, error = None, None
            try:
                line = self._read()
            except Exception as e:
                error = e
            # call_soon_threadsafe raises once the loop is closed.
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(deliver, line, error)

        threading.Thread(target=worker, name="autotask-console-input", daemon=True).start()
        return future


class ConfirmListener:
    """Asks on the console whether a finished TODO is accepted."""

    APPROVE_ANSWERS = ("", "y", "yes")

    def __init__(self, reader: Optional[ConsoleLineReader] = None):
        self.reader = reader or ConsoleLineReader(console)

    async def __call__(self, request: VerificationRequest, gate: VerificationGate) -> None:
        console.print(Panel(request.result, title=f"Verify {request.todo_id}", border_style="yellow"))
        answer = await self.reader.readline("Approve this result? [y/n] (y): ")
        approved = answer.strip().lower() in self.APPROVE_ANSWERS
        feedback = None
        if not approved:
            feedback = (await self.reader.readline("What should change? ")).strip()
        gate.resolve(request.id, approved, feedback or None)


async def _auto_listener(request: VerificationRequest, gate: VerificationGate) -> None:
    gate.resolve(request.id, True, "approved from command line")
