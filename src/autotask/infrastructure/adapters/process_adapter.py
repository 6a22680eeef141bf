"""
Process adapters.

SubprocessAdapter runs a command to completion and captures its output.
DetachedTerminalAdapter starts commands without observing them, one
long-lived shell per named terminal.
"""

import asyncio
import os
from pathlib import Path

import structlog

from autotask.core.interfaces.capabilities import CommandOutput


class SubprocessAdapter:
    """Runs shell commands with a timeout."""

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding
        self.logger = structlog.get_logger().bind(component="subprocess_adapter")

    async def run(self, command: str, cwd: Path, timeout_ms: int) -> CommandOutput:
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            self.logger.warning("command_timed_out", command=command[:120], timeout_ms=timeout_ms)
            raise TimeoutError(f"Command timed out after {timeout_ms}ms") from None

        output = CommandOutput(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode(self.encoding, errors="replace") if stdout else "",
            stderr=stderr.decode(self.encoding, errors="replace") if stderr else "",
        )
        self.logger.debug("command_finished", command=command[:120], exit_code=output.exit_code)
        return output


class DetachedTerminalAdapter:
    """
    Fire-and-forget terminals.

    Each terminal name maps to one shell process; text sent to it is written
    to the shell's stdin and its output goes to the host's console.
    """

    def __init__(self, cwd: Path | str):
        self.cwd = Path(cwd)
        self._terminals: dict[str, asyncio.subprocess.Process] = {}
        self.logger = structlog.get_logger().bind(component="terminal_adapter")

    async def _terminal(self, name: str) -> asyncio.subprocess.Process:
        process = self._terminals.get(name)
        if process is None or process.returncode is not None:
            process = await asyncio.create_subprocess_shell(
                "cmd" if os.name == "nt" else "sh",
                stdin=asyncio.subprocess.PIPE,
                cwd=str(self.cwd),
            )
            self._terminals[name] = process
            self.logger.info("terminal_started", terminal=name, pid=process.pid)
        return process

    async def send_text(self, terminal_name: str, text: str) -> None:
        process = await self._terminal(terminal_name)
        assert process.stdin is not None
        process.stdin.write((text.rstrip("\n") + "\n").encode())
        await process.stdin.drain()
        self.logger.info("terminal_text_sent", terminal=terminal_name, characters=len(text))

    async def close(self) -> None:
        for name, process in list(self._terminals.items()):
            if process.returncode is None:
                process.terminate()
                await process.wait()
            self._terminals.pop(name, None)
