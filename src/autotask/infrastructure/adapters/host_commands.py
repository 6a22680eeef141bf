"""
Host command registry.

Maps command names to sync or async callables. The application registers
the host actions it wants to expose to the model; unknown names fail with a
HOST_CAPABILITY error.
"""

import asyncio
import inspect
from typing import Any, Callable

import structlog

from autotask.core.domain.errors import ErrorCategory, TaskError


class HostCommandRegistry:
    """HostCommandCapability backed by registered callables."""

    def __init__(self):
        self._commands: dict[str, Callable[..., Any]] = {}
        self.logger = structlog.get_logger().bind(component="host_commands")

    def register(self, name: str, handler: Callable[..., Any]) -> None:
        if not name or not callable(handler):
            raise ValueError("Host command needs a name and a callable handler")
        self._commands[name] = handler

    def unregister(self, name: str) -> bool:
        return self._commands.pop(name, None) is not None

    @property
    def commands(self) -> list[str]:
        return sorted(self._commands)

    async def invoke(self, command: str, *args: Any) -> Any:
        handler = self._commands.get(command)
        if handler is None:
            raise TaskError.build(
                f"Unknown host command: {command}",
                ErrorCategory.HOST_CAPABILITY,
                code="UNKNOWN_HOST_COMMAND",
                retryable=False,
                suggestions=[f"Registered host commands: {', '.join(self.commands) or 'none'}"],
            )
        self.logger.info("host_command_invoked", command=command, args=len(args))
        if inspect.iscoroutinefunction(handler):
            return await handler(*args)
        result = await asyncio.to_thread(handler, *args)
        if inspect.isawaitable(result):
            return await result
        return result
