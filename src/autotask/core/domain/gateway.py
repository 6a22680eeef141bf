"""
Core Domain - Tool Execution Gateway

Validates tool calls requested by the model, enforces the workspace policy,
and delegates to the injected capability adapters with per-tool retry
budgets. The gateway performs no I/O itself and never raises: every outcome
is returned as a ToolSuccess or ToolFailure.
"""

import shlex
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable

import structlog

from autotask.core.domain.errors import ErrorCategory, ErrorRecord, TaskError
from autotask.core.domain.metrics import ExecutionMetrics
from autotask.core.domain.policy import WorkspacePolicy
from autotask.core.domain.results import ToolFailure, ToolResult, ToolSuccess
from autotask.core.domain.retry import ErrorHandler, RetryConfig
from autotask.core.interfaces.capabilities import (
    FileCapability,
    HostCommandCapability,
    NotificationCapability,
    ProcessCapability,
    TerminalCapability,
)

_BASE_RETRYABLE = frozenset({ErrorCategory.NETWORK, ErrorCategory.TIMEOUT})
_FILE_RETRYABLE = _BASE_RETRYABLE | {ErrorCategory.FILE_SYSTEM}
_HOST_RETRYABLE = _BASE_RETRYABLE | {ErrorCategory.HOST_CAPABILITY}


@dataclass(frozen=True)
class ToolSpec:
    """Static description of a supported tool."""

    name: str
    description: str
    required: tuple[str, ...]
    max_attempts: int
    retryable_categories: frozenset[ErrorCategory]
    optional: tuple[str, ...] = ()


TOOL_SPECS: dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec("read_file", "Read a text file", ("path",), 3, _FILE_RETRYABLE),
        ToolSpec("write_file", "Write or append to a file", ("path", "content"), 2, _FILE_RETRYABLE, ("append",)),
        ToolSpec("create_file", "Create a new file", ("path",), 2, _FILE_RETRYABLE, ("content",)),
        ToolSpec("delete_file", "Delete a file", ("path",), 2, _FILE_RETRYABLE),
        ToolSpec("search_files", "Find files by glob pattern", ("pattern",), 3, _HOST_RETRYABLE, ("max_results",)),
        ToolSpec(
            "find_in_files",
            "Search file contents for text",
            ("search_term",),
            3,
            _HOST_RETRYABLE,
            ("include", "max_results"),
        ),
        ToolSpec(
            "execute_command",
            "Run an allowed command and capture its output",
            ("command",),
            2,
            _BASE_RETRYABLE | {ErrorCategory.SYSTEM},
            ("cwd", "timeout_ms"),
        ),
        ToolSpec(
            "execute_terminal",
            "Send a command to an interactive terminal",
            ("command",),
            1,
            frozenset(),
            ("terminal_name", "cwd"),
        ),
        ToolSpec("show_message", "Show a message to the user", ("message",), 2, _HOST_RETRYABLE, ("type", "choices")),
        ToolSpec("open_file", "Open a file for the user", ("path",), 3, _HOST_RETRYABLE | {ErrorCategory.FILE_SYSTEM}),
        ToolSpec("execute_host_command", "Invoke a named host command", ("command",), 2, _HOST_RETRYABLE, ("args",)),
    )
}

_MESSAGE_LEVELS = ("info", "warning", "error")


def tool_suggestions(tool_name: str, message: str) -> list[str]:
    """Tool specific remediation hints derived from the error message."""
    message = message.lower()
    suggestions: list[str] = []
    if tool_name == "read_file":
        if "enoent" in message or "not found" in message or "no such file" in message:
            suggestions += ["Check if the file path is correct", "Verify the file exists in the workspace"]
        if "eacces" in message or "permission" in message:
            suggestions += ["Check file read permissions", "Ensure the file is not locked by another process"]
    elif tool_name in ("write_file", "create_file"):
        if "enospc" in message or "no space" in message:
            suggestions.append("Check available disk space")
        if "eacces" in message or "permission" in message:
            suggestions += ["Check file write permissions", "Ensure the directory is writable"]
        if "exists" in message:
            suggestions.append("Use write_file to replace an existing file")
    elif tool_name == "execute_command":
        if "command not found" in message or "not recognized" in message:
            suggestions += [
                "Check if the command is installed and available in PATH",
                "Verify the command syntax",
            ]
        if "timeout" in message or "timed out" in message:
            suggestions += ["Try increasing the timeout duration", "Check if the command is hanging"]
    elif tool_name in ("search_files", "find_in_files"):
        if "workspace" in message:
            suggestions += ["Ensure a workspace folder is open", "Check workspace permissions"]
    elif tool_name == "open_file":
        if "not found" in message or "no such file" in message:
            suggestions += ["Verify the file path is correct", "Check if the file exists in the workspace"]
    return suggestions


_GENERAL_SUGGESTIONS = [
    "Check the tool parameters",
    "Verify the operation is supported in the current context",
    "Try the operation again",
]


class ToolGateway:
    """Validates and executes tool calls through capability adapters."""

    def __init__(
        self,
        policy: WorkspacePolicy,
        error_handler: ErrorHandler,
        files: FileCapability,
        processes: ProcessCapability,
        terminals: TerminalCapability,
        notifications: NotificationCapability,
        host_commands: HostCommandCapability,
        metrics: ExecutionMetrics | None = None,
        command_timeout_ms: int = 300000,
        retry_config: RetryConfig | None = None,
    ):
        """
        Initialize the gateway.

        Args:
            policy: Workspace security policy applied before delegation
            error_handler: Shared classifier and retry engine
            files: File adapter
            processes: Command adapter
            terminals: Interactive terminal adapter
            notifications: User notification adapter
            host_commands: Host command adapter
            metrics: Optional metrics sink
            command_timeout_ms: Default execute_command timeout
            retry_config: Base delays for tool retries; attempts and
                categories come from each tool's spec
        """
        self.policy = policy
        self.error_handler = error_handler
        self.files = files
        self.processes = processes
        self.terminals = terminals
        self.notifications = notifications
        self.host_commands = host_commands
        self.metrics = metrics
        self.command_timeout_ms = command_timeout_ms
        self.retry_config = retry_config or error_handler.config
        self.logger = structlog.get_logger().bind(component="tool_gateway")

        self._runners: dict[str, Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]] = {
            "read_file": self._read_file,
            "write_file": self._write_file,
            "create_file": self._create_file,
            "delete_file": self._delete_file,
            "search_files": self._search_files,
            "find_in_files": self._find_in_files,
            "execute_command": self._execute_command,
            "execute_terminal": self._execute_terminal,
            "show_message": self._show_message,
            "open_file": self._open_file,
            "execute_host_command": self._execute_host_command,
        }

    @property
    def supported_tools(self) -> list[str]:
        return list(TOOL_SPECS)

    def _validate(self, name: Any, params: Any) -> ToolSpec:
        if not isinstance(name, str) or not name.strip():
            raise TaskError.build(
                "Tool name must be a non-empty string",
                ErrorCategory.VALIDATION,
                code="INVALID_TOOL_NAME",
                suggestions=[f"Supported tools: {', '.join(TOOL_SPECS)}"],
            )
        spec = TOOL_SPECS.get(name)
        if spec is None:
            raise TaskError.build(
                f"Unsupported tool: {name}",
                ErrorCategory.VALIDATION,
                code="UNSUPPORTED_TOOL",
                context={"tool": name},
                suggestions=[f"Supported tools: {', '.join(TOOL_SPECS)}"],
            )
        if not isinstance(params, dict):
            raise TaskError.build(
                f"Parameters for {name} must be an object",
                ErrorCategory.VALIDATION,
                code="INVALID_TOOL_PARAMS",
                context={"tool": name},
            )
        missing = [key for key in spec.required if params.get(key) is None]
        if missing:
            raise TaskError.build(
                f"Missing required parameters for {name}: {', '.join(missing)}",
                ErrorCategory.VALIDATION,
                code="INVALID_TOOL_PARAMS",
                context={"tool": name, "missing": missing},
                suggestions=[f"Required parameters: {', '.join(spec.required)}"],
            )
        return spec

    def _enforce_policy(self, name: str, params: dict[str, Any]) -> dict[str, Any]:
        """Resolve path-like parameters and apply the policy checks. Returns normalized params."""
        checked = dict(params)
        for key in ("path", "cwd"):
            if params.get(key) is not None:
                checked[key] = self.policy.resolve_path(str(params[key]))
        for key in ("pattern", "include"):
            if params.get(key) is not None:
                self.policy.check_pattern(str(params[key]))
        for key in ("content",):
            if params.get(key) is not None:
                checked[key] = str(params[key])
                self.policy.check_content_size(checked[key])
        if name == "execute_command":
            self.policy.check_command(str(params["command"]))
        return checked

    async def execute_tool(
        self,
        name: str,
        params: dict[str, Any] | None,
        context: dict[str, Any] | None = None,
    ) -> ToolResult:
        """
        Execute a tool call.

        Args:
            name: Tool name from the fixed allow-list
            params: Tool parameters
            context: Optional logging context (session_id, todo_id, ...)

        Returns:
            ToolSuccess with the normalized payload, or ToolFailure with the
            classified error. Never raises.
        """
        context = dict(context or {})
        tool_name = name if isinstance(name, str) else str(name)
        params = {} if params is None else params
        started = time.perf_counter()
        self.logger.info("tool_execution_start", tool=tool_name, **context)

        try:
            spec = self._validate(name, params)
            checked = self._enforce_policy(spec.name, params)
        except TaskError as e:
            record = self.error_handler.handle(e, tool=tool_name, **context)
            result: ToolResult = ToolFailure(tool_name=tool_name, error=self._with_suggestions(tool_name, record))
        else:
            result = await self._run(spec, checked, context)

        duration_ms = (time.perf_counter() - started) * 1000
        if self.metrics is not None:
            self.metrics.record_tool(tool_name, duration_ms, result.success)

        if isinstance(result, ToolSuccess):
            self.logger.info(
                "tool_execution_success",
                tool=tool_name,
                attempts=result.attempts,
                duration_ms=round(duration_ms, 1),
                **context,
            )
        else:
            self.logger.warning(
                "tool_execution_failed",
                tool=tool_name,
                error_code=result.error.code,
                error=result.error.message,
                duration_ms=round(duration_ms, 1),
                **context,
            )
        return result

    async def _run(self, spec: ToolSpec, params: dict[str, Any], context: dict[str, Any]) -> ToolResult:
        runner = self._runners[spec.name]
        attempts = 0

        async def operation() -> dict[str, Any]:
            nonlocal attempts
            attempts += 1
            return await runner(params)

        config = replace(
            self.retry_config,
            max_attempts=spec.max_attempts,
            retryable_categories=spec.retryable_categories,
        )
        try:
            payload = await self.error_handler.execute_with_retry(operation, config)
        except TaskError as e:
            record = e.record.with_context(tool=spec.name, **context)
            return ToolFailure(tool_name=spec.name, error=self._with_suggestions(spec.name, record))
        return ToolSuccess(tool_name=spec.name, payload=payload, attempts=attempts)

    def _with_suggestions(self, tool_name: str, record: ErrorRecord) -> ErrorRecord:
        suggestions = tool_suggestions(tool_name, record.message)
        if not suggestions and not record.suggestions:
            suggestions = list(_GENERAL_SUGGESTIONS)
        return record.with_suggestions(suggestions)

    async def _read_file(self, params: dict[str, Any]) -> dict[str, Any]:
        path = params["path"]
        content = await self.files.read(path)
        shown = self.policy.display_path(path)
        return {
            "message": f"File {shown} read successfully",
            "path": shown,
            "content": content,
            "size": len(content),
        }

    async def _write_file(self, params: dict[str, Any]) -> dict[str, Any]:
        path = params["path"]
        if params.get("append"):
            written = await self.files.append(path, params["content"])
        else:
            written = await self.files.write(path, params["content"])
        shown = self.policy.display_path(path)
        return {
            "message": f"File {shown} written successfully",
            "path": shown,
            "characters": written,
            "appended": bool(params.get("append")),
        }

    async def _create_file(self, params: dict[str, Any]) -> dict[str, Any]:
        path = params["path"]
        await self.files.create(path, params.get("content") or "")
        shown = self.policy.display_path(path)
        return {"message": f"File {shown} created successfully", "path": shown}

    async def _delete_file(self, params: dict[str, Any]) -> dict[str, Any]:
        path = params["path"]
        await self.files.delete(path)
        shown = self.policy.display_path(path)
        return {"message": f"File {shown} deleted successfully", "path": shown}

    async def _search_files(self, params: dict[str, Any]) -> dict[str, Any]:
        max_results = int(params.get("max_results") or 100)
        found = await self.files.search(str(params["pattern"]), max_results)
        visible = [p for p in found if not self.policy.is_blocked(self.policy.root / p)]
        return {"message": f"Search found {len(visible)} results", "files": visible}

    async def _find_in_files(self, params: dict[str, Any]) -> dict[str, Any]:
        max_results = int(params.get("max_results") or 100)
        matches = await self.files.find_in_files(str(params["search_term"]), params.get("include"), max_results)
        visible = [m for m in matches if not self.policy.is_blocked(self.policy.root / m.path)]
        return {
            "message": f"Search found {len(visible)} results",
            "matches": [{"path": m.path, "line": m.line, "text": m.text} for m in visible],
        }

    async def _execute_command(self, params: dict[str, Any]) -> dict[str, Any]:
        command = str(params["command"])
        cwd = params.get("cwd") or self.policy.root
        timeout_ms = int(params.get("timeout_ms") or self.command_timeout_ms)
        output = await self.processes.run(command, cwd, timeout_ms)
        if not output.ok:
            detail = (output.stderr or output.stdout).strip()[:500]
            raise TaskError.build(
                f"Command failed with exit code {output.exit_code}: {detail}",
                ErrorCategory.SYSTEM,
                code="COMMAND_FAILED",
                retryable=False,
                context={"command": command, "exit_code": output.exit_code},
            )
        return {
            "message": "Command executed successfully",
            "exit_code": output.exit_code,
            "stdout": output.stdout,
            "stderr": output.stderr,
        }

    async def _execute_terminal(self, params: dict[str, Any]) -> dict[str, Any]:
        name = str(params.get("terminal_name") or "autotask")
        text = str(params["command"])
        if params.get("cwd") is not None:
            text = f"cd {shlex.quote(str(params['cwd']))} && {text}"
        await self.terminals.send_text(name, text)
        return {"message": f"Command sent to terminal {name}", "terminal_name": name}

    async def _show_message(self, params: dict[str, Any]) -> dict[str, Any]:
        level = str(params.get("type") or "info").lower()
        if level not in _MESSAGE_LEVELS:
            raise TaskError.build(
                f"Invalid message type: {level}",
                ErrorCategory.VALIDATION,
                code="INVALID_TOOL_PARAMS",
                suggestions=[f"Use one of: {', '.join(_MESSAGE_LEVELS)}"],
            )
        choices = params.get("choices")
        response = await self.notifications.notify(level, str(params["message"]), list(choices) if choices else None)
        return {"message": "Message shown successfully", "response": response}

    async def _open_file(self, params: dict[str, Any]) -> dict[str, Any]:
        path = params["path"]
        await self.notifications.open_file(path)
        shown = self.policy.display_path(path)
        return {"message": f"File {shown} opened successfully", "path": shown}

    async def _execute_host_command(self, params: dict[str, Any]) -> dict[str, Any]:
        command = str(params["command"])
        args = params.get("args") or []
        if not isinstance(args, list):
            args = [args]
        result = await self.host_commands.invoke(command, *args)
        return {"message": f"Host command {command} executed successfully", "result": result}
