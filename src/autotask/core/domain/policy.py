"""
Workspace security policy.

Every path handed to a tool is resolved against the workspace root and checked
against the blocked-path list before any adapter sees it. Commands are checked
against the allowed-command list, and written content against the size limit.
"""

import re
import shlex
from pathlib import Path

import structlog

from autotask.core.domain.errors import ErrorCategory, TaskError

DEFAULT_ALLOWED_COMMANDS = ("npm", "node", "git", "ls", "dir", "cat", "type", "echo")
DEFAULT_BLOCKED_PATHS = (".git", "node_modules", ".env", "*.key", "*.pem")
DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024

_SHELL_CHAINING = re.compile(r"(;|&&|\|\||\||`|\$\(|>|<)")


def _wildcard_regex(pattern: str) -> re.Pattern[str]:
    return re.compile(".*".join(re.escape(part) for part in pattern.lower().split("*")))


class WorkspacePolicy:
    """Path, content and command restrictions for one workspace."""

    def __init__(
        self,
        root: Path | str,
        *,
        restrict_to_workspace: bool = True,
        blocked_paths: list[str] | tuple[str, ...] = DEFAULT_BLOCKED_PATHS,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        allowed_commands: list[str] | tuple[str, ...] = DEFAULT_ALLOWED_COMMANDS,
    ):
        self.root = Path(root).expanduser().resolve()
        self.restrict_to_workspace = restrict_to_workspace
        self.blocked_paths = tuple(blocked_paths)
        self.max_file_size = max_file_size
        self.allowed_commands = tuple(c.lower() for c in allowed_commands)
        self._blocked_matchers = [
            (pattern, _wildcard_regex(pattern) if "*" in pattern else None) for pattern in self.blocked_paths
        ]
        self.logger = structlog.get_logger().bind(component="workspace_policy")

    def is_inside_root(self, path: Path) -> bool:
        return path == self.root or self.root in path.parents

    def display_path(self, path: Path) -> str:
        """Workspace-relative posix path when inside the root, absolute otherwise."""
        if self.is_inside_root(path):
            return path.relative_to(self.root).as_posix() or "."
        return path.as_posix()

    def is_blocked(self, path: Path) -> bool:
        """Substring match for plain patterns, wildcard match for patterns with '*'."""
        candidate = self.display_path(path).lower()
        for pattern, regex in self._blocked_matchers:
            if regex is not None:
                if regex.search(candidate):
                    return True
            elif pattern.lower() in candidate:
                return True
        return False

    def resolve_path(self, raw_path: str) -> Path:
        """
        Resolve a tool path and enforce the workspace and blocked-path checks.

        Raises:
            TaskError: PERMISSION error (never retryable) when the path escapes
                the workspace root or matches a blocked pattern
        """
        if not isinstance(raw_path, str) or not raw_path.strip():
            raise TaskError.build(
                "Path parameter is required",
                ErrorCategory.VALIDATION,
                code="INVALID_PATH",
            )

        candidate = Path(raw_path).expanduser()
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()

        if self.restrict_to_workspace and not self.is_inside_root(resolved):
            self.logger.warning("path_outside_workspace", path=raw_path)
            raise TaskError.build(
                f"Path is outside the workspace: {raw_path}",
                ErrorCategory.PERMISSION,
                code="PATH_TRAVERSAL_DENIED",
                retryable=False,
                context={"path": raw_path, "workspace": str(self.root)},
                suggestions=["Use a path inside the workspace root"],
            )

        if self.is_blocked(resolved):
            self.logger.warning("path_blocked", path=raw_path)
            raise TaskError.build(
                f"Access to path is blocked: {raw_path}",
                ErrorCategory.PERMISSION,
                code="PATH_BLOCKED",
                retryable=False,
                context={"path": raw_path},
                suggestions=["Choose a path that does not match the blocked path list"],
            )
        return resolved

    def check_pattern(self, pattern: str) -> None:
        """
        Glob patterns are always evaluated from the workspace root.

        Raises:
            TaskError: PERMISSION error (never retryable) for absolute patterns
                or patterns that climb out with '..'
        """
        parts = Path(pattern).parts
        if Path(pattern).is_absolute() or pattern.startswith(("/", "\\")) or ".." in parts:
            self.logger.warning("pattern_outside_workspace", pattern=pattern)
            raise TaskError.build(
                f"Pattern reaches outside the workspace: {pattern}",
                ErrorCategory.PERMISSION,
                code="PATH_TRAVERSAL_DENIED",
                retryable=False,
                context={"pattern": pattern, "workspace": str(self.root)},
                suggestions=["Use a pattern relative to the workspace root"],
            )

    def check_content_size(self, content: str) -> None:
        size = len(content.encode("utf-8"))
        if size > self.max_file_size:
            raise TaskError.build(
                f"Content size {size} exceeds the maximum of {self.max_file_size} bytes",
                ErrorCategory.VALIDATION,
                code="FILE_SIZE_EXCEEDED",
                context={"size": size, "max_file_size": self.max_file_size},
            )

    def base_command(self, command: str) -> str:
        try:
            parts = shlex.split(command)
        except ValueError:
            parts = command.split()
        if not parts:
            return ""
        name = Path(parts[0]).name.lower()
        return name[:-4] if name.endswith(".exe") else name

    def check_command(self, command: str) -> None:
        """
        Raises:
            TaskError: PERMISSION error when the base command is not allowed or
                the command chains or redirects to other commands
        """
        base = self.base_command(command)
        if not base:
            raise TaskError.build("Command is empty", ErrorCategory.VALIDATION, code="INVALID_COMMAND")
        if base not in self.allowed_commands or _SHELL_CHAINING.search(command):
            self.logger.warning("command_blocked", command=command[:120], base_command=base)
            raise TaskError.build(
                f"Command not allowed: {base}",
                ErrorCategory.PERMISSION,
                code="COMMAND_BLOCKED",
                retryable=False,
                context={"command": command},
                suggestions=[f"Allowed commands: {', '.join(self.allowed_commands)}"],
            )
