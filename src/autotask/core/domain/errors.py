"""
Core Domain - Error Taxonomy

This module defines the error model shared by every component of the
orchestrator. Failures are classified into a fixed set of categories, each
with a default severity and retryability, and carried around as immutable
ErrorRecord instances. TaskError is the single exception type raised by the
core; it always wraps an ErrorRecord.

Classification is pattern based: the Python exception type is inspected
first, then the lower-cased message (and errno name, when available) is
matched against known substrings in a fixed order.
"""

import errno
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class ErrorCategory(str, Enum):
    """Category of a classified failure."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    FILE_SYSTEM = "file_system"
    PERMISSION = "permission"
    VALIDATION = "validation"
    PARSING = "parsing"
    SYSTEM = "system"
    HOST_CAPABILITY = "host_capability"


class ErrorSeverity(str, Enum):
    """Severity of a classified failure."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


NON_RETRYABLE_CATEGORIES = frozenset({ErrorCategory.PERMISSION, ErrorCategory.VALIDATION})

_USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.NETWORK: "A network connection issue occurred",
    ErrorCategory.TIMEOUT: "The operation timed out",
    ErrorCategory.FILE_SYSTEM: "A file system operation failed",
    ErrorCategory.PERMISSION: "Permission denied for the requested operation",
    ErrorCategory.VALIDATION: "Invalid input or data provided",
    ErrorCategory.PARSING: "Failed to parse the response",
    ErrorCategory.SYSTEM: "A system error occurred",
    ErrorCategory.HOST_CAPABILITY: "A host operation failed",
}

_DEFAULT_SUGGESTIONS: dict[ErrorCategory, tuple[str, ...]] = {
    ErrorCategory.NETWORK: (
        "Check your internet connection",
        "Verify the model endpoint is reachable",
        "Try again in a few moments",
    ),
    ErrorCategory.TIMEOUT: (
        "Try again with a longer timeout",
        "Check system performance",
        "Verify network connectivity",
    ),
    ErrorCategory.FILE_SYSTEM: (
        "Check if the file or directory exists",
        "Verify file permissions",
        "Ensure sufficient disk space",
    ),
    ErrorCategory.PERMISSION: (
        "Check file and directory permissions",
        "Verify the path is inside the workspace",
        "Review the blocked path and allowed command settings",
    ),
    ErrorCategory.VALIDATION: (
        "Check the input format and values",
        "Verify required fields are provided",
    ),
    ErrorCategory.PARSING: (
        "Check the response format",
        "Try regenerating the response",
    ),
    ErrorCategory.SYSTEM: (
        "Check system resources",
        "Review the logs for details",
    ),
    ErrorCategory.HOST_CAPABILITY: (
        "Verify the host is available",
        "Check that a workspace is open",
    ),
}

# Ordered (category, code, substrings). First match wins.
_MESSAGE_PATTERNS: tuple[tuple[ErrorCategory, str, tuple[str, ...]], ...] = (
    (
        ErrorCategory.NETWORK,
        "NETWORK_ERROR",
        ("network", "connection", "timeout", "econnrefused", "enotfound", "etimedout"),
    ),
    (
        ErrorCategory.FILE_SYSTEM,
        "FILE_SYSTEM_ERROR",
        (
            "enoent",
            "file not found",
            "no such file",
            "directory not found",
            "eexist",
            "enospc",
            "no space",
            "emfile",
        ),
    ),
    (
        ErrorCategory.PERMISSION,
        "PERMISSION_ERROR",
        ("eacces", "eperm", "permission denied", "access denied"),
    ),
    (
        ErrorCategory.VALIDATION,
        "VALIDATION_ERROR",
        ("invalid", "validation", "required", "missing"),
    ),
    (ErrorCategory.TIMEOUT, "TIMEOUT_ERROR", ("timed out",)),
    (
        ErrorCategory.PARSING,
        "PARSING_ERROR",
        ("parse", "json", "syntax", "unexpected token"),
    ),
    (
        ErrorCategory.HOST_CAPABILITY,
        "HOST_CAPABILITY_ERROR",
        ("host command", "workspace", "editor"),
    ),
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_severity(category: ErrorCategory) -> ErrorSeverity:
    """Default severity for a category."""
    if category == ErrorCategory.PERMISSION:
        return ErrorSeverity.HIGH
    return ErrorSeverity.MEDIUM


def default_retryable(category: ErrorCategory) -> bool:
    """PERMISSION and VALIDATION failures are never retried."""
    return category not in NON_RETRYABLE_CATEGORIES


@dataclass(frozen=True)
class ErrorRecord:
    """
    Immutable description of a classified failure.

    Attributes:
        message: Technical error message
        category: Error category used for retry and recovery decisions
        severity: Severity used to pick the log level
        code: Stable machine readable code (e.g. "PATH_BLOCKED")
        context: Read-only key/value bag describing where the failure happened
        recoverable: Whether the session can continue after this failure
        retryable: Whether a retry may succeed
        suggestions: Ordered, human readable remediation hints
        timestamp: When the failure was classified (UTC)
        error_type: Name of the original exception type, if any
    """

    message: str
    category: ErrorCategory = ErrorCategory.SYSTEM
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    code: str = "UNKNOWN_ERROR"
    context: Mapping[str, Any] = field(default_factory=dict)
    recoverable: bool = True
    retryable: bool = True
    suggestions: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=_utcnow)
    error_type: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "context", MappingProxyType(dict(self.context)))
        object.__setattr__(self, "suggestions", tuple(self.suggestions))

    @classmethod
    def create(
        cls,
        message: str,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        *,
        code: str | None = None,
        severity: ErrorSeverity | None = None,
        context: Mapping[str, Any] | None = None,
        recoverable: bool = True,
        retryable: bool | None = None,
        suggestions: tuple[str, ...] | list[str] | None = None,
        error_type: str | None = None,
    ) -> "ErrorRecord":
        """Build a record filling severity, retryability and suggestions from the category."""
        return cls(
            message=message,
            category=category,
            severity=severity or default_severity(category),
            code=code or f"{category.value.upper()}_ERROR",
            context=context or {},
            recoverable=recoverable,
            retryable=default_retryable(category) if retryable is None else retryable,
            suggestions=tuple(suggestions) if suggestions is not None else _DEFAULT_SUGGESTIONS[category],
            error_type=error_type,
        )

    @property
    def user_message(self) -> str:
        return _USER_MESSAGES.get(self.category, "An unexpected error occurred")

    def with_context(self, **extra: Any) -> "ErrorRecord":
        """Return a copy with additional context keys (existing keys win)."""
        if not extra:
            return self
        merged = {**extra, **self.context}
        return replace(self, context=merged)

    def with_suggestions(self, suggestions: list[str] | tuple[str, ...]) -> "ErrorRecord":
        """Return a copy with the given suggestions placed before the existing ones."""
        ordered = list(dict.fromkeys([*suggestions, *self.suggestions]))
        return replace(self, suggestions=tuple(ordered))

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "user_message": self.user_message,
            "category": self.category.value,
            "severity": self.severity.value,
            "code": self.code,
            "context": dict(self.context),
            "recoverable": self.recoverable,
            "retryable": self.retryable,
            "suggestions": list(self.suggestions),
            "timestamp": self.timestamp.isoformat(),
            "error_type": self.error_type,
        }


class TaskError(Exception):
    """Exception raised by the orchestrator core. Always carries an ErrorRecord."""

    def __init__(self, record: ErrorRecord):
        super().__init__(record.message)
        self.record = record

    @classmethod
    def build(
        cls,
        message: str,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        **kwargs: Any,
    ) -> "TaskError":
        return cls(ErrorRecord.create(message, category, **kwargs))

    @property
    def category(self) -> ErrorCategory:
        return self.record.category

    @property
    def code(self) -> str:
        return self.record.code

    def __str__(self) -> str:
        return f"[{self.record.code}] {self.record.message}"


def _classify_by_type(error: BaseException) -> tuple[ErrorCategory, str] | None:
    # TimeoutError and ConnectionError are OSError subclasses; check them first.
    if isinstance(error, TimeoutError):
        return ErrorCategory.TIMEOUT, "TIMEOUT_ERROR"
    if isinstance(error, ConnectionError):
        return ErrorCategory.NETWORK, "NETWORK_ERROR"
    if isinstance(error, PermissionError):
        return ErrorCategory.PERMISSION, "PERMISSION_ERROR"
    if isinstance(error, json.JSONDecodeError):
        return ErrorCategory.PARSING, "PARSING_ERROR"
    if isinstance(error, OSError):
        return ErrorCategory.FILE_SYSTEM, "FILE_SYSTEM_ERROR"
    return None


def _searchable_text(error: BaseException | str) -> str:
    if isinstance(error, str):
        return error.lower()
    parts = [str(error)]
    if isinstance(error, OSError) and error.errno is not None:
        parts.append(errno.errorcode.get(error.errno, ""))
    return " ".join(parts).lower()


def classify(
    error: BaseException | ErrorRecord | str,
    context: Mapping[str, Any] | None = None,
) -> ErrorRecord:
    """
    Classify an arbitrary failure into an ErrorRecord.

    A TaskError or ErrorRecord passes through unchanged (context is merged).
    Other exceptions are classified by type first, then by message patterns;
    anything unmatched becomes a SYSTEM error.

    Args:
        error: Exception, existing record, or plain message
        context: Optional key/value bag attached to the record

    Returns:
        Classified ErrorRecord
    """
    context = dict(context or {})
    if isinstance(error, TaskError):
        return error.record.with_context(**context)
    if isinstance(error, ErrorRecord):
        return error.with_context(**context)

    message = error if isinstance(error, str) else (str(error) or type(error).__name__)
    error_type = None if isinstance(error, str) else type(error).__name__

    matched = None if isinstance(error, str) else _classify_by_type(error)
    if matched is None:
        text = _searchable_text(error)
        for category, code, needles in _MESSAGE_PATTERNS:
            if any(needle in text for needle in needles):
                matched = (category, code)
                break

    category, code = matched or (ErrorCategory.SYSTEM, "UNKNOWN_ERROR")
    return ErrorRecord.create(
        message,
        category,
        code=code,
        context=context,
        error_type=error_type,
    )
