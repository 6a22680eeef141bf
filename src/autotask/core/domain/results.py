"""
Core Domain Models

Result types returned across component boundaries. Tool executions produce
one of two tagged variants (ToolSuccess / ToolFailure) so callers can match
on the type instead of probing optional fields. Turns produce a TurnResult,
which carries an ErrorEnvelope when the turn failed fatally.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from autotask.core.domain.errors import ErrorRecord


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ToolSuccess:
    """Successful tool execution with its normalized payload."""

    tool_name: str
    payload: Any
    attempts: int = 1
    timestamp: datetime = field(default_factory=_utcnow)

    success = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "success": True,
            "result": self.payload,
            "error": None,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ToolFailure:
    """Failed tool execution carrying the classified error."""

    tool_name: str
    error: ErrorRecord
    timestamp: datetime = field(default_factory=_utcnow)

    success = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "success": False,
            "result": None,
            "error": self.error.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }


ToolResult = Union[ToolSuccess, ToolFailure]


@dataclass
class PhaseOutcome:
    """
    Outcome of one phase handler.

    Attributes:
        phase: Phase that was handled
        success: False when the handler failed (non-fatal for the turn)
        message: Short human readable summary
        tool_result: Tool result produced during execution, if any
        verification: Verification request resolved during the turn, if any
        error: Classified error when success is False
    """

    phase: str
    success: bool = True
    message: str = ""
    tool_result: ToolResult | None = None
    verification: dict[str, Any] | None = None
    error: ErrorRecord | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "success": self.success,
            "message": self.message,
            "tool_result": self.tool_result.to_dict() if self.tool_result else None,
            "verification": self.verification,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class ErrorEnvelope:
    """User facing description of a fatal turn failure."""

    message: str
    user_message: str
    category: str
    code: str
    suggestions: list[str]
    recoverable: bool
    recovery_plan: dict[str, Any] | None = None

    @classmethod
    def from_record(cls, record: ErrorRecord, recovery_plan: dict[str, Any] | None = None) -> "ErrorEnvelope":
        return cls(
            message=record.message,
            user_message=record.user_message,
            category=record.category.value,
            code=record.code,
            suggestions=list(record.suggestions),
            recoverable=record.recoverable,
            recovery_plan=recovery_plan,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "user_message": self.user_message,
            "category": self.category,
            "code": self.code,
            "suggestions": list(self.suggestions),
            "recoverable": self.recoverable,
            "recovery_plan": self.recovery_plan,
        }


@dataclass
class TurnResult:
    """Structured result of one orchestrator turn."""

    text: str
    phase: str | None
    session_id: str | None
    todos: list[dict[str, Any]] = field(default_factory=list)
    tool_call: dict[str, Any] | None = None
    verification: dict[str, Any] | None = None
    complete: bool = False
    execution_result: PhaseOutcome | None = None
    error: ErrorEnvelope | None = None
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "phase": self.phase,
            "todos": self.todos,
            "tool_call": self.tool_call,
            "verification": self.verification,
            "complete": self.complete,
            "session_id": self.session_id,
            "execution_result": self.execution_result.to_dict() if self.execution_result else None,
            "error": self.error.to_dict() if self.error else None,
            "duration_ms": self.duration_ms,
        }
