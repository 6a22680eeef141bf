"""
Core Domain - Sessions

A Session holds everything the orchestrator knows about one task: the
original request, the current phase, the TODO list and an append-only
execution log. SessionManager owns the session map, serialises turns with a
per-session lock, renders the recap prompt sent with every model turn and
evicts idle sessions.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

import structlog

from autotask.core.domain.errors import ErrorCategory, TaskError
from autotask.core.domain.todos import Todo, TodoManager

RECAP_LOG_ENTRIES = 10


class Phase(str, Enum):
    PLANNING = "planning"
    EXECUTION = "execution"
    VERIFICATION = "verification"
    COMPLETE = "complete"


def parse_phase(value: Any) -> Phase:
    """
    Raises:
        TaskError: INVALID_PHASE validation error
    """
    if isinstance(value, Phase):
        return value
    try:
        return Phase(str(value).strip().lower())
    except ValueError:
        raise TaskError.build(
            f"Invalid phase: {value!r}. Must be one of: {', '.join(p.value for p in Phase)}",
            ErrorCategory.VALIDATION,
            code="INVALID_PHASE",
            recoverable=False,
        ) from None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LogEntry:
    type: str
    details: Mapping[str, Any]
    timestamp: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "details": dict(self.details), "timestamp": self.timestamp.isoformat()}


@dataclass
class Session:
    """State of one orchestrated task."""

    id: str
    original_task: str
    model_id: str
    request_id: str
    todo_manager: TodoManager
    phase: Phase = Phase.PLANNING
    created_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)
    _log: list[LogEntry] = field(default_factory=list, repr=False)

    @property
    def todos(self) -> list[Todo]:
        return self.todo_manager.all()

    @property
    def execution_log(self) -> tuple[LogEntry, ...]:
        return tuple(self._log)

    def touch(self) -> None:
        self.last_activity_at = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "original_task": self.original_task,
            "model_id": self.model_id,
            "request_id": self.request_id,
            "phase": self.phase.value,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "todos": self.todo_manager.export_todos(),
            "execution_log": [entry.to_dict() for entry in self._log],
        }


_UPDATABLE_FIELDS = frozenset({"phase", "model_id", "request_id", "original_task"})


class SessionManager:
    """Owns the in-memory session map."""

    def __init__(
        self,
        max_sessions: int = 100,
        session_timeout_ms: int = 30 * 60 * 1000,
        cleanup_interval_ms: int = 5 * 60 * 1000,
        max_description_length: int = 1000,
        max_todos: int = 200,
    ):
        self.max_sessions = max_sessions
        self.session_timeout_ms = session_timeout_ms
        self.cleanup_interval_ms = cleanup_interval_ms
        self.max_description_length = max_description_length
        self.max_todos = max_todos
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._cleanup_task: asyncio.Task | None = None
        self._stats = {"created": 0, "expired": 0, "deleted": 0, "peak": 0}
        self.logger = structlog.get_logger().bind(component="session_manager")

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def new_todo_manager(self) -> TodoManager:
        return TodoManager(max_description_length=self.max_description_length, max_todos=self.max_todos)

    def create_session(
        self,
        task: str,
        model_id: str,
        request_id: str,
        session_id: str | None = None,
    ) -> Session:
        """
        Create and register a session.

        Raises:
            TaskError: VALIDATION error for empty arguments or a taken id,
                SESSION_LIMIT_EXCEEDED once the ceiling is reached
        """
        for value, code, label in (
            (task, "INVALID_TASK", "Task"),
            (model_id, "INVALID_MODEL_ID", "Model id"),
            (request_id, "INVALID_REQUEST_ID", "Request id"),
        ):
            if not isinstance(value, str) or not value.strip():
                raise TaskError.build(f"{label} must be a non-empty string", ErrorCategory.VALIDATION, code=code)

        if session_id is not None and session_id in self._sessions:
            raise TaskError.build(
                f"Session already exists: {session_id}",
                ErrorCategory.VALIDATION,
                code="DUPLICATE_SESSION_ID",
            )

        if len(self._sessions) >= self.max_sessions:
            self.clear_expired()
        if len(self._sessions) >= self.max_sessions:
            raise TaskError.build(
                f"Maximum number of sessions ({self.max_sessions}) reached",
                ErrorCategory.SYSTEM,
                code="SESSION_LIMIT_EXCEEDED",
                retryable=False,
                suggestions=["Stop an existing session", "Wait for idle sessions to expire"],
            )

        session = Session(
            id=session_id or f"session_{uuid.uuid4().hex[:12]}",
            original_task=task.strip(),
            model_id=model_id,
            request_id=request_id,
            todo_manager=self.new_todo_manager(),
        )
        self._sessions[session.id] = session
        self._stats["created"] += 1
        self._stats["peak"] = max(self._stats["peak"], len(self._sessions))
        self.add_execution_log_entry(session.id, "session_created", task=session.original_task)
        self.logger.info("session_created", session_id=session.id, model_id=model_id)
        return session

    def get_session(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.touch()
        return session

    def require_session(self, session_id: str) -> Session:
        session = self.get_session(session_id)
        if session is None:
            raise TaskError.build(
                f"Session not found: {session_id}",
                ErrorCategory.VALIDATION,
                code="SESSION_NOT_FOUND",
                context={"session_id": session_id},
            )
        return session

    def all_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def update_session(self, session_id: str, **changes: Any) -> Session:
        """
        Apply a partial update. Only phase, model_id, request_id and
        original_task may change; the id is immutable.
        """
        session = self.require_session(session_id)
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise TaskError.build(
                f"Cannot update session fields: {', '.join(sorted(unknown))}",
                ErrorCategory.VALIDATION,
                code="INVALID_SESSION_UPDATE",
            )
        if "phase" in changes:
            changes["phase"] = parse_phase(changes["phase"])
        previous_phase = session.phase
        for name, value in changes.items():
            setattr(session, name, value)
        if session.phase != previous_phase:
            self.add_execution_log_entry(
                session_id, "phase_changed", previous=previous_phase.value, current=session.phase.value
            )
        return session

    def add_execution_log_entry(self, session_id: str, entry_type: str, **details: Any) -> LogEntry:
        session = self.require_session(session_id)
        entry = LogEntry(type=entry_type, details=details)
        session._log.append(entry)
        return entry

    def lock(self, session_id: str) -> asyncio.Lock:
        """Lock serialising turns of one session."""
        if session_id not in self._locks:
            self._locks[session_id] = asyncio.Lock()
        return self._locks[session_id]

    def delete_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        self._locks.pop(session_id, None)
        if session is None:
            return False
        self._stats["deleted"] += 1
        self.logger.info("session_deleted", session_id=session_id)
        return True

    def build_context_prompt(self, session_id: str) -> str | None:
        """Markdown recap of the session, prepended to the next model prompt."""
        session = self._sessions.get(session_id)
        if session is None:
            return None

        lines = [
            "# Task Context",
            "",
            f"**Session ID:** {session.id}",
            f"**Original Task:** {session.original_task}",
            f"**Current Phase:** {session.phase.value}",
            f"**Session Started:** {session.created_at.isoformat()}",
            "",
        ]

        todos = session.todos
        if todos:
            lines += ["## Current TODOs", ""]
            for index, todo in enumerate(todos, start=1):
                lines.append(f"{index}. **{todo.description}** ({todo.status.value}) [id: {todo.id}]")
                lines.append(f"   Expected: {todo.expected_result}")
                if todo.result:
                    lines.append(f"   Result: {todo.result}")
                lines.append("")

        recent = session.execution_log[-RECAP_LOG_ENTRIES:]
        if recent:
            lines += ["## Recent Execution Log", ""]
            for entry in recent:
                lines.append(f"- **{entry.type}** ({entry.timestamp.isoformat()})")
                if entry.details:
                    details = ", ".join(f"{key}={value}" for key, value in entry.details.items())
                    lines.append(f"  {details}")
            lines.append("")

        lines += [
            "## Instructions",
            "Continue the task based on the context above. "
            "Respond with the JSON format for the current phase.",
        ]
        return "\n".join(lines) + "\n"

    def clear_expired(self, now: datetime | None = None) -> int:
        """Evict sessions idle longer than session_timeout_ms. Returns the number removed."""
        now = now or _utcnow()
        cutoff = now - timedelta(milliseconds=self.session_timeout_ms)
        expired = [sid for sid, s in self._sessions.items() if s.last_activity_at < cutoff]
        for session_id in expired:
            self._sessions.pop(session_id, None)
            self._locks.pop(session_id, None)
        if expired:
            self._stats["expired"] += len(expired)
            self.logger.info("sessions_expired", count=len(expired))
        return len(expired)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_ms / 1000)
            self.clear_expired()

    def start_cleanup(self) -> None:
        """Start the periodic expiry sweep on the running loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def stop_cleanup(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        try:
            await self._cleanup_task
        except asyncio.CancelledError:
            pass
        self._cleanup_task = None

    def stats(self) -> dict[str, Any]:
        return {"active": len(self._sessions), **self._stats}
