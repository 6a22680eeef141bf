"""
Core Domain - TODO Lifecycle

Tracks the structured TODO list of one session. A TODO moves
pending -> in_progress -> {done, failed}; the only way back to pending is an
explicit reset_for_retry. All mutation goes through TodoManager, which
validates before touching its collection so a rejected call never leaves a
partial change behind.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

import structlog

from autotask.core.domain.errors import ErrorCategory, TaskError

DEFAULT_MAX_DESCRIPTION_LENGTH = 1000
DEFAULT_MAX_TODOS = 200


class TodoStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TodoStatus.DONE, TodoStatus.FAILED})

_ALLOWED_TRANSITIONS: dict[TodoStatus, frozenset[TodoStatus]] = {
    TodoStatus.PENDING: frozenset({TodoStatus.IN_PROGRESS}),
    TodoStatus.IN_PROGRESS: frozenset({TodoStatus.DONE, TodoStatus.FAILED}),
    TodoStatus.DONE: frozenset(),
    TodoStatus.FAILED: frozenset(),
}


def parse_todo_status(value: Any) -> TodoStatus:
    """Parse a loosely formatted status string, accepting common aliases.

    Raises:
        TaskError: VALIDATION error for unknown statuses
    """
    if isinstance(value, TodoStatus):
        return value
    text = str(value or "").strip().replace("-", "_").replace(" ", "_").lower()
    alias = {
        "open": "pending",
        "todo": "pending",
        "inprogress": "in_progress",
        "active": "in_progress",
        "completed": "done",
        "complete": "done",
        "fail": "failed",
        "error": "failed",
    }
    try:
        return TodoStatus(alias.get(text, text))
    except ValueError:
        raise TaskError.build(
            f"Invalid status: {value!r}. Must be one of: {', '.join(s.value for s in TodoStatus)}",
            ErrorCategory.VALIDATION,
            code="INVALID_TODO_STATUS",
        ) from None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass
class ToolCallRecord:
    """One tool invocation attached to a TODO."""

    tool_name: str
    params: dict[str, Any]
    success: bool
    result: Any = None
    error: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "params": dict(self.params),
            "success": self.success,
            "result": self.result,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCallRecord":
        return cls(
            tool_name=data["tool_name"],
            params=dict(data.get("params") or {}),
            success=bool(data.get("success")),
            result=data.get("result"),
            error=data.get("error"),
            timestamp=_parse_timestamp(data.get("timestamp")) or _utcnow(),
        )


@dataclass
class Todo:
    """
    One tracked unit of work.

    Attributes:
        id: Unique identifier within the session
        description: What has to be done
        expected_result: Observable outcome that marks the TODO as done
        status: Current lifecycle status
        result: Reported result (or failure reason)
        tool_calls: Ordered tool invocations made for this TODO
        created_at: Creation time (UTC)
        completed_at: Time the TODO reached done/failed
        retry_count: Number of reset_for_retry transitions
    """

    id: str
    description: str
    expected_result: str
    status: TodoStatus = TodoStatus.PENDING
    result: str | None = None
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    retry_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "expected_result": self.expected_result,
            "status": self.status.value,
            "result": self.result,
            "tool_calls": [call.to_dict() for call in self.tool_calls],
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "retry_count": self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Todo":
        return cls(
            id=str(data["id"]),
            description=str(data["description"]),
            expected_result=str(data["expected_result"]),
            status=parse_todo_status(data.get("status", TodoStatus.PENDING)),
            result=data.get("result"),
            tool_calls=[ToolCallRecord.from_dict(c) for c in data.get("tool_calls") or []],
            created_at=_parse_timestamp(data.get("created_at")) or _utcnow(),
            completed_at=_parse_timestamp(data.get("completed_at")),
            retry_count=int(data.get("retry_count", 0)),
        )


def _not_found(todo_id: str) -> TaskError:
    return TaskError.build(
        f"TODO not found: {todo_id}",
        ErrorCategory.VALIDATION,
        code="TODO_NOT_FOUND",
        context={"todo_id": todo_id},
    )


class TodoManager:
    """Owns the ordered TODO collection of a session."""

    def __init__(
        self,
        max_description_length: int = DEFAULT_MAX_DESCRIPTION_LENGTH,
        max_todos: int = DEFAULT_MAX_TODOS,
    ):
        self.max_description_length = max_description_length
        self.max_todos = max_todos
        self._todos: dict[str, Todo] = {}
        self.logger = structlog.get_logger().bind(component="todo_manager")

    def __len__(self) -> int:
        return len(self._todos)

    def __iter__(self):
        return iter(list(self._todos.values()))

    def __contains__(self, todo_id: object) -> bool:
        return todo_id in self._todos

    def _validate_new(self, description: str, expected_result: str, todo_id: str | None) -> None:
        if not isinstance(description, str) or not description.strip():
            raise TaskError.build(
                "TODO description is required",
                ErrorCategory.VALIDATION,
                code="MISSING_DESCRIPTION",
            )
        if len(description) > self.max_description_length:
            raise TaskError.build(
                f"TODO description exceeds {self.max_description_length} characters",
                ErrorCategory.VALIDATION,
                code="DESCRIPTION_TOO_LONG",
                context={"length": len(description)},
            )
        if not isinstance(expected_result, str) or not expected_result.strip():
            raise TaskError.build(
                "TODO expected result is required",
                ErrorCategory.VALIDATION,
                code="MISSING_EXPECTED_RESULT",
            )
        if todo_id is not None and todo_id in self._todos:
            raise TaskError.build(
                f"TODO id already exists: {todo_id}",
                ErrorCategory.VALIDATION,
                code="DUPLICATE_TODO_ID",
                context={"todo_id": todo_id},
            )
        if len(self._todos) >= self.max_todos:
            raise TaskError.build(
                f"TODO limit of {self.max_todos} reached",
                ErrorCategory.VALIDATION,
                code="TODO_LIMIT_REACHED",
            )

    def create(self, description: str, expected_result: str, todo_id: str | None = None) -> Todo:
        """
        Create a pending TODO.

        Raises:
            TaskError: VALIDATION error for empty fields, an overlong
                description, a duplicate id or a full collection
        """
        if todo_id is not None:
            todo_id = str(todo_id)
        self._validate_new(description, expected_result, todo_id)

        todo = Todo(
            id=todo_id or f"todo_{uuid.uuid4().hex[:10]}",
            description=description.strip(),
            expected_result=expected_result.strip(),
        )
        self._todos[todo.id] = todo
        self.logger.info("todo_created", todo_id=todo.id, description=todo.description[:80])
        return todo

    def adopt(self, todo: Todo) -> Todo:
        """Insert a copy of a TODO owned by another manager, keeping its state."""
        if todo.id in self._todos:
            raise TaskError.build(
                f"TODO id already exists: {todo.id}",
                ErrorCategory.VALIDATION,
                code="DUPLICATE_TODO_ID",
                context={"todo_id": todo.id},
            )
        copy = Todo.from_dict(todo.to_dict())
        self._todos[copy.id] = copy
        return copy

    def get(self, todo_id: str) -> Todo | None:
        return self._todos.get(todo_id)

    def require(self, todo_id: str) -> Todo:
        todo = self._todos.get(todo_id)
        if todo is None:
            raise _not_found(todo_id)
        return todo

    def all(self) -> list[Todo]:
        return list(self._todos.values())

    def list_by_status(self, status: TodoStatus | str) -> list[Todo]:
        status = parse_todo_status(status)
        return [todo for todo in self._todos.values() if todo.status == status]

    def next_pending(self) -> Todo | None:
        """First pending TODO in insertion order."""
        return next((t for t in self._todos.values() if t.status == TodoStatus.PENDING), None)

    def current(self) -> Todo | None:
        """First in-progress TODO in insertion order."""
        return next((t for t in self._todos.values() if t.status == TodoStatus.IN_PROGRESS), None)

    def update_status(self, todo_id: str, status: TodoStatus | str) -> Todo:
        """
        Move a TODO to a new status along the allowed transitions.

        Setting the current status again is a no-op.

        Raises:
            TaskError: TODO_NOT_FOUND or INVALID_STATUS_TRANSITION
        """
        todo = self.require(todo_id)
        status = parse_todo_status(status)
        if status == todo.status:
            return todo
        if status not in _ALLOWED_TRANSITIONS[todo.status]:
            raise TaskError.build(
                f"Cannot move TODO {todo_id} from {todo.status.value} to {status.value}",
                ErrorCategory.VALIDATION,
                code="INVALID_STATUS_TRANSITION",
                context={"todo_id": todo_id, "from": todo.status.value, "to": status.value},
            )

        todo.status = status
        if status in TERMINAL_STATUSES:
            todo.completed_at = _utcnow()
        self.logger.info("todo_status_changed", todo_id=todo_id, status=status.value)
        return todo

    def start(self, todo_id: str) -> Todo:
        return self.update_status(todo_id, TodoStatus.IN_PROGRESS)

    def _advance_to_in_progress(self, todo: Todo) -> None:
        if todo.status == TodoStatus.PENDING:
            self.update_status(todo.id, TodoStatus.IN_PROGRESS)

    def mark_complete(self, todo_id: str, result: str) -> Todo:
        """Set status done with the given result. A pending TODO passes through in_progress."""
        todo = self.require(todo_id)
        if todo.status == TodoStatus.DONE:
            todo.result = result
            return todo
        self._advance_to_in_progress(todo)
        todo.result = result
        return self.update_status(todo_id, TodoStatus.DONE)

    def mark_failed(self, todo_id: str, reason: str) -> Todo:
        """Set status failed, recording the reason as the result."""
        todo = self.require(todo_id)
        if todo.status == TodoStatus.FAILED:
            todo.result = reason
            return todo
        self._advance_to_in_progress(todo)
        todo.result = reason
        return self.update_status(todo_id, TodoStatus.FAILED)

    def reset_for_retry(self, todo_id: str, reason: str | None = None) -> Todo:
        """
        Return a done or failed TODO to pending and count the retry.

        Args:
            todo_id: TODO to reset
            reason: Optional feedback stored as the TODO's result

        Raises:
            TaskError: If the TODO is not in a terminal status
        """
        todo = self.require(todo_id)
        if not todo.is_terminal:
            raise TaskError.build(
                f"Only done or failed TODOs can be reset, {todo_id} is {todo.status.value}",
                ErrorCategory.VALIDATION,
                code="INVALID_STATUS_TRANSITION",
                context={"todo_id": todo_id, "from": todo.status.value, "to": "pending"},
            )
        todo.status = TodoStatus.PENDING
        todo.completed_at = None
        todo.retry_count += 1
        if reason is not None:
            todo.result = reason
        self.logger.info("todo_reset_for_retry", todo_id=todo_id, retry_count=todo.retry_count)
        return todo

    def attach_tool_call(self, todo_id: str, record: ToolCallRecord) -> Todo:
        todo = self.require(todo_id)
        todo.tool_calls.append(record)
        return todo

    def delete(self, todo_id: str) -> bool:
        if self._todos.pop(todo_id, None) is None:
            return False
        self.logger.info("todo_deleted", todo_id=todo_id)
        return True

    def clear_all(self) -> None:
        self._todos.clear()

    def stats(self) -> dict[str, Any]:
        counts = {status.value: 0 for status in TodoStatus}
        for todo in self._todos.values():
            counts[todo.status.value] += 1
        total = len(self._todos)
        return {
            "total": total,
            **counts,
            "completion_rate": (counts["done"] / total) * 100 if total else 0.0,
        }

    def export_todos(self) -> list[dict[str, Any]]:
        """Plain snapshot of the ordered collection."""
        return [todo.to_dict() for todo in self._todos.values()]

    def import_todos(self, snapshot: Iterable[dict[str, Any]]) -> None:
        """
        Replace the collection with a snapshot produced by export_todos.

        The snapshot is fully parsed before the current collection is replaced.
        """
        if isinstance(snapshot, (str, bytes, dict)):
            raise TaskError.build(
                "TODO snapshot must be a list of TODO objects",
                ErrorCategory.VALIDATION,
                code="INVALID_TODO_SNAPSHOT",
            )
        restored: dict[str, Todo] = {}
        for data in snapshot:
            try:
                todo = Todo.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                raise TaskError.build(
                    f"Malformed TODO in snapshot: {e}",
                    ErrorCategory.VALIDATION,
                    code="INVALID_TODO_SNAPSHOT",
                ) from e
            restored[todo.id] = todo
        self._todos = restored
        self.logger.info("todos_imported", count=len(restored))
