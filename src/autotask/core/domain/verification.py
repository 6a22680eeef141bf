"""
Core Domain - Verification Gate

Decides whether a TODO's reported result is accepted. A request is either
auto-approved on the spot (heuristic match), or registered as pending and
completed exactly once by one of: an external resolve() call, its timeout
(which approves), or cancellation (which rejects).

Each request is backed by an asyncio.Future. open() hands back a
VerificationTicket that callers await; resolve() completes the future and
cancels the scheduled timeout callback.
"""

import asyncio
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog

from autotask.core.domain.errors import ErrorCategory, TaskError

AUTO_APPROVAL_RULES: dict[str, re.Pattern[str]] = {
    "file_created": re.compile(r"^(File|Directory) .+ (created|written) successfully", re.IGNORECASE),
    "file_read": re.compile(r"^(File|Content) .+ (read|retrieved) successfully", re.IGNORECASE),
    "file_deleted": re.compile(r"^(File|Directory) .+ (deleted|removed) successfully", re.IGNORECASE),
    "search_completed": re.compile(r"^Search (completed|found \d+ results)", re.IGNORECASE),
    "command_success": re.compile(r"^Command executed successfully", re.IGNORECASE),
    "todo_created": re.compile(r"^TODO .+ created successfully", re.IGNORECASE),
    "todo_updated": re.compile(r"^TODO .+ updated successfully", re.IGNORECASE),
}

SUCCESS_KEYWORDS = (
    "success",
    "successful",
    "completed",
    "done",
    "created",
    "updated",
    "saved",
    "written",
    "deleted",
    "removed",
    "found",
    "retrieved",
)

ERROR_KEYWORDS = (
    "error",
    "failed",
    "failure",
    "exception",
    "crash",
    "timeout",
    "not found",
    "permission denied",
    "access denied",
    "invalid",
)


class VerificationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class VerificationRequest:
    """Approval request for one TODO result."""

    id: str
    todo_id: str
    result: str
    timeout_ms: int
    session_id: str | None = None
    status: VerificationStatus = VerificationStatus.PENDING
    feedback: str | None = None
    auto_approved: bool = False
    timed_out: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @property
    def approved(self) -> bool:
        """Timeouts count as approvals."""
        return self.status in (VerificationStatus.APPROVED, VerificationStatus.TIMEOUT)

    @property
    def response_ms(self) -> float | None:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.created_at).total_seconds() * 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "todo_id": self.todo_id,
            "result": self.result,
            "status": self.status.value,
            "approved": self.approved,
            "feedback": self.feedback,
            "auto_approved": self.auto_approved,
            "timed_out": self.timed_out,
            "timeout_ms": self.timeout_ms,
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class VerificationTicket:
    """Awaitable handle for a verification request."""

    def __init__(self, request: VerificationRequest, future: "asyncio.Future[VerificationRequest]"):
        self.request = request
        self._future = future

    @property
    def id(self) -> str:
        return self.request.id

    @property
    def done(self) -> bool:
        return self._future.done()

    async def wait(self) -> VerificationRequest:
        # Shielded so a cancelled waiter does not cancel the request itself.
        return await asyncio.shield(self._future)


@dataclass
class _PendingEntry:
    request: VerificationRequest
    future: "asyncio.Future[VerificationRequest]"
    timer: asyncio.TimerHandle | None = None


class VerificationGate:
    """Approval gate for TODO results."""

    def __init__(
        self,
        default_timeout_ms: int = 60000,
        auto_approval_enabled: bool = True,
        max_pending: int = 10,
    ):
        self.default_timeout_ms = default_timeout_ms
        self.auto_approval_enabled = auto_approval_enabled
        self.max_pending = max_pending
        self._pending: dict[str, _PendingEntry] = {}
        self._history: list[VerificationRequest] = []
        self.logger = structlog.get_logger().bind(component="verification_gate")

    @staticmethod
    def should_auto_approve(result: str) -> bool:
        """
        Conservative heuristic for immediate approval.

        Approves when the text matches one of AUTO_APPROVAL_RULES, or when it
        contains a success keyword and no error keyword.
        """
        if not result:
            return False
        text = result.strip()
        if any(rule.search(text) for rule in AUTO_APPROVAL_RULES.values()):
            return True

        lowered = text.lower()
        has_success = any(keyword in lowered for keyword in SUCCESS_KEYWORDS)
        has_error = any(keyword in lowered for keyword in ERROR_KEYWORDS)
        return has_success and not has_error

    def open(
        self,
        todo_id: str,
        result: str,
        *,
        timeout_ms: int | None = None,
        allow_auto_approval: bool = True,
        session_id: str | None = None,
    ) -> VerificationTicket:
        """
        Open a verification request.

        Must be called from a running event loop. Auto-approved requests come
        back already resolved.

        Raises:
            TaskError: VALIDATION error for empty input or when the pending
                ceiling is reached
        """
        if not isinstance(todo_id, str) or not todo_id.strip():
            raise TaskError.build(
                "TODO id is required for verification",
                ErrorCategory.VALIDATION,
                code="INVALID_VERIFICATION_REQUEST",
            )
        if not isinstance(result, str) or not result.strip():
            raise TaskError.build(
                "Result text is required for verification",
                ErrorCategory.VALIDATION,
                code="INVALID_VERIFICATION_REQUEST",
                context={"todo_id": todo_id},
            )

        loop = asyncio.get_running_loop()
        request = VerificationRequest(
            id=f"verify_{uuid.uuid4().hex[:12]}",
            todo_id=todo_id,
            result=result,
            timeout_ms=self.default_timeout_ms if timeout_ms is None else timeout_ms,
            session_id=session_id,
        )
        future: asyncio.Future[VerificationRequest] = loop.create_future()

        if self.auto_approval_enabled and allow_auto_approval and self.should_auto_approve(result):
            request.auto_approved = True
            self._complete(request, future, VerificationStatus.APPROVED, "Auto-approved based on result pattern")
            self.logger.info("verification_auto_approved", verification_id=request.id, todo_id=todo_id)
            return VerificationTicket(request, future)

        if len(self._pending) >= self.max_pending:
            raise TaskError.build(
                f"Maximum pending verifications ({self.max_pending}) reached",
                ErrorCategory.VALIDATION,
                code="VERIFICATION_LIMIT_REACHED",
                context={"todo_id": todo_id},
            )

        entry = _PendingEntry(request=request, future=future)
        entry.timer = loop.call_later(request.timeout_ms / 1000, self._on_timeout, request.id)
        self._pending[request.id] = entry
        self.logger.info(
            "verification_pending",
            verification_id=request.id,
            todo_id=todo_id,
            timeout_ms=request.timeout_ms,
        )
        return VerificationTicket(request, future)

    async def request_verification(
        self,
        todo_id: str,
        result: str,
        *,
        timeout_ms: int | None = None,
        allow_auto_approval: bool = True,
        session_id: str | None = None,
    ) -> VerificationRequest:
        """Open a request and wait for its resolution."""
        ticket = self.open(
            todo_id,
            result,
            timeout_ms=timeout_ms,
            allow_auto_approval=allow_auto_approval,
            session_id=session_id,
        )
        return await ticket.wait()

    def _complete(
        self,
        request: VerificationRequest,
        future: "asyncio.Future[VerificationRequest]",
        status: VerificationStatus,
        feedback: str | None,
    ) -> None:
        request.status = status
        request.feedback = feedback
        request.completed_at = _utcnow()
        self._history.append(request)
        if not future.done():
            future.set_result(request)

    def _finish_pending(self, verification_id: str, status: VerificationStatus, feedback: str | None) -> bool:
        entry = self._pending.pop(verification_id, None)
        if entry is None:
            return False
        if entry.timer is not None:
            entry.timer.cancel()
        self._complete(entry.request, entry.future, status, feedback)
        return True

    def resolve(self, verification_id: str, approved: bool, feedback: str | None = None) -> bool:
        """
        Resolve a pending request. Returns False if the id is unknown or
        already resolved.
        """
        status = VerificationStatus.APPROVED if approved else VerificationStatus.REJECTED
        if not self._finish_pending(verification_id, status, feedback):
            self.logger.warning("verification_not_pending", verification_id=verification_id)
            return False
        self.logger.info("verification_resolved", verification_id=verification_id, approved=approved)
        return True

    def _on_timeout(self, verification_id: str) -> None:
        entry = self._pending.get(verification_id)
        if entry is None:
            return
        entry.request.timed_out = True
        entry.request.auto_approved = True
        entry.timer = None
        self._finish_pending(
            verification_id,
            VerificationStatus.TIMEOUT,
            f"Auto-approved after {entry.request.timeout_ms}ms timeout",
        )
        self.logger.info("verification_timed_out", verification_id=verification_id)

    def cancel(self, verification_id: str, reason: str = "cancelled") -> bool:
        """Reject a pending request without user input."""
        if not self._finish_pending(verification_id, VerificationStatus.REJECTED, reason):
            return False
        self.logger.info("verification_cancelled", verification_id=verification_id, reason=reason)
        return True

    def cancel_session(self, session_id: str, reason: str = "session terminated") -> int:
        """Reject every pending request of a session. Returns how many were cancelled."""
        ids = [vid for vid, entry in self._pending.items() if entry.request.session_id == session_id]
        for verification_id in ids:
            self.cancel(verification_id, reason)
        return len(ids)

    def clear_pending(self) -> None:
        for verification_id in list(self._pending):
            self.cancel(verification_id, "cleared")

    def get_pending(self, verification_id: str) -> VerificationRequest | None:
        entry = self._pending.get(verification_id)
        return entry.request if entry else None

    def pending(self, session_id: str | None = None) -> list[VerificationRequest]:
        return [
            entry.request
            for entry in self._pending.values()
            if session_id is None or entry.request.session_id == session_id
        ]

    def history(
        self,
        todo_id: str | None = None,
        status: VerificationStatus | str | None = None,
        limit: int | None = None,
    ) -> list[VerificationRequest]:
        """Resolved requests, newest first."""
        items = list(self._history)
        if todo_id is not None:
            items = [r for r in items if r.todo_id == todo_id]
        if status is not None:
            status = VerificationStatus(status)
            items = [r for r in items if r.status == status]
        items.reverse()
        if limit is not None and limit > 0:
            items = items[:limit]
        return items

    def stats(self) -> dict[str, Any]:
        counts = {status.value: 0 for status in VerificationStatus if status != VerificationStatus.PENDING}
        auto_approved = 0
        response_times: list[float] = []
        for request in self._history:
            counts[request.status.value] += 1
            if request.auto_approved:
                auto_approved += 1
            if request.response_ms is not None:
                response_times.append(request.response_ms)

        total = len(self._history)
        return {
            "total": total,
            "pending": len(self._pending),
            **counts,
            "auto_approved": auto_approved,
            "approval_rate": (counts["approved"] / total) * 100 if total else 0.0,
            "auto_approval_rate": (auto_approved / total) * 100 if total else 0.0,
            "average_response_ms": round(sum(response_times) / len(response_times)) if response_times else 0,
        }
