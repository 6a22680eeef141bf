"""
Core Domain - Orchestrator

Drives one model turn of a session through the phase state machine:

    planning -> execution -> verification -> complete

Each turn obtains (or creates) the session, renders the recap prompt, calls
the model transport with bounded retries, parses the reply defensively and
dispatches on the reply's phase. Phase handler failures are classified,
written to the session's execution log and returned as a non-fatal
PhaseOutcome. Failures above the dispatch boundary (disabled orchestration,
invalid configuration, missing transport, session errors, model transport
errors, invalid phase) end the turn with an ErrorEnvelope.
"""

import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog

from autotask.core.domain.errors import ErrorCategory, ErrorRecord, TaskError
from autotask.core.domain.gateway import TOOL_SPECS, ToolGateway
from autotask.core.domain.metrics import ExecutionMetrics
from autotask.core.domain.response import (
    ModelResponse,
    VerificationDecision,
    parse_model_response,
    validate_response,
)
from autotask.core.domain.results import (
    ErrorEnvelope,
    PhaseOutcome,
    ToolSuccess,
    TurnResult,
)
from autotask.core.domain.retry import ErrorHandler, RetryConfig
from autotask.core.domain.session import Phase, Session, SessionManager, parse_phase
from autotask.core.domain.todos import (
    Todo,
    TodoManager,
    TodoStatus,
    ToolCallRecord,
    parse_todo_status,
)
from autotask.core.domain.verification import (
    VerificationGate,
    VerificationRequest,
)
from autotask.core.interfaces.llm import ModelTransportProtocol
from autotask.core.prompts.task_prompts import build_turn_prompt

MODE = "task"

VerificationListener = Callable[[VerificationRequest, VerificationGate], Awaitable[None]]


@dataclass
class ExecuteRequest:
    """Input of one orchestrator turn."""

    model_id: str
    prompt: str
    request_id: str
    session_id: str | None = None


class Orchestrator:
    """Runs plan/execute/verify turns for many concurrent sessions."""

    def __init__(
        self,
        transport: ModelTransportProtocol | None,
        sessions: SessionManager,
        gateway: ToolGateway,
        gate: VerificationGate,
        error_handler: ErrorHandler,
        metrics: ExecutionMetrics | None = None,
        *,
        enabled: bool = True,
        config_problems: list[str] | None = None,
        max_todo_retries: int = 3,
        model_timeout_ms: int = 300000,
        model_retry_config: RetryConfig | None = None,
        verification_listener: VerificationListener | None = None,
    ):
        """
        Initialize the orchestrator with its collaborators.

        Args:
            transport: Model transport; a missing transport fails every turn
            sessions: Session manager
            gateway: Tool execution gateway
            gate: Verification gate
            error_handler: Shared classifier and retry engine
            metrics: Optional metrics sink
            enabled: When False every turn fails with MODE_DISABLED
            config_problems: Configuration validation problems; any problem
                fails every turn with INVALID_CONFIG
            max_todo_retries: Rejections with retry allowed per TODO before
                it stays failed
            model_timeout_ms: Timeout of a single model call
            model_retry_config: Retry configuration for model calls
            verification_listener: Coroutine started for verifications that
                need an external decision (e.g. a CLI prompt)
        """
        self.transport = transport
        self.sessions = sessions
        self.gateway = gateway
        self.gate = gate
        self.error_handler = error_handler
        self.metrics = metrics
        self.enabled = enabled
        self.config_problems = list(config_problems or [])
        self.max_todo_retries = max_todo_retries
        self.model_timeout_ms = model_timeout_ms
        self.model_retry_config = model_retry_config or RetryConfig(
            max_attempts=3,
            retryable_categories=frozenset({ErrorCategory.NETWORK, ErrorCategory.TIMEOUT}),
        )
        self.verification_listener = verification_listener
        self.logger = structlog.get_logger().bind(component="orchestrator")

    # ------------------------------------------------------------------
    # Turn entry point
    # ------------------------------------------------------------------

    async def execute(self, request: ExecuteRequest) -> TurnResult:
        """
        Run one turn.

        Returns:
            TurnResult. ``error`` is set only when the turn failed fatally.
        """
        started = time.perf_counter()
        self.logger.info(
            "turn_start",
            request_id=request.request_id,
            session_id=request.session_id,
            model_id=request.model_id,
        )

        try:
            self._check_preconditions()
            session = self._obtain_session(request)
        except TaskError as e:
            return self._fatal(e.record, request.session_id, started, request=request)

        async with self.sessions.lock(session.id):
            try:
                response = await self._model_turn(session, request)
            except TaskError as e:
                return self._fatal(e.record, session.id, started, request=request, handled=True)
            try:
                warnings = validate_response(response)
                phase = parse_phase(response.phase)
            except TaskError as e:
                return self._fatal(e.record, session.id, started, request=request)

            if warnings:
                self.logger.warning("response_warnings", session_id=session.id, warnings=warnings)
            if response.parse_error:
                self.sessions.add_execution_log_entry(session.id, "response_parse_fallback")

            self.sessions.update_session(session.id, phase=phase)
            outcome = await self._dispatch(session, phase, response)

        duration_ms = (time.perf_counter() - started) * 1000
        if self.metrics is not None:
            self.metrics.record_request(duration_ms, True)

        complete = response.complete or session.phase == Phase.COMPLETE
        self.logger.info(
            "turn_complete",
            session_id=session.id,
            phase=phase.value,
            success=outcome.success,
            complete=complete,
            duration_ms=round(duration_ms, 1),
        )
        return TurnResult(
            text=outcome.message or response.message,
            phase=phase.value,
            session_id=session.id,
            todos=session.todo_manager.export_todos(),
            tool_call=response.tool_call.to_dict() if response.tool_call else None,
            verification=outcome.verification
            or (response.verification.to_dict() if response.verification else None),
            complete=complete,
            execution_result=outcome,
            duration_ms=duration_ms,
        )

    def _check_preconditions(self) -> None:
        if not self.enabled:
            raise TaskError.build(
                "Task orchestration is disabled",
                ErrorCategory.SYSTEM,
                code="MODE_DISABLED",
                recoverable=False,
                retryable=False,
                suggestions=["Enable orchestration in the configuration"],
            )
        if self.config_problems:
            raise TaskError.build(
                f"Invalid configuration: {'; '.join(self.config_problems)}",
                ErrorCategory.VALIDATION,
                code="INVALID_CONFIG",
                recoverable=False,
                suggestions=["Fix the configuration problems and retry", *self.config_problems],
            )
        if self.transport is None:
            raise TaskError.build(
                "No model transport configured",
                ErrorCategory.SYSTEM,
                code="MISSING_TRANSPORT",
                recoverable=False,
                retryable=False,
            )

    def _obtain_session(self, request: ExecuteRequest) -> Session:
        self.sessions.start_cleanup()
        if request.session_id:
            session = self.sessions.get_session(request.session_id)
            if session is not None:
                return session
        return self.sessions.create_session(
            request.prompt,
            request.model_id,
            request.request_id,
            session_id=request.session_id,
        )

    async def _model_turn(self, session: Session, request: ExecuteRequest) -> ModelResponse:
        recap = self.sessions.build_context_prompt(session.id)
        tools = {name: spec.required for name, spec in TOOL_SPECS.items()}
        prompt = build_turn_prompt(recap, request.prompt, tools)

        async def send() -> str:
            reply = await asyncio.wait_for(
                self.transport.send(request.model_id, prompt, MODE, session_id=session.id),
                timeout=self.model_timeout_ms / 1000,
            )
            text = reply.text if reply is not None else None
            if not text and reply is not None and isinstance(reply.raw, str):
                text = reply.raw
            if not text:
                raise TaskError.build(
                    "No response received from model",
                    ErrorCategory.NETWORK,
                    code="NO_MODEL_RESPONSE",
                    context={"model_id": request.model_id, "session_id": session.id},
                )
            return text

        raw = await self.error_handler.execute_with_retry(send, self.model_retry_config)
        self.sessions.add_execution_log_entry(session.id, "model_response", characters=len(raw))
        return parse_model_response(raw)

    def _fatal(
        self,
        record: ErrorRecord,
        session_id: str | None,
        started: float,
        *,
        request: ExecuteRequest,
        handled: bool = False,
    ) -> TurnResult:
        if not handled:
            record = self.error_handler.handle(
                record, request_id=request.request_id, session_id=session_id
            )
        duration_ms = (time.perf_counter() - started) * 1000
        if self.metrics is not None:
            self.metrics.record_request(duration_ms, False)
        if session_id and self.sessions.get_session(session_id) is not None:
            self.sessions.add_execution_log_entry(
                session_id, "turn_failed", error_code=record.code, error=record.message
            )

        plan = self.error_handler.create_recovery_plan(record)
        self.logger.error(
            "turn_failed",
            session_id=session_id,
            error_code=record.code,
            error_category=record.category.value,
        )
        return TurnResult(
            text=f"Error: {record.user_message}",
            phase=None,
            session_id=session_id,
            error=ErrorEnvelope.from_record(record, plan.to_dict()),
            duration_ms=duration_ms,
        )

    # ------------------------------------------------------------------
    # Phase dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, session: Session, phase: Phase, response: ModelResponse) -> PhaseOutcome:
        handlers = {
            Phase.PLANNING: self._handle_planning,
            Phase.EXECUTION: self._handle_execution,
            Phase.VERIFICATION: self._handle_verification,
            Phase.COMPLETE: self._handle_complete,
        }
        try:
            return await handlers[phase](session, response)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            record = self.error_handler.handle(e, session_id=session.id, phase=phase.value)
            if session.id in self.sessions:
                self.sessions.add_execution_log_entry(
                    session.id,
                    "phase_error",
                    phase=phase.value,
                    error_code=record.code,
                    error=record.message,
                )
            return PhaseOutcome(
                phase=phase.value,
                success=False,
                message=f"Error processing {phase.value} phase: {record.user_message}",
                error=record,
            )

    async def _handle_planning(self, session: Session, response: ModelResponse) -> PhaseOutcome:
        """Replace the TODO set with the planned one. Existing ids keep their state."""
        if response.todos:
            current = session.todo_manager
            staging = self.sessions.new_todo_manager()
            for data in response.todos:
                todo_id = str(data["id"]) if data.get("id") else None
                existing = current.get(todo_id) if todo_id else None
                if existing is not None:
                    staging.adopt(existing)
                    continue
                todo = staging.create(
                    data.get("description") or "",
                    data.get("expectedResult") or data.get("expected_result") or "",
                    todo_id,
                )
                self._apply_status(staging, todo, data)

            current.import_todos(staging.export_todos())
            self.sessions.add_execution_log_entry(session.id, "todos_planned", count=len(current))

        return PhaseOutcome(
            phase=Phase.PLANNING.value,
            message=response.message or "Planning completed",
        )

    async def _handle_execution(self, session: Session, response: ModelResponse) -> PhaseOutcome:
        manager = session.todo_manager
        for data in response.todos:
            todo_id = str(data["id"]) if data.get("id") else None
            todo = manager.get(todo_id) if todo_id else None
            if todo is not None:
                self._apply_status(manager, todo, data)
            elif data.get("description") and (data.get("expectedResult") or data.get("expected_result")):
                created = manager.create(
                    data["description"],
                    data.get("expectedResult") or data.get("expected_result"),
                    todo_id,
                )
                self._apply_status(manager, created, data)
                self.sessions.add_execution_log_entry(session.id, "todo_added", todo_id=created.id)

        outcome = PhaseOutcome(
            phase=Phase.EXECUTION.value,
            message=response.message or "Execution in progress",
        )
        if response.tool_call is None:
            return outcome

        call = response.tool_call
        target = manager.current()
        if target is None:
            target = manager.next_pending()
            if target is not None:
                manager.start(target.id)

        context: dict[str, Any] = {"session_id": session.id}
        if target is not None:
            context["todo_id"] = target.id
        result = await self.gateway.execute_tool(call.tool, call.params, context)

        if target is not None:
            manager.attach_tool_call(
                target.id,
                ToolCallRecord(
                    tool_name=call.tool,
                    params=dict(call.params),
                    success=result.success,
                    result=result.payload if isinstance(result, ToolSuccess) else None,
                    error=None if isinstance(result, ToolSuccess) else result.error.to_dict(),
                    timestamp=result.timestamp,
                ),
            )

        if isinstance(result, ToolSuccess):
            self.sessions.add_execution_log_entry(
                session.id,
                "tool_executed",
                tool=call.tool,
                success=True,
                attempts=result.attempts,
                todo_id=target.id if target else None,
            )
            outcome.message = f"Tool {call.tool} executed successfully"
        else:
            self.sessions.add_execution_log_entry(
                session.id,
                "tool_failed",
                tool=call.tool,
                error_code=result.error.code,
                error=result.error.message,
                todo_id=target.id if target else None,
            )
            outcome.success = False
            outcome.message = f"Tool {call.tool} failed: {result.error.message}"
            outcome.error = result.error
        outcome.tool_result = result
        return outcome

    def _apply_status(self, manager: TodoManager, todo: Todo, data: dict[str, Any]) -> None:
        """Apply a model-reported status, skipping transitions the lifecycle forbids."""
        if not data.get("status"):
            return
        status = parse_todo_status(data["status"])
        result = data.get("result")
        if status == todo.status:
            if result and status == TodoStatus.DONE:
                manager.mark_complete(todo.id, str(result))
            elif result and status == TodoStatus.FAILED:
                manager.mark_failed(todo.id, str(result))
            return

        if status == TodoStatus.DONE and not todo.is_terminal:
            manager.mark_complete(todo.id, str(result or todo.result or "Completed"))
        elif status == TodoStatus.FAILED and not todo.is_terminal:
            manager.mark_failed(todo.id, str(result or "Failed"))
        elif status == TodoStatus.IN_PROGRESS and todo.status == TodoStatus.PENDING:
            manager.start(todo.id)
        else:
            self.logger.warning(
                "todo_update_skipped",
                todo_id=todo.id,
                current=todo.status.value,
                requested=status.value,
            )

    async def _handle_verification(self, session: Session, response: ModelResponse) -> PhaseOutcome:
        outcome = PhaseOutcome(
            phase=Phase.VERIFICATION.value,
            message=response.message or "Verification in progress",
        )
        decision = response.verification
        if decision is None or not decision.todo_id:
            return outcome

        manager = session.todo_manager
        todo = manager.get(decision.todo_id)
        if todo is None:
            outcome.success = False
            outcome.message = f"TODO {decision.todo_id} not found for verification"
            return outcome

        if decision.approved is True:
            return await self._verify_with_gate(session, todo, decision, outcome)
        if decision.approved is False:
            self._reject(session, todo, decision.feedback or "Verification failed", decision.retry, outcome)
        return outcome

    async def _verify_with_gate(
        self,
        session: Session,
        todo: Todo,
        decision: VerificationDecision,
        outcome: PhaseOutcome,
    ) -> PhaseOutcome:
        result_text = todo.result or decision.feedback or response_summary(todo)
        ticket = self.gate.open(todo.id, result_text, session_id=session.id)

        listener: asyncio.Task | None = None
        if not ticket.done and self.verification_listener is not None:
            listener = asyncio.ensure_future(self.verification_listener(ticket.request, self.gate))
        try:
            verdict = await ticket.wait()
        finally:
            if listener is not None and not listener.done():
                listener.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await listener

        outcome.verification = verdict.to_dict()
        if session.id not in self.sessions:
            # Stopped while waiting; the session's TODOs and log are gone.
            self.logger.info("verification_abandoned", session_id=session.id, todo_id=todo.id)
            outcome.success = False
            outcome.message = "session terminated"
            return outcome

        manager = session.todo_manager
        if verdict.approved:
            manager.mark_complete(todo.id, todo.result or decision.feedback or "Verification approved")
            self.sessions.add_execution_log_entry(
                session.id,
                "todo_verified",
                todo_id=todo.id,
                auto_approved=verdict.auto_approved,
                timed_out=verdict.timed_out,
            )
            outcome.message = f"TODO {todo.id} verified and completed"
        else:
            self._reject(session, todo, verdict.feedback or "Verification rejected", True, outcome)
        return outcome

    def _reject(
        self,
        session: Session,
        todo: Todo,
        feedback: str,
        retry: bool,
        outcome: PhaseOutcome,
    ) -> None:
        manager = session.todo_manager
        retry_allowed = retry and todo.retry_count < self.max_todo_retries
        if not todo.is_terminal:
            manager.mark_failed(todo.id, feedback)

        if retry_allowed:
            manager.reset_for_retry(todo.id, feedback)
        elif todo.status == TodoStatus.DONE:
            # done -> failed is not a lifecycle edge; go back through pending.
            manager.reset_for_retry(todo.id, feedback)
            manager.mark_failed(todo.id, feedback)
        else:
            manager.mark_failed(todo.id, feedback)

        if retry_allowed:
            outcome.message = f"TODO {todo.id} needs retry: {feedback}"
        elif retry:
            outcome.message = (
                f"TODO {todo.id} marked as failed after {todo.retry_count} retries: {feedback}"
            )
        else:
            outcome.message = f"TODO {todo.id} marked as failed: {feedback}"

        self.sessions.add_execution_log_entry(
            session.id,
            "todo_verification_failed",
            todo_id=todo.id,
            feedback=feedback,
            retry=todo.status == TodoStatus.PENDING,
            retry_count=todo.retry_count,
        )

    async def _handle_complete(self, session: Session, response: ModelResponse) -> PhaseOutcome:
        self.sessions.add_execution_log_entry(
            session.id,
            "execution_completed",
            complete=response.complete,
            todo_stats=session.todo_manager.stats(),
        )
        return PhaseOutcome(
            phase=Phase.COMPLETE.value,
            message=response.message or "Task completed",
        )

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    def stop(self, session_id: str) -> bool:
        """
        Cancel the session's pending verifications and remove the session.
        In-flight tool calls are not interrupted.
        """
        cancelled = self.gate.cancel_session(session_id, "session terminated")
        removed = self.sessions.delete_session(session_id)
        self.logger.info("session_stopped", session_id=session_id, cancelled_verifications=cancelled)
        return removed

    async def shutdown(self) -> None:
        self.gate.clear_pending()
        await self.sessions.stop_cleanup()
        close = getattr(self.gateway.terminals, "close", None)
        if close is not None:
            await close()


def response_summary(todo: Todo) -> str:
    """Text used for verification when a TODO has no reported result."""
    if todo.tool_calls:
        last = todo.tool_calls[-1]
        if last.success and isinstance(last.result, dict) and last.result.get("message"):
            return str(last.result["message"])
    return f"TODO {todo.id} completed: {todo.expected_result}"
