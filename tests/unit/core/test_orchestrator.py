"""
Unit Tests for the Orchestrator Phase State Machine

The model transport is an AsyncMock returning scripted JSON replies; the
gateway runs real file operations under tmp_path with mocked host
capabilities.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from autotask.core.domain.gateway import ToolGateway
from autotask.core.domain.metrics import ExecutionMetrics
from autotask.core.domain.orchestrator import ExecuteRequest, Orchestrator
from autotask.core.domain.policy import WorkspacePolicy
from autotask.core.domain.retry import ErrorHandler
from autotask.core.domain.session import Phase, SessionManager
from autotask.core.domain.todos import TodoStatus
from autotask.core.domain.verification import VerificationGate
from autotask.core.interfaces.capabilities import CommandOutput
from autotask.core.interfaces.llm import ModelReply
from autotask.infrastructure.adapters.file_adapter import LocalFileAdapter

PLAN = [
    {"id": "t1", "description": "Write notes", "expectedResult": "notes.md exists", "status": "pending"},
    {"id": "t2", "description": "Run git status", "expectedResult": "Clean tree", "status": "pending"},
]


def reply(phase: str, message: str = "ok", **fields) -> ModelReply:
    return ModelReply(text=json.dumps({"type": "task_response", "phase": phase, "message": message, **fields}))


@pytest.fixture
def transport():
    mock = MagicMock()
    mock.send = AsyncMock()
    return mock


@pytest.fixture
def error_handler():
    return ErrorHandler(sleep=AsyncMock())


@pytest.fixture
def gateway(tmp_path, error_handler):
    return ToolGateway(
        policy=WorkspacePolicy(tmp_path),
        error_handler=error_handler,
        files=LocalFileAdapter(tmp_path),
        processes=MagicMock(run=AsyncMock(return_value=CommandOutput(0, "clean", ""))),
        terminals=MagicMock(send_text=AsyncMock(), close=AsyncMock()),
        notifications=MagicMock(notify=AsyncMock(), open_file=AsyncMock()),
        host_commands=MagicMock(invoke=AsyncMock()),
    )


@pytest.fixture
def gate():
    return VerificationGate(default_timeout_ms=5000)


@pytest_asyncio.fixture
async def orchestrator(transport, gateway, gate, error_handler):
    instance = Orchestrator(
        transport=transport,
        sessions=SessionManager(),
        gateway=gateway,
        gate=gate,
        error_handler=error_handler,
        metrics=ExecutionMetrics(),
        max_todo_retries=1,
    )
    yield instance
    await instance.shutdown()


async def turn(orchestrator, prompt="Write notes and check git", session_id=None):
    return await orchestrator.execute(
        ExecuteRequest(model_id="main", prompt=prompt, request_id="req-1", session_id=session_id)
    )


async def planned(orchestrator, transport):
    transport.send.return_value = reply("planning", "Planned 2 steps", todos=PLAN)
    result = await turn(orchestrator)
    return result.session_id


def todo(orchestrator, session_id, todo_id):
    return orchestrator.sessions.require_session(session_id).todo_manager.require(todo_id)


class TestPlanning:
    @pytest.mark.asyncio
    async def test_planning_creates_session_and_todos(self, orchestrator, transport):
        transport.send.return_value = reply("planning", "Planned 2 steps", todos=PLAN)

        result = await turn(orchestrator)

        assert result.success
        assert result.phase == "planning"
        assert result.text == "Planned 2 steps"
        assert [t["id"] for t in result.todos] == ["t1", "t2"]
        assert all(t["status"] == "pending" for t in result.todos)
        session = orchestrator.sessions.require_session(result.session_id)
        assert session.phase == Phase.PLANNING
        assert session.original_task == "Write notes and check git"

    @pytest.mark.asyncio
    async def test_prompt_contains_recap_on_later_turns(self, orchestrator, transport):
        session_id = await planned(orchestrator, transport)
        transport.send.return_value = reply("execution")

        await turn(orchestrator, "Continue", session_id)

        model_id, prompt, mode = transport.send.await_args.args
        assert model_id == "main"
        assert mode == "task"
        assert "# Task Context" in prompt
        assert "[id: t1]" in prompt
        assert prompt.rstrip().endswith("Continue")

    @pytest.mark.asyncio
    async def test_replanning_keeps_existing_todo_state(self, orchestrator, transport):
        session_id = await planned(orchestrator, transport)
        orchestrator.sessions.require_session(session_id).todo_manager.mark_complete("t1", "written")
        transport.send.return_value = reply(
            "planning",
            todos=[PLAN[0], {"id": "t3", "description": "Open notes", "expectedResult": "Shown"}],
        )

        result = await turn(orchestrator, "Replan", session_id)

        assert [(t["id"], t["status"]) for t in result.todos] == [("t1", "done"), ("t3", "pending")]

    @pytest.mark.asyncio
    async def test_invalid_plan_is_non_fatal_and_keeps_old_todos(self, orchestrator, transport):
        session_id = await planned(orchestrator, transport)
        transport.send.return_value = reply("planning", todos=[{"id": "t9", "description": "", "expectedResult": "x"}])

        result = await turn(orchestrator, "Replan", session_id)

        assert result.error is None
        assert result.execution_result.success is False
        assert [t["id"] for t in result.todos] == ["t1", "t2"]
        log = orchestrator.sessions.require_session(session_id).execution_log
        assert log[-1].type == "phase_error"


class TestExecution:
    @pytest.mark.asyncio
    async def test_tool_call_runs_against_next_pending_todo(self, orchestrator, transport, tmp_path):
        session_id = await planned(orchestrator, transport)
        transport.send.return_value = reply(
            "execution",
            "Writing notes",
            toolCall={"tool": "write_file", "params": {"path": "notes.md", "content": "# Notes"}},
        )

        result = await turn(orchestrator, "Continue", session_id)

        assert result.success
        assert result.text == "Tool write_file executed successfully"
        assert result.tool_call == {"tool": "write_file", "params": {"path": "notes.md", "content": "# Notes"}}
        assert (tmp_path / "notes.md").read_text(encoding="utf-8") == "# Notes"
        t1 = todo(orchestrator, session_id, "t1")
        assert t1.status == TodoStatus.IN_PROGRESS
        assert t1.tool_calls[0].success is True
        assert t1.tool_calls[0].result["message"] == "File notes.md written successfully"

    @pytest.mark.asyncio
    async def test_tool_failure_is_not_fatal(self, orchestrator, transport):
        session_id = await planned(orchestrator, transport)
        transport.send.return_value = reply(
            "execution", toolCall={"tool": "read_file", "params": {"path": "../secret.txt"}}
        )

        result = await turn(orchestrator, "Continue", session_id)

        assert result.error is None
        assert result.execution_result.success is False
        assert result.execution_result.error.code == "PATH_TRAVERSAL_DENIED"
        assert result.text.startswith("Tool read_file failed:")
        assert todo(orchestrator, session_id, "t1").tool_calls[0].error["code"] == "PATH_TRAVERSAL_DENIED"

    @pytest.mark.asyncio
    async def test_status_updates_from_model(self, orchestrator, transport):
        session_id = await planned(orchestrator, transport)
        transport.send.return_value = reply(
            "execution",
            todos=[
                {"id": "t1", "status": "done", "result": "notes.md written"},
                {"id": "t2", "status": "in_progress"},
                {"id": "t4", "description": "Commit", "expectedResult": "Committed"},
            ],
        )

        result = await turn(orchestrator, "Continue", session_id)

        statuses = {t["id"]: t["status"] for t in result.todos}
        assert statuses == {"t1": "done", "t2": "in_progress", "t4": "pending"}
        assert todo(orchestrator, session_id, "t1").result == "notes.md written"

    @pytest.mark.asyncio
    async def test_forbidden_transition_is_skipped(self, orchestrator, transport):
        session_id = await planned(orchestrator, transport)
        orchestrator.sessions.require_session(session_id).todo_manager.mark_complete("t1", "written")
        transport.send.return_value = reply("execution", todos=[{"id": "t1", "status": "in_progress"}])

        result = await turn(orchestrator, "Continue", session_id)

        assert result.execution_result.success is True
        assert todo(orchestrator, session_id, "t1").status == TodoStatus.DONE


class TestVerification:
    @pytest.mark.asyncio
    async def test_auto_approved_result_completes_todo(self, orchestrator, transport):
        session_id = await planned(orchestrator, transport)
        transport.send.return_value = reply(
            "execution", toolCall={"tool": "write_file", "params": {"path": "notes.md", "content": "x"}}
        )
        await turn(orchestrator, "Continue", session_id)
        transport.send.return_value = reply("verification", verification={"todoId": "t1", "approved": True})

        result = await turn(orchestrator, "Continue", session_id)

        assert result.verification["status"] == "approved"
        assert result.verification["auto_approved"] is True
        assert todo(orchestrator, session_id, "t1").status == TodoStatus.DONE

    @pytest.mark.asyncio
    async def test_listener_rejection_resets_todo_for_retry(self, orchestrator, transport):
        async def reject(request, gate):
            gate.resolve(request.id, False, "Wrong heading")

        orchestrator.verification_listener = reject
        session_id = await planned(orchestrator, transport)
        transport.send.return_value = reply("execution", todos=[{"id": "t1", "status": "done", "result": "Edited notes"}])
        await turn(orchestrator, "Continue", session_id)
        transport.send.return_value = reply("verification", verification={"todoId": "t1", "approved": True})

        result = await turn(orchestrator, "Continue", session_id)

        t1 = todo(orchestrator, session_id, "t1")
        assert t1.status == TodoStatus.PENDING
        assert t1.retry_count == 1
        assert t1.result == "Wrong heading"
        assert result.text == "TODO t1 needs retry: Wrong heading"

    @pytest.mark.asyncio
    async def test_gate_timeout_approves(self, transport, gateway, error_handler):
        orchestrator = Orchestrator(
            transport=transport,
            sessions=SessionManager(),
            gateway=gateway,
            gate=VerificationGate(default_timeout_ms=100),
            error_handler=error_handler,
        )
        try:
            session_id = await planned(orchestrator, transport)
            transport.send.return_value = reply(
                "execution", todos=[{"id": "t1", "status": "done", "result": "Edited notes"}]
            )
            await turn(orchestrator, "Continue", session_id)
            transport.send.return_value = reply("verification", verification={"todoId": "t1", "approved": True})

            result = await turn(orchestrator, "Continue", session_id)

            assert result.verification["status"] == "timeout"
            assert result.verification["timed_out"] is True
            assert todo(orchestrator, session_id, "t1").status == TodoStatus.DONE
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_model_rejection_retries_until_limit(self, orchestrator, transport):
        session_id = await planned(orchestrator, transport)
        transport.send.return_value = reply(
            "verification", verification={"todoId": "t1", "approved": False, "feedback": "Too short"}
        )

        first = await turn(orchestrator, "Continue", session_id)
        second = await turn(orchestrator, "Continue", session_id)

        t1 = todo(orchestrator, session_id, "t1")
        assert first.text == "TODO t1 needs retry: Too short"
        assert second.text == "TODO t1 marked as failed after 1 retries: Too short"
        assert t1.status == TodoStatus.FAILED
        assert t1.retry_count == 1

    @pytest.mark.asyncio
    async def test_rejecting_done_todo_without_retry_fails_it(self, orchestrator, transport):
        session_id = await planned(orchestrator, transport)
        orchestrator.sessions.require_session(session_id).todo_manager.mark_complete("t1", "written")
        transport.send.return_value = reply(
            "verification",
            verification={"todoId": "t1", "approved": False, "feedback": "Wrong file", "retry": False},
        )

        result = await turn(orchestrator, "Continue", session_id)

        assert todo(orchestrator, session_id, "t1").status == TodoStatus.FAILED
        assert result.text == "TODO t1 marked as failed: Wrong file"

    @pytest.mark.asyncio
    async def test_unknown_todo_is_reported(self, orchestrator, transport):
        session_id = await planned(orchestrator, transport)
        transport.send.return_value = reply("verification", verification={"todoId": "nope", "approved": True})

        result = await turn(orchestrator, "Continue", session_id)

        assert result.execution_result.success is False
        assert result.text == "TODO nope not found for verification"


class TestCompletionAndFailures:
    @pytest.mark.asyncio
    async def test_complete_phase(self, orchestrator, transport):
        session_id = await planned(orchestrator, transport)
        transport.send.return_value = reply("complete", "All done", complete=True)

        result = await turn(orchestrator, "Continue", session_id)

        assert result.complete is True
        assert result.text == "All done"
        log = orchestrator.sessions.require_session(session_id).execution_log
        assert log[-1].type == "execution_completed"

    @pytest.mark.asyncio
    async def test_plain_text_reply_falls_back_to_execution(self, orchestrator, transport):
        transport.send.return_value = ModelReply(text="I will start by reading the README.")

        result = await turn(orchestrator)

        assert result.success
        assert result.phase == "execution"
        assert result.text == "I will start by reading the README."

    @pytest.mark.asyncio
    async def test_invalid_phase_is_fatal(self, orchestrator, transport):
        transport.send.return_value = reply("dreaming")

        result = await turn(orchestrator)

        assert result.error.code == "INVALID_PHASE"
        assert result.text == "Error: Invalid input or data provided"
        log = orchestrator.sessions.require_session(result.session_id).execution_log
        assert log[-1].type == "turn_failed"

    @pytest.mark.asyncio
    async def test_empty_model_reply_is_retried_then_fatal(self, orchestrator, transport):
        transport.send.return_value = ModelReply(text="")

        result = await turn(orchestrator)

        assert result.error.code == "NO_MODEL_RESPONSE"
        assert transport.send.await_count == 3
        assert result.error.recovery_plan["automatic_actions"] == ["Retry with exponential backoff"]

    @pytest.mark.asyncio
    async def test_transport_recovers_after_connection_error(self, orchestrator, transport):
        transport.send.side_effect = [ConnectionError("reset"), reply("planning", todos=PLAN)]

        result = await turn(orchestrator)

        assert result.success
        assert transport.send.await_count == 2

    @pytest.mark.asyncio
    async def test_metrics_count_turns(self, orchestrator, transport):
        await planned(orchestrator, transport)
        transport.send.return_value = reply("dreaming")
        await turn(orchestrator)

        requests = orchestrator.metrics.snapshot()["requests"]
        assert requests["count"] == 2
        assert requests["succeeded"] == 1


class TestPreconditions:
    @pytest.mark.asyncio
    async def test_disabled(self, orchestrator, transport):
        orchestrator.enabled = False

        result = await turn(orchestrator)

        assert result.error.code == "MODE_DISABLED"
        assert result.session_id is None
        transport.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_config(self, orchestrator):
        orchestrator.config_problems = ["timeouts.task_execution_ms must be at least 1000ms (got 5)"]

        result = await turn(orchestrator)

        assert result.error.code == "INVALID_CONFIG"
        assert result.error.recoverable is False

    @pytest.mark.asyncio
    async def test_missing_transport(self, orchestrator):
        orchestrator.transport = None

        result = await turn(orchestrator)

        assert result.error.code == "MISSING_TRANSPORT"

    @pytest.mark.asyncio
    async def test_empty_prompt_fails_session_creation(self, orchestrator):
        result = await turn(orchestrator, "   ")

        assert result.error.code == "INVALID_TASK"


@pytest.mark.asyncio
async def test_stop_cancels_pending_verification(orchestrator, transport, gate):
    session_id = await planned(orchestrator, transport)
    ticket = gate.open("t1", "Edited notes", session_id=session_id)

    assert orchestrator.stop(session_id) is True

    assert (await ticket.wait()).feedback == "session terminated"
    assert orchestrator.sessions.get_session(session_id) is None


@pytest.mark.asyncio
async def test_stop_during_verification_returns_structured_result(orchestrator, transport, gate):
    session_id = await planned(orchestrator, transport)
    transport.send.return_value = reply("execution", todos=[{"id": "t1", "status": "done", "result": "Rewrote the parser"}])
    await turn(orchestrator, "Continue", session_id)
    transport.send.return_value = reply("verification", verification={"todoId": "t1", "approved": True})

    in_flight = asyncio.ensure_future(turn(orchestrator, "Continue", session_id))
    for _ in range(100):
        if gate.pending(session_id):
            break
        await asyncio.sleep(0.01)
    assert gate.pending(session_id)

    assert orchestrator.stop(session_id) is True
    result = await in_flight

    assert result.error is None
    assert result.execution_result.success is False
    assert result.text == "session terminated"
    assert result.verification["status"] == "rejected"
    assert result.verification["feedback"] == "session terminated"
    assert orchestrator.sessions.get_session(session_id) is None
