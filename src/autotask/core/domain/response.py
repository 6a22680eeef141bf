"""
Core Domain - Model Response Parsing

Turns raw model output into a ModelResponse. Parsing degrades in steps and
never raises:

1. strict ``json.loads`` of the whole text
2. the first well-formed JSON object found in the text (fenced ```json
   blocks first, then every ``{`` offset)
3. field-by-field salvage with regular expressions
4. a fallback response (phase=execution, message=raw text, parse_error=True)

Missing fields are filled with placeholders. validate_response() rejects an
invalid phase and reports everything else as warnings.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any

import structlog

from autotask.core.domain.errors import ErrorCategory, TaskError
from autotask.core.domain.session import Phase
from autotask.core.domain.todos import TodoStatus

RESPONSE_TYPE = "task_response"
DEFAULT_MESSAGE = "Processing request..."

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_STRING_FIELD = r'"{name}"\s*:\s*"((?:[^"\\]|\\.)*)"'
_COMPLETE_FIELD = re.compile(r'"complete"\s*:\s*(true|false)')
_STRUCTURED_FIELD = r'"{name}"\s*:\s*'
_RESPONSE_KEYS = frozenset({"type", "phase", "message"})

logger = structlog.get_logger().bind(component="response_parser")
_decoder = json.JSONDecoder()


@dataclass
class ToolCallRequest:
    tool: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"tool": self.tool, "params": dict(self.params)}


@dataclass
class VerificationDecision:
    """Model's verdict on a TODO result."""

    todo_id: str | None
    approved: bool | None
    feedback: str | None = None
    retry: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "todo_id": self.todo_id,
            "approved": self.approved,
            "feedback": self.feedback,
            "retry": self.retry,
        }


@dataclass
class ModelResponse:
    """Structured model turn."""

    type: str
    phase: str
    message: str
    complete: bool = False
    todos: list[dict[str, Any]] = field(default_factory=list)
    tool_call: ToolCallRequest | None = None
    verification: VerificationDecision | None = None
    parse_error: bool = False
    recovered: bool = False
    warnings: list[str] = field(default_factory=list)
    raw: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "phase": self.phase,
            "message": self.message,
            "complete": self.complete,
            "todos": list(self.todos),
            "tool_call": self.tool_call.to_dict() if self.tool_call else None,
            "verification": self.verification.to_dict() if self.verification else None,
            "parse_error": self.parse_error,
        }


def _extract_json_object(text: str) -> dict[str, Any] | None:
    """First well-formed response object embedded in text (nested objects such as a toolCall are skipped)."""
    for match in _FENCED_BLOCK.finditer(text):
        try:
            obj = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            return obj

    index = text.find("{")
    while index != -1:
        try:
            obj, _ = _decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            obj = None
        if isinstance(obj, dict) and _RESPONSE_KEYS.intersection(obj):
            return obj
        index = text.find("{", index + 1)
    return None


def _decode_after_key(text: str, name: str) -> Any:
    match = re.search(_STRUCTURED_FIELD.format(name=re.escape(name)), text)
    if not match:
        return None
    try:
        value, _ = _decoder.raw_decode(text, match.end())
    except json.JSONDecodeError:
        return None
    return value


def _salvage_fields(text: str) -> dict[str, Any]:
    """Recover individual fields from malformed JSON."""
    recovered: dict[str, Any] = {}
    for name in ("type", "phase", "message"):
        match = re.search(_STRING_FIELD.format(name=name), text)
        if match:
            try:
                recovered[name] = json.loads(f'"{match.group(1)}"')
            except json.JSONDecodeError:
                recovered[name] = match.group(1)

    complete = _COMPLETE_FIELD.search(text)
    if complete:
        recovered["complete"] = complete.group(1) == "true"

    todos = _decode_after_key(text, "todos")
    if isinstance(todos, list):
        recovered["todos"] = todos

    for name in ("toolCall", "verification"):
        value = _decode_after_key(text, name)
        if isinstance(value, dict):
            recovered[name] = value
    return recovered


def _fallback(raw: str, reason: str) -> ModelResponse:
    logger.warning("response_parse_fallback", reason=reason, preview=raw[:200])
    return ModelResponse(
        type=RESPONSE_TYPE,
        phase=Phase.EXECUTION.value,
        message=raw.strip(),
        parse_error=True,
        warnings=[reason],
        raw=raw,
    )


def _coerce_tool_call(value: Any, warnings: list[str]) -> ToolCallRequest | None:
    if value is None:
        return None
    if not isinstance(value, dict) or not value.get("tool"):
        warnings.append("toolCall is missing the 'tool' field")
        return None
    params = value.get("params")
    if params is None:
        warnings.append("toolCall is missing the 'params' field")
        params = {}
    if not isinstance(params, dict):
        warnings.append("toolCall params must be an object")
        params = {}
    return ToolCallRequest(tool=str(value["tool"]), params=params)


def _coerce_verification(value: Any, warnings: list[str]) -> VerificationDecision | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        warnings.append("verification must be an object")
        return None
    todo_id = value.get("todoId", value.get("todo_id"))
    approved = value.get("approved")
    if not todo_id:
        warnings.append("verification is missing 'todoId'")
    if not isinstance(approved, bool):
        warnings.append("verification is missing a boolean 'approved'")
        approved = None
    return VerificationDecision(
        todo_id=str(todo_id) if todo_id else None,
        approved=approved,
        feedback=value.get("feedback"),
        retry=bool(value.get("retry", True)),
    )


def _build(data: dict[str, Any], raw: str, recovered: bool) -> ModelResponse:
    warnings: list[str] = []

    def placeholder(key: str, default: Any) -> Any:
        value = data.get(key)
        if value in (None, ""):
            warnings.append(f"missing '{key}', using {default!r}")
            return default
        return value

    todos = data.get("todos")
    if todos is None:
        todos = []
    elif not isinstance(todos, list):
        warnings.append("todos must be an array")
        todos = []

    return ModelResponse(
        type=str(placeholder("type", RESPONSE_TYPE)),
        phase=str(placeholder("phase", Phase.EXECUTION.value)).strip().lower(),
        message=str(placeholder("message", DEFAULT_MESSAGE)),
        complete=data.get("complete") is True,
        todos=[todo for todo in todos if isinstance(todo, dict)],
        tool_call=_coerce_tool_call(data.get("toolCall", data.get("tool_call")), warnings),
        verification=_coerce_verification(data.get("verification"), warnings),
        recovered=recovered,
        warnings=warnings,
        raw=raw,
    )


def parse_model_response(raw: Any) -> ModelResponse:
    """
    Parse raw model output. Never raises.

    Args:
        raw: Raw model text

    Returns:
        ModelResponse; ``parse_error`` is True when only the fallback could
        be produced, ``recovered`` is True when the text was not valid JSON
        but a structure could be extracted
    """
    if raw is None:
        return _fallback("", "empty model response")
    if not isinstance(raw, str):
        raw = str(raw)

    try:
        data = json.loads(raw.strip())
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict):
        return _build(data, raw, recovered=False)

    extracted = _extract_json_object(raw)
    if extracted is not None:
        logger.info("response_block_extracted")
        return _build(extracted, raw, recovered=True)

    salvaged = _salvage_fields(raw)
    if salvaged:
        logger.info("response_fields_salvaged", fields=sorted(salvaged))
        return _build(salvaged, raw, recovered=True)

    return _fallback(raw, "no structured content found in model response")


def validate_response(response: ModelResponse) -> list[str]:
    """
    Check a parsed response.

    Returns:
        Warnings about non-fatal problems

    Raises:
        TaskError: INVALID_PHASE when the phase is not a known phase
    """
    if response.phase not in {p.value for p in Phase}:
        raise TaskError.build(
            f"Invalid phase: {response.phase!r}",
            ErrorCategory.VALIDATION,
            code="INVALID_PHASE",
            recoverable=False,
            suggestions=[f"Use one of: {', '.join(p.value for p in Phase)}"],
        )

    warnings = list(response.warnings)
    if response.type != RESPONSE_TYPE:
        warnings.append(f"unexpected response type {response.type!r}")
    valid_statuses = {s.value for s in TodoStatus}
    for index, todo in enumerate(response.todos):
        if not todo.get("id"):
            warnings.append(f"todo {index} has no id")
        if not todo.get("description"):
            warnings.append(f"todo {index} has no description")
        status = todo.get("status")
        if status and status not in valid_statuses:
            warnings.append(f"todo {index} has invalid status {status!r}")
    return warnings
