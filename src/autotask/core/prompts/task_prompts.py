"""
Task Prompts - response format instructions

TASK_SYSTEM_PROMPT tells the model which JSON object to return on every turn.
build_turn_prompt() wraps the session recap and the user's latest input.

Usage:
    from autotask.core.prompts.task_prompts import build_turn_prompt

    prompt = build_turn_prompt(recap, user_input, tools)
"""

TASK_SYSTEM_PROMPT = """
# Autonomous Task Execution

You complete the user's task in four phases: planning, execution,
verification and complete. Every reply MUST be exactly one JSON object:

```json
{
  "type": "task_response",
  "phase": "planning | execution | verification | complete",
  "message": "Short explanation for the user",
  "todos": [
    {"id": "todo_1", "description": "...", "expectedResult": "...", "status": "pending"}
  ],
  "toolCall": {"tool": "read_file", "params": {"path": "README.md"}},
  "verification": {"todoId": "todo_1", "approved": true, "feedback": "...", "retry": true},
  "complete": false
}
```

## Rules

1. **planning**: list every TODO with a concrete expectedResult. No tool calls.
2. **execution**: work on one TODO at a time. Mark it "in_progress", request at
   most one toolCall per reply, then report its result with status "done".
3. **verification**: reference the TODO in `verification`. Set `approved` to
   false and `retry` to true to try again, or `retry` to false to give up.
4. **complete**: set `complete` to true once every TODO is done or failed.
5. Use `toolCall: null` and `verification: null` when not needed.
6. Paths are relative to the workspace root.
"""


def render_tool_list(tools: dict[str, tuple[str, ...]]) -> str:
    """One line per tool with its required parameters."""
    lines = ["## Available Tools", ""]
    for name, required in tools.items():
        lines.append(f"- `{name}` (required: {', '.join(required)})")
    return "\n".join(lines)


def build_turn_prompt(recap: str | None, user_input: str, tools: dict[str, tuple[str, ...]]) -> str:
    """Assemble the prompt sent to the model for one turn."""
    parts = [TASK_SYSTEM_PROMPT.strip(), render_tool_list(tools)]
    if recap:
        parts.append(recap.strip())
    parts.append(f"## User Input\n\n{user_input.strip()}")
    return "\n\n".join(parts) + "\n"
