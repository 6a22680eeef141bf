"""
Unit Tests for the LiteLLM Transport

litellm.acompletion is patched; no provider is contacted.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import litellm
import pytest

from autotask.core.domain.errors import ErrorCategory, TaskError
from autotask.infrastructure.llm.litellm_transport import LiteLLMTransport


@pytest.fixture
def transport():
    return LiteLLMTransport(default_model="main", aliases={"main": "gpt-4.1", "fast": "gpt-4.1-mini"})


def _response(content, usage=None):
    mock_response = MagicMock()
    mock_response.choices = [MagicMock()]
    mock_response.choices[0].message.content = content
    mock_response.usage = usage if usage is not None else {
        "total_tokens": 30,
        "prompt_tokens": 20,
        "completion_tokens": 10,
    }
    return mock_response


def test_resolve_model(transport):
    assert transport.resolve_model("fast") == "gpt-4.1-mini"
    assert transport.resolve_model(None) == "gpt-4.1"
    assert transport.resolve_model("claude-sonnet") == "claude-sonnet"


@pytest.mark.asyncio
class TestSend:
    async def test_successful_completion(self, transport):
        with patch("litellm.acompletion", new_callable=AsyncMock, return_value=_response("{}")) as completion:
            reply = await transport.send("fast", "Plan the work", "task", session_id="s1")

        assert reply.text == "{}"
        assert reply.usage["total_tokens"] == 30
        kwargs = completion.await_args.kwargs
        assert kwargs["model"] == "gpt-4.1-mini"
        assert kwargs["messages"] == [{"role": "user", "content": "Plan the work"}]
        assert kwargs["temperature"] == 0.2
        assert kwargs["timeout"] == 120.0

    async def test_usage_object(self, transport):
        usage = MagicMock(total_tokens=12, prompt_tokens=8, completion_tokens=4)

        with patch("litellm.acompletion", new_callable=AsyncMock, return_value=_response("hi", usage)):
            reply = await transport.send("main", "Hello", "task")

        assert reply.usage == {"total_tokens": 12, "prompt_tokens": 8, "completion_tokens": 4}

    async def test_empty_content_becomes_empty_text(self, transport):
        with patch("litellm.acompletion", new_callable=AsyncMock, return_value=_response(None)):
            reply = await transport.send("main", "Hello", "task")

        assert reply.text == ""

    async def test_extra_params_override_temperature(self):
        transport = LiteLLMTransport(temperature=0.2, extra_params={"temperature": 1.0, "max_tokens": 500})

        with patch("litellm.acompletion", new_callable=AsyncMock, return_value=_response("ok")) as completion:
            await transport.send("gpt-4.1", "Hello", "task")

        assert completion.await_args.kwargs["temperature"] == 1.0
        assert completion.await_args.kwargs["max_tokens"] == 500


@pytest.mark.asyncio
class TestErrorTranslation:
    async def test_timeout(self, transport):
        error = litellm.Timeout(message="took too long", model="gpt-4.1", llm_provider="openai")

        with patch("litellm.acompletion", new_callable=AsyncMock, side_effect=error):
            with pytest.raises(TimeoutError):
                await transport.send("main", "Hello", "task")

    async def test_authentication(self, transport):
        error = litellm.AuthenticationError(message="bad key", llm_provider="openai", model="gpt-4.1")

        with patch("litellm.acompletion", new_callable=AsyncMock, side_effect=error):
            with pytest.raises(TaskError) as info:
                await transport.send("main", "Hello", "task")

        assert info.value.code == "MODEL_AUTH_FAILED"
        assert info.value.category == ErrorCategory.PERMISSION
        assert info.value.record.retryable is False

    async def test_rate_limit_is_network(self, transport):
        error = litellm.RateLimitError(message="slow down", llm_provider="openai", model="gpt-4.1")

        with patch("litellm.acompletion", new_callable=AsyncMock, side_effect=error):
            with pytest.raises(TaskError) as info:
                await transport.send("main", "Hello", "task")

        assert info.value.code == "MODEL_UNAVAILABLE"
        assert info.value.category == ErrorCategory.NETWORK

    async def test_unknown_errors_pass_through(self, transport):
        with patch("litellm.acompletion", new_callable=AsyncMock, side_effect=ValueError("odd")):
            with pytest.raises(ValueError, match="odd"):
                await transport.send("main", "Hello", "task")
