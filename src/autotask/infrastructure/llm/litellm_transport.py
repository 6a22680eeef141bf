"""
LiteLLM model transport.

Sends one prompt per call through litellm.acompletion. Retries are not done
here: the orchestrator wraps every call in its own retry policy, so provider
errors are translated into exceptions the error classifier understands and
raised immediately.
"""

import time
from typing import Any, Dict, Optional

import litellm
import structlog

from autotask.core.domain.errors import ErrorCategory, TaskError
from autotask.core.interfaces.llm import ModelReply


class LiteLLMTransport:
    """ModelTransportProtocol implementation backed by LiteLLM."""

    def __init__(
        self,
        default_model: str = "gpt-4.1",
        aliases: Optional[Dict[str, str]] = None,
        temperature: float | None = 0.2,
        timeout_s: float = 120.0,
        extra_params: Optional[Dict[str, Any]] = None,
    ):
        """
        Args:
            default_model: Model used when the request names none
            aliases: Short names mapped to provider model names
            temperature: Sampling temperature, None to use the provider default
            timeout_s: Per-request timeout passed to LiteLLM
            extra_params: Additional keyword arguments for every completion
        """
        self.default_model = default_model
        self.aliases = dict(aliases or {})
        self.temperature = temperature
        self.timeout_s = timeout_s
        self.extra_params = dict(extra_params or {})
        self.logger = structlog.get_logger().bind(component="litellm_transport")

    def resolve_model(self, model_id: str | None) -> str:
        alias = model_id or self.default_model
        resolved = self.aliases.get(alias, alias)
        if resolved != alias:
            self.logger.debug("model_resolved", model_alias=alias, resolved_model=resolved)
        return resolved

    async def send(
        self,
        model_id: str,
        prompt: str,
        mode: str,
        *,
        session_id: str | None = None,
    ) -> ModelReply:
        model = self.resolve_model(model_id)
        params = dict(self.extra_params)
        if self.temperature is not None:
            params.setdefault("temperature", self.temperature)

        start_time = time.time()
        self.logger.info("llm_completion_started", model=model, mode=mode, session_id=session_id)
        try:
            response = await litellm.acompletion(
                model=model,
                messages=[{"role": "user", "content": prompt}],
                timeout=self.timeout_s,
                **params,
            )
        except Exception as e:
            raise self._translate(e, model) from e

        content = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None) or {}
        if isinstance(usage, dict):
            token_stats = {k: int(v) for k, v in usage.items() if isinstance(v, (int, float))}
        else:
            token_stats = {
                "total_tokens": getattr(usage, "total_tokens", 0) or 0,
                "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
                "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
            }

        latency_ms = int((time.time() - start_time) * 1000)
        self.logger.info(
            "llm_completion_success",
            model=model,
            tokens=token_stats.get("total_tokens", 0),
            latency_ms=latency_ms,
        )
        return ModelReply(text=content, raw=response, usage=token_stats, latency_ms=latency_ms)

    def _translate(self, error: Exception, model: str) -> Exception:
        self.logger.warning("llm_completion_failed", model=model, error_type=type(error).__name__, error=str(error))

        # litellm.Timeout derives from APIConnectionError, so it is checked first
        if isinstance(error, litellm.Timeout):
            return TimeoutError(f"Model request timed out: {error}")
        if isinstance(error, (litellm.AuthenticationError, litellm.PermissionDeniedError)):
            return TaskError.build(
                f"Model provider rejected credentials: {error}",
                ErrorCategory.PERMISSION,
                code="MODEL_AUTH_FAILED",
                retryable=False,
                context={"model": model},
                suggestions=["Check the provider API key in your environment or .env file"],
            )
        if isinstance(
            error,
            (
                litellm.APIConnectionError,
                litellm.RateLimitError,
                litellm.ServiceUnavailableError,
                litellm.InternalServerError,
            ),
        ):
            return TaskError.build(
                f"Model provider unavailable: {error}",
                ErrorCategory.NETWORK,
                code="MODEL_UNAVAILABLE",
                context={"model": model},
            )
        if isinstance(error, (litellm.BadRequestError, litellm.NotFoundError)):
            return TaskError.build(
                f"Model request rejected: {error}",
                ErrorCategory.VALIDATION,
                code="MODEL_REQUEST_INVALID",
                retryable=False,
                context={"model": model},
            )
        return error
