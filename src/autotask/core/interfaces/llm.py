"""
Protocol for the model transport.

Implementations send one prompt to a model and return the raw reply.
Transport failures are raised as ordinary exceptions; the orchestrator
classifies them (connection problems become NETWORK, timeouts TIMEOUT).
"""

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass
class ModelReply:
    """Raw model reply."""

    text: str
    raw: Any = None
    usage: dict[str, int] = field(default_factory=dict)
    latency_ms: int = 0


class ModelTransportProtocol(Protocol):
    async def send(
        self,
        model_id: str,
        prompt: str,
        mode: str,
        *,
        session_id: str | None = None,
    ) -> ModelReply:
        """
        Send a prompt to a model.

        Args:
            model_id: Model alias or provider model name
            prompt: Full prompt text
            mode: Orchestration mode requesting the call
            session_id: Session the call belongs to, for logging

        Returns:
            ModelReply with the reply text
        """
        ...
