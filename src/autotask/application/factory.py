"""
Application Layer - Orchestrator Factory

Wires the core domain components with infrastructure adapters from Settings.

Key Responsibilities:
- Build the workspace policy and the capability adapters for one workspace root
- Share one ErrorHandler and ExecutionMetrics between gateway and orchestrator
- Default the model transport to LiteLLM when none is injected
- Pass configuration problems to the orchestrator so turns fail fast
"""

from pathlib import Path
from typing import Optional

import structlog
from rich.console import Console

from autotask.application.config import Settings
from autotask.core.domain.gateway import ToolGateway
from autotask.core.domain.metrics import ExecutionMetrics
from autotask.core.domain.orchestrator import Orchestrator, VerificationListener
from autotask.core.domain.policy import WorkspacePolicy
from autotask.core.domain.retry import ErrorHandler
from autotask.core.domain.session import SessionManager
from autotask.core.domain.verification import VerificationGate
from autotask.core.interfaces.capabilities import (
    FileCapability,
    HostCommandCapability,
    NotificationCapability,
    ProcessCapability,
    TerminalCapability,
)
from autotask.core.interfaces.llm import ModelTransportProtocol
from autotask.infrastructure.adapters.console_adapter import ConsoleNotificationAdapter
from autotask.infrastructure.adapters.file_adapter import LocalFileAdapter
from autotask.infrastructure.adapters.host_commands import HostCommandRegistry
from autotask.infrastructure.adapters.process_adapter import DetachedTerminalAdapter, SubprocessAdapter
from autotask.infrastructure.llm.litellm_transport import LiteLLMTransport


class OrchestratorFactory:
    """
    Factory for creating orchestrators with dependency injection.

    Every adapter can be overridden, which is how tests and embedding hosts
    replace the local file system, processes or console.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.logger = structlog.get_logger().bind(component="orchestrator_factory")

    def create_orchestrator(
        self,
        workspace_root: Path | str,
        transport: Optional[ModelTransportProtocol] = None,
        *,
        verification_listener: Optional[VerificationListener] = None,
        files: Optional[FileCapability] = None,
        processes: Optional[ProcessCapability] = None,
        terminals: Optional[TerminalCapability] = None,
        notifications: Optional[NotificationCapability] = None,
        host_commands: Optional[HostCommandCapability] = None,
        console: Optional[Console] = None,
    ) -> Orchestrator:
        """
        Create an orchestrator for one workspace.

        Args:
            workspace_root: Directory the tools are confined to
            transport: Model transport; LiteLLM from settings.model when None
            verification_listener: Called for verifications awaiting a decision
            files, processes, terminals, notifications, host_commands:
                Capability overrides; local adapters are used otherwise
            console: Console for the default notification adapter

        Returns:
            Orchestrator ready to execute turns
        """
        settings = self.settings
        root = Path(workspace_root).expanduser().resolve()
        problems = settings.validate_settings()
        if problems:
            self.logger.warning("settings_invalid", problems=problems)

        error_handler = ErrorHandler()
        metrics = ExecutionMetrics()
        policy = self._create_policy(root)

        gateway = ToolGateway(
            policy=policy,
            error_handler=error_handler,
            files=files or LocalFileAdapter(root, max_file_size=settings.security.max_file_size),
            processes=processes or SubprocessAdapter(),
            terminals=terminals or DetachedTerminalAdapter(root),
            notifications=notifications or ConsoleNotificationAdapter(console=console),
            host_commands=host_commands or HostCommandRegistry(),
            metrics=metrics,
            command_timeout_ms=settings.timeouts.task_execution_ms,
        )
        gate = VerificationGate(
            default_timeout_ms=settings.timeouts.user_verification_ms,
            auto_approval_enabled=settings.auto_approval.enabled,
            max_pending=settings.verification.max_pending,
        )
        sessions = SessionManager(
            max_sessions=settings.sessions.max_sessions,
            session_timeout_ms=settings.sessions.session_timeout_ms,
            cleanup_interval_ms=settings.sessions.cleanup_interval_ms,
            max_description_length=settings.todos.max_description_length,
            max_todos=settings.todos.max_todos,
        )

        orchestrator = Orchestrator(
            transport=transport or self._create_transport(),
            sessions=sessions,
            gateway=gateway,
            gate=gate,
            error_handler=error_handler,
            metrics=metrics,
            enabled=settings.enabled,
            config_problems=problems,
            max_todo_retries=settings.todos.max_todo_retries,
            model_timeout_ms=settings.timeouts.task_execution_ms,
            verification_listener=verification_listener,
        )
        self.logger.info(
            "orchestrator_created",
            workspace_root=str(root),
            transport=type(orchestrator.transport).__name__,
            auto_approval=settings.auto_approval.enabled,
        )
        return orchestrator

    def _create_policy(self, root: Path) -> WorkspacePolicy:
        security = self.settings.security
        return WorkspacePolicy(
            root,
            restrict_to_workspace=security.restrict_to_workspace,
            blocked_paths=security.blocked_paths,
            max_file_size=security.max_file_size,
            allowed_commands=security.allowed_commands,
        )

    def _create_transport(self) -> ModelTransportProtocol:
        model = self.settings.model
        return LiteLLMTransport(
            default_model=model.default_model,
            aliases=model.aliases,
            temperature=model.temperature,
            timeout_s=model.request_timeout_s,
        )


def build_orchestrator(
    settings: Optional[Settings],
    workspace_root: Path | str,
    transport: Optional[ModelTransportProtocol] = None,
    **overrides,
) -> Orchestrator:
    """Shortcut for OrchestratorFactory(settings).create_orchestrator(...)."""
    return OrchestratorFactory(settings).create_orchestrator(workspace_root, transport, **overrides)
