"""
Core Domain - Retry Engine

ErrorHandler classifies failures, keeps a bounded error log for statistics,
computes backoff delays and runs async operations with bounded,
category-gated retries. One instance is constructed by the application
factory and passed to every component that needs it.
"""

import asyncio
import random
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from autotask.core.domain.errors import (
    ErrorCategory,
    ErrorRecord,
    ErrorSeverity,
    TaskError,
    classify,
)

T = TypeVar("T")

MAX_ERROR_LOG = 1000
TRIMMED_ERROR_LOG = 500
JITTER_RATIO = 0.2


class RetryStrategy(str, Enum):
    """Delay strategy applied between retry attempts."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"
    NONE = "none"


@dataclass(frozen=True)
class RetryConfig:
    """Retry configuration. Delays are expressed in milliseconds."""

    max_attempts: int = 3
    base_delay_ms: float = 1000
    max_delay_ms: float = 30000
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    retryable_categories: frozenset[ErrorCategory] = field(
        default_factory=lambda: frozenset(
            {ErrorCategory.NETWORK, ErrorCategory.TIMEOUT, ErrorCategory.SYSTEM}
        )
    )


@dataclass
class RecoveryPlan:
    """Category specific remediation for a failure."""

    error: ErrorRecord
    recoverable: bool
    suggestions: list[str]
    automatic_actions: list[str] = field(default_factory=list)
    manual_actions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.error.code,
            "category": self.error.category.value,
            "recoverable": self.recoverable,
            "suggestions": list(self.suggestions),
            "automatic_actions": list(self.automatic_actions),
            "manual_actions": list(self.manual_actions),
        }


_RECOVERY_ACTIONS: dict[ErrorCategory, tuple[list[str], list[str]]] = {
    ErrorCategory.NETWORK: (["Retry with exponential backoff"], ["Check network connectivity"]),
    ErrorCategory.FILE_SYSTEM: (["Verify file path exists"], ["Check file permissions and disk space"]),
    ErrorCategory.PERMISSION: ([], ["Check permissions for the requested path or command"]),
    ErrorCategory.TIMEOUT: (["Retry with increased timeout"], ["Check system performance"]),
    ErrorCategory.PARSING: (["Attempt graceful parsing recovery"], ["Review response format"]),
    ErrorCategory.VALIDATION: ([], ["Review the input that was provided"]),
    ErrorCategory.HOST_CAPABILITY: (["Retry the host call"], ["Verify the host is available"]),
}


class ErrorHandler:
    """
    Classifies, logs and retries failures.

    The handler owns a bounded in-memory error log: once it grows past 1000
    entries it is trimmed to the most recent 500.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        rng: random.Random | None = None,
    ):
        """
        Initialize the handler.

        Args:
            config: Default retry configuration
            sleep: Coroutine used to wait between attempts (seconds)
            rng: Random source for jitter
        """
        self.config = config or RetryConfig()
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self._error_log: list[ErrorRecord] = []
        self._retry_attempts: dict[str, dict[str, Any]] = {}
        self.logger = structlog.get_logger().bind(component="error_handler")

    def handle(self, error: BaseException | ErrorRecord | str, **context: Any) -> ErrorRecord:
        """Classify an error, append it to the error log and log it by severity."""
        record = classify(error, context)
        self._log_error(record)
        return record

    def _log_error(self, record: ErrorRecord) -> None:
        self._error_log.append(record)
        if len(self._error_log) > MAX_ERROR_LOG:
            self._error_log = self._error_log[-TRIMMED_ERROR_LOG:]

        fields = {
            "error": record.message,
            "error_code": record.code,
            "error_category": record.category.value,
            "severity": record.severity.value,
            "retryable": record.retryable,
            "context": dict(record.context),
        }
        if record.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.HIGH):
            self.logger.error("error_recorded", **fields)
        elif record.severity == ErrorSeverity.MEDIUM:
            self.logger.warning("error_recorded", **fields)
        else:
            self.logger.info("error_recorded", **fields)

    def is_retryable(
        self,
        record: ErrorRecord,
        retryable_categories: frozenset[ErrorCategory] | set[ErrorCategory] | None = None,
    ) -> bool:
        """A record is retryable when it allows retries and its category is allow-listed."""
        if not record.retryable:
            return False
        categories = self.config.retryable_categories if retryable_categories is None else retryable_categories
        return record.category in categories

    def calculate_delay(self, attempt: int, config: RetryConfig | None = None) -> float:
        """
        Delay in milliseconds before the attempt following ``attempt``.

        EXPONENTIAL: base * 2^(attempt-1); LINEAR: base * attempt; FIXED: base.
        The raw delay is capped at max_delay_ms, gets up to 20% jitter and is
        capped again.
        """
        config = config or self.config
        if config.strategy == RetryStrategy.NONE:
            return 0.0
        if config.strategy == RetryStrategy.EXPONENTIAL:
            delay = config.base_delay_ms * (2 ** (attempt - 1))
        elif config.strategy == RetryStrategy.LINEAR:
            delay = config.base_delay_ms * attempt
        else:
            delay = config.base_delay_ms

        delay = min(delay, config.max_delay_ms)
        delay += self._rng.random() * JITTER_RATIO * delay
        return min(delay, config.max_delay_ms)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        config: RetryConfig | None = None,
        **overrides: Any,
    ) -> T:
        """
        Run an async operation with bounded, category-gated retries.

        Args:
            operation: Zero-argument coroutine function
            config: Retry configuration (defaults to the handler's)
            **overrides: Field overrides applied on top of the configuration

        Returns:
            The operation's result

        Raises:
            TaskError: With the last classified ErrorRecord once retries stop
        """
        config = config or self.config
        if overrides:
            if "retryable_categories" in overrides:
                overrides["retryable_categories"] = frozenset(overrides["retryable_categories"])
            config = replace(config, **overrides)

        operation_id = f"op_{uuid.uuid4().hex[:12]}"
        last_error: ErrorRecord | None = None

        for attempt in range(1, config.max_attempts + 1):
            try:
                self.logger.debug(
                    "operation_attempt",
                    operation_id=operation_id,
                    attempt=attempt,
                    max_attempts=config.max_attempts,
                )
                result = await operation()
                self._retry_attempts.pop(operation_id, None)
                if attempt > 1:
                    self.logger.info(
                        "operation_recovered", operation_id=operation_id, attempt=attempt
                    )
                return result
            except asyncio.CancelledError:
                self._retry_attempts.pop(operation_id, None)
                raise
            except Exception as e:
                last_error = self.handle(
                    e, operation_id=operation_id, attempt=attempt, max_attempts=config.max_attempts
                )

                if not self.is_retryable(last_error, config.retryable_categories):
                    self.logger.warning(
                        "operation_not_retryable",
                        operation_id=operation_id,
                        error_code=last_error.code,
                        error_category=last_error.category.value,
                        attempt=attempt,
                    )
                    break

                if attempt == config.max_attempts:
                    self.logger.error(
                        "operation_retries_exhausted",
                        operation_id=operation_id,
                        error_code=last_error.code,
                        attempts=attempt,
                    )
                    break

                delay_ms = self.calculate_delay(attempt, config)
                self._retry_attempts[operation_id] = {
                    "attempt": attempt,
                    "last_error": last_error,
                    "next_retry_at": datetime.now(timezone.utc) + timedelta(milliseconds=delay_ms),
                }
                self.logger.warning(
                    "operation_retry_scheduled",
                    operation_id=operation_id,
                    error_code=last_error.code,
                    attempt=attempt,
                    delay_ms=round(delay_ms, 1),
                )
                await self._sleep(delay_ms / 1000)

        self._retry_attempts.pop(operation_id, None)
        if last_error is None:
            last_error = ErrorRecord.create(
                "Operation was not attempted", ErrorCategory.VALIDATION, code="NO_ATTEMPTS"
            )
        raise TaskError(last_error)

    def current_retry_attempts(self) -> list[dict[str, Any]]:
        return [{"operation_id": op_id, **data} for op_id, data in self._retry_attempts.items()]

    @property
    def error_log(self) -> tuple[ErrorRecord, ...]:
        return tuple(self._error_log)

    def error_stats(self) -> dict[str, Any]:
        """Totals by category, severity and code, plus the 10 most recent errors."""
        by_category: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        by_code: dict[str, int] = {}
        for record in self._error_log:
            by_category[record.category.value] = by_category.get(record.category.value, 0) + 1
            by_severity[record.severity.value] = by_severity.get(record.severity.value, 0) + 1
            by_code[record.code] = by_code.get(record.code, 0) + 1

        return {
            "total": len(self._error_log),
            "by_category": by_category,
            "by_severity": by_severity,
            "by_code": by_code,
            "recent_errors": [record.to_dict() for record in self._error_log[-10:]],
        }

    def clear_error_log(self) -> None:
        self._error_log.clear()
        self._retry_attempts.clear()

    def create_recovery_plan(self, record: ErrorRecord) -> RecoveryPlan:
        """Build the automatic and manual recovery actions for a record."""
        automatic, manual = _RECOVERY_ACTIONS.get(record.category, ([], []))
        return RecoveryPlan(
            error=record,
            recoverable=record.recoverable,
            suggestions=list(record.suggestions),
            automatic_actions=list(automatic),
            manual_actions=list(manual),
        )
