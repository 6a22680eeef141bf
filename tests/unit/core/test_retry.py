"""
Unit Tests for the Retry Engine

Tests ErrorHandler delay computation, category-gated retries and the bounded
error log. Sleeping is replaced by an AsyncMock so no test waits.
"""

import asyncio
import random
from unittest.mock import AsyncMock

import pytest

from autotask.core.domain.errors import ErrorCategory, TaskError
from autotask.core.domain.retry import ErrorHandler, RetryConfig, RetryStrategy


class _NoJitter(random.Random):
    def random(self):
        return 0.0


class _FullJitter(random.Random):
    def random(self):
        return 0.999999


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def handler(sleep):
    return ErrorHandler(sleep=sleep, rng=_NoJitter())


class TestCalculateDelay:
    def test_exponential_doubles(self, handler):
        config = RetryConfig(base_delay_ms=100, max_delay_ms=10_000)

        assert [handler.calculate_delay(n, config) for n in (1, 2, 3, 4)] == [100, 200, 400, 800]

    def test_linear_and_fixed(self, handler):
        linear = RetryConfig(base_delay_ms=100, strategy=RetryStrategy.LINEAR)
        fixed = RetryConfig(base_delay_ms=100, strategy=RetryStrategy.FIXED)

        assert handler.calculate_delay(3, linear) == 300
        assert handler.calculate_delay(3, fixed) == 100

    def test_none_strategy_never_waits(self, handler):
        assert handler.calculate_delay(5, RetryConfig(strategy=RetryStrategy.NONE)) == 0

    def test_delay_is_capped(self, handler):
        config = RetryConfig(base_delay_ms=1000, max_delay_ms=1500)

        assert handler.calculate_delay(10, config) == 1500

    def test_jitter_is_bounded_by_twenty_percent(self):
        handler = ErrorHandler(rng=_FullJitter())
        config = RetryConfig(base_delay_ms=1000, max_delay_ms=60_000)

        delay = handler.calculate_delay(1, config)

        assert 1000 < delay <= 1200

    def test_jitter_never_exceeds_cap(self):
        handler = ErrorHandler(rng=_FullJitter())
        config = RetryConfig(base_delay_ms=1000, max_delay_ms=1000)

        assert handler.calculate_delay(4, config) == 1000

    @pytest.mark.parametrize("attempt, low, high", [(1, 1000, 1200), (2, 2000, 2400), (3, 4000, 4800)])
    def test_jittered_exponential_delays_stay_in_range(self, attempt, low, high):
        handler = ErrorHandler(rng=random.Random(attempt))
        config = RetryConfig(base_delay_ms=1000, max_delay_ms=10_000)

        delays = [handler.calculate_delay(attempt, config) for _ in range(50)]

        assert all(low <= delay < high for delay in delays)

    def test_jitter_upper_edge_for_later_attempts(self):
        handler = ErrorHandler(rng=_FullJitter())
        config = RetryConfig(base_delay_ms=1000, max_delay_ms=10_000)

        assert 2399 < handler.calculate_delay(2, config) < 2400
        assert 4799 < handler.calculate_delay(3, config) < 4800


class TestExecuteWithRetry:
    @pytest.mark.asyncio
    async def test_returns_first_success(self, handler, sleep):
        operation = AsyncMock(return_value="ok")

        assert await handler.execute_with_retry(operation) == "ok"
        assert operation.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retries_network_errors_until_success(self, handler, sleep):
        operation = AsyncMock(side_effect=[ConnectionError("reset"), ConnectionError("reset"), "ok"])
        config = RetryConfig(max_attempts=3, base_delay_ms=10)

        assert await handler.execute_with_retry(operation, config) == "ok"
        assert operation.await_count == 3
        assert [call.args[0] for call in sleep.await_args_list] == [0.01, 0.02]

    @pytest.mark.asyncio
    async def test_raises_last_error_after_exhaustion(self, handler):
        operation = AsyncMock(side_effect=ConnectionError("down"))

        with pytest.raises(TaskError) as info:
            await handler.execute_with_retry(operation, max_attempts=2, base_delay_ms=1)

        assert operation.await_count == 2
        assert info.value.category == ErrorCategory.NETWORK
        assert info.value.record.context["attempt"] == 2

    @pytest.mark.asyncio
    async def test_validation_errors_are_not_retried(self, handler, sleep):
        operation = AsyncMock(side_effect=ValueError("invalid value"))

        with pytest.raises(TaskError) as info:
            await handler.execute_with_retry(operation)

        assert operation.await_count == 1
        assert info.value.category == ErrorCategory.VALIDATION
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_categories_outside_allow_list_are_not_retried(self, handler):
        operation = AsyncMock(side_effect=FileNotFoundError("no such file"))

        with pytest.raises(TaskError):
            await handler.execute_with_retry(operation, retryable_categories={ErrorCategory.NETWORK})

        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_task_error_record_is_preserved(self, handler):
        original = TaskError.build("blocked", ErrorCategory.PERMISSION, code="PATH_BLOCKED")
        operation = AsyncMock(side_effect=original)

        with pytest.raises(TaskError) as info:
            await handler.execute_with_retry(operation)

        assert info.value.code == "PATH_BLOCKED"

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, handler):
        operation = AsyncMock(side_effect=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await handler.execute_with_retry(operation)

        assert handler.error_log == ()


class TestErrorLog:
    def test_handle_records_errors(self, handler):
        handler.handle(ConnectionError("reset"), tool="read_file")
        handler.handle(PermissionError("denied"))

        stats = handler.error_stats()

        assert stats["total"] == 2
        assert stats["by_category"] == {"network": 1, "permission": 1}
        assert stats["by_severity"] == {"medium": 1, "high": 1}
        assert len(stats["recent_errors"]) == 2

    def test_log_is_trimmed_when_it_overflows(self, handler):
        for i in range(1001):
            handler.handle(RuntimeError(f"error {i}"))

        assert len(handler.error_log) == 500
        assert handler.error_log[-1].message == "error 1000"

    def test_clear_error_log(self, handler):
        handler.handle("boom")

        handler.clear_error_log()

        assert handler.error_stats()["total"] == 0


def test_recovery_plan_separates_automatic_and_manual_actions(handler):
    record = handler.handle(PermissionError("denied"))

    plan = handler.create_recovery_plan(record)

    assert plan.automatic_actions == []
    assert plan.manual_actions == ["Check permissions for the requested path or command"]
    assert plan.to_dict()["category"] == "permission"
