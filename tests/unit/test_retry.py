"""Tests for the retry/backoff executor."""

import pytest

from storyloop.config import RetryConfig
from storyloop.errors import (
    GenerationError,
    GenerationErrorType,
    MalformedResponseError,
    RetriesExhaustedError,
)
from storyloop.retry import RetryExecutor


def failing_then(result, *errors):
    """Operation that raises each error once, then returns result."""
    calls = []

    async def operation():
        calls.append(len(calls) + 1)
        if len(calls) <= len(errors):
            raise errors[len(calls) - 1]
        return result

    operation.calls = calls
    return operation


class TestRetryExecutor:

    @pytest.mark.asyncio
    async def test_success_first_try_does_not_sleep(self, no_sleep):
        operation = failing_then("ok")
        assert await RetryExecutor().run(operation) == "ok"
        assert operation.calls == [1]
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recovers_from_server_errors(self, no_sleep):
        operation = failing_then(
            "ok",
            GenerationError("API Error: 500", status=500),
            GenerationError("overloaded", error_type=GenerationErrorType.SERVER_OVERLOADED),
        )
        assert await RetryExecutor().run(operation) == "ok"
        assert len(operation.calls) == 3
        assert [c.args[0] for c in no_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_permanent_5xx_gives_up_after_three_attempts(self, no_sleep):
        error = GenerationError("API Error: 503", status=503)
        operation = failing_then("never", error, error, error, error)

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await RetryExecutor().run(operation, "task generation")

        assert len(operation.calls) == 3
        assert [c.args[0] for c in no_sleep.await_args_list] == [1.0, 2.0]
        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error is error
        assert exc_info.value.safe_to_retrigger

    @pytest.mark.asyncio
    async def test_network_errors_are_retried(self, no_sleep):
        operation = failing_then("ok", ConnectionResetError("ECONNRESET"), TimeoutError())
        assert await RetryExecutor().run(operation) == "ok"
        assert len(operation.calls) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        GenerationError("429 Too Many Requests", status=429),
        GenerationError("unauthorized", status=401),
        MalformedResponseError("no JSON"),
        ValueError("programming error"),
    ])
    async def test_non_retryable_errors_propagate_unchanged(self, no_sleep, error):
        operation = failing_then("never", error)

        with pytest.raises(type(error)) as exc_info:
            await RetryExecutor().run(operation)

        assert exc_info.value is error
        assert operation.calls == [1]
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_config_drives_policy(self, no_sleep):
        executor = RetryExecutor(RetryConfig(max_attempts=4, base_delay_seconds=0.5, multiplier=3.0))
        error = GenerationError("500", status=500)
        operation = failing_then("never", error, error, error, error)

        with pytest.raises(RetriesExhaustedError):
            await executor.run(operation)

        assert len(operation.calls) == 4
        assert [c.args[0] for c in no_sleep.await_args_list] == [0.5, 1.5, 4.5]

    def test_delay_before(self):
        executor = RetryExecutor()
        assert executor.delay_before(2) == 1.0
        assert executor.delay_before(3) == 2.0
        assert executor.delay_before(4) == 4.0
