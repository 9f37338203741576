"""Retry/backoff executor for calls to the generation capability.

Retries server-side (5xx) and transient network failures with exponential
backoff and fails fast on everything else. Success after a retry is
invisible to callers; exhaustion raises RetriesExhaustedError carrying the
attempt count and the last error's classification.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from storyloop.config import RetryConfig
from storyloop.errors import ErrorClassifier, RetriesExhaustedError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_MULTIPLIER = 2.0


class RetryExecutor:
    """Run an async operation with bounded exponential backoff.

    With the defaults a permanently failing transient call is attempted
    three times, sleeping 1s and then 2s between attempts.

    Usage:
        executor = RetryExecutor(config.retry)
        text = await executor.run(lambda: generator.generate(prompt))
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        multiplier: float = DEFAULT_MULTIPLIER,
    ) -> None:
        if config is not None:
            self.max_attempts = config.max_attempts
            self.base_delay_seconds = config.base_delay_seconds
            self.multiplier = config.multiplier
        else:
            self.max_attempts = max_attempts
            self.base_delay_seconds = base_delay_seconds
            self.multiplier = multiplier

    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before a 1-based attempt number (attempt >= 2)."""
        return self.base_delay_seconds * (self.multiplier ** (attempt - 2))

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "generation",
    ) -> T:
        """Await operation() until it succeeds or the policy gives up.

        Raises:
            RetriesExhaustedError: Every attempt failed with a retryable error.
            Exception: The original error, unchanged, when it is not retryable.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as e:
                if not is_retryable(e):
                    logger.debug(
                        "%s failed with non-retryable %s on attempt %d: %s",
                        description,
                        ErrorClassifier.classify_exception(e).name,
                        attempt,
                        e,
                    )
                    raise

                if attempt >= self.max_attempts:
                    logger.warning(
                        "%s gave up after %d attempts: %s", description, attempt, e,
                    )
                    raise RetriesExhaustedError(attempt, e) from e

                delay = self.delay_before(attempt + 1)
                logger.info(
                    "%s attempt %d/%d failed (%s), retrying in %.1fs",
                    description,
                    attempt,
                    self.max_attempts,
                    ErrorClassifier.classify_exception(e).name,
                    delay,
                )
                await asyncio.sleep(delay)
                attempt += 1
