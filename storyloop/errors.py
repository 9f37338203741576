"""
Error taxonomy for Storyloop.

This module provides:
- GenerationErrorType enum for categorizing generation capability failures
- ErrorClassifier for detecting error types from CLI output and exceptions
- ErrorCategory / classify_error for routing (retry locally, re-trigger, human)
- Exception classes raised by the orchestration engine
"""

from __future__ import annotations

import re
import socket
from enum import Enum, auto
from typing import Any, Optional


class GenerationErrorType(Enum):
    """
    Classification of generation capability errors.

    Only server-side and transient network conditions are retried in-process.
    """

    # Server side - retried
    SERVER_ERROR = auto()       # 5xx responses
    SERVER_OVERLOADED = auto()  # 529/503 overload

    # Transient network - retried
    TIMEOUT = auto()            # ETIMEDOUT, read timeouts
    CONNECTION_RESET = auto()   # ECONNRESET
    DNS_FAILURE = auto()        # ENOTFOUND, name resolution

    # Everything else fails on first occurrence
    RATE_LIMIT = auto()         # 429 / usage limits
    AUTH_REQUIRED = auto()      # Not logged in / 401
    CLI_NOT_FOUND = auto()      # Binary missing
    CLI_CRASH = auto()          # Non-zero exit without a known pattern
    MALFORMED_RESPONSE = auto() # Output did not parse into the expected shape
    UNKNOWN = auto()


RETRYABLE_TYPES = frozenset({
    GenerationErrorType.SERVER_ERROR,
    GenerationErrorType.SERVER_OVERLOADED,
    GenerationErrorType.TIMEOUT,
    GenerationErrorType.CONNECTION_RESET,
    GenerationErrorType.DNS_FAILURE,
})


class ErrorCategory(Enum):
    """
    Routing category for a failure.

    - TRANSIENT: infrastructure blip, safe to retry or re-trigger later
    - SYSTEMATIC: the request itself is wrong (parse errors, crashes, quota)
    - FATAL: needs a human (credentials, missing binary, inconsistent catalog)
    """

    TRANSIENT = "transient"
    SYSTEMATIC = "systematic"
    FATAL = "fatal"


class StoryloopError(Exception):
    """Base class for errors raised by the orchestration engine."""

    error_type: str = "error"

    def to_dict(self) -> dict[str, Any]:
        return {"message": str(self), "error_type": self.error_type}


class GenerationError(StoryloopError):
    """
    Failure of a call to the generation capability.

    Carries enough of the raw CLI result to re-classify later.
    """

    def __init__(
        self,
        message: str,
        error_type: GenerationErrorType = GenerationErrorType.UNKNOWN,
        stderr: str = "",
        returncode: int = -1,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.kind = error_type
        self.stderr = stderr
        self.returncode = returncode
        self.status = status

    @property
    def error_type(self) -> str:  # type: ignore[override]
        return self.kind.name.lower()

    @property
    def retryable(self) -> bool:
        """True for server-side and transient network errors only."""
        return self.kind in RETRYABLE_TYPES

    @property
    def requires_user_action(self) -> bool:
        return self.kind in (
            GenerationErrorType.AUTH_REQUIRED,
            GenerationErrorType.CLI_NOT_FOUND,
        )


class MalformedResponseError(GenerationError):
    """Generation output did not parse into the expected structure."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message, error_type=GenerationErrorType.MALFORMED_RESPONSE)
        self.raw = raw


class RetriesExhaustedError(StoryloopError):
    """
    Raised when every allowed attempt failed with a retryable error.

    The message embeds the attempt count and last classification so that a
    caller can tell "infrastructure blip, re-trigger later" from
    "give up, needs a human".
    """

    error_type = "retries_exhausted"

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        self.last_error_type = ErrorClassifier.classify_exception(last_error)
        self.category = classify_error(last_error)
        super().__init__(
            f"Generation failed after {attempts} attempts "
            f"(last error: {self.last_error_type.name}, {self.category.value}): {last_error}"
        )

    @property
    def safe_to_retrigger(self) -> bool:
        return self.category == ErrorCategory.TRANSIENT

    @property
    def needs_human(self) -> bool:
        return not self.safe_to_retrigger

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({
            "attempts": self.attempts,
            "last_error_type": self.last_error_type.name,
            "category": self.category.value,
        })
        return data


class CatalogMismatchError(StoryloopError):
    """History references an Epic/Story absent from the current catalog."""

    error_type = "catalog_mismatch"


class MissingPreconditionError(StoryloopError):
    """A required upstream artifact is absent."""

    error_type = "missing_precondition"


class ConcurrentInvocationError(StoryloopError):
    """A role already has a running record for this project."""

    error_type = "concurrent_invocation"


class RoleTimeoutError(StoryloopError):
    """A role exceeded its wall-clock ceiling."""

    error_type = "timeout"

    def __init__(self, role_id: str, timeout_seconds: float) -> None:
        super().__init__(f"Role '{role_id}' exceeded its {timeout_seconds}s timeout")
        self.role_id = role_id
        self.timeout_seconds = timeout_seconds


class RetryLimitError(StoryloopError):
    """Epic or integration tests kept failing past the configured limit."""

    error_type = "retry_limit"


class RoleFailedError(StoryloopError):
    """A non-generating step (file writes, shell commands) reported failure."""

    error_type = "role_failed"


class HistoryStoreError(StoryloopError):
    """Raised when the history store cannot read or write a record."""

    error_type = "store_error"


class ErrorClassifier:
    """
    Classifies generation failures from CLI output or raised exceptions.

    Uses pattern matching on stderr/stdout to determine error type.
    """

    AUTH_PATTERNS = [
        r"unauthorized",
        r"not\s+logged\s+in",
        r"login\s+required",
        r"authentication\s+required",
        r"\b401\b",
    ]

    RATE_LIMIT_PATTERNS = [
        r"rate.?limit",
        r"usage\s+limit\s+reached",
        r"too\s+many\s+requests",
        r"\b429\b",
    ]

    OVERLOAD_PATTERNS = [
        r"\b529\b",
        r"\b503\b",
        r"overloaded",
        r"service\s+unavailable",
    ]

    SERVER_ERROR_PATTERNS = [
        r"\b5\d\d\b",
        r"internal\s+server\s+error",
        r"bad\s+gateway",
        r"api_error",
    ]

    CONNECTION_RESET_PATTERNS = [
        r"econnreset",
        r"connection\s+reset",
        r"socket\s+hang\s+up",
    ]

    TIMEOUT_PATTERNS = [
        r"etimedout",
        r"timed?\s*out",
    ]

    DNS_PATTERNS = [
        r"enotfound",
        r"getaddrinfo",
        r"name\s+or\s+service\s+not\s+known",
        r"temporary\s+failure\s+in\s+name\s+resolution",
    ]

    @classmethod
    def classify_output(
        cls,
        stderr: str,
        stdout: str = "",
        returncode: int = -1,
    ) -> GenerationErrorType:
        """
        Classify a CLI failure based on its output.

        Args:
            stderr: Standard error output from CLI
            stdout: Standard output from CLI
            returncode: Process return code
        """
        combined = f"{stderr} {stdout}".lower()

        if cls._matches_any(combined, cls.AUTH_PATTERNS):
            return GenerationErrorType.AUTH_REQUIRED
        if cls._matches_any(combined, cls.RATE_LIMIT_PATTERNS):
            return GenerationErrorType.RATE_LIMIT
        if cls._matches_any(combined, cls.OVERLOAD_PATTERNS):
            return GenerationErrorType.SERVER_OVERLOADED
        if cls._matches_any(combined, cls.CONNECTION_RESET_PATTERNS):
            return GenerationErrorType.CONNECTION_RESET
        if cls._matches_any(combined, cls.DNS_PATTERNS):
            return GenerationErrorType.DNS_FAILURE
        if cls._matches_any(combined, cls.TIMEOUT_PATTERNS):
            return GenerationErrorType.TIMEOUT
        if cls._matches_any(combined, cls.SERVER_ERROR_PATTERNS):
            return GenerationErrorType.SERVER_ERROR

        if returncode != 0:
            return GenerationErrorType.CLI_CRASH

        return GenerationErrorType.UNKNOWN

    @classmethod
    def classify_status(cls, status: int) -> GenerationErrorType:
        """Classify an HTTP-style status code."""
        if status == 429:
            return GenerationErrorType.RATE_LIMIT
        if status in (401, 403):
            return GenerationErrorType.AUTH_REQUIRED
        if status in (503, 529):
            return GenerationErrorType.SERVER_OVERLOADED
        if 500 <= status < 600:
            return GenerationErrorType.SERVER_ERROR
        return GenerationErrorType.UNKNOWN

    @classmethod
    def classify_exception(cls, error: BaseException) -> GenerationErrorType:
        """Classify any exception raised while calling the capability."""
        if isinstance(error, GenerationError):
            if error.status is not None and error.kind == GenerationErrorType.UNKNOWN:
                return cls.classify_status(error.status)
            return error.kind
        if isinstance(error, ConnectionResetError):
            return GenerationErrorType.CONNECTION_RESET
        if isinstance(error, socket.gaierror):
            return GenerationErrorType.DNS_FAILURE
        if isinstance(error, TimeoutError):
            return GenerationErrorType.TIMEOUT
        if isinstance(error, FileNotFoundError):
            return GenerationErrorType.CLI_NOT_FOUND
        return GenerationErrorType.UNKNOWN

    @classmethod
    def _matches_any(cls, text: str, patterns: list[str]) -> bool:
        for pattern in patterns:
            if re.search(pattern, text, re.IGNORECASE):
                return True
        return False


FATAL_TYPES = frozenset({
    GenerationErrorType.AUTH_REQUIRED,
    GenerationErrorType.CLI_NOT_FOUND,
})


def is_retryable(error: BaseException) -> bool:
    """True iff the Retry/Backoff Executor may attempt the call again."""
    return ErrorClassifier.classify_exception(error) in RETRYABLE_TYPES


def classify_error(error: BaseException) -> ErrorCategory:
    """
    Classify an error to determine how the pipeline should react.

    Args:
        error: The exception to classify.

    Returns:
        ErrorCategory. Engine errors that signal a broken precondition or
        catalog are FATAL; unknown exceptions default to FATAL as well.
    """
    if isinstance(error, RetriesExhaustedError):
        return error.category
    if isinstance(error, (CatalogMismatchError, MissingPreconditionError)):
        return ErrorCategory.FATAL
    if isinstance(error, RoleTimeoutError):
        return ErrorCategory.TRANSIENT
    if isinstance(error, (RetryLimitError, RoleFailedError)):
        return ErrorCategory.SYSTEMATIC

    error_type = ErrorClassifier.classify_exception(error)
    if error_type in RETRYABLE_TYPES:
        return ErrorCategory.TRANSIENT
    if error_type in FATAL_TYPES or error_type == GenerationErrorType.UNKNOWN:
        return ErrorCategory.FATAL
    return ErrorCategory.SYSTEMATIC
