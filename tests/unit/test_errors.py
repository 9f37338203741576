"""Tests for error classification and routing."""

import socket

import pytest

from storyloop.errors import (
    CatalogMismatchError,
    ErrorCategory,
    ErrorClassifier,
    GenerationError,
    GenerationErrorType,
    MalformedResponseError,
    MissingPreconditionError,
    RetriesExhaustedError,
    RetryLimitError,
    RoleFailedError,
    RoleTimeoutError,
    classify_error,
    is_retryable,
)


class TestClassifyOutput:

    @pytest.mark.parametrize("stderr, expected", [
        ("Error: Not logged in. Please run /login", GenerationErrorType.AUTH_REQUIRED),
        ("API Error: 429 Too Many Requests", GenerationErrorType.RATE_LIMIT),
        ("Claude AI usage limit reached", GenerationErrorType.RATE_LIMIT),
        ("API Error: 529 Overloaded", GenerationErrorType.SERVER_OVERLOADED),
        ("503 Service Unavailable", GenerationErrorType.SERVER_OVERLOADED),
        ("API Error: 500 Internal Server Error", GenerationErrorType.SERVER_ERROR),
        ("502 Bad Gateway", GenerationErrorType.SERVER_ERROR),
        ("read ECONNRESET", GenerationErrorType.CONNECTION_RESET),
        ("getaddrinfo ENOTFOUND api.anthropic.com", GenerationErrorType.DNS_FAILURE),
        ("connect ETIMEDOUT 10.0.0.1:443", GenerationErrorType.TIMEOUT),
    ])
    def test_patterns(self, stderr, expected):
        assert ErrorClassifier.classify_output(stderr, "", 1) == expected

    def test_unrecognized_non_zero_exit_is_a_crash(self):
        assert ErrorClassifier.classify_output("segfault", "", 139) == GenerationErrorType.CLI_CRASH

    def test_unrecognized_zero_exit_is_unknown(self):
        assert ErrorClassifier.classify_output("", "", 0) == GenerationErrorType.UNKNOWN


class TestRetryability:

    @pytest.mark.parametrize("status, retryable", [
        (500, True),
        (502, True),
        (503, True),
        (529, True),
        (429, False),
        (401, False),
        (400, False),
    ])
    def test_status_codes(self, status, retryable):
        assert is_retryable(GenerationError("boom", status=status)) is retryable

    @pytest.mark.parametrize("error", [
        ConnectionResetError("reset"),
        socket.gaierror("no such host"),
        TimeoutError("slow"),
        GenerationError("timeout", error_type=GenerationErrorType.TIMEOUT),
    ])
    def test_transient_network_errors(self, error):
        assert is_retryable(error)

    @pytest.mark.parametrize("error", [
        MalformedResponseError("not json"),
        GenerationError("crash", error_type=GenerationErrorType.CLI_CRASH),
        ValueError("bug"),
        FileNotFoundError("claude"),
    ])
    def test_everything_else_fails_fast(self, error):
        assert not is_retryable(error)

    def test_explicit_kind_wins_over_status(self):
        error = GenerationError("x", error_type=GenerationErrorType.AUTH_REQUIRED, status=500)
        assert not is_retryable(error)
        assert error.requires_user_action


class TestClassifyError:

    def test_transient(self):
        assert classify_error(GenerationError("5xx", status=500)) == ErrorCategory.TRANSIENT
        assert classify_error(RoleTimeoutError("developer", 60)) == ErrorCategory.TRANSIENT

    def test_systematic(self):
        assert classify_error(MalformedResponseError("bad")) == ErrorCategory.SYSTEMATIC
        assert classify_error(GenerationError("quota", status=429)) == ErrorCategory.SYSTEMATIC
        assert classify_error(RetryLimitError("epic 1 failed 5 times")) == ErrorCategory.SYSTEMATIC
        assert classify_error(RoleFailedError("exit 2")) == ErrorCategory.SYSTEMATIC

    def test_fatal(self):
        assert classify_error(CatalogMismatchError("epic 3")) == ErrorCategory.FATAL
        assert classify_error(MissingPreconditionError("no catalog")) == ErrorCategory.FATAL
        assert classify_error(GenerationError("login", status=401)) == ErrorCategory.FATAL
        assert classify_error(KeyError("surprise")) == ErrorCategory.FATAL


class TestRetriesExhaustedError:

    def test_message_carries_attempts_and_classification(self):
        last = GenerationError("API Error: 500", status=500)
        error = RetriesExhaustedError(3, last)

        assert "3 attempts" in str(error)
        assert "SERVER_ERROR" in str(error)
        assert error.last_error is last
        assert error.safe_to_retrigger
        assert not error.needs_human
        assert classify_error(error) == ErrorCategory.TRANSIENT

    def test_to_dict(self):
        error = RetriesExhaustedError(3, ConnectionResetError("reset"))
        data = error.to_dict()
        assert data["error_type"] == "retries_exhausted"
        assert data["attempts"] == 3
        assert data["last_error_type"] == "CONNECTION_RESET"
        assert data["category"] == "transient"


def test_generation_error_type_names():
    assert GenerationError("x", error_type=GenerationErrorType.RATE_LIMIT).error_type == "rate_limit"
    assert RoleTimeoutError("tester", 5).to_dict() == {
        "message": "Role 'tester' exceeded its 5s timeout",
        "error_type": "timeout",
    }
