"""
Unit tests for the proxy error taxonomy.
"""

import sqlite3

import pytest

from ai_quota_proxy.core.errors import (
    GENERIC_UNAVAILABLE_MESSAGE,
    ConfigurationError,
    InfrastructureError,
    ProxyTimeoutError,
    QuotaExceededError,
    RateLimitedError,
    UpstreamError,
    UpstreamErrorKind,
    is_retryable,
    run_store_call,
)


class TestUserMessages:
    """Test what end users get to see."""

    def test_actionable_errors_show_detail(self):
        assert QuotaExceededError("Monthly usage limit exceeded: $10.05 / $10.00").user_message() == \
            "Monthly usage limit exceeded: $10.05 / $10.00"
        assert RateLimitedError("try again in 5 seconds", 5).user_message() == "try again in 5 seconds"

    @pytest.mark.parametrize("error", [
        ConfigurationError("No API key configured for openai"),
        UpstreamError("OpenAI API error: invalid key sk-123", kind=UpstreamErrorKind.INVALID_KEY),
        InfrastructureError("Failed to sum workspace usage: disk I/O error"),
        ProxyTimeoutError("Request to openai timed out after 60 seconds"),
    ])
    def test_internal_errors_are_generic(self, error):
        assert error.user_message() == GENERIC_UNAVAILABLE_MESSAGE
        assert error.user_message(development=True) == error.message


class TestClassification:
    """Test retryability and status codes."""

    @pytest.mark.parametrize("kind,retryable,status", [
        (UpstreamErrorKind.INVALID_KEY, False, 401),
        (UpstreamErrorKind.RATE_LIMITED, True, 429),
        (UpstreamErrorKind.BAD_REQUEST, False, 400),
        (UpstreamErrorKind.UNAVAILABLE, True, 502),
    ])
    def test_upstream_kinds(self, kind, retryable, status):
        error = UpstreamError("x", kind=kind)
        assert error.retryable is retryable
        assert error.status_code == status
        assert is_retryable(error) is retryable

    def test_fixed_classes(self):
        assert not is_retryable(QuotaExceededError("over"))
        assert not is_retryable(ConfigurationError("no key"))
        assert is_retryable(ProxyTimeoutError("slow"))
        assert is_retryable(InfrastructureError("down"))
        assert not is_retryable(ValueError("not ours"))


class TestRunStoreCall:
    """Test translation of storage failures."""

    async def test_returns_result(self):
        assert await run_store_call("add", lambda a, b: a + b, 1, 2) == 3

    async def test_sqlite_error_becomes_infrastructure_error(self):
        def broken():
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(InfrastructureError, match="Failed to read ledger: database is locked"):
            await run_store_call("read ledger", broken)

    async def test_other_errors_propagate(self):
        def broken():
            raise KeyError("bug")

        with pytest.raises(KeyError):
            await run_store_call("read ledger", broken)
