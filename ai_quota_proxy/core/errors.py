"""
Error taxonomy for the LLM proxy.

Every failure that leaves the proxy is one of the ProxyError subclasses
below. Vendor SDK exceptions and storage exceptions are translated at the
layer that first sees them.
"""

import asyncio
import sqlite3
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

GENERIC_UNAVAILABLE_MESSAGE = "AI service unavailable. Please try again later."

T = TypeVar("T")


class ProxyError(Exception):
    """Base class for all errors raised by the proxy."""

    retryable: bool = False
    status_code: int = 500
    # Detail is shown to end users only when this is True
    actionable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def user_message(self, development: bool = False) -> str:
        """Message safe to show to the end user.

        Args:
            development: Show full detail for non-actionable errors

        Returns:
            The error detail for actionable errors (or in development),
            otherwise a generic message that leaks nothing about keys or
            vendor internals.
        """
        if self.actionable or development:
            return self.message
        return GENERIC_UNAVAILABLE_MESSAGE


class ConfigurationError(ProxyError):
    """No usable API key or adapter for the requested provider."""
    status_code = 500


class QuotaExceededError(ProxyError):
    """Workspace is over its monthly spending limit."""
    status_code = 403
    actionable = True

    def __init__(self, message: str, usage: Any = None):
        super().__init__(message)
        self.usage = usage


class RateLimitedError(ProxyError):
    """Workspace exceeded one of its request-rate ceilings."""
    retryable = True
    status_code = 429
    actionable = True

    def __init__(self, message: str, retry_after_seconds: int):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class UpstreamErrorKind(Enum):
    """Closed set of provider failure kinds."""
    INVALID_KEY = "invalid_key"
    RATE_LIMITED = "rate_limited"
    BAD_REQUEST = "bad_request"
    UNAVAILABLE = "unavailable"


_RETRYABLE_KINDS = {UpstreamErrorKind.RATE_LIMITED, UpstreamErrorKind.UNAVAILABLE}

_KIND_STATUS = {
    UpstreamErrorKind.INVALID_KEY: 401,
    UpstreamErrorKind.RATE_LIMITED: 429,
    UpstreamErrorKind.BAD_REQUEST: 400,
    UpstreamErrorKind.UNAVAILABLE: 502,
}


class UpstreamError(ProxyError):
    """The provider call failed.

    Failures caused by the caller's input or credentials are not retryable;
    vendor instability (rate limiting on the vendor side, 5xx, dropped
    connections) is.
    """

    def __init__(
        self,
        message: str,
        kind: UpstreamErrorKind,
        provider: Optional[str] = None,
        vendor_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.provider = provider
        self.vendor_status = vendor_status
        self.retryable = kind in _RETRYABLE_KINDS
        self.status_code = _KIND_STATUS[kind]


class ProxyTimeoutError(ProxyError):
    """The adapter call exceeded its deadline."""
    retryable = True
    status_code = 504


class InfrastructureError(ProxyError):
    """The ledger or rate-limit store is unreachable or inconsistent."""
    retryable = True
    status_code = 500


def is_retryable(error: BaseException) -> bool:
    """Default retry predicate for callers of the proxy."""
    return isinstance(error, ProxyError) and error.retryable


async def run_store_call(description: str, func: Callable[..., T], *args: Any) -> T:
    """Run a blocking storage call in a worker thread.

    Args:
        description: Short label used in the error message
        func: Blocking repository method
        *args: Positional arguments for ``func``

    Returns:
        Whatever ``func`` returns

    Raises:
        InfrastructureError: If the store raises a sqlite3 error
    """
    try:
        return await asyncio.to_thread(func, *args)
    except sqlite3.Error as e:
        raise InfrastructureError(f"Failed to {description}: {e}") from e
