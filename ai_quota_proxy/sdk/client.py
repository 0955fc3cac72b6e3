"""
Workspace-scoped client for the proxy.

Builds ProxyRequests for one workspace and call site, and owns the retry
policy the proxy itself never applies. Retries run on tenacity; the typed
error taxonomy decides what is worth another attempt.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Union

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_none,
)

from ai_quota_proxy.core.errors import ProxyError, is_retryable
from ai_quota_proxy.core.proxy import LLMProxyService
from ai_quota_proxy.core.rate_limiter import RateLimitConfig
from ai_quota_proxy.core.types import ChatMessage, LLMRequest, ProxyRequest, ProxyResponse

logger = logging.getLogger(__name__)

RetryPredicate = Callable[[ProxyError], bool]
# Called before each retry with (attempt, error, previous request); may return a replacement request
RetryHook = Callable[[int, ProxyError, LLMRequest], Optional[LLMRequest]]


class WorkspaceLLMClient:
    """Chat client bound to one workspace, provider and endpoint tag."""

    def __init__(
        self,
        proxy: LLMProxyService,
        workspace_id: str,
        provider: str,
        model: str,
        endpoint: str,
        rate_limits: Optional[RateLimitConfig] = None,
    ):
        """Initialize the client.

        Args:
            proxy: Proxy service used for every call
            workspace_id: Workspace billed for the calls
            provider: Provider name, e.g. "openai"
            model: Model identifier
            endpoint: Call-site tag recorded with usage
            rate_limits: Ceilings for this call site (optional)

        Raises:
            ValueError: If any identifier is missing/empty
        """
        for name, value in (("workspace_id", workspace_id), ("provider", provider),
                            ("model", model), ("endpoint", endpoint)):
            if not value or not value.strip():
                raise ValueError(f"{name} is required and cannot be empty")

        self.proxy = proxy
        self.workspace_id = workspace_id
        self.provider = provider
        self.model = model
        self.endpoint = endpoint
        self.rate_limits = rate_limits

    def build_request(
        self,
        messages: List[Union[ChatMessage, Dict[str, str]]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMRequest:
        if not messages:
            raise ValueError("messages is required and cannot be empty")
        return LLMRequest.from_dict({
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })

    async def chat(
        self,
        messages: List[Union[ChatMessage, Dict[str, str]]],
        user_id: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        max_attempts: int = 1,
        should_retry: RetryPredicate = is_retryable,
        on_retry: Optional[RetryHook] = None,
        backoff_seconds: float = 0.0,
    ) -> ProxyResponse:
        """Run a chat completion through the proxy, retrying on request.

        Args:
            messages: Chat messages (dicts or ChatMessage)
            user_id: Authenticated user making the call
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            max_attempts: Total attempts including the first
            should_retry: Decides from the typed error whether to try again
            on_retry: Hook run before each retry; may return a new request,
                e.g. one with a stricter prompt
            backoff_seconds: Base delay, doubled after every failed attempt

        Returns:
            The proxy's response

        Raises:
            ValueError: If messages is empty or max_attempts < 1
            ProxyError: The last error once retries are exhausted or the
                predicate declines to retry
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        request = self.build_request(messages, temperature, max_tokens)

        def before_sleep(retry_state: RetryCallState) -> None:
            nonlocal request
            error = retry_state.outcome.exception()
            logger.info(
                "Attempt %d/%d for %s failed with %s, retrying",
                retry_state.attempt_number, max_attempts, self.endpoint, type(error).__name__,
            )
            if on_retry is not None:
                request = on_retry(retry_state.attempt_number, error, request) or request

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=backoff_seconds) if backoff_seconds > 0 else wait_none(),
            retry=retry_if_exception(lambda e: isinstance(e, ProxyError) and should_retry(e)),
            before_sleep=before_sleep,
            sleep=asyncio.sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.proxy.process_request(
                    ProxyRequest(
                        provider=self.provider,
                        workspace_id=self.workspace_id,
                        request=request,
                        endpoint=self.endpoint,
                    ),
                    user_id,
                    rate_limits=self.rate_limits,
                )
