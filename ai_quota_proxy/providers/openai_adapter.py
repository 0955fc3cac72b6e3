"""
OpenAI chat-completions adapter.

Wraps the official SDK. SDK retries are disabled: a failed call surfaces
once and the caller owns retry policy.
"""

import logging
from typing import Any, Dict

import openai
from openai import AsyncOpenAI

from .base import DEFAULT_ADAPTER_TIMEOUT_SECONDS, ProviderAdapter
from ai_quota_proxy.core.errors import ProxyTimeoutError, UpstreamError, UpstreamErrorKind
from ai_quota_proxy.core.types import Choice, CompletionUsage, LLMRequest, LLMResponse

logger = logging.getLogger(__name__)


def _translate_error(error: openai.OpenAIError) -> Exception:
    """Map an SDK exception onto the proxy's error taxonomy."""
    if isinstance(error, openai.APITimeoutError):
        return ProxyTimeoutError("OpenAI request timed out")
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        kind = UpstreamErrorKind.INVALID_KEY
    elif isinstance(error, openai.RateLimitError):
        kind = UpstreamErrorKind.RATE_LIMITED
    elif isinstance(error, (openai.BadRequestError, openai.NotFoundError, openai.UnprocessableEntityError)):
        kind = UpstreamErrorKind.BAD_REQUEST
    else:
        # 5xx, connection failures, anything unexpected from the SDK
        kind = UpstreamErrorKind.UNAVAILABLE

    status = getattr(error, "status_code", None)
    return UpstreamError(f"OpenAI API error: {error}", kind=kind, provider="openai", vendor_status=status)


class OpenAIAdapter(ProviderAdapter):
    """Adapter for OpenAI's chat completions endpoint."""

    provider = "openai"

    def __init__(self, api_key: str, timeout: float = DEFAULT_ADAPTER_TIMEOUT_SECONDS):
        super().__init__(api_key, timeout=timeout)
        self.client = AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    async def complete(self, request: LLMRequest) -> LLMResponse:
        params: Dict[str, Any] = {
            "model": request.model,
            "messages": request.message_dicts(),
        }
        if request.temperature is not None:
            params["temperature"] = request.temperature
        if request.max_tokens is not None:
            params["max_tokens"] = request.max_tokens

        try:
            completion = await self.client.chat.completions.create(**params)
        except openai.OpenAIError as e:
            logger.error("OpenAI call failed: %s", type(e).__name__)
            raise _translate_error(e) from e

        usage = None
        if completion.usage:
            usage = CompletionUsage(
                prompt_tokens=completion.usage.prompt_tokens,
                completion_tokens=completion.usage.completion_tokens,
                total_tokens=completion.usage.total_tokens,
            )

        return LLMResponse(
            id=completion.id,
            model=completion.model,
            created=completion.created,
            choices=[
                Choice(
                    role=choice.message.role,
                    content=choice.message.content or "",
                    finish_reason=choice.finish_reason or "stop",
                )
                for choice in completion.choices
            ],
            usage=usage,
        )

    async def aclose(self) -> None:
        await self.client.close()
