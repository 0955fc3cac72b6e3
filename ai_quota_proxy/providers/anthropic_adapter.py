"""
Anthropic Messages API adapter.

Plain HTTPS + JSON over httpx. System messages are lifted into the
top-level ``system`` field because the Messages API does not accept a
``system`` role inside ``messages``.

API Base URL: https://api.anthropic.com/v1
Auth: x-api-key header
"""

import logging
import time
from typing import Any, Dict, Optional

import httpx

from .base import DEFAULT_ADAPTER_TIMEOUT_SECONDS, ProviderAdapter
from ai_quota_proxy.core.errors import ProxyTimeoutError, UpstreamError, UpstreamErrorKind
from ai_quota_proxy.core.types import Choice, CompletionUsage, LLMRequest, LLMResponse

logger = logging.getLogger(__name__)

ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"

# The Messages API requires max_tokens on every request
DEFAULT_MAX_TOKENS = 1024


def _kind_for_status(status_code: int) -> UpstreamErrorKind:
    if status_code in (401, 403):
        return UpstreamErrorKind.INVALID_KEY
    if status_code == 429:
        return UpstreamErrorKind.RATE_LIMITED
    if status_code in (400, 404, 413, 422):
        return UpstreamErrorKind.BAD_REQUEST
    return UpstreamErrorKind.UNAVAILABLE


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message", error))
    return str(error or body)


class AnthropicAdapter(ProviderAdapter):
    """Adapter for Anthropic's Messages endpoint."""

    provider = "anthropic"

    def __init__(
        self,
        api_key: str,
        timeout: float = DEFAULT_ADAPTER_TIMEOUT_SECONDS,
        base_url: str = ANTHROPIC_BASE_URL,
    ):
        super().__init__(api_key, timeout=timeout)
        self.base_url = base_url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
            "accept": "application/json",
        }

    def _build_payload(self, request: LLMRequest) -> Dict[str, Any]:
        system_parts = [m.content for m in request.messages if m.role == "system"]
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": [
                {"role": m.role, "content": m.content}
                for m in request.messages
                if m.role != "system"
            ],
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if request.temperature is not None:
            # Anthropic accepts 0-1; the canonical range is 0-2
            payload["temperature"] = min(request.temperature, 1.0)
        return payload

    async def complete(self, request: LLMRequest) -> LLMResponse:
        url = f"{self.base_url}/messages"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, headers=self._headers(), json=self._build_payload(request))
        except httpx.TimeoutException as e:
            raise ProxyTimeoutError("Anthropic request timed out") from e
        except httpx.TransportError as e:
            logger.error("Anthropic transport error: %s", type(e).__name__)
            raise UpstreamError(
                f"Anthropic API unreachable: {e}",
                kind=UpstreamErrorKind.UNAVAILABLE,
                provider=self.provider,
            ) from e

        if response.status_code >= 400:
            detail = _error_detail(response)
            logger.error("Anthropic API error %s", response.status_code)
            raise UpstreamError(
                f"Anthropic API error {response.status_code}: {detail}",
                kind=_kind_for_status(response.status_code),
                provider=self.provider,
                vendor_status=response.status_code,
            )

        return self._parse_response(response.json())

    def _parse_response(self, data: Dict[str, Any]) -> LLMResponse:
        text = "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )

        usage: Optional[CompletionUsage] = None
        raw_usage = data.get("usage")
        if raw_usage:
            usage = CompletionUsage.from_counts(
                prompt_tokens=int(raw_usage.get("input_tokens", 0)),
                completion_tokens=int(raw_usage.get("output_tokens", 0)),
            )

        return LLMResponse(
            id=data.get("id", ""),
            model=data.get("model", ""),
            created=int(time.time()),
            choices=[Choice(
                role=data.get("role", "assistant"),
                content=text,
                finish_reason=data.get("stop_reason") or "stop",
            )],
            usage=usage,
        )
