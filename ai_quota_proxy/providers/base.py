"""
Adapter interface shared by all providers.
"""

from abc import ABC, abstractmethod

from ai_quota_proxy.core.errors import ConfigurationError
from ai_quota_proxy.core.types import LLMRequest, LLMResponse

DEFAULT_ADAPTER_TIMEOUT_SECONDS = 120.0


class ProviderAdapter(ABC):
    """Translates canonical requests to one vendor's API and back."""

    provider: str = ""

    def __init__(self, api_key: str, timeout: float = DEFAULT_ADAPTER_TIMEOUT_SECONDS):
        if not api_key:
            raise ConfigurationError(f"No API key supplied for {self.provider}")
        self.api_key = api_key
        self.timeout = timeout

    @abstractmethod
    async def complete(self, request: LLMRequest) -> LLMResponse:
        """Run one chat completion.

        Raises:
            UpstreamError: For vendor-side failures, classified by kind
            ProxyTimeoutError: If the vendor call exceeded ``timeout``
        """

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""
