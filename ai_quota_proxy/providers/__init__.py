"""
Provider adapters.

One adapter per upstream vendor, all behind the same ``complete`` interface.
Adding a vendor means adding an adapter class and registering it here.
"""

from typing import Dict, Type

from ai_quota_proxy.core.errors import ConfigurationError

from .anthropic_adapter import AnthropicAdapter
from .base import DEFAULT_ADAPTER_TIMEOUT_SECONDS, ProviderAdapter
from .openai_adapter import OpenAIAdapter

ADAPTERS: Dict[str, Type[ProviderAdapter]] = {
    OpenAIAdapter.provider: OpenAIAdapter,
    AnthropicAdapter.provider: AnthropicAdapter,
}


def get_adapter_class(provider: str) -> Type[ProviderAdapter]:
    """Adapter class registered for a provider name.

    Raises:
        ConfigurationError: If no adapter is registered for ``provider``
    """
    try:
        return ADAPTERS[provider]
    except KeyError:
        raise ConfigurationError(f"Unsupported provider: {provider}") from None


def create_adapter(
    provider: str,
    api_key: str,
    timeout: float = DEFAULT_ADAPTER_TIMEOUT_SECONDS,
) -> ProviderAdapter:
    """Default adapter factory used by the proxy."""
    return get_adapter_class(provider)(api_key, timeout=timeout)


__all__ = [
    "ADAPTERS",
    "AnthropicAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "create_adapter",
    "get_adapter_class",
]
