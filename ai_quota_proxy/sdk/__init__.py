"""
SDK for the AI quota proxy.

Caller-side helpers layered on top of the proxy service.
"""

from .client import WorkspaceLLMClient

__all__ = ["WorkspaceLLMClient"]
