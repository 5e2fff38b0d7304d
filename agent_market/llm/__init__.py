"""LLM provider layer."""

from .types import (
    ChatMessage,
    LLMResult,
    ProviderStatus,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ProviderDisabledError,
    ProviderResponseError,
)
from .provider import LLMProvider
from .provider_factory import create_provider

__all__ = [
    "ChatMessage",
    "LLMResult",
    "ProviderStatus",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "ProviderDisabledError",
    "ProviderResponseError",
    "LLMProvider",
    "create_provider",
]
