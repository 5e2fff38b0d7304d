"""
LLM provider factory.

WHAT: Build the configured LLM provider for the decision oracle
WHY: Centralize provider selection; the agent registry owns the instance
HOW: Read LLM_PROVIDER from settings, pick the matching endpoint preset
"""

from typing import TYPE_CHECKING

from .openai_compatible import OpenAICompatibleProvider
from .types import ProviderDisabledError
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from ..core.config import Settings

logger = get_logger(__name__)


def create_provider(settings: "Settings") -> OpenAICompatibleProvider:
    """
    Create a new LLM provider from settings.

    Args:
        settings: Application settings

    Returns:
        Provider instance for settings.LLM_PROVIDER

    Raises:
        ProviderDisabledError: Hosted provider selected without an API key
        ValueError: If provider name is unknown
    """
    provider_name = settings.LLM_PROVIDER

    if provider_name == "lm_studio":
        base_url = settings.LM_STUDIO_BASE_URL
        model = settings.LM_STUDIO_DEFAULT_MODEL
        api_key = ""
    elif provider_name == "openrouter":
        base_url = settings.OPENROUTER_BASE_URL
        model = settings.OPENROUTER_DEFAULT_MODEL
        api_key = settings.OPENROUTER_API_KEY
    elif provider_name == "groq":
        base_url = settings.GROQ_BASE_URL
        model = settings.GROQ_DEFAULT_MODEL
        api_key = settings.GROQ_API_KEY
    else:
        raise ValueError(f"Unknown LLM provider: {provider_name}")

    if provider_name != "lm_studio" and not api_key:
        raise ProviderDisabledError(f"{provider_name} selected but no API key configured")

    logger.info(f"LLM provider initialized: {provider_name} ({model})")
    return OpenAICompatibleProvider(
        name=provider_name,
        base_url=base_url,
        default_model=model,
        api_key=api_key,
        timeout=settings.LLM_TIMEOUT,
        max_retries=settings.LLM_MAX_RETRIES,
        retry_delay=settings.LLM_RETRY_DELAY
    )
