from typing import Dict, List, Optional, Type
import httpx
import structlog

from companion.infrastructure.config.settings import LLMSettings
from companion.infrastructure.llm.base_provider import HttpChatProvider
from companion.infrastructure.llm.gemini_provider import GeminiProvider
from companion.infrastructure.llm.grok_provider import GrokProvider
from companion.infrastructure.llm.openai_provider import OpenAIProvider

logger = structlog.get_logger(__name__)

PROVIDER_TYPES: Dict[str, Type[HttpChatProvider]] = {
    "openai": OpenAIProvider,
    "grok": GrokProvider,
    "xai": GrokProvider,
    "gemini": GeminiProvider,
}


def build_providers(settings: LLMSettings, client: Optional[httpx.AsyncClient] = None) -> List[HttpChatProvider]:
    """Instantiate every configured backend.

    Names without a dedicated adapter are treated as OpenAI-compatible.
    """

    providers = []
    for name, provider_settings in settings.providers.items():
        provider_type = PROVIDER_TYPES.get(name.lower(), OpenAIProvider)
        provider = provider_type(
            name=name,
            settings=provider_settings,
            default_timeout=settings.timeout_seconds,
            default_temperature=settings.temperature,
            client=client
        )
        if not provider.is_configured:
            logger.info("Provider not configured", provider=name)
        providers.append(provider)
    return providers
