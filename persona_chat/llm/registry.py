from __future__ import annotations

from ..errors import ConfigurationError
from ..models import ApiProvider
from .base import ProviderAdapter
from .claude import ClaudeAdapter
from .gemini import GeminiAdapter, VertexAdapter
from .openai_compat import CustomOpenAIAdapter, GrokAdapter, OpenAIAdapter, OpenRouterAdapter

_ADAPTERS: dict[ApiProvider, type[ProviderAdapter]] = {
    ApiProvider.GEMINI: GeminiAdapter,
    ApiProvider.VERTEXAI: VertexAdapter,
    ApiProvider.CLAUDE: ClaudeAdapter,
    ApiProvider.OPENAI: OpenAIAdapter,
    ApiProvider.GROK: GrokAdapter,
    ApiProvider.OPENROUTER: OpenRouterAdapter,
    ApiProvider.CUSTOM_OPENAI: CustomOpenAIAdapter,
}


def adapter_for(provider: ApiProvider | str) -> ProviderAdapter:
    try:
        key = ApiProvider(provider)
    except ValueError as e:
        raise ConfigurationError(f"Unknown api provider: {provider}") from e
    return _ADAPTERS[key]()
