"""Model providers -- httpx clients for the model APIs.

Public API:
    ProviderManager          - current provider, preferences, fallback order
    create_provider_manager  - build a manager from Settings
    AnthropicProvider        - Anthropic Messages API
    OpenAICompatibleProvider - OpenAI, DeepSeek, Grok, Qwen, Gemini
    ModelProvider, ChatResult, ProviderError
"""

from siber.providers.anthropic import AnthropicProvider
from siber.providers.base import ChatResult, ModelProvider, ProviderError
from siber.providers.manager import ProviderManager, create_provider_manager
from siber.providers.openai_compat import PRESETS, OpenAICompatibleProvider

__all__ = [
    "AnthropicProvider",
    "ChatResult",
    "ModelProvider",
    "OpenAICompatibleProvider",
    "PRESETS",
    "ProviderError",
    "ProviderManager",
    "create_provider_manager",
]
