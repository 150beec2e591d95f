"""Provider definitions for llm_switchboard."""

from .anthropic import AnthropicProvider
from .base import BaseProvider, ModelPricing, ProviderCapabilities, ProviderDescriptor
from .deepseek import DeepSeekProvider
from .gemini import GeminiProvider
from .lmstudio import LMStudioProvider
from .openai import OpenAIProvider

BUILTIN_PROVIDERS: tuple[type[BaseProvider], ...] = (
    OpenAIProvider,
    AnthropicProvider,
    GeminiProvider,
    DeepSeekProvider,
    LMStudioProvider,
)

__all__ = [
    "BaseProvider",
    "ModelPricing",
    "ProviderCapabilities",
    "ProviderDescriptor",
    "OpenAIProvider",
    "AnthropicProvider",
    "GeminiProvider",
    "DeepSeekProvider",
    "LMStudioProvider",
    "BUILTIN_PROVIDERS",
]
