"""DeepSeek provider implementation (OpenAI-compatible wire format)."""

from __future__ import annotations

import logging

from llm_switchboard.providers.base import ModelPricing, ProviderCapabilities
from llm_switchboard.providers.openai import OpenAIProvider
from llm_switchboard.types import ModelInfo


class DeepSeekProvider(OpenAIProvider):
    """DeepSeek chat and reasoner models.

    ``deepseek-reasoner`` streams its chain of thought as ``reasoning_content``
    deltas, which the OpenAI parser already surfaces as reasoning text.
    """

    provider_id = "deepseek"
    display_name = "DeepSeek"
    capabilities = ProviderCapabilities(
        streaming=True,
        function_calling=True,
        vision=False,
        reasoning=True,
        max_context_length=65536,
        supported_formats=("text",),
    )
    pricing = {
        "deepseek-chat": ModelPricing(input=0.00014, output=0.00028),
        "deepseek-reasoner": ModelPricing(input=0.00055, output=0.0022),
    }
    default_config = {
        "base_url": "https://api.deepseek.com",
        "default_model": "deepseek-chat",
        "timeout_s": 60.0,
    }
    api_key_pattern = r".{11,}"
    reasoning_model_prefixes = ("deepseek-reasoner",)
    api_prefix = ""

    _logger = logging.getLogger(__name__)

    def _filter_models(self, models: list[ModelInfo]) -> list[ModelInfo]:
        return sorted((m for m in models if m.id.startswith("deepseek")), key=lambda m: m.id)
