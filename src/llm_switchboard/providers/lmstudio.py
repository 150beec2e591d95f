"""LM Studio provider implementation (local, OpenAI-compatible)."""

from __future__ import annotations

import logging

from llm_switchboard.providers.base import ProviderCapabilities
from llm_switchboard.providers.openai import OpenAIProvider
from llm_switchboard.types import ModelInfo


class LMStudioProvider(OpenAIProvider):
    """Local inference server; no credential is required."""

    provider_id = "lmstudio"
    display_name = "LM Studio"
    capabilities = ProviderCapabilities(
        streaming=True,
        function_calling=False,
        vision=True,
        reasoning=False,
        max_context_length=8192,
        supported_formats=("text", "image"),
    )
    pricing = {}
    default_config = {
        "base_url": "http://localhost:1234",
        "default_model": "google/gemma-3-4b",
        "timeout_s": 30.0,
    }
    requires_credential = False
    api_key_pattern = None
    reasoning_model_prefixes = ()
    include_stream_usage = False

    _logger = logging.getLogger(__name__)

    def build_auth_headers(self) -> dict[str, str]:
        if self.config.api_key:
            return {"Authorization": f"Bearer {self.config.api_key}"}
        return {}

    def _filter_models(self, models: list[ModelInfo]) -> list[ModelInfo]:
        # Whatever is loaded locally is usable.
        return models
