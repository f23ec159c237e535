"""Build the configured provider."""
from __future__ import annotations

from typing import Any, Optional

import httpx

from screenpilot.src.llm.anthropic import AnthropicProvider
from screenpilot.src.llm.errors import ProviderNotConfiguredError
from screenpilot.src.llm.ollama import OllamaProvider
from screenpilot.src.llm.openai_compatible import (
    GlmProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    OpenRouterProvider,
)
from screenpilot.src.llm.provider import LlmProvider
from screenpilot.src.utils.config import AppConfig

PROVIDER_NAMES = ("ollama", "anthropic", "openai", "openrouter", "glm", "openai-compatible")


def create_provider(
    config: AppConfig,
    name: Optional[str] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> LlmProvider:
    selected = (name or config.general.default_provider or "").strip().lower().replace("_", "-")
    common: dict[str, Any] = {
        "connect_timeout": float(config.general.connect_timeout_secs),
        "response_timeout": float(config.general.response_timeout_secs),
        "transport": transport,
    }

    if selected == "ollama":
        return OllamaProvider(config.ollama.host, config.ollama.model, endpoint=config.ollama.endpoint, **common)
    if selected == "anthropic":
        return AnthropicProvider(config.anthropic.api_key, config.anthropic.model, **common)
    if selected == "openai":
        return OpenAIProvider(config.openai.api_key, config.openai.model, **common)
    if selected == "openrouter":
        return OpenRouterProvider(config.openrouter.api_key, config.openrouter.model, **common)
    if selected == "glm":
        return GlmProvider(config.glm.api_key, config.glm.model, **common)
    if selected == "openai-compatible":
        compat = config.openai_compatible
        return OpenAICompatibleProvider(compat.base_url, compat.model, api_key=compat.api_key, **common)

    if not selected:
        raise ProviderNotConfiguredError("No provider selected (SCREENPILOT_PROVIDER)")
    raise ProviderNotConfiguredError(
        f"Unknown provider '{selected}'. Choose one of: {', '.join(PROVIDER_NAMES)}"
    )
