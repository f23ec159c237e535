"""Language-model backends behind one streaming interface."""

from screenpilot.src.llm.anthropic import AnthropicProvider
from screenpilot.src.llm.errors import (
    LlmApiError,
    LlmError,
    LlmParseError,
    LlmRequestError,
    LlmStreamError,
    ProviderNotConfiguredError,
)
from screenpilot.src.llm.factory import PROVIDER_NAMES, create_provider
from screenpilot.src.llm.ollama import OllamaProvider
from screenpilot.src.llm.openai_compatible import (
    GlmProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    OpenRouterProvider,
)
from screenpilot.src.llm.provider import LlmProvider, TokenMetrics, build_system_prompt

__all__ = [
    "AnthropicProvider",
    "GlmProvider",
    "LlmApiError",
    "LlmError",
    "LlmParseError",
    "LlmProvider",
    "LlmRequestError",
    "LlmStreamError",
    "OllamaProvider",
    "OpenAICompatibleProvider",
    "OpenAIProvider",
    "OpenRouterProvider",
    "PROVIDER_NAMES",
    "ProviderNotConfiguredError",
    "TokenMetrics",
    "build_system_prompt",
    "create_provider",
]
