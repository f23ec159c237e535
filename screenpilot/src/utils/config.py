"""Configuration helpers for screenpilot services."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

MIN_SPEED_MULTIPLIER = 0.25
MAX_SPEED_MULTIPLIER = 3.0


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return value.strip() if value and value.strip() else default


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(slots=True)
class GeneralConfig:
    """Loop, queue and retry settings."""

    default_provider: str = field(default_factory=lambda: _env_str("SCREENPILOT_PROVIDER", "ollama"))
    max_iterations: int = field(default_factory=lambda: _env_int("SCREENPILOT_MAX_ITERATIONS", 50))
    confirm_dangerous_actions: bool = field(
        default_factory=lambda: _env_bool("SCREENPILOT_CONFIRM_DANGEROUS", True)
    )
    queue_failure_mode: str = field(default_factory=lambda: _env_str("SCREENPILOT_QUEUE_FAILURE_MODE", "stop"))
    queue_delay_ms: int = field(default_factory=lambda: _env_int("SCREENPILOT_QUEUE_DELAY_MS", 500))
    preview_mode: bool = field(default_factory=lambda: _env_bool("SCREENPILOT_PREVIEW_MODE", False))
    max_retries: int = field(default_factory=lambda: _env_int("SCREENPILOT_MAX_RETRIES", 3))
    retry_delay_ms: int = field(default_factory=lambda: _env_int("SCREENPILOT_RETRY_DELAY_MS", 1000))
    enable_self_correction: bool = field(
        default_factory=lambda: _env_bool("SCREENPILOT_SELF_CORRECTION", True)
    )
    speed_multiplier: float = field(default_factory=lambda: _env_float("SCREENPILOT_SPEED", 1.0))
    connect_timeout_secs: int = field(default_factory=lambda: _env_int("SCREENPILOT_CONNECT_TIMEOUT", 30))
    response_timeout_secs: int = field(default_factory=lambda: _env_int("SCREENPILOT_RESPONSE_TIMEOUT", 300))
    confirmation_timeout_secs: Optional[float] = None

    def __post_init__(self) -> None:
        self.speed_multiplier = min(max(self.speed_multiplier, MIN_SPEED_MULTIPLIER), MAX_SPEED_MULTIPLIER)
        self.max_iterations = max(1, self.max_iterations)
        self.max_retries = max(0, self.max_retries)
        if self.confirmation_timeout_secs is None:
            raw = _env_optional("SCREENPILOT_CONFIRMATION_TIMEOUT")
            if raw:
                try:
                    self.confirmation_timeout_secs = float(raw)
                except ValueError:
                    self.confirmation_timeout_secs = None


@dataclass(slots=True)
class OllamaConfig:
    host: str = field(default_factory=lambda: _env_str("OLLAMA_HOST", "http://localhost:11434"))
    model: str = field(default_factory=lambda: _env_str("OLLAMA_MODEL", "llava"))
    endpoint: str = field(default_factory=lambda: _env_str("OLLAMA_ENDPOINT", "chat"))


@dataclass(slots=True)
class AnthropicConfig:
    api_key: Optional[str] = field(default_factory=lambda: _env_optional("ANTHROPIC_API_KEY"))
    model: str = field(default_factory=lambda: _env_str("ANTHROPIC_MODEL", "claude-sonnet-4-20250514"))


@dataclass(slots=True)
class OpenAIConfig:
    api_key: Optional[str] = field(default_factory=lambda: _env_optional("OPENAI_API_KEY"))
    model: str = field(default_factory=lambda: _env_str("OPENAI_MODEL", "gpt-4o"))


@dataclass(slots=True)
class OpenRouterConfig:
    api_key: Optional[str] = field(default_factory=lambda: _env_optional("OPENROUTER_API_KEY"))
    model: str = field(default_factory=lambda: _env_str("OPENROUTER_MODEL", "anthropic/claude-sonnet-4"))


@dataclass(slots=True)
class GlmConfig:
    api_key: Optional[str] = field(default_factory=lambda: _env_optional("GLM_API_KEY"))
    model: str = field(default_factory=lambda: _env_str("GLM_MODEL", "glm-4.5v"))


@dataclass(slots=True)
class OpenAICompatibleConfig:
    """Any server speaking the chat-completions wire format (LM Studio, vLLM, ...)."""

    base_url: Optional[str] = field(default_factory=lambda: _env_optional("OPENAI_COMPATIBLE_BASE_URL"))
    api_key: Optional[str] = field(default_factory=lambda: _env_optional("OPENAI_COMPATIBLE_API_KEY"))
    model: str = field(default_factory=lambda: _env_str("OPENAI_COMPATIBLE_MODEL", "default"))


@dataclass(slots=True)
class AppConfig:
    """Aggregated configuration for the agent loop and its providers."""

    general: GeneralConfig = field(default_factory=GeneralConfig)
    ollama: OllamaConfig = field(default_factory=OllamaConfig)
    anthropic: AnthropicConfig = field(default_factory=AnthropicConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    openrouter: OpenRouterConfig = field(default_factory=OpenRouterConfig)
    glm: GlmConfig = field(default_factory=GlmConfig)
    openai_compatible: OpenAICompatibleConfig = field(default_factory=OpenAICompatibleConfig)

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls()


CONFIG = AppConfig()
