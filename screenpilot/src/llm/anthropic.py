"""Anthropic Messages API provider."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from screenpilot.src.llm.errors import ProviderNotConfiguredError
from screenpilot.src.llm.provider import LlmProvider, ProviderMessage
from screenpilot.src.llm.stream import AnthropicSseParser, StreamParser

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider(LlmProvider):
    name = "anthropic"

    def __init__(self, api_key: Optional[str], model: str, *, api_url: str = ANTHROPIC_API_URL, **kwargs: Any) -> None:
        if not api_key:
            raise ProviderNotConfiguredError("Anthropic API key is not configured (ANTHROPIC_API_KEY)")
        super().__init__(model, **kwargs)
        self.api_key = api_key
        self.api_url = api_url

    def endpoint_url(self) -> str:
        return self.api_url

    def headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def build_payload(self, system_prompt: str, messages: List[ProviderMessage]) -> Dict[str, Any]:
        wire: List[Dict[str, Any]] = []
        for message in messages:
            blocks: List[Dict[str, Any]] = []
            if message.image is not None:
                blocks.append(
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": message.image.media_type,
                            "data": message.image.data,
                        },
                    }
                )
            blocks.append({"type": "text", "text": message.text})
            wire.append({"role": message.role, "content": blocks})
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system_prompt,
            "messages": wire,
            "stream": True,
        }

    def stream_parser(self) -> StreamParser:
        return AnthropicSseParser()
