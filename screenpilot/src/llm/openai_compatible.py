"""Chat-completions providers: OpenAI, OpenRouter, GLM and self-hosted servers."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from screenpilot.src.llm.errors import ProviderNotConfiguredError
from screenpilot.src.llm.provider import LlmProvider, ProviderMessage
from screenpilot.src.llm.stream import ChatCompletionsSseParser, StreamParser

INSTRUCTION_SUFFIX = "Analyze the screenshot and respond with a single JSON action."


class OpenAICompatibleProvider(LlmProvider):
    name = "openai-compatible"
    chat_path = "/v1/chat/completions"
    models_path = "/v1/models"
    include_usage = False

    def __init__(
        self,
        base_url: Optional[str],
        model: str,
        *,
        api_key: Optional[str] = None,
        temperature: Optional[float] = None,
        **kwargs: Any,
    ) -> None:
        if not base_url:
            raise ProviderNotConfiguredError(f"{self.name} base URL is not configured")
        super().__init__(model, **kwargs)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature

    def endpoint_url(self) -> str:
        return f"{self.base_url}{self.chat_path}"

    def headers(self) -> Dict[str, str]:
        headers = {"content-type": "application/json"}
        if self.api_key:
            headers["authorization"] = f"Bearer {self.api_key}"
        return headers

    def build_payload(self, system_prompt: str, messages: List[ProviderMessage]) -> Dict[str, Any]:
        wire: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        for message in messages:
            if message.image is None:
                wire.append({"role": message.role, "content": message.text})
                continue
            image = message.image
            wire.append(
                {
                    "role": message.role,
                    "content": [
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{image.media_type};base64,{image.data}"},
                        },
                        {"type": "text", "text": f"User instruction: {message.text}\n\n{INSTRUCTION_SUFFIX}"},
                    ],
                }
            )
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": wire,
            "max_tokens": self.max_tokens,
            "stream": True,
        }
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.include_usage:
            payload["stream_options"] = {"include_usage": True}
        return payload

    def stream_parser(self) -> StreamParser:
        return ChatCompletionsSseParser()

    def list_models(self) -> List[str]:
        headers = {"authorization": f"Bearer {self.api_key}"} if self.api_key else None
        data = self._requests_get(f"{self.base_url}{self.models_path}", headers)
        return [m.get("id", "") for m in data.get("data", []) if isinstance(m, dict) and m.get("id")]


class _HostedChatProvider(OpenAICompatibleProvider):
    base_url_default = ""
    env_key = ""

    def __init__(self, api_key: Optional[str], model: str, **kwargs: Any) -> None:
        if not api_key:
            raise ProviderNotConfiguredError(f"{self.name} API key is not configured ({self.env_key})")
        kwargs.setdefault("base_url", self.base_url_default)
        super().__init__(model=model, api_key=api_key, **kwargs)


class OpenAIProvider(_HostedChatProvider):
    name = "openai"
    base_url_default = "https://api.openai.com"
    env_key = "OPENAI_API_KEY"
    include_usage = True


class OpenRouterProvider(_HostedChatProvider):
    name = "openrouter"
    base_url_default = "https://openrouter.ai/api"
    env_key = "OPENROUTER_API_KEY"


class GlmProvider(_HostedChatProvider):
    name = "glm"
    base_url_default = "https://open.bigmodel.cn/api/paas"
    chat_path = "/v4/chat/completions"
    models_path = "/v4/models"
    env_key = "GLM_API_KEY"
    include_usage = True
