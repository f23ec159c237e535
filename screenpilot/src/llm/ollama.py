"""Ollama provider (local models)."""
from __future__ import annotations

from typing import Any, Dict, List

from screenpilot.src.llm.provider import LlmProvider, ProviderMessage
from screenpilot.src.llm.stream import NdjsonParser, StreamParser

IMAGE_PREAMBLE = "[Screenshot attached]"
IMAGE_SUFFIX = "Analyze the screenshot and respond with a single JSON action."
ENDPOINTS = ("chat", "generate")


class OllamaProvider(LlmProvider):
    """Talks to ``/api/chat`` or, with ``endpoint="generate"``, to ``/api/generate``.

    The generate endpoint takes the whole conversation as one prompt string
    with the screenshot passed out of band in ``images``.
    """

    name = "ollama"

    def __init__(self, host: str, model: str, *, endpoint: str = "chat", **kwargs: Any) -> None:
        super().__init__(model, **kwargs)
        if endpoint not in ENDPOINTS:
            raise ValueError(f"Unsupported Ollama endpoint: {endpoint}")
        self.host = host.rstrip("/")
        self.endpoint = endpoint

    def endpoint_url(self) -> str:
        return f"{self.host}/api/{self.endpoint}"

    def headers(self) -> Dict[str, str]:
        return {"content-type": "application/json"}

    def build_payload(self, system_prompt: str, messages: List[ProviderMessage]) -> Dict[str, Any]:
        if self.endpoint == "generate":
            return self._generate_payload(system_prompt, messages)

        wire: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        for message in messages:
            entry: Dict[str, Any] = {"role": message.role, "content": message.text}
            if message.image is not None:
                entry["content"] = f"{IMAGE_PREAMBLE}\n{message.text}\n\n{IMAGE_SUFFIX}"
                entry["images"] = [message.image.data]
            wire.append(entry)
        return {"model": self.model, "messages": wire, "stream": True}

    def _generate_payload(self, system_prompt: str, messages: List[ProviderMessage]) -> Dict[str, Any]:
        lines: List[str] = []
        images: List[str] = []
        for message in messages:
            speaker = "User" if message.role == "user" else "Assistant"
            lines.append(f"{speaker}: {message.text}")
            if message.image is not None:
                images = [message.image.data]
        lines.append(IMAGE_SUFFIX if images else "Respond with a single JSON action.")
        payload: Dict[str, Any] = {
            "model": self.model,
            "system": system_prompt,
            "prompt": "\n\n".join(lines),
            "stream": True,
        }
        if images:
            payload["images"] = images
        return payload

    def stream_parser(self) -> StreamParser:
        if self.endpoint == "generate":
            return NdjsonParser(text_path=("response",))
        return NdjsonParser()

    def list_models(self) -> List[str]:
        data = self._requests_get(f"{self.host}/api/tags")
        return [m.get("name", "") for m in data.get("models", []) if isinstance(m, dict) and m.get("name")]

    def health_check(self) -> bool:
        self._requests_get(f"{self.host}/api/tags")
        return True
