import asyncio
import json

import httpx
import pytest

from screenpilot.src.agent.conversation import ConversationHistory
from screenpilot.src.llm.anthropic import AnthropicProvider
from screenpilot.src.llm.errors import LlmApiError, LlmRequestError, ProviderNotConfiguredError
from screenpilot.src.llm.factory import create_provider
from screenpilot.src.llm.ollama import OllamaProvider
from screenpilot.src.llm.openai_compatible import GlmProvider, OpenAICompatibleProvider, OpenAIProvider
from screenpilot.src.llm.provider import OMITTED_SCREENSHOT_NOTE, build_system_prompt, history_to_messages
from screenpilot.src.system.capture import Screenshot
from screenpilot.src.utils.config import AppConfig

SHOT_1 = Screenshot(width=1280, height=800, data="b64-one")
SHOT_2 = Screenshot(width=1280, height=800, data="b64-two")


def _history():
    history = ConversationHistory()
    history.set_original_instruction("open notes")
    history.add_user_message("open notes", SHOT_1)
    history.add_assistant_message('{"action": "click", "x": 1, "y": 2}')
    history.add_tool_result(True, message="Clicked left at (1, 2)")
    history.add_user_message("continue", SHOT_2)
    history.set_progress(2, 10)
    return history


class _Recorder:
    def __init__(self, body: bytes, status: int = 200):
        self.body = body
        self.status = status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, content=self.body)

    @property
    def payload(self):
        return json.loads(self.requests[-1].content)


def _send(provider, history=None, chunks=None):
    return asyncio.run(
        provider.send_history(history or _history(), 1280, 800, chunks.append if chunks is not None else None)
    )


class TestRequestFraming:
    def test_system_prompt_lists_grammar(self):
        prompt = build_system_prompt(1920, 1080)
        assert "Screen dimensions: 1920x1080 pixels" in prompt
        for kind in ("click", "double_click", "move", "type", "key", "scroll", "complete", "error"):
            assert f'"action": "{kind}"' in prompt

    def test_history_rolls_up_alternating_turns(self):
        messages = history_to_messages(_history())
        assert [m.role for m in messages] == ["user", "assistant", "user"]
        assert messages[0].image is None
        assert messages[0].text.startswith(OMITTED_SCREENSHOT_NOTE)
        # tool result merged into the latest user turn, which carries the newest image
        assert messages[2].image is SHOT_2
        assert "Action result: success - Clicked left at (1, 2)" in messages[2].text
        assert "(Iteration 2 of 10)" in messages[2].text


def test_anthropic_request_and_stream():
    events = [
        {"type": "message_start", "message": {"usage": {"input_tokens": 321}}},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": '{"action": "complete",'}},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": ' "message": "ok"}'}},
        {"type": "message_delta", "usage": {"output_tokens": 12}},
        {"type": "message_stop"},
    ]
    body = "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events).encode()
    recorder = _Recorder(body)
    provider = AnthropicProvider("sk-test", "claude-test", transport=httpx.MockTransport(recorder))

    chunks = []
    text, metrics = _send(provider, chunks=chunks)

    request = recorder.requests[0]
    assert str(request.url) == "https://api.anthropic.com/v1/messages"
    assert request.headers["x-api-key"] == "sk-test"
    assert request.headers["anthropic-version"] == "2023-06-01"
    payload = recorder.payload
    assert payload["stream"] is True
    assert "Screen dimensions: 1280x800" in payload["system"]
    last = payload["messages"][-1]["content"]
    assert last[0] == {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "b64-two"}}
    assert last[1]["type"] == "text"

    assert text == '{"action": "complete", "message": "ok"}'
    assert chunks == ['{"action": "complete",', ' "message": "ok"}']
    assert (metrics.input_tokens, metrics.output_tokens) == (321, 12)


def test_openai_compatible_request_shape():
    body = (
        'data: {"choices": [{"delta": {"content": "{}"}}]}\n\n'
        'data: {"choices": [], "usage": {"prompt_tokens": 8, "completion_tokens": 2}}\n\n'
        "data: [DONE]\n\n"
    ).encode()
    recorder = _Recorder(body)
    provider = OpenAICompatibleProvider(
        "http://localhost:1234/", "local", api_key="k", transport=httpx.MockTransport(recorder)
    )

    text, metrics = _send(provider)

    request = recorder.requests[0]
    assert str(request.url) == "http://localhost:1234/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer k"
    payload = recorder.payload
    assert payload["messages"][0]["role"] == "system"
    image_part, text_part = payload["messages"][-1]["content"]
    assert image_part["image_url"]["url"] == "data:image/png;base64,b64-two"
    assert text_part["text"].startswith("User instruction: ")
    assert "stream_options" not in payload
    assert text == "{}"
    assert metrics.output_tokens == 2


def test_hosted_variants_require_keys_and_request_usage():
    with pytest.raises(ProviderNotConfiguredError):
        OpenAIProvider(None, "gpt")
    glm = GlmProvider("key", "glm-4.5v")
    assert glm.endpoint_url().endswith("/v4/chat/completions")
    assert glm.build_payload("sys", [])["stream_options"] == {"include_usage": True}


def test_error_status_carries_body():
    recorder = _Recorder(b'{"error": "rate limited"}', status=429)
    provider = OpenAICompatibleProvider("http://x", "m", transport=httpx.MockTransport(recorder))

    with pytest.raises(LlmApiError) as info:
        _send(provider)
    assert info.value.status_code == 429
    assert "rate limited" in str(info.value)


def test_connect_failure_is_request_error():
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    provider = OllamaProvider("http://localhost:11434", "llava", transport=httpx.MockTransport(refuse))
    with pytest.raises(LlmRequestError) as info:
        _send(provider)
    assert info.value.connect


def test_ollama_chat_and_generate():
    chat_body = (
        b'{"message": {"content": "{\\"action\\": "}, "done": false}\n'
        b'{"message": {"content": "\\"move\\", \\"x\\": 1, \\"y\\": 1}"}, "done": false}\n'
        b'{"message": {"content": ""}, "done": true, "eval_count": 6, "prompt_eval_count": 50}\n'
    )
    recorder = _Recorder(chat_body)
    provider = OllamaProvider("http://localhost:11434/", "llava", transport=httpx.MockTransport(recorder))
    text, metrics = _send(provider)

    assert str(recorder.requests[0].url) == "http://localhost:11434/api/chat"
    messages = recorder.payload["messages"]
    assert messages[0]["role"] == "system"
    assert messages[-1]["images"] == ["b64-two"]
    assert messages[-1]["content"].startswith("[Screenshot attached]")
    assert text == '{"action": "move", "x": 1, "y": 1}'
    assert (metrics.input_tokens, metrics.output_tokens) == (50, 6)

    gen_body = b'{"response": "{}", "done": false}\n{"response": "", "done": true, "eval_count": 1}\n'
    recorder = _Recorder(gen_body)
    provider = OllamaProvider("http://h", "llava", endpoint="generate", transport=httpx.MockTransport(recorder))
    text, _ = _send(provider)

    payload = recorder.payload
    assert str(recorder.requests[0].url) == "http://h/api/generate"
    assert payload["images"] == ["b64-two"]
    assert "User: " in payload["prompt"] and "Assistant: " in payload["prompt"]
    assert "b64" not in payload["prompt"]
    assert text == "{}"


def test_ollama_list_models(monkeypatch):
    class _Resp:
        status_code = 200
        text = ""

        def json(self):
            return {"models": [{"name": "llava:latest"}, {"name": "qwen2.5vl"}]}

    calls = []

    def fake_get(url, headers=None, timeout=None):
        calls.append(url)
        return _Resp()

    monkeypatch.setattr("screenpilot.src.llm.provider.requests.get", fake_get)
    provider = OllamaProvider("http://localhost:11434", "llava")
    assert provider.list_models() == ["llava:latest", "qwen2.5vl"]
    assert provider.health_check()
    assert calls[0] == "http://localhost:11434/api/tags"


class TestFactory:
    def test_selects_by_name(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "abc")
        config = AppConfig.from_env()
        assert isinstance(create_provider(config, "ollama"), OllamaProvider)
        assert isinstance(create_provider(config, "anthropic"), AnthropicProvider)

    def test_missing_credentials(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.delenv("OPENAI_COMPATIBLE_BASE_URL", raising=False)
        config = AppConfig.from_env()
        with pytest.raises(ProviderNotConfiguredError):
            create_provider(config, "anthropic")
        with pytest.raises(ProviderNotConfiguredError):
            create_provider(config, "openai_compatible")

    def test_unknown_provider(self):
        with pytest.raises(ProviderNotConfiguredError, match="Unknown provider"):
            create_provider(AppConfig.from_env(), "mystery")
