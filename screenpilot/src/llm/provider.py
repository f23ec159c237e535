"""Provider-agnostic request building and the streaming HTTP call."""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
import requests

from screenpilot.src.agent.conversation import (
    AssistantMessage,
    ConversationHistory,
    ToolResultMessage,
    UserMessage,
)
from screenpilot.src.llm.errors import (
    LlmApiError,
    LlmRequestError,
    LlmStreamError,
)
from screenpilot.src.llm.stream import ChunkCallback, StreamAccumulator, StreamParser
from screenpilot.src.system.capture import Screenshot

DEFAULT_MAX_TOKENS = 1024
OMITTED_SCREENSHOT_NOTE = "[Earlier screenshot omitted]"


@dataclass(slots=True)
class TokenMetrics:
    input_tokens: int = 0
    output_tokens: int = 0
    duration: float = 0.0

    @property
    def tokens_per_second(self) -> float:
        if self.duration <= 0:
            return 0.0
        return self.output_tokens / self.duration


@dataclass(slots=True)
class ProviderMessage:
    """One rolled-up turn: role is ``user`` or ``assistant``."""

    role: str
    text: str
    image: Optional[Screenshot] = None


def build_system_prompt(screen_width: int, screen_height: int) -> str:
    return f"""You are a computer use agent that operates a desktop through mouse and keyboard actions.
You see the current screen as a screenshot and answer with exactly one action.

Screen dimensions: {screen_width}x{screen_height} pixels.
Coordinates are absolute pixels with (0, 0) at the top-left corner.

Available actions (respond with one JSON object):
- click: {{"action": "click", "x": 100, "y": 200, "button": "left"}}  button is left, right or middle
- double_click: {{"action": "double_click", "x": 100, "y": 200}}
- move: {{"action": "move", "x": 100, "y": 200}}
- type: {{"action": "type", "text": "hello world"}}
- key: {{"action": "key", "key": "enter", "modifiers": ["ctrl"]}}  modifiers from ctrl, alt, shift, meta
- scroll: {{"action": "scroll", "x": 500, "y": 400, "direction": "down", "amount": 3}}  direction is up, down, left or right
- complete: {{"action": "complete", "message": "what was accomplished"}}
- error: {{"action": "error", "message": "why the task cannot be done"}}

Guidelines:
- Look at the screenshot carefully before acting and target the center of elements.
- Click a text field before typing into it.
- Use key actions for shortcuts and special keys such as enter, tab and escape.
- After each action you receive the result and a new screenshot; check that the action worked.
- Use complete as soon as the task is done and error if it cannot be done.

Respond with ONLY the JSON action, no other text."""


def _user_text(message: UserMessage, history: ConversationHistory, is_latest: bool) -> str:
    text = message.instruction
    if is_latest and history.max_iterations:
        text = f"{text}\n\n(Iteration {history.iteration} of {history.max_iterations})"
    if message.screenshot is not None and not is_latest:
        text = f"{OMITTED_SCREENSHOT_NOTE}\n{text}"
    return text


def history_to_messages(history: ConversationHistory) -> List[ProviderMessage]:
    """Roll the conversation into alternating user/assistant turns.

    Tool results become user turns; consecutive same-role turns are merged.
    Only the most recent screenshot is attached.
    """
    latest_index = -1
    for index, message in enumerate(history.messages):
        if isinstance(message, UserMessage) and message.screenshot is not None:
            latest_index = index

    rolled: List[ProviderMessage] = []
    for index, message in enumerate(history.messages):
        if isinstance(message, UserMessage):
            is_latest = index == latest_index
            turn = ProviderMessage("user", _user_text(message, history, is_latest), message.screenshot if is_latest else None)
        elif isinstance(message, AssistantMessage):
            turn = ProviderMessage("assistant", message.content)
        elif isinstance(message, ToolResultMessage):
            turn = ProviderMessage("user", message.as_text())
        else:
            continue

        if rolled and rolled[-1].role == turn.role:
            previous = rolled[-1]
            previous.text = f"{previous.text}\n\n{turn.text}"
            if turn.image is not None:
                previous.image = turn.image
        else:
            rolled.append(turn)
    return rolled


class LlmProvider(ABC):
    """Capability interface implemented once per backend."""

    name = "provider"

    def __init__(
        self,
        model: str,
        *,
        connect_timeout: float = 30.0,
        response_timeout: float = 300.0,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.model = model
        self.connect_timeout = connect_timeout
        self.response_timeout = response_timeout
        self.max_tokens = max_tokens
        self._transport = transport

    async def send_history(
        self,
        history: ConversationHistory,
        screen_width: int,
        screen_height: int,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> tuple[str, TokenMetrics]:
        """Stream one reply for ``history``; returns the aggregate text and usage."""
        system_prompt = build_system_prompt(screen_width, screen_height)
        messages = history_to_messages(history)
        url = self.endpoint_url()
        payload = self.build_payload(system_prompt, messages)
        started = time.monotonic()
        accumulator = StreamAccumulator(self.stream_parser(), on_chunk)
        await self._stream_post(url, self.headers(), payload, accumulator)
        text = accumulator.finish()
        metrics = TokenMetrics(
            input_tokens=accumulator.input_tokens,
            output_tokens=accumulator.output_tokens,
            duration=time.monotonic() - started,
        )
        return text, metrics

    @abstractmethod
    def endpoint_url(self) -> str: ...

    @abstractmethod
    def headers(self) -> Dict[str, str]: ...

    @abstractmethod
    def build_payload(self, system_prompt: str, messages: List[ProviderMessage]) -> Dict[str, Any]: ...

    @abstractmethod
    def stream_parser(self) -> StreamParser: ...

    def health_check(self) -> bool:
        return bool(self.list_models())

    def list_models(self) -> List[str]:
        return [self.model]

    # ------------------------------------------------------------------
    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.response_timeout, connect=self.connect_timeout)

    def _requests_get(self, url: str, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            response = requests.get(url, headers=headers or {}, timeout=self.connect_timeout)
        except requests.Timeout as exc:
            raise LlmRequestError(f"Request to {url} timed out", timeout=True) from exc
        except requests.ConnectionError as exc:
            raise LlmRequestError(f"Cannot connect to {url}: {exc}", connect=True) from exc
        except requests.RequestException as exc:
            raise LlmRequestError(f"Request to {url} failed: {exc}") from exc
        if response.status_code >= 400:
            raise LlmApiError(response.text[:500], status_code=response.status_code)
        try:
            return response.json()
        except ValueError as exc:
            raise LlmApiError(f"Invalid JSON from {url}") from exc

    async def _stream_post(
        self,
        url: str,
        headers: Dict[str, str],
        payload: Dict[str, Any],
        accumulator: StreamAccumulator,
    ) -> None:
        client_kwargs: Dict[str, Any] = {"timeout": self._timeout()}
        if self._transport is not None:
            client_kwargs["transport"] = self._transport
        try:
            async with httpx.AsyncClient(**client_kwargs) as client:
                async with client.stream("POST", url, json=payload, headers=headers) as response:
                    if response.status_code >= 400:
                        body = await response.aread()
                        raise LlmApiError(
                            body.decode("utf-8", errors="replace")[:2000] or response.reason_phrase,
                            status_code=response.status_code,
                        )
                    async for chunk in response.aiter_bytes():
                        accumulator.feed(chunk)
        except httpx.TimeoutException as exc:
            raise LlmRequestError(f"{self.name} request timed out: {exc}", timeout=True) from exc
        except httpx.ConnectError as exc:
            raise LlmRequestError(f"Cannot connect to {self.name}: {exc}", connect=True) from exc
        except (httpx.StreamError, httpx.RemoteProtocolError, httpx.ReadError) as exc:
            raise LlmStreamError(f"{self.name} stream failed: {exc}") from exc
        except httpx.HTTPError as exc:
            raise LlmRequestError(f"{self.name} request failed: {exc}") from exc
