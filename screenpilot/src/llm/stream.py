"""Incremental decoding of streamed model replies.

Bytes arrive in arbitrary network chunks. :class:`RecordBuffer` turns them
into complete delimiter-terminated records, a :class:`StreamParser` turns each
record into a :class:`StreamDelta`, and :class:`StreamAccumulator` folds the
deltas into the aggregate text and usage snapshot.
"""
from __future__ import annotations

import codecs
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from screenpilot.src.llm.errors import LlmApiError, LlmParseError

ChunkCallback = Callable[[str], None]

SSE_DATA_PREFIX = "data:"
SSE_DONE_SENTINEL = "[DONE]"


class RecordBuffer:
    """Growable text buffer that yields complete records and keeps the tail.

    CRLF line endings are folded to LF before framing.
    """

    def __init__(self, delimiter: str = "\n") -> None:
        if not delimiter:
            raise ValueError("delimiter must not be empty")
        self.delimiter = delimiter
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer = (self._buffer + self._decoder.decode(chunk)).replace("\r\n", "\n")
        return self._drain()

    def flush(self) -> List[str]:
        """Finish decoding and return any trailing partial record."""
        self._buffer = (self._buffer + self._decoder.decode(b"", final=True)).replace("\r\n", "\n")
        records = self._drain()
        tail, self._buffer = self._buffer, ""
        if tail.strip():
            records.append(tail)
        return records

    @property
    def pending(self) -> str:
        return self._buffer

    def _drain(self) -> List[str]:
        records: List[str] = []
        while True:
            index = self._buffer.find(self.delimiter)
            if index < 0:
                break
            records.append(self._buffer[:index])
            self._buffer = self._buffer[index + len(self.delimiter) :]
        return records


@dataclass(slots=True)
class StreamDelta:
    text: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    done: bool = False


class StreamParser(ABC):
    """Maps one framed record to a delta; framing is chosen by ``delimiter``."""

    delimiter = "\n"

    @abstractmethod
    def parse_record(self, record: str) -> Optional[StreamDelta]:
        raise NotImplementedError

    @staticmethod
    def _load(payload: str) -> Dict[str, Any]:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise LlmParseError(f"Malformed stream record: {exc} in {payload[:200]!r}") from exc
        if not isinstance(data, dict):
            raise LlmParseError(f"Unexpected stream record: {payload[:200]!r}")
        return data


class NdjsonParser(StreamParser):
    """Ollama-style newline-delimited JSON with an explicit ``done`` flag."""

    def __init__(self, text_path: tuple[str, ...] = ("message", "content")) -> None:
        self.text_path = text_path

    def parse_record(self, record: str) -> Optional[StreamDelta]:
        line = record.strip()
        if not line:
            return None
        data = self._load(line)
        if data.get("error"):
            raise LlmApiError(str(data["error"]))

        node: Any = data
        for key in self.text_path:
            node = node.get(key) if isinstance(node, dict) else None
        delta = StreamDelta(text=node if isinstance(node, str) and node else None)
        if data.get("done"):
            delta.done = True
            delta.input_tokens = data.get("prompt_eval_count")
            delta.output_tokens = data.get("eval_count")
        return delta


def _sse_data(line: str) -> Optional[str]:
    if not line.startswith(SSE_DATA_PREFIX):
        return None
    return line[len(SSE_DATA_PREFIX) :].strip()


class ChatCompletionsSseParser(StreamParser):
    """``data: <json>`` lines terminated by the ``[DONE]`` sentinel."""

    def parse_record(self, record: str) -> Optional[StreamDelta]:
        payload = _sse_data(record.strip())
        if payload is None or not payload:
            return None
        if payload == SSE_DONE_SENTINEL:
            return StreamDelta(done=True)
        data = self._load(payload)
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise LlmApiError(message or "stream error")

        parts: List[str] = []
        for choice in data.get("choices") or []:
            content = (choice.get("delta") or {}).get("content")
            if isinstance(content, str) and content:
                parts.append(content)
        delta = StreamDelta(text="".join(parts) or None)
        usage = data.get("usage")
        if isinstance(usage, dict):
            delta.input_tokens = usage.get("prompt_tokens")
            delta.output_tokens = usage.get("completion_tokens")
        return delta


class AnthropicSseParser(StreamParser):
    """Blank-line-terminated events ending with ``message_stop``."""

    delimiter = "\n\n"

    def parse_record(self, record: str) -> Optional[StreamDelta]:
        payloads = [p for p in (_sse_data(line.strip()) for line in record.splitlines()) if p]
        if not payloads:
            return None
        data = self._load("\n".join(payloads))
        event_type = data.get("type")

        if event_type == "message_start":
            usage = (data.get("message") or {}).get("usage") or {}
            return StreamDelta(input_tokens=usage.get("input_tokens"))
        if event_type == "content_block_delta":
            text = (data.get("delta") or {}).get("text")
            return StreamDelta(text=text or None)
        if event_type == "message_delta":
            usage = data.get("usage") or {}
            return StreamDelta(output_tokens=usage.get("output_tokens"))
        if event_type == "message_stop":
            return StreamDelta(done=True)
        if event_type == "error":
            error = data.get("error") or {}
            raise LlmApiError(f"{error.get('type', 'error')}: {error.get('message', '')}")
        return None


@dataclass(slots=True)
class StreamAccumulator:
    """Folds deltas into the aggregate reply, forwarding text to ``on_chunk``.

    Usage values are cumulative snapshots, so later values replace earlier ones.
    """

    parser: StreamParser
    on_chunk: Optional[ChunkCallback] = None
    parts: List[str] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    done: bool = False
    _buffer: RecordBuffer = field(init=False)

    def __post_init__(self) -> None:
        self._buffer = RecordBuffer(self.parser.delimiter)

    def feed(self, chunk: bytes) -> None:
        for record in self._buffer.feed(chunk):
            self._apply(record)

    def finish(self) -> str:
        for record in self._buffer.flush():
            self._apply(record)
        return self.text

    @property
    def text(self) -> str:
        return "".join(self.parts)

    def _apply(self, record: str) -> None:
        delta = self.parser.parse_record(record)
        if delta is None:
            return
        if delta.text:
            self.parts.append(delta.text)
            if self.on_chunk is not None:
                self.on_chunk(delta.text)
        if delta.input_tokens is not None:
            self.input_tokens = int(delta.input_tokens)
        if delta.output_tokens is not None:
            self.output_tokens = int(delta.output_tokens)
        if delta.done:
            self.done = True
