"""Bounded multi-turn conversation memory sent to the model."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from screenpilot.src.system.capture import Screenshot

MAX_HISTORY_LENGTH = 20


@dataclass(slots=True)
class UserMessage:
    instruction: str
    screenshot: Optional[Screenshot] = None
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    role: str = field(default="user", init=False)


@dataclass(slots=True)
class AssistantMessage:
    content: str
    role: str = field(default="assistant", init=False)


@dataclass(slots=True)
class ToolResultMessage:
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    role: str = field(default="tool_result", init=False)

    def as_text(self) -> str:
        if self.success:
            return f"Action result: success - {self.message or 'ok'}"
        return f"Action result: failed - {self.error or self.message or 'unknown error'}"


Message = Union[UserMessage, AssistantMessage, ToolResultMessage]


class ConversationHistory:
    """Ordered message log capped at ``max_length`` entries.

    The first message anchors the task for the model, so truncation always
    drops the oldest entry after it.
    """

    def __init__(self, max_length: int = MAX_HISTORY_LENGTH) -> None:
        if max_length < 2:
            raise ValueError("max_length must be at least 2")
        self.max_length = max_length
        self.messages: List[Message] = []
        self.original_instruction: Optional[str] = None
        self.iteration = 0
        self.max_iterations = 0

    def append(self, message: Message) -> None:
        self.messages.append(message)
        self._truncate_if_needed()

    def add_user_message(
        self,
        instruction: str,
        screenshot: Optional[Screenshot] = None,
        screen_width: Optional[int] = None,
        screen_height: Optional[int] = None,
    ) -> None:
        if screenshot is not None:
            screen_width = screen_width if screen_width is not None else screenshot.width
            screen_height = screen_height if screen_height is not None else screenshot.height
        self.append(UserMessage(instruction, screenshot, screen_width, screen_height))

    def add_assistant_message(self, content: str) -> None:
        self.append(AssistantMessage(content))

    def add_tool_result(self, success: bool, message: Optional[str] = None, error: Optional[str] = None) -> None:
        self.append(ToolResultMessage(success, message, error))

    def set_original_instruction(self, instruction: str) -> bool:
        """Record the task instruction once; later calls are ignored until ``clear``."""
        if self.original_instruction is not None:
            return False
        self.original_instruction = instruction
        return True

    def set_progress(self, iteration: int, max_iterations: int) -> None:
        self.iteration = iteration
        self.max_iterations = max_iterations

    def last_assistant_message(self) -> Optional[str]:
        for message in reversed(self.messages):
            if isinstance(message, AssistantMessage):
                return message.content
        return None

    def latest_screenshot(self) -> Optional[Screenshot]:
        for message in reversed(self.messages):
            if isinstance(message, UserMessage) and message.screenshot is not None:
                return message.screenshot
        return None

    def clear(self) -> None:
        self.messages.clear()
        self.original_instruction = None
        self.iteration = 0
        self.max_iterations = 0

    def __len__(self) -> int:
        return len(self.messages)

    def is_empty(self) -> bool:
        return not self.messages

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view without image payloads."""
        entries: List[Dict[str, Any]] = []
        for message in self.messages:
            if isinstance(message, UserMessage):
                entries.append(
                    {
                        "type": "user",
                        "instruction": message.instruction,
                        "has_screenshot": message.screenshot is not None,
                        "screen_width": message.screen_width,
                        "screen_height": message.screen_height,
                    }
                )
            elif isinstance(message, AssistantMessage):
                entries.append({"type": "assistant", "content": message.content})
            else:
                entries.append(
                    {
                        "type": "tool_result",
                        "success": message.success,
                        "message": message.message,
                        "error": message.error,
                    }
                )
        return {
            "original_instruction": self.original_instruction,
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "messages": entries,
        }

    def _truncate_if_needed(self) -> None:
        overflow = len(self.messages) - self.max_length
        if overflow > 0:
            del self.messages[1 : 1 + overflow]
