from __future__ import annotations

from typing import Any, Callable, List, Optional, Sequence, Union

import pytest

from screenpilot.src.agent.conversation import ConversationHistory
from screenpilot.src.llm.provider import TokenMetrics
from screenpilot.src.system.capture import ScreenCapture, Screenshot
from screenpilot.src.system.input import InputActionError, InputController


class FakeCapture(ScreenCapture):
    """Returns scripted frames; with none scripted every frame differs."""

    def __init__(self, frames: Optional[Sequence[Screenshot]] = None, errors: Optional[Sequence[Any]] = None):
        self.frames = list(frames or [])
        self.errors = list(errors or [])
        self.calls = 0
        self._counter = 0

    def capture(self) -> Screenshot:
        self.calls += 1
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        if self.frames:
            return self.frames.pop(0) if len(self.frames) > 1 else self.frames[0]
        self._counter += 1
        return Screenshot(width=1280, height=800, data=f"frame-{self._counter}")


class FakeController(InputController):
    def __init__(self, fail_times: int = 0):
        self.calls: List[tuple] = []
        self.fail_times = fail_times

    def _record(self, *call: Any) -> None:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise InputActionError(f"{call[0]} rejected")
        self.calls.append(call)

    def move(self, x, y):
        self._record("move", x, y)

    def click(self, x, y, button="left"):
        self._record("click", x, y, button)

    def double_click(self, x, y):
        self._record("double_click", x, y)

    def type_text(self, text):
        self._record("type", text)

    def key(self, name, modifiers=()):
        self._record("key", name, tuple(modifiers))

    def scroll(self, x, y, direction, amount):
        self._record("scroll", x, y, direction, amount)


Reply = Union[str, BaseException]


class FakeProvider:
    """Scripted provider; ``replies`` is a list or a function of the history."""

    name = "fake"

    def __init__(self, replies: Union[Sequence[Reply], Callable[[ConversationHistory], Reply]]):
        self.replies = replies if callable(replies) else list(replies)
        self.calls = 0
        self.seen_lengths: List[int] = []
        self.before_reply: Optional[Callable[[int], None]] = None

    async def send_history(self, history, screen_width, screen_height, on_chunk=None):
        self.calls += 1
        self.seen_lengths.append(len(history))
        if self.before_reply is not None:
            self.before_reply(self.calls)
        if callable(self.replies):
            reply = self.replies(history)
        else:
            reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        if on_chunk is not None:
            on_chunk(reply)
        return reply, TokenMetrics(input_tokens=10, output_tokens=5, duration=0.5)


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def fake_capture() -> FakeCapture:
    return FakeCapture()


@pytest.fixture
def fake_controller() -> FakeController:
    return FakeController()
