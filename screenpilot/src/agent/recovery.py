"""Provider-call retry: error classification and exponential backoff."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from screenpilot.src.llm.errors import (
    LlmApiError,
    LlmError,
    LlmParseError,
    LlmRequestError,
    LlmStreamError,
    ProviderNotConfiguredError,
)
from screenpilot.src.system.capture import CaptureError, NoDisplaysError

T = TypeVar("T")

RATE_LIMIT_WAIT_SECONDS = 30.0
RATE_LIMIT_MESSAGE_WAIT_SECONDS = 60.0
OVERLOADED_WAIT_SECONDS = 30.0


class ErrorKind(str, Enum):
    RETRYABLE = "retryable"
    RATE_LIMITED = "rate_limited"
    FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class ErrorClassification:
    kind: ErrorKind
    wait_seconds: float = 0.0

    @classmethod
    def retryable(cls) -> "ErrorClassification":
        return cls(ErrorKind.RETRYABLE)

    @classmethod
    def rate_limited(cls, wait_seconds: float) -> "ErrorClassification":
        return cls(ErrorKind.RATE_LIMITED, wait_seconds)

    @classmethod
    def fatal(cls) -> "ErrorClassification":
        return cls(ErrorKind.FATAL)

    @property
    def is_fatal(self) -> bool:
        return self.kind == ErrorKind.FATAL


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 0.5
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0

    @classmethod
    def for_llm_calls(cls) -> "RetryPolicy":
        return cls(max_retries=3, initial_delay=1.0, max_delay=60.0, backoff_multiplier=2.0)

    @classmethod
    def for_screenshots(cls) -> "RetryPolicy":
        return cls(max_retries=3, initial_delay=0.2, max_delay=2.0, backoff_multiplier=1.5)

    def delay_for_attempt(self, attempt: int) -> float:
        """Seconds to wait before ``attempt``; attempt 0 is the first try."""
        if attempt <= 0:
            return 0.0
        try:
            delay = self.initial_delay * (self.backoff_multiplier ** (attempt - 1))
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)


def _contains(text: str, *needles: str) -> bool:
    return any(needle in text for needle in needles)


def classify_llm_error(error: BaseException) -> ErrorClassification:
    if isinstance(error, ProviderNotConfiguredError):
        return ErrorClassification.fatal()
    if isinstance(error, LlmRequestError):
        return ErrorClassification.retryable()
    if isinstance(error, (LlmParseError, LlmStreamError)):
        return ErrorClassification.retryable()
    if isinstance(error, LlmApiError):
        status = error.status_code
        if status is not None:
            if status == 429:
                return ErrorClassification.rate_limited(RATE_LIMIT_WAIT_SECONDS)
            if 500 <= status < 600:
                return ErrorClassification.retryable()
            if 400 <= status < 500:
                return ErrorClassification.fatal()
        text = str(error).lower()
        if _contains(text, "rate limit", "rate_limit", "too many requests"):
            return ErrorClassification.rate_limited(RATE_LIMIT_MESSAGE_WAIT_SECONDS)
        if _contains(text, "overloaded", "capacity"):
            return ErrorClassification.rate_limited(OVERLOADED_WAIT_SECONDS)
        if _contains(text, "timeout", "temporarily"):
            return ErrorClassification.retryable()
        return ErrorClassification.fatal()
    if isinstance(error, LlmError):
        return ErrorClassification.retryable()
    return ErrorClassification.fatal()


def classify_capture_error(error: BaseException) -> ErrorClassification:
    if isinstance(error, NoDisplaysError):
        return ErrorClassification.fatal()
    if isinstance(error, CaptureError):
        return ErrorClassification.retryable()
    return ErrorClassification.fatal()


class RetryExhaustedError(Exception):
    """Raised when every allowed attempt failed with a non-fatal error."""

    def __init__(self, last_error: BaseException, attempts: int) -> None:
        super().__init__(f"Retries exhausted after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts


@dataclass(slots=True)
class RetryResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0
    exhausted: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is None:
            return self.value  # type: ignore[return-value]
        if self.exhausted:
            raise RetryExhaustedError(self.error, self.attempts) from self.error
        raise self.error


async def retry_with_policy(
    policy: RetryPolicy,
    classify: Callable[[BaseException], ErrorClassification],
    operation: Callable[[], Awaitable[T]],
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    speed_multiplier: float = 1.0,
) -> RetryResult[T]:
    """Run ``operation`` until it succeeds, fails fatally, or retries run out.

    Only exceptions are retried; ``asyncio.CancelledError`` is never caught.
    ``speed_multiplier`` scales backoff waits but not rate-limit waits.
    """
    attempt = 0
    while True:
        try:
            value = await operation()
            return RetryResult(value=value, attempts=attempt + 1)
        except Exception as exc:
            classification = classify(exc)
            if classification.is_fatal:
                return RetryResult(error=exc, attempts=attempt + 1)
            if attempt >= policy.max_retries:
                return RetryResult(error=exc, attempts=attempt + 1, exhausted=True)
            attempt += 1
            if classification.kind == ErrorKind.RATE_LIMITED:
                delay = classification.wait_seconds
            else:
                delay = policy.delay_for_attempt(attempt) / max(speed_multiplier, 1e-6)
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            if delay > 0:
                await sleep(delay)
