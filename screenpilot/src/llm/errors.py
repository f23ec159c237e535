"""Exceptions raised by language-model providers."""
from __future__ import annotations

from typing import Optional


class LlmError(Exception):
    """Base class for provider failures."""


class LlmRequestError(LlmError):
    """Transport failure before or while talking to the backend."""

    def __init__(self, message: str, *, timeout: bool = False, connect: bool = False) -> None:
        super().__init__(message)
        self.timeout = timeout
        self.connect = connect


class LlmApiError(LlmError):
    """Backend answered with a non-success status or an error payload."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is not None:
            return f"HTTP {self.status_code}: {base}"
        return base


class LlmParseError(LlmError):
    """A streamed record or the response body could not be decoded."""


class LlmStreamError(LlmError):
    """The response stream broke off mid-transfer."""


class ProviderNotConfiguredError(LlmError):
    """Provider selection or credentials are missing."""
