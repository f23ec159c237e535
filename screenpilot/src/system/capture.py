"""Screen capture collaborator."""
from __future__ import annotations

import base64
import io
from abc import ABC, abstractmethod
from dataclasses import dataclass

try:
    import pyautogui
except ModuleNotFoundError:  # pragma: no cover - optional desktop dependency
    pyautogui = None  # type: ignore[assignment]


class CaptureError(Exception):
    """Base class for screenshot failures."""


class NoDisplaysError(CaptureError):
    def __init__(self, message: str = "No displays found") -> None:
        super().__init__(message)


class CaptureFailedError(CaptureError):
    pass


class EncodeError(CaptureError):
    pass


@dataclass(frozen=True, slots=True)
class Screenshot:
    """Encoded screen image.

    Instances are immutable so one payload can be referenced from many
    conversation messages without copying the image data.
    """

    width: int
    height: int
    data: str
    media_type: str = "image/png"

    def same_content(self, other: "Screenshot") -> bool:
        return self.width == other.width and self.height == other.height and self.data == other.data


class ScreenCapture(ABC):
    """Produces one :class:`Screenshot` per call."""

    @abstractmethod
    def capture(self) -> Screenshot:
        raise NotImplementedError


class DesktopScreenCapture(ScreenCapture):
    """Captures the primary display through PyAutoGUI and encodes it as PNG."""

    def capture(self) -> Screenshot:
        if pyautogui is None:
            raise CaptureFailedError("PyAutoGUI is not installed. Install the 'desktop' extra to capture the screen.")
        try:
            width, height = pyautogui.size()
        except Exception as exc:
            raise NoDisplaysError(f"No displays found: {exc}") from exc
        if not width or not height:
            raise NoDisplaysError()

        try:
            image = pyautogui.screenshot()
        except Exception as exc:
            raise CaptureFailedError(f"Failed to capture screen: {exc}") from exc

        # HiDPI screens capture at a multiple of the logical size that input uses.
        if image.size != (width, height):
            image = image.resize((width, height))

        buffer = io.BytesIO()
        try:
            image.save(buffer, format="PNG")
        except (OSError, ValueError) as exc:
            raise EncodeError(f"Failed to encode screenshot: {exc}") from exc

        return Screenshot(
            width=int(width),
            height=int(height),
            data=base64.b64encode(buffer.getvalue()).decode("ascii"),
        )
