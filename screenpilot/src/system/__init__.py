"""OS collaborators: screen capture and input injection."""

from screenpilot.src.system.capture import (
    CaptureError,
    CaptureFailedError,
    DesktopScreenCapture,
    EncodeError,
    NoDisplaysError,
    ScreenCapture,
    Screenshot,
)
from screenpilot.src.system.input import (
    DesktopInputController,
    InputActionError,
    InputController,
    InputError,
    InputInitError,
    is_dangerous_key_combination,
)

__all__ = [
    "CaptureError",
    "CaptureFailedError",
    "DesktopScreenCapture",
    "EncodeError",
    "NoDisplaysError",
    "ScreenCapture",
    "Screenshot",
    "DesktopInputController",
    "InputActionError",
    "InputController",
    "InputError",
    "InputInitError",
    "is_dangerous_key_combination",
]
