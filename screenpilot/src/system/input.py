"""Mouse and keyboard injection collaborator."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, List, Sequence

try:
    import pyautogui
except ModuleNotFoundError:  # pragma: no cover - optional desktop dependency
    pyautogui = None  # type: ignore[assignment]


class InputError(Exception):
    """Base class for injection failures."""


class InputInitError(InputError):
    pass


class InputActionError(InputError):
    pass


_MODIFIER_ALIASES = {
    "cmd": "meta",
    "command": "meta",
    "super": "meta",
    "win": "meta",
    "windows": "meta",
    "control": "ctrl",
    "option": "alt",
    "opt": "alt",
}

_KEY_ALIASES = {
    "return": "enter",
    "esc": "escape",
    "del": "delete",
    "arrowup": "up",
    "arrowdown": "down",
    "arrowleft": "left",
    "arrowright": "right",
    "page_up": "pageup",
    "page_down": "pagedown",
}


def normalize_modifier(name: str) -> str:
    lowered = name.strip().lower()
    return _MODIFIER_ALIASES.get(lowered, lowered)


def normalize_key(name: str) -> str:
    lowered = name.strip().lower()
    return _KEY_ALIASES.get(lowered, lowered)


def is_dangerous_key_combination(key: str, modifiers: Iterable[str]) -> bool:
    """Return True for shortcuts that quit apps, close windows or destroy data."""
    key = normalize_key(key)
    mods = {normalize_modifier(m) for m in modifiers}
    meta = "meta" in mods
    ctrl = "ctrl" in mods
    alt = "alt" in mods
    shift = "shift" in mods

    if key in {"delete", "backspace"}:
        # move to trash / empty trash
        if meta:
            return True
        if shift and ctrl:
            return True
        if ctrl and alt:
            return True
    if key == "w" and meta:
        return True
    if key == "q" and meta:
        return True
    if key == "f4" and alt:
        return True
    if key == "escape" and meta and alt:
        return True
    if key == "escape" and ctrl and shift:
        return True
    return False


class InputController(ABC):
    """Abstract input injection surface used by the agent loop."""

    @abstractmethod
    def move(self, x: int, y: int) -> None: ...

    @abstractmethod
    def click(self, x: int, y: int, button: str = "left") -> None: ...

    @abstractmethod
    def double_click(self, x: int, y: int) -> None: ...

    @abstractmethod
    def type_text(self, text: str) -> None: ...

    @abstractmethod
    def key(self, name: str, modifiers: Sequence[str] = ()) -> None: ...

    @abstractmethod
    def scroll(self, x: int, y: int, direction: str, amount: int) -> None: ...

    def is_dangerous(self, key: str, modifiers: Sequence[str]) -> bool:
        return is_dangerous_key_combination(key, modifiers)


_PYAUTOGUI_MODIFIERS = {"meta": "command", "ctrl": "ctrl", "alt": "alt", "shift": "shift"}


class DesktopInputController(InputController):
    """Provides mouse and keyboard automation through PyAutoGUI."""

    def __init__(self, type_interval: float = 0.0) -> None:
        self._ensure_available()
        self.type_interval = type_interval

    def move(self, x: int, y: int) -> None:
        self._run("move", lambda: pyautogui.moveTo(x, y))

    def click(self, x: int, y: int, button: str = "left") -> None:
        self._run("click", lambda: pyautogui.click(x=x, y=y, button=button))

    def double_click(self, x: int, y: int) -> None:
        self._run("double_click", lambda: pyautogui.doubleClick(x=x, y=y))

    def type_text(self, text: str) -> None:
        self._run("type", lambda: pyautogui.write(text, interval=self.type_interval))

    def key(self, name: str, modifiers: Sequence[str] = ()) -> None:
        keys: List[str] = [_PYAUTOGUI_MODIFIERS.get(normalize_modifier(m), normalize_modifier(m)) for m in modifiers]
        keys.append(normalize_key(name))
        if len(keys) == 1:
            self._run("key", lambda: pyautogui.press(keys[0]))
        else:
            self._run("key", lambda: pyautogui.hotkey(*keys))

    def scroll(self, x: int, y: int, direction: str, amount: int) -> None:
        clicks = amount if direction in {"up", "left"} else -amount
        if direction in {"left", "right"}:
            self._run("scroll", lambda: pyautogui.hscroll(clicks, x=x, y=y))
        else:
            self._run("scroll", lambda: pyautogui.scroll(clicks, x=x, y=y))

    def _run(self, name: str, fn) -> None:
        self._ensure_available()
        try:
            fn()
        except Exception as exc:
            raise InputActionError(f"{name} failed: {exc}") from exc

    def _ensure_available(self) -> None:
        if pyautogui is None:
            raise InputInitError("PyAutoGUI is not installed. Install the 'desktop' extra to enable automation features.")
