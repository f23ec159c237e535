"""Structured actions parsed from model replies."""
from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from screenpilot.src.system.input import is_dangerous_key_combination, normalize_key, normalize_modifier

MouseButton = Literal["left", "right", "middle"]
ScrollDirection = Literal["up", "down", "left", "right"]

_OPPOSITE_DIRECTION = {"up": "down", "down": "up", "left": "right", "right": "left"}


class ActionParseError(ValueError):
    """The model reply did not contain one valid action."""


class NoJsonObjectError(ActionParseError):
    def __init__(self) -> None:
        super().__init__("No JSON object found in response")


class UnbalancedBracesError(ActionParseError):
    def __init__(self) -> None:
        super().__init__("Unbalanced braces in response")


class _BaseAction(BaseModel):
    def describe(self) -> str:
        raise NotImplementedError

    def should_verify_effect(self) -> bool:
        return False

    def is_reversible(self) -> bool:
        return False

    def create_reverse(self) -> Optional["Action"]:
        return None

    def requires_confirmation(self) -> bool:
        return False

    def is_terminal(self) -> bool:
        return False


class ClickAction(_BaseAction):
    action: Literal["click"] = "click"
    x: int
    y: int
    button: MouseButton = "left"

    @field_validator("button", mode="before")
    @classmethod
    def _lower_button(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    def describe(self) -> str:
        return f"Click {self.button} at ({self.x}, {self.y})"

    def should_verify_effect(self) -> bool:
        return True


class DoubleClickAction(_BaseAction):
    action: Literal["double_click"] = "double_click"
    x: int
    y: int

    def describe(self) -> str:
        return f"Double-click at ({self.x}, {self.y})"

    def should_verify_effect(self) -> bool:
        return True


class MoveAction(_BaseAction):
    action: Literal["move"] = "move"
    x: int
    y: int

    def describe(self) -> str:
        return f"Move mouse to ({self.x}, {self.y})"


class TypeAction(_BaseAction):
    action: Literal["type"] = "type"
    text: str

    def describe(self) -> str:
        return f"Type: {_truncate(self.text, 50)}"

    def should_verify_effect(self) -> bool:
        return True


class KeyAction(_BaseAction):
    action: Literal["key"] = "key"
    key: str = Field(min_length=1)
    modifiers: List[str] = Field(default_factory=list)

    @field_validator("modifiers", mode="before")
    @classmethod
    def _normalize_modifiers(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if isinstance(value, list):
            return [normalize_modifier(v) if isinstance(v, str) else v for v in value]
        return value

    @field_validator("key")
    @classmethod
    def _normalize_key(cls, value: str) -> str:
        return normalize_key(value)

    def describe(self) -> str:
        return f"Press key: {self.combo()}"

    def combo(self) -> str:
        return "+".join([*self.modifiers, self.key])

    def should_verify_effect(self) -> bool:
        return True

    def requires_confirmation(self) -> bool:
        return is_dangerous_key_combination(self.key, self.modifiers)


class ScrollAction(_BaseAction):
    action: Literal["scroll"] = "scroll"
    x: int
    y: int
    direction: ScrollDirection
    amount: int = Field(default=3, ge=1)

    @field_validator("direction", mode="before")
    @classmethod
    def _lower_direction(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    def describe(self) -> str:
        return f"Scroll {self.direction} {self.amount} at ({self.x}, {self.y})"

    def should_verify_effect(self) -> bool:
        return True

    def is_reversible(self) -> bool:
        return True

    def create_reverse(self) -> "ScrollAction":
        return ScrollAction(
            x=self.x,
            y=self.y,
            direction=_OPPOSITE_DIRECTION[self.direction],
            amount=self.amount,
        )


class CompleteAction(_BaseAction):
    action: Literal["complete"] = "complete"
    message: str = ""

    def describe(self) -> str:
        return f"Complete: {self.message}"

    def is_terminal(self) -> bool:
        return True


class ErrorAction(_BaseAction):
    action: Literal["error"] = "error"
    message: str = ""

    def describe(self) -> str:
        return f"Error: {self.message}"

    def is_terminal(self) -> bool:
        return True


Action = Annotated[
    Union[
        ClickAction,
        DoubleClickAction,
        MoveAction,
        TypeAction,
        KeyAction,
        ScrollAction,
        CompleteAction,
        ErrorAction,
    ],
    Field(discriminator="action"),
]

ACTION_KINDS = ("click", "double_click", "move", "type", "key", "scroll", "complete", "error")

_ACTION_ADAPTER: TypeAdapter[Any] = TypeAdapter(Action)


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}..."


def extract_json(text: str) -> str:
    """Return the first balanced ``{...}`` span in ``text``.

    Brace depth is counted without regard to JSON strings; action payloads
    are flat so this is enough.
    """
    start = text.find("{")
    if start < 0:
        raise NoJsonObjectError()
    depth = 0
    for index in range(start, len(text)):
        char = text[index]
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    raise UnbalancedBracesError()


def parse_action(text: str) -> Action:
    raw = extract_json(text)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ActionParseError(f"Invalid JSON: {exc} in '{raw}'") from exc
    if not isinstance(data, dict):
        raise ActionParseError(f"Expected a JSON object, got: {raw}")

    kind = data.get("action")
    if not isinstance(kind, str):
        raise ActionParseError(f"Missing 'action' field in: {raw}")
    normalized = kind.strip().lower().replace("-", "_")
    if normalized == "doubleclick":
        normalized = "double_click"
    if normalized not in ACTION_KINDS:
        raise ActionParseError(f"Unknown action type '{kind}'. Expected one of: {', '.join(ACTION_KINDS)}")
    data["action"] = normalized

    try:
        return _ACTION_ADAPTER.validate_python(data)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:]) or normalized}: {err['msg']}" for err in exc.errors()
        )
        raise ActionParseError(f"Invalid fields for '{normalized}' action: {problems}") from exc


def action_to_dict(action: Action) -> Dict[str, Any]:
    return action.model_dump()
