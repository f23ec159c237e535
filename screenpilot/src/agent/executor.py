"""Runs one parsed action against the input collaborator."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from screenpilot.src.agent.action import (
    Action,
    ClickAction,
    CompleteAction,
    DoubleClickAction,
    ErrorAction,
    KeyAction,
    MoveAction,
    ScrollAction,
    TypeAction,
)
from screenpilot.src.system.input import InputController


@dataclass(slots=True)
class ActionResult:
    success: bool
    completed: bool = False
    message: str = ""
    retry_count: int = 0
    effect_confirmed: Optional[bool] = None

    @property
    def warning(self) -> Optional[str]:
        if self.success and self.effect_confirmed is False:
            return "No visible screen change detected"
        return None


def _preview(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


async def execute_action(action: Action, controller: InputController) -> ActionResult:
    """Inject ``action``; :class:`InputError` from the controller propagates."""
    if isinstance(action, ClickAction):
        await asyncio.to_thread(controller.click, action.x, action.y, action.button)
        return ActionResult(True, message=f"Clicked {action.button} at ({action.x}, {action.y})")
    if isinstance(action, DoubleClickAction):
        await asyncio.to_thread(controller.double_click, action.x, action.y)
        return ActionResult(True, message=f"Double-clicked at ({action.x}, {action.y})")
    if isinstance(action, MoveAction):
        await asyncio.to_thread(controller.move, action.x, action.y)
        return ActionResult(True, message=f"Moved mouse to ({action.x}, {action.y})")
    if isinstance(action, TypeAction):
        await asyncio.to_thread(controller.type_text, action.text)
        return ActionResult(True, message=f"Typed: {_preview(action.text)}")
    if isinstance(action, KeyAction):
        await asyncio.to_thread(controller.key, action.key, list(action.modifiers))
        return ActionResult(True, message=f"Pressed key: {action.combo()}")
    if isinstance(action, ScrollAction):
        await asyncio.to_thread(controller.scroll, action.x, action.y, action.direction, action.amount)
        return ActionResult(
            True,
            message=f"Scrolled {action.direction} {action.amount} times at ({action.x}, {action.y})",
        )
    if isinstance(action, CompleteAction):
        return ActionResult(True, completed=True, message=action.message)
    if isinstance(action, ErrorAction):
        return ActionResult(False, completed=True, message=action.message)
    raise TypeError(f"Unsupported action: {action!r}")
