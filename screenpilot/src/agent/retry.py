"""Action-effect retry: did the screen visibly change after an action?"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

from screenpilot.src.agent.action import Action
from screenpilot.src.agent.delay import DelayController
from screenpilot.src.agent.executor import ActionResult, execute_action
from screenpilot.src.system.capture import CaptureError, ScreenCapture, Screenshot
from screenpilot.src.system.input import InputController, InputError

LogFn = Callable[[str], None]


def screenshots_differ(before: Screenshot, after: Screenshot) -> bool:
    """Unchanged only when dimensions match and the encoded bytes are identical."""
    return not before.same_content(after)


class RetryContext:
    """Attempt counter and baseline screenshot for one action."""

    def __init__(
        self,
        capture: ScreenCapture,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        enabled: bool = True,
    ) -> None:
        self.capture = capture
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.enabled = enabled
        self.attempt = 0
        self.last_screenshot: Optional[Screenshot] = None

    def should_retry(self) -> bool:
        return self.enabled and self.attempt < self.max_retries

    def increment(self) -> None:
        self.attempt += 1

    def reset(self) -> None:
        self.attempt = 0
        self.last_screenshot = None

    async def capture_before(self) -> None:
        if not self.enabled:
            return
        self.last_screenshot = await asyncio.to_thread(self.capture.capture)

    async def screen_changed(self) -> bool:
        if not self.enabled or self.last_screenshot is None:
            return True
        after = await asyncio.to_thread(self.capture.capture)
        return screenshots_differ(self.last_screenshot, after)


async def execute_action_with_retry(
    action: Action,
    controller: InputController,
    ctx: RetryContext,
    delays: Optional[DelayController] = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    log: Optional[LogFn] = None,
) -> ActionResult:
    """Execute ``action``, re-running it while it fails or shows no visible effect.

    A missing effect after the last attempt yields a successful result with
    ``effect_confirmed=False``; an injection error after the last attempt is
    raised.
    """
    delays = delays or DelayController()
    ctx.reset()
    verify = ctx.enabled and action.should_verify_effect()

    def _log(message: str) -> None:
        print(f"[Retry] {message}")
        if log:
            log(message)

    while True:
        if verify:
            try:
                await ctx.capture_before()
            except CaptureError as exc:
                _log(f"Baseline capture failed, skipping verification: {exc}")
                verify = False
                ctx.last_screenshot = None

        try:
            result = await execute_action(action, controller)
        except InputError as exc:
            if ctx.should_retry():
                ctx.increment()
                _log(f"{action.describe()} failed ({exc}); retry {ctx.attempt}/{ctx.max_retries}")
                await sleep(ctx.retry_delay)
                continue
            raise

        if not result.success or not verify:
            result.retry_count = ctx.attempt
            return result

        await sleep(delays.settle_delay())
        try:
            changed = await ctx.screen_changed()
        except CaptureError as exc:
            _log(f"Verification capture failed: {exc}")
            result.retry_count = ctx.attempt
            return result

        if changed:
            result.effect_confirmed = True
            result.retry_count = ctx.attempt
            return result

        if ctx.should_retry():
            ctx.increment()
            _log(f"No screen change after {action.describe()}; retry {ctx.attempt}/{ctx.max_retries}")
            await sleep(ctx.retry_delay)
            continue

        _log(f"No screen change after {action.describe()}; accepting result")
        result.effect_confirmed = False
        result.message = f"{result.message} (warning: no visible screen change detected)"
        result.retry_count = ctx.attempt
        return result
