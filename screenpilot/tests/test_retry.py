import asyncio

import pytest
from conftest import FakeCapture, FakeController

from screenpilot.src.agent.action import parse_action
from screenpilot.src.agent.retry import RetryContext, execute_action_with_retry, screenshots_differ
from screenpilot.src.system.capture import Screenshot
from screenpilot.src.system.input import InputActionError

SAME = Screenshot(width=100, height=50, data="AAAA")


class TestScreenComparison:
    def test_identical_screens_are_unchanged(self):
        assert not screenshots_differ(SAME, Screenshot(100, 50, "AAAA"))

    def test_content_or_dimension_difference(self):
        assert screenshots_differ(SAME, Screenshot(100, 50, "AAAB"))
        assert screenshots_differ(SAME, Screenshot(100, 51, "AAAA"))

    def test_screen_changed_false_for_identical_pair(self):
        ctx = RetryContext(FakeCapture([SAME]))

        async def check():
            await ctx.capture_before()
            return await ctx.screen_changed()

        assert asyncio.run(check()) is False

    def test_disabled_context_always_reports_change(self):
        capture = FakeCapture([SAME])
        ctx = RetryContext(capture, enabled=False)

        async def check():
            await ctx.capture_before()
            return await ctx.screen_changed()

        assert asyncio.run(check()) is True
        assert capture.calls == 0
        assert not ctx.should_retry()

    def test_without_baseline_reports_change(self):
        ctx = RetryContext(FakeCapture([SAME]))
        assert asyncio.run(ctx.screen_changed()) is True

    def test_retry_budget(self):
        ctx = RetryContext(FakeCapture(), max_retries=3)
        count = 0
        while ctx.should_retry():
            ctx.increment()
            count += 1
        assert count == 3
        ctx.reset()
        assert ctx.attempt == 0 and ctx.last_screenshot is None


def test_visible_effect_confirmed_first_try(sleep_recorder):
    controller = FakeController()
    ctx = RetryContext(FakeCapture(), max_retries=3, retry_delay=1.0)

    result = asyncio.run(
        execute_action_with_retry(parse_action('{"action": "click", "x": 3, "y": 4}'), controller, ctx, sleep=sleep_recorder)
    )

    assert result.success and result.effect_confirmed
    assert result.retry_count == 0
    assert controller.calls == [("click", 3, 4, "left")]


def test_no_effect_retries_then_warns(sleep_recorder):
    controller = FakeController()
    ctx = RetryContext(FakeCapture([SAME]), max_retries=2, retry_delay=1.0)

    result = asyncio.run(
        execute_action_with_retry(parse_action('{"action": "type", "text": "hi"}'), controller, ctx, sleep=sleep_recorder)
    )

    assert result.success
    assert result.effect_confirmed is False
    assert result.warning
    assert "no visible screen change" in result.message
    assert result.retry_count == 2
    assert len(controller.calls) == 3
    assert sleep_recorder.delays.count(1.0) == 2


def test_move_is_not_verified(sleep_recorder):
    capture = FakeCapture([SAME])
    ctx = RetryContext(capture, max_retries=3)

    result = asyncio.run(
        execute_action_with_retry(parse_action('{"action": "move", "x": 1, "y": 1}'), FakeController(), ctx, sleep=sleep_recorder)
    )

    assert result.success and result.effect_confirmed is None
    assert capture.calls == 0


def test_injection_failure_retried_then_raised(sleep_recorder):
    action = parse_action('{"action": "click", "x": 1, "y": 1}')

    flaky = FakeController(fail_times=1)
    result = asyncio.run(execute_action_with_retry(action, flaky, RetryContext(FakeCapture(), max_retries=2), sleep=sleep_recorder))
    assert result.success and result.retry_count == 1

    broken = FakeController(fail_times=10)
    with pytest.raises(InputActionError):
        asyncio.run(execute_action_with_retry(action, broken, RetryContext(FakeCapture(), max_retries=2), sleep=sleep_recorder))


def test_retry_counter_resets_per_action(sleep_recorder):
    ctx = RetryContext(FakeCapture([SAME]), max_retries=1)
    action = parse_action('{"action": "scroll", "x": 1, "y": 1, "direction": "down"}')

    async def twice():
        first = await execute_action_with_retry(action, FakeController(), ctx, sleep=sleep_recorder)
        second = await execute_action_with_retry(action, FakeController(), ctx, sleep=sleep_recorder)
        return first, second

    first, second = asyncio.run(twice())
    assert first.retry_count == 1
    assert second.retry_count == 1
