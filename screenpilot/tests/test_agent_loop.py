import asyncio

from conftest import FakeCapture, FakeController, FakeProvider

from screenpilot.src.agent.loop_runner import MAX_CONSECUTIVE_ERRORS, AgentCallbacks, AgentLoop, RunOutcome
from screenpilot.src.agent.queue import QueueItemStatus
from screenpilot.src.agent.recovery import RetryPolicy
from screenpilot.src.agent.state import AgentStatus
from screenpilot.src.llm.errors import LlmApiError, LlmRequestError
from screenpilot.src.system.capture import CaptureFailedError, NoDisplaysError
from screenpilot.src.utils.config import GeneralConfig

CLICK = '{"action": "click", "x": 10, "y": 20}'
MOVE = '{"action": "move", "x": 1, "y": 1}'
SCROLL = '{"action": "scroll", "x": 5, "y": 5, "direction": "down", "amount": 2}'
COMPLETE = 'Done! {"action": "complete", "message": "finished"}'
QUIT = '{"action": "key", "key": "q", "modifiers": ["cmd"]}'


def _config(**overrides):
    values = dict(
        max_iterations=10,
        confirm_dangerous_actions=True,
        preview_mode=False,
        max_retries=2,
        retry_delay_ms=100,
        enable_self_correction=True,
        speed_multiplier=1.0,
        queue_failure_mode="stop",
        queue_delay_ms=10,
    )
    values.update(overrides)
    return GeneralConfig(**values)


def _loop(provider, sleep, capture=None, controller=None, callbacks=None, **config):
    return AgentLoop(
        provider,
        capture or FakeCapture(),
        controller or FakeController(),
        _config(**config),
        callbacks=callbacks,
        llm_policy=RetryPolicy(max_retries=2, initial_delay=1.0, max_delay=4.0),
        sleep=sleep,
    )


def test_run_until_complete(sleep_recorder):
    provider = FakeProvider([CLICK, COMPLETE])
    controller = FakeController()
    states, chunks = [], []
    callbacks = AgentCallbacks(on_state=states.append, on_chunk=chunks.append)

    async def scenario():
        agent = _loop(provider, sleep_recorder, controller=controller, callbacks=callbacks)
        result = await agent.run("open notes")
        return agent, result, await agent.state.get_state(), await agent.history.get_session()

    agent, result, state, session = asyncio.run(scenario())

    assert result.success
    assert result.outcome == RunOutcome.COMPLETED
    assert result.message == "finished"
    assert result.iterations == 2
    assert controller.calls == [("click", 10, 20, "left")]
    assert state.status == AgentStatus.COMPLETED
    assert state.total_input_tokens == 20
    assert session.final_status == "completed"
    assert [e.action_type for e in session.entries] == ["click", "complete"]
    assert chunks == [CLICK, COMPLETE]
    assert states and states[-1].status == AgentStatus.COMPLETED
    # user, assistant, tool result, user, assistant, tool result
    assert len(agent.conversation) == 6
    assert provider.seen_lengths == [1, 4]


def test_parse_errors_are_fed_back_then_cap(sleep_recorder):
    provider = FakeProvider(["I think I should click", "still no json", "nope"])

    async def scenario():
        agent = _loop(provider, sleep_recorder)
        result = await agent.run("task")
        return agent, result, await agent.state.get_state()

    agent, result, state = asyncio.run(scenario())
    assert result.outcome == RunOutcome.FAILED
    assert result.reason_code == "too_many_errors"
    assert provider.calls == MAX_CONSECUTIVE_ERRORS
    assert state.status == AgentStatus.ERROR
    assert "Too many consecutive errors" in state.last_error
    assert "Could not parse" in agent.conversation.messages[-1].error


def test_parse_error_counter_resets_after_valid_action(sleep_recorder):
    provider = FakeProvider(["bad", "bad", MOVE, "bad", "bad", COMPLETE])

    async def scenario():
        return await _loop(provider, sleep_recorder).run("task")

    assert asyncio.run(scenario()).success


def test_max_iterations_is_a_distinct_outcome(sleep_recorder):
    provider = FakeProvider([MOVE])

    async def scenario():
        agent = _loop(provider, sleep_recorder, max_iterations=3)
        result = await agent.run("wander")
        return result, await agent.state.get_state()

    result, state = asyncio.run(scenario())
    assert result.outcome == RunOutcome.MAX_ITERATIONS
    assert result.iterations == 3
    assert provider.calls == 3
    assert state.status == AgentStatus.ERROR
    assert state.last_error == "Max iterations reached"


def test_stop_is_observed_at_next_iteration(sleep_recorder):
    provider = FakeProvider([CLICK])
    controller = FakeController()

    async def scenario():
        agent = _loop(provider, sleep_recorder, controller=controller)
        # stop arrives while the first reply is being produced
        provider.before_reply = lambda call: agent.stop()
        result = await agent.run("task")
        return result, await agent.state.get_state()

    result, state = asyncio.run(scenario())
    assert result.outcome == RunOutcome.STOPPED
    # the in-flight action still ran to completion
    assert controller.calls == [("click", 10, 20, "left")]
    assert provider.calls == 1
    assert state.status == AgentStatus.IDLE
    assert state.last_error == "Stopped by user"


def test_dangerous_action_confirmed(sleep_recorder):
    provider = FakeProvider([QUIT, COMPLETE])
    controller = FakeController()
    prompts = []

    async def scenario():
        agent = _loop(provider, sleep_recorder, controller=controller)

        def approve(description):
            prompts.append(description)
            agent.confirm(True)

        agent.callbacks.on_confirmation_required = approve
        return await agent.run("quit the app")

    result = asyncio.run(scenario())
    assert result.success
    assert prompts == ["Press key: meta+q"]
    assert controller.calls == [("key", "q", ("meta",))]


def test_dangerous_action_denied_never_executes(sleep_recorder):
    provider = FakeProvider([QUIT])
    controller = FakeController()
    seen_status = []

    async def scenario():
        agent = _loop(provider, sleep_recorder, controller=controller)

        def deny(description):
            seen_status.append(agent.state.has_pending_confirmation())
            agent.confirm(False)

        agent.callbacks.on_confirmation_required = deny
        result = await agent.run("quit the app")
        return result, await agent.state.get_state()

    result, state = asyncio.run(scenario())
    assert result.outcome == RunOutcome.DENIED
    assert controller.calls == []
    assert seen_status == [True]
    assert state.status == AgentStatus.ERROR
    assert state.last_error == "Action denied or timed out"
    assert state.pending_action is None


def test_dangerous_action_without_confirmation_policy(sleep_recorder):
    provider = FakeProvider([QUIT, COMPLETE])
    controller = FakeController()

    async def scenario():
        return await _loop(provider, sleep_recorder, controller=controller, confirm_dangerous_actions=False).run("t")

    assert asyncio.run(scenario()).success
    assert controller.calls == [("key", "q", ("meta",))]


def test_stop_during_confirmation_returns_idle(sleep_recorder):
    provider = FakeProvider([QUIT])
    controller = FakeController()

    async def scenario():
        agent = _loop(provider, sleep_recorder, controller=controller)
        agent.callbacks.on_confirmation_required = lambda description: agent.stop()
        result = await agent.run("quit")
        return result, await agent.state.get_state()

    result, state = asyncio.run(scenario())
    assert result.outcome == RunOutcome.STOPPED
    assert state.status == AgentStatus.IDLE
    assert controller.calls == []


def test_stop_while_model_replies_skips_confirmation(sleep_recorder):
    provider = FakeProvider([QUIT])
    controller = FakeController()
    prompts = []

    async def scenario():
        agent = _loop(provider, sleep_recorder, controller=controller)
        agent.callbacks.on_confirmation_required = prompts.append
        provider.before_reply = lambda call: agent.stop()
        result = await asyncio.wait_for(agent.run("quit"), 2.0)
        return result, await agent.state.get_state(), agent.state.has_pending_confirmation()

    result, state, pending = asyncio.run(scenario())
    assert result.outcome == RunOutcome.STOPPED
    assert prompts == []
    assert controller.calls == []
    assert not pending
    assert state.status == AgentStatus.IDLE
    assert state.pending_action is None


def test_error_action_ends_run_unsuccessfully(sleep_recorder):
    provider = FakeProvider(['{"action": "error", "message": "login required"}'])

    async def scenario():
        agent = _loop(provider, sleep_recorder)
        result = await agent.run("task")
        return result, await agent.state.get_state()

    result, state = asyncio.run(scenario())
    assert result.outcome == RunOutcome.FAILED
    assert state.last_error == "Agent reported error: login required"


def test_injection_failure_ends_run(sleep_recorder):
    async def scenario():
        agent = _loop(FakeProvider([CLICK]), sleep_recorder, controller=FakeController(fail_times=10))
        return await agent.run("task")

    result = asyncio.run(scenario())
    assert result.outcome == RunOutcome.FAILED
    assert result.reason_code == "action"


def test_transient_llm_errors_are_retried(sleep_recorder):
    provider = FakeProvider([LlmRequestError("timeout", timeout=True), LlmApiError("busy", status_code=503), COMPLETE])

    async def scenario():
        return await _loop(provider, sleep_recorder).run("task")

    result = asyncio.run(scenario())
    assert result.success
    assert provider.calls == 3
    assert 1.0 in sleep_recorder.delays and 2.0 in sleep_recorder.delays


def test_fatal_llm_error_is_terminal(sleep_recorder):
    provider = FakeProvider([LlmApiError("invalid key", status_code=401)])

    async def scenario():
        agent = _loop(provider, sleep_recorder)
        result = await agent.run("task")
        return result, await agent.state.get_state()

    result, state = asyncio.run(scenario())
    assert provider.calls == 1
    assert result.reason_code == "llm"
    assert "exhausted" not in result.message
    assert state.status == AgentStatus.ERROR


def test_exhausted_llm_retries_are_marked(sleep_recorder):
    provider = FakeProvider([LlmApiError("upstream", status_code=500)])

    async def scenario():
        return await _loop(provider, sleep_recorder).run("task")

    result = asyncio.run(scenario())
    assert provider.calls == 3
    assert "retries exhausted after 3 attempts" in result.message


def test_capture_failures(sleep_recorder):
    async def flaky():
        capture = FakeCapture(errors=[CaptureFailedError("busy")])
        return await _loop(FakeProvider([COMPLETE]), sleep_recorder, capture=capture).run("task")

    async def no_display():
        capture = FakeCapture(errors=[NoDisplaysError()])
        provider = FakeProvider([COMPLETE])
        result = await _loop(provider, sleep_recorder, capture=capture).run("task")
        return result, provider.calls

    assert asyncio.run(flaky()).success
    result, calls = asyncio.run(no_display())
    assert result.reason_code == "capture"
    assert calls == 0


def test_no_provider():
    async def scenario():
        return await _loop(None, asyncio.sleep).run("task")

    result = asyncio.run(scenario())
    assert result.reason_code == "no_provider"


def test_preview_mode_announces_action(sleep_recorder):
    previews = []

    async def scenario():
        agent = _loop(
            FakeProvider([CLICK, COMPLETE]),
            sleep_recorder,
            callbacks=AgentCallbacks(on_preview=previews.append),
            preview_mode=True,
        )
        return await agent.run("task")

    assert asyncio.run(scenario()).success
    assert previews == ["Click left at (10, 20)"]
    assert 0.5 in sleep_recorder.delays


def test_undo_last_scroll(sleep_recorder):
    controller = FakeController()

    async def scenario():
        agent = _loop(FakeProvider([SCROLL, COMPLETE]), sleep_recorder, controller=controller)
        await agent.run("task")
        state_before = await agent.state.get_state()
        undone = await agent.undo_last_action()
        again = await agent.undo_last_action()
        return state_before, undone, again

    state_before, undone, again = asyncio.run(scenario())
    assert state_before.can_undo
    assert undone.success
    assert again is None
    assert controller.calls[-1] == ("scroll", 5, 5, "up", 2)


def _by_instruction(mapping):
    def reply(history):
        return mapping[history.original_instruction]

    return reply


def test_queue_stop_mode_halts_on_failure(sleep_recorder):
    provider = FakeProvider(_by_instruction({"A": '{"action": "error", "message": "no"}', "B": COMPLETE}))

    async def scenario():
        agent = _loop(provider, sleep_recorder)
        await agent.queue.add_many(["A", "B"])
        summary = await agent.run_queue()
        return summary, await agent.queue.get_all(), await agent.queue.is_processing()

    summary, items, processing = asyncio.run(scenario())
    assert summary.outcome == "failed"
    assert [i.status for i in items] == [QueueItemStatus.FAILED, QueueItemStatus.PENDING]
    assert not processing


def test_queue_continue_mode_runs_everything(sleep_recorder):
    provider = FakeProvider(_by_instruction({"A": '{"action": "error", "message": "no"}', "B": COMPLETE}))
    updates = []

    async def scenario():
        agent = _loop(
            provider,
            sleep_recorder,
            queue_failure_mode="continue",
            callbacks=AgentCallbacks(on_queue_update=updates.append),
        )
        await agent.queue.add_many(["A", "B"])
        summary = await agent.run_queue()
        return summary, await agent.queue.get_all(), await agent.queue.completed_count()

    summary, items, completed = asyncio.run(scenario())
    assert summary.processed == 2 and summary.failed == 1
    assert [i.status for i in items] == [QueueItemStatus.FAILED, QueueItemStatus.COMPLETED]
    assert items[1].result == "finished"
    assert completed == 1
    assert 0.01 in sleep_recorder.delays
    assert updates[0][0].status == QueueItemStatus.RUNNING


def test_queue_stop_request_ends_queue(sleep_recorder):
    provider = FakeProvider([CLICK])

    async def scenario():
        agent = _loop(provider, sleep_recorder)
        await agent.queue.add_many(["A", "B"])
        provider.before_reply = lambda call: agent.stop()
        summary = await agent.run_queue()
        return summary, await agent.queue.get_all()

    summary, items = asyncio.run(scenario())
    assert summary.outcome == "stopped"
    assert items[1].status == QueueItemStatus.PENDING
