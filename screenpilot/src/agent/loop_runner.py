"""The capture, ask, parse, act cycle and the queue runner around it."""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from screenpilot.src.agent.action import Action, ActionParseError, parse_action
from screenpilot.src.agent.conversation import ConversationHistory
from screenpilot.src.agent.delay import DelayController
from screenpilot.src.agent.executor import ActionResult, execute_action
from screenpilot.src.agent.history import ActionEntry, ActionHistory, ActionRecord, HistoryManager
from screenpilot.src.agent.queue import QueueFailureMode, QueueManager, QueuedInstruction
from screenpilot.src.agent.recovery import (
    RetryPolicy,
    classify_capture_error,
    classify_llm_error,
    retry_with_policy,
)
from screenpilot.src.agent.retry import RetryContext, execute_action_with_retry
from screenpilot.src.agent.state import AgentState, AgentStateManager, AgentStatus, ConfirmationResponse
from screenpilot.src.llm.provider import LlmProvider, TokenMetrics
from screenpilot.src.system.capture import ScreenCapture, Screenshot
from screenpilot.src.system.input import InputController, InputError
from screenpilot.src.utils.config import GeneralConfig

MAX_CONSECUTIVE_ERRORS = 3


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    STOPPED = "stopped"
    MAX_ITERATIONS = "max_iterations"
    DENIED = "denied"
    FAILED = "error"


@dataclass(slots=True)
class RunResult:
    outcome: RunOutcome
    message: str = ""
    iterations: int = 0
    reason_code: str = "ok"
    session_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome == RunOutcome.COMPLETED


@dataclass(slots=True)
class QueueRunResult:
    outcome: str
    processed: int = 0
    failed: int = 0
    results: List[RunResult] = field(default_factory=list)


class AgentLoopError(Exception):
    """Terminal failure inside one run; converted to a :class:`RunResult`."""

    def __init__(self, reason_code: str, message: str) -> None:
        super().__init__(message)
        self.reason_code = reason_code
        self.message = message


@dataclass(slots=True)
class AgentCallbacks:
    """Hooks for the presentation layer; every hook is optional."""

    on_state: Optional[Callable[[AgentState], None]] = None
    on_chunk: Optional[Callable[[str], None]] = None
    on_confirmation_required: Optional[Callable[[str], None]] = None
    on_preview: Optional[Callable[[str], None]] = None
    on_queue_update: Optional[Callable[[List[QueuedInstruction]], None]] = None
    log: Optional[Callable[[str], None]] = None


class AgentLoop:
    """Drives one instruction, or a queue of them, to a terminal outcome."""

    def __init__(
        self,
        provider: Optional[LlmProvider],
        capture: ScreenCapture,
        controller: InputController,
        config: Optional[GeneralConfig] = None,
        *,
        state: Optional[AgentStateManager] = None,
        queue: Optional[QueueManager] = None,
        history: Optional[HistoryManager] = None,
        callbacks: Optional[AgentCallbacks] = None,
        llm_policy: Optional[RetryPolicy] = None,
        capture_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.capture = capture
        self.controller = controller
        self.config = config or GeneralConfig()
        self.state = state or AgentStateManager()
        self.queue = queue or QueueManager(QueueFailureMode.parse(self.config.queue_failure_mode))
        self.history = history or HistoryManager()
        self.callbacks = callbacks or AgentCallbacks()
        self.llm_policy = llm_policy or RetryPolicy.for_llm_calls()
        self.capture_policy = capture_policy or RetryPolicy.for_screenshots()
        self.delays = DelayController(self.config.speed_multiplier)
        self.conversation = ConversationHistory()
        self.action_history = ActionHistory()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Presentation-facing commands
    def stop(self) -> None:
        self._log("Stop requested")
        self.state.request_stop()

    def pause(self) -> None:
        self.state.request_pause()

    def resume(self) -> None:
        self.state.resume()

    def confirm(self, approved: bool) -> bool:
        response = ConfirmationResponse.CONFIRMED if approved else ConfirmationResponse.DENIED
        return self.state.send_confirmation(response)

    # ------------------------------------------------------------------
    async def run(self, instruction: str) -> RunResult:
        session_id = await self.history.start_session(instruction)
        await self.state.start(instruction, self.config.max_iterations, session_id)
        self.conversation.clear()
        self.conversation.set_original_instruction(instruction)
        self.action_history.clear()
        await self.state.set_undo_state(False, None)
        self._log(f"Starting: {instruction}")
        await self._emit_state()

        try:
            result = await self._run_loop(instruction)
        except AgentLoopError as exc:
            outcome = RunOutcome.DENIED if exc.reason_code == "denied" else RunOutcome.FAILED
            await self.state.set_error(exc.message)
            result = RunResult(outcome, exc.message, reason_code=exc.reason_code)
        except Exception as exc:
            await self.state.set_error(f"Unexpected error: {exc}")
            await self.history.complete_session(RunOutcome.FAILED.value)
            await self._emit_state()
            raise
        else:
            if result.outcome == RunOutcome.STOPPED:
                await self.state.set_stopped(result.message)
            elif result.outcome == RunOutcome.MAX_ITERATIONS:
                await self.state.set_error(result.message)

        current = await self.state.get_state()
        result.iterations = min(current.iteration, self.config.max_iterations)
        result.session_id = session_id
        await self.history.complete_session(result.outcome.value)
        self._log(f"Finished ({result.outcome.value}): {result.message}")
        await self._emit_state()
        return result

    async def _run_loop(self, instruction: str) -> RunResult:
        if self.provider is None:
            raise AgentLoopError("no_provider", "No LLM provider configured")
        max_iterations = self.config.max_iterations

        while True:
            if self.state.should_stop():
                return RunResult(RunOutcome.STOPPED, "Stopped by user", reason_code="stopped")
            if await self.state.consecutive_errors() >= MAX_CONSECUTIVE_ERRORS:
                raise AgentLoopError(
                    "too_many_errors", f"Too many consecutive errors ({MAX_CONSECUTIVE_ERRORS})"
                )
            await self.state.wait_while_paused()
            if self.state.should_stop():
                return RunResult(RunOutcome.STOPPED, "Stopped by user", reason_code="stopped")

            iteration = await self.state.increment_iteration()
            if iteration > max_iterations:
                return RunResult(RunOutcome.MAX_ITERATIONS, "Max iterations reached", reason_code="max_iterations")
            self.conversation.set_progress(iteration, max_iterations)
            await self._emit_state()

            screenshot = await self._capture_screenshot()
            self.conversation.add_user_message(self._user_turn_text(instruction, iteration), screenshot)

            llm_started = time.monotonic()
            response, metrics = await self._ask_model(screenshot)
            llm_elapsed = time.monotonic() - llm_started
            self.conversation.add_assistant_message(response)
            await self.state.update_metrics(metrics.tokens_per_second, metrics.input_tokens, metrics.output_tokens)
            await self.history.update_metrics(metrics.input_tokens, metrics.output_tokens)
            await self._emit_state()

            try:
                action = parse_action(response)
            except ActionParseError as exc:
                errors = await self.state.increment_consecutive_errors()
                self._log(f"Could not parse action ({errors}/{MAX_CONSECUTIVE_ERRORS}): {exc}")
                self.conversation.add_tool_result(
                    False, error=f"Could not parse your reply as an action: {exc}. Respond with one JSON action."
                )
                await self.history.add_entry(
                    ActionEntry(
                        iteration=iteration,
                        action_type="parse_error",
                        action_details={},
                        success=False,
                        llm_response=response,
                        error_message=str(exc),
                    )
                )
                await self._sleep(self.delays.parse_error_delay())
                continue

            await self.state.reset_consecutive_errors()
            await self.state.set_last_action(action.describe())
            await self._emit_state()

            if action.requires_confirmation() and self.config.confirm_dangerous_actions:
                if self.state.should_stop():
                    return RunResult(RunOutcome.STOPPED, "Stopped by user", reason_code="stopped")
                approved = await self._await_confirmation(action)
                if self.state.should_stop():
                    return RunResult(RunOutcome.STOPPED, "Stopped by user", reason_code="stopped")
                if not approved:
                    self.conversation.add_tool_result(False, error="Action denied by user")
                    raise AgentLoopError("denied", "Action denied or timed out")
            elif self.config.preview_mode and not action.is_terminal():
                await self._preview(action)

            result = await self._execute(action, iteration, response)
            if result.completed:
                if result.success:
                    await self.state.complete(result.message)
                    await self._emit_state()
                    return RunResult(RunOutcome.COMPLETED, result.message, reason_code="completed")
                raise AgentLoopError("agent_error", f"Agent reported error: {result.message}")

            await self._emit_state()
            remaining = self.delays.iteration_delay() - llm_elapsed
            if remaining > 0:
                await self._sleep(remaining)

    # ------------------------------------------------------------------
    @staticmethod
    def _user_turn_text(instruction: str, iteration: int) -> str:
        if iteration == 1:
            return instruction
        return f"Here is the screen after the previous action. Continue with the task: {instruction}"

    async def _capture_screenshot(self) -> Screenshot:
        def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            self._log(f"Screenshot failed ({exc}); retry {attempt} in {delay:.2f}s")

        result = await retry_with_policy(
            self.capture_policy,
            classify_capture_error,
            lambda: asyncio.to_thread(self.capture.capture),
            sleep=self._sleep,
            on_retry=_on_retry,
            speed_multiplier=self.delays.speed_multiplier,
        )
        if not result.ok:
            suffix = f" (retries exhausted after {result.attempts} attempts)" if result.exhausted else ""
            raise AgentLoopError("capture", f"Screenshot failed: {result.error}{suffix}")
        return result.value  # type: ignore[return-value]

    async def _ask_model(self, screenshot: Screenshot) -> tuple[str, TokenMetrics]:
        provider = self.provider
        assert provider is not None

        def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            self._log(f"LLM call failed ({exc}); retry {attempt} in {delay:.2f}s")

        async def _call() -> tuple[str, TokenMetrics]:
            return await provider.send_history(
                self.conversation, screenshot.width, screenshot.height, self._on_chunk
            )

        result = await retry_with_policy(
            self.llm_policy,
            classify_llm_error,
            _call,
            sleep=self._sleep,
            on_retry=_on_retry,
            speed_multiplier=self.delays.speed_multiplier,
        )
        if not result.ok:
            suffix = f" (retries exhausted after {result.attempts} attempts)" if result.exhausted else ""
            raise AgentLoopError("llm", f"LLM error: {result.error}{suffix}")
        return result.value  # type: ignore[return-value]

    async def _await_confirmation(self, action: Action) -> bool:
        description = action.describe()
        self.state.begin_confirmation()
        await self.state.set_pending_action(description)
        self._log(f"Dangerous action requires confirmation: {description}")
        await self._emit_state()
        if self.callbacks.on_confirmation_required:
            self.callbacks.on_confirmation_required(description)

        response = await self.state.await_confirmation(self.config.confirmation_timeout_secs)
        await self.state.set_pending_action(None)
        if response == ConfirmationResponse.CONFIRMED and not self.state.should_stop():
            await self.state.set_status(AgentStatus.RUNNING)
            await self._emit_state()
            return True
        return False

    async def _preview(self, action: Action) -> None:
        description = action.describe()
        self._log(f"Preview: {description}")
        if self.callbacks.on_preview:
            self.callbacks.on_preview(description)
        await self._sleep(self.delays.preview_delay())

    async def _execute(self, action: Action, iteration: int, response: str) -> ActionResult:
        ctx = RetryContext(
            self.capture,
            max_retries=self.config.max_retries,
            retry_delay=self.delays.seconds(self.config.retry_delay_ms),
            enabled=self.config.enable_self_correction,
        )
        try:
            result = await execute_action_with_retry(
                action, self.controller, ctx, self.delays, sleep=self._sleep, log=self.callbacks.log
            )
        except InputError as exc:
            self.conversation.add_tool_result(False, error=str(exc))
            await self.history.add_entry(
                ActionEntry(
                    iteration=iteration,
                    action_type=action.action,
                    action_details=action.model_dump(),
                    success=False,
                    llm_response=response,
                    error_message=str(exc),
                )
            )
            raise AgentLoopError("action", f"Action failed: {exc}") from exc

        await self.state.update_retry_stats(result.retry_count)
        if result.success:
            self.conversation.add_tool_result(True, message=result.message)
        else:
            self.conversation.add_tool_result(False, error=result.message)
        await self.history.add_entry(
            ActionEntry(
                iteration=iteration,
                action_type=action.action,
                action_details=action.model_dump(),
                success=result.success,
                llm_response=response,
                result_message=result.message,
            )
        )
        if result.warning:
            self._log(f"{action.describe()}: {result.warning}")
        if result.success and not result.completed:
            self.action_history.push(ActionRecord.from_action(action, True))
            await self._refresh_undo_state()
        return result

    # ------------------------------------------------------------------
    async def run_queue(self) -> QueueRunResult:
        """Run queued instructions in order, honoring the failure mode."""
        summary = QueueRunResult(outcome="completed")
        await self.queue.set_processing(True)
        try:
            while True:
                if self.state.should_stop():
                    summary.outcome = "stopped"
                    break
                item = await self.queue.next_pending()
                if item is None:
                    break

                await self.queue.mark_running()
                await self.state.set_queue_info(
                    await self.queue.current_index(), await self.queue.total_count(), True
                )
                await self._emit_queue()
                self._log(f"Running: {item.instruction}", tag="Queue")

                result = await self.run(item.instruction)
                summary.results.append(result)
                summary.processed += 1
                if result.success:
                    await self.queue.mark_completed(result.message)
                else:
                    summary.failed += 1
                    await self.queue.mark_failed(result.message or result.outcome.value)
                await self._emit_queue()

                if result.outcome == RunOutcome.STOPPED:
                    summary.outcome = "stopped"
                    break
                if not result.success and await self.queue.failure_mode() == QueueFailureMode.STOP:
                    summary.outcome = "failed"
                    break
                if not await self.queue.advance():
                    break
                await self._sleep(self.delays.seconds(self.config.queue_delay_ms))
        finally:
            await self.queue.set_processing(False)
            await self.state.set_queue_info(0, 0, False)
            await self._emit_state()
        self._log(f"Finished ({summary.outcome}): {summary.processed} run, {summary.failed} failed", tag="Queue")
        return summary

    # ------------------------------------------------------------------
    async def undo_last_action(self) -> Optional[ActionResult]:
        """Execute the inverse of the last reversible action, if any."""
        if await self.state.get_status() in (AgentStatus.RUNNING, AgentStatus.AWAITING_CONFIRMATION):
            raise RuntimeError("Cannot undo while the agent is running")
        if not self.action_history.can_undo():
            return None
        record = self.action_history.pop_last()
        assert record is not None and record.reverse_action is not None
        result = await execute_action(record.reverse_action, self.controller)
        await self.state.set_last_action(f"Undo: {record.description}")
        await self._refresh_undo_state()
        await self._emit_state()
        return result

    async def _refresh_undo_state(self) -> None:
        await self.state.set_undo_state(
            self.action_history.can_undo(), self.action_history.get_last_undoable_description()
        )

    def _on_chunk(self, chunk: str) -> None:
        if self.callbacks.on_chunk:
            self.callbacks.on_chunk(chunk)

    async def _emit_state(self) -> None:
        if self.callbacks.on_state:
            self.callbacks.on_state(await self.state.get_state())

    async def _emit_queue(self) -> None:
        if self.callbacks.on_queue_update:
            self.callbacks.on_queue_update(await self.queue.get_all())

    def _log(self, message: str, tag: str = "AgentLoop") -> None:
        print(f"[{tag}] {message}")
        if self.callbacks.log:
            self.callbacks.log(message)
