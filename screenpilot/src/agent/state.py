"""Observable run state, cooperative stop flag and confirmation handshake."""
from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from screenpilot.src.agent.locks import AsyncRWLock

ACTION_LOG_LIMIT = 100


class AgentStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (AgentStatus.COMPLETED, AgentStatus.ERROR)


class ConfirmationResponse(str, Enum):
    CONFIRMED = "confirmed"
    DENIED = "denied"


class ConfirmationPendingError(RuntimeError):
    """A confirmation was requested while another is still unanswered."""


@dataclass(slots=True)
class ActionLogEntry:
    action: str
    timestamp: str
    is_error: bool = False


@dataclass(slots=True)
class AgentState:
    status: AgentStatus = AgentStatus.IDLE
    instruction: Optional[str] = None
    iteration: int = 0
    max_iterations: int = 50
    last_action: Optional[str] = None
    last_error: Optional[str] = None
    pending_action: Optional[str] = None
    tokens_per_second: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    action_log: List[ActionLogEntry] = field(default_factory=list)
    consecutive_errors: int = 0
    last_retry_count: int = 0
    total_retries: int = 0
    queue_index: int = 0
    queue_total: int = 0
    queue_active: bool = False
    can_undo: bool = False
    undo_description: Optional[str] = None
    session_id: Optional[str] = None

    def snapshot(self) -> "AgentState":
        return dataclasses.replace(self, action_log=list(self.action_log))

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data["status"] = self.status.value
        return data


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%H:%M:%S")


class AgentStateManager:
    """Single owner of :class:`AgentState`.

    Mutations take the write side of the lock; observers read copies. The
    stop and pause flags are plain booleans checked at iteration boundaries,
    so a stop requested mid-action takes effect after that action finishes.
    """

    def __init__(self) -> None:
        self._state = AgentState()
        self._lock = AsyncRWLock()
        self._stop_requested = False
        self._pause_requested = False
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._confirmation: Optional[asyncio.Future] = None

    # -- reads ---------------------------------------------------------
    async def get_state(self) -> AgentState:
        async with self._lock.read():
            return self._state.snapshot()

    async def get_status(self) -> AgentStatus:
        async with self._lock.read():
            return self._state.status

    async def consecutive_errors(self) -> int:
        async with self._lock.read():
            return self._state.consecutive_errors

    # -- lifecycle -----------------------------------------------------
    async def start(self, instruction: str, max_iterations: int, session_id: Optional[str] = None) -> None:
        async with self._lock.write():
            queue_fields = (self._state.queue_index, self._state.queue_total, self._state.queue_active)
            self._state = AgentState(
                status=AgentStatus.RUNNING,
                instruction=instruction,
                max_iterations=max_iterations,
                session_id=session_id,
            )
            self._state.queue_index, self._state.queue_total, self._state.queue_active = queue_fields
        self._stop_requested = False
        self._pause_requested = False
        self._resume_event.set()

    async def reset(self) -> None:
        async with self._lock.write():
            self._state = AgentState()
        self._stop_requested = False
        self._pause_requested = False
        self._resume_event.set()
        self._cancel_confirmation()

    async def set_status(self, status: AgentStatus) -> None:
        async with self._lock.write():
            self._state.status = status

    async def increment_iteration(self) -> int:
        async with self._lock.write():
            self._state.iteration += 1
            return self._state.iteration

    async def set_last_action(self, action: str) -> None:
        async with self._lock.write():
            self._state.last_action = action
            self._append_log(action, is_error=False)

    async def set_error(self, error: str) -> None:
        async with self._lock.write():
            self._state.status = AgentStatus.ERROR
            self._state.last_error = error
            self._state.pending_action = None
            self._append_log(error, is_error=True)

    async def set_stopped(self, reason: Optional[str] = None) -> None:
        async with self._lock.write():
            self._state.status = AgentStatus.IDLE
            self._state.pending_action = None
            if reason:
                self._state.last_error = reason

    async def complete(self, message: str) -> None:
        async with self._lock.write():
            self._state.status = AgentStatus.COMPLETED
            self._state.last_action = f"Completed: {message}"
            self._state.pending_action = None
            self._append_log(self._state.last_action, is_error=False)

    async def update_metrics(self, tokens_per_second: float, input_tokens: int, output_tokens: int) -> None:
        async with self._lock.write():
            self._state.tokens_per_second = tokens_per_second
            self._state.total_input_tokens += input_tokens
            self._state.total_output_tokens += output_tokens

    async def update_retry_stats(self, retry_count: int) -> None:
        async with self._lock.write():
            self._state.last_retry_count = retry_count
            self._state.total_retries += retry_count

    async def increment_consecutive_errors(self) -> int:
        async with self._lock.write():
            self._state.consecutive_errors += 1
            return self._state.consecutive_errors

    async def reset_consecutive_errors(self) -> None:
        async with self._lock.write():
            self._state.consecutive_errors = 0

    async def set_queue_info(self, index: int, total: int, active: bool) -> None:
        async with self._lock.write():
            self._state.queue_index = index
            self._state.queue_total = total
            self._state.queue_active = active

    async def set_undo_state(self, can_undo: bool, description: Optional[str]) -> None:
        async with self._lock.write():
            self._state.can_undo = can_undo
            self._state.undo_description = description

    async def set_pending_action(self, action: Optional[str]) -> None:
        async with self._lock.write():
            self._state.pending_action = action
            if action is not None:
                self._state.status = AgentStatus.AWAITING_CONFIRMATION

    # -- stop / pause --------------------------------------------------
    def request_stop(self) -> None:
        self._stop_requested = True
        self._resume_event.set()
        # Unblock a pending confirmation; the loop sees the stop flag next.
        self._resolve_confirmation(ConfirmationResponse.DENIED)

    def should_stop(self) -> bool:
        return self._stop_requested

    def request_pause(self) -> None:
        self._pause_requested = True
        self._resume_event.clear()

    def resume(self) -> None:
        self._pause_requested = False
        self._resume_event.set()

    def should_pause(self) -> bool:
        return self._pause_requested

    async def wait_while_paused(self) -> None:
        if not self._pause_requested:
            return
        await self.set_status(AgentStatus.PAUSED)
        await self._resume_event.wait()
        if not self._stop_requested:
            await self.set_status(AgentStatus.RUNNING)

    # -- confirmation handshake ----------------------------------------
    def begin_confirmation(self) -> "asyncio.Future[ConfirmationResponse]":
        """Open a fresh one-shot channel; fails while another is unanswered.

        After a stop request the channel is born resolved as denied.
        """
        if self._confirmation is not None and not self._confirmation.done():
            raise ConfirmationPendingError("A confirmation request is already pending")
        self._confirmation = asyncio.get_running_loop().create_future()
        if self._stop_requested:
            self._confirmation.set_result(ConfirmationResponse.DENIED)
        return self._confirmation

    def has_pending_confirmation(self) -> bool:
        return self._confirmation is not None and not self._confirmation.done()

    def send_confirmation(self, response: ConfirmationResponse | bool) -> bool:
        """Deliver the human answer; returns False when nothing is waiting."""
        if isinstance(response, bool):
            response = ConfirmationResponse.CONFIRMED if response else ConfirmationResponse.DENIED
        return self._resolve_confirmation(response)

    async def await_confirmation(self, timeout: Optional[float] = None) -> Optional[ConfirmationResponse]:
        """Wait for the answer on the current channel; None on timeout."""
        future = self._confirmation
        if future is None:
            raise RuntimeError("No confirmation request in progress")
        try:
            if timeout is None:
                return await future
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            if self._confirmation is future:
                if not future.done():
                    future.cancel()
                self._confirmation = None

    def _resolve_confirmation(self, response: ConfirmationResponse) -> bool:
        future = self._confirmation
        if future is None or future.done():
            return False
        future.get_loop().call_soon_threadsafe(self._set_result_if_pending, future, response)
        return True

    @staticmethod
    def _set_result_if_pending(future: asyncio.Future, response: ConfirmationResponse) -> None:
        if not future.done():
            future.set_result(response)

    def _cancel_confirmation(self) -> None:
        if self._confirmation is not None and not self._confirmation.done():
            self._confirmation.cancel()
        self._confirmation = None

    def _append_log(self, text: str, is_error: bool) -> None:
        self._state.action_log.append(ActionLogEntry(text, _timestamp(), is_error))
        if len(self._state.action_log) > ACTION_LOG_LIMIT:
            del self._state.action_log[0]
