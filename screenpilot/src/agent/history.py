"""Per-session action log with export, plus the undo stack."""
from __future__ import annotations

import json
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional
from uuid import uuid4

from screenpilot.src.agent.action import Action
from screenpilot.src.agent.locks import AsyncRWLock

ACTION_HISTORY_SIZE = 50
TEXT_PREVIEW_LIMIT = 200


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ActionRecord:
    action: Action
    success: bool
    reversible: bool = False
    reverse_action: Optional[Action] = None
    description: str = ""
    timestamp: datetime = field(default_factory=_now)

    @classmethod
    def from_action(cls, action: Action, success: bool) -> "ActionRecord":
        reversible = action.is_reversible()
        return cls(
            action=action,
            success=success,
            reversible=reversible,
            reverse_action=action.create_reverse() if reversible else None,
            description=action.describe(),
        )


class ActionHistory:
    """Bounded stack of successful actions; oldest entries are evicted first."""

    def __init__(self, max_size: int = ACTION_HISTORY_SIZE) -> None:
        self._records: Deque[ActionRecord] = deque(maxlen=max_size)

    def push(self, record: ActionRecord) -> bool:
        if not record.success:
            return False
        self._records.append(record)
        return True

    def pop_last(self) -> Optional[ActionRecord]:
        return self._records.pop() if self._records else None

    def get_last(self) -> Optional[ActionRecord]:
        return self._records[-1] if self._records else None

    def can_undo(self) -> bool:
        last = self.get_last()
        return last is not None and last.reversible and last.reverse_action is not None

    def get_last_undoable_description(self) -> Optional[str]:
        if not self.can_undo():
            return None
        return self._records[-1].description

    def get_recent(self, count: int) -> List[ActionRecord]:
        if count <= 0:
            return []
        return list(reversed(self._records))[:count]

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


@dataclass(slots=True)
class ActionEntry:
    iteration: int
    action_type: str
    action_details: Dict[str, Any]
    success: bool
    llm_response: Optional[str] = None
    error_message: Optional[str] = None
    result_message: Optional[str] = None
    screenshot: Optional[str] = None
    timestamp: str = field(default_factory=lambda: _now().isoformat())


@dataclass(slots=True)
class SessionMetrics:
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_iterations: int = 0
    duration_seconds: float = 0.0


@dataclass(slots=True)
class SessionHistory:
    instruction: str
    session_id: str = field(default_factory=lambda: str(uuid4()))
    started_at: datetime = field(default_factory=_now)
    ended_at: Optional[datetime] = None
    entries: List[ActionEntry] = field(default_factory=list)
    metrics: SessionMetrics = field(default_factory=SessionMetrics)
    final_status: str = "running"

    def add_entry(self, entry: ActionEntry) -> None:
        self.metrics.total_iterations = max(self.metrics.total_iterations, entry.iteration)
        self.entries.append(entry)

    def update_metrics(self, input_tokens: int, output_tokens: int) -> None:
        self.metrics.total_input_tokens += input_tokens
        self.metrics.total_output_tokens += output_tokens

    def complete(self, status: str) -> None:
        self.ended_at = _now()
        self.metrics.duration_seconds = (self.ended_at - self.started_at).total_seconds()
        self.final_status = status

    def to_dict(self, include_screenshots: bool = False) -> Dict[str, Any]:
        entries = []
        for entry in self.entries:
            data = asdict(entry)
            if not include_screenshots:
                data.pop("screenshot", None)
            entries.append(data)
        return {
            "session_id": self.session_id,
            "instruction": self.instruction,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "final_status": self.final_status,
            "metrics": asdict(self.metrics),
            "entries": entries,
        }

    def to_json(self, include_screenshots: bool = False) -> str:
        return json.dumps(self.to_dict(include_screenshots), ensure_ascii=False, indent=2)

    def to_text(self) -> str:
        lines = [
            f"Session: {self.session_id}",
            f"Instruction: {self.instruction}",
            f"Started: {self.started_at.isoformat()}",
            f"Ended: {self.ended_at.isoformat() if self.ended_at else '-'}",
            f"Status: {self.final_status}",
            (
                f"Iterations: {self.metrics.total_iterations}  "
                f"Tokens: {self.metrics.total_input_tokens} in / {self.metrics.total_output_tokens} out  "
                f"Duration: {self.metrics.duration_seconds:.1f}s"
            ),
            "",
        ]
        for entry in self.entries:
            mark = "OK" if entry.success else "FAIL"
            lines.append(f"[{entry.iteration}] {mark} {entry.action_type} {json.dumps(entry.action_details)}")
            if entry.result_message:
                lines.append(f"    result: {entry.result_message}")
            if entry.error_message:
                lines.append(f"    error: {entry.error_message}")
            if entry.llm_response:
                preview = entry.llm_response
                if len(preview) > TEXT_PREVIEW_LIMIT:
                    preview = f"{preview[:TEXT_PREVIEW_LIMIT]}..."
                lines.append(f"    llm: {preview}")
        return "\n".join(lines)


class HistoryManager:
    """Holds the current session behind a reader/writer lock."""

    def __init__(self) -> None:
        self._session: Optional[SessionHistory] = None
        self._lock = AsyncRWLock()

    async def start_session(self, instruction: str) -> str:
        async with self._lock.write():
            self._session = SessionHistory(instruction=instruction)
            return self._session.session_id

    async def add_entry(self, entry: ActionEntry) -> None:
        async with self._lock.write():
            if self._session is not None:
                self._session.add_entry(entry)

    async def update_metrics(self, input_tokens: int, output_tokens: int) -> None:
        async with self._lock.write():
            if self._session is not None:
                self._session.update_metrics(input_tokens, output_tokens)

    async def complete_session(self, status: str) -> None:
        async with self._lock.write():
            if self._session is not None and self._session.final_status == "running":
                self._session.complete(status)

    async def get_session(self) -> Optional[SessionHistory]:
        async with self._lock.read():
            return self._session

    async def entry_count(self) -> int:
        async with self._lock.read():
            return len(self._session.entries) if self._session else 0

    async def export_json(self, include_screenshots: bool = False) -> Optional[str]:
        async with self._lock.read():
            return self._session.to_json(include_screenshots) if self._session else None

    async def export_text(self) -> Optional[str]:
        async with self._lock.read():
            return self._session.to_text() if self._session else None

    async def clear(self) -> None:
        async with self._lock.write():
            self._session = None
