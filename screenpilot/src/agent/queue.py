"""Sequential instruction backlog feeding the agent loop."""
from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from screenpilot.src.agent.locks import AsyncRWLock


class QueueItemStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueFailureMode(str, Enum):
    STOP = "stop"
    CONTINUE = "continue"

    @classmethod
    def parse(cls, value: str | None) -> "QueueFailureMode":
        if value and value.strip().lower() == "continue":
            return cls.CONTINUE
        return cls.STOP


@dataclass(slots=True)
class QueuedInstruction:
    instruction: str
    id: str = field(default_factory=lambda: str(uuid4()))
    status: QueueItemStatus = QueueItemStatus.PENDING
    result: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


class InstructionQueue:
    """Ordered instructions with a cursor and cached status counters.

    ``pending_count``/``completed_count`` are caches kept in step with every
    mutation; :meth:`recount` derives them from item statuses.
    """

    def __init__(self, failure_mode: QueueFailureMode = QueueFailureMode.STOP) -> None:
        self.items: List[QueuedInstruction] = []
        self.current_index = 0
        self.is_processing = False
        self.failure_mode = failure_mode
        self._pending = 0
        self._completed = 0

    # ------------------------------------------------------------------
    def add(self, instruction: str) -> str:
        item = QueuedInstruction(instruction=instruction)
        self.items.append(item)
        self._pending += 1
        return item.id

    def add_many(self, instructions: Sequence[str]) -> List[str]:
        return [self.add(text) for text in instructions]

    def remove(self, item_id: str) -> bool:
        pos = self._position(item_id)
        if pos is None:
            return False
        item = self.items[pos]
        if item.status == QueueItemStatus.RUNNING:
            return False
        if self.is_processing and pos == self.current_index:
            return False

        self.items.pop(pos)
        if item.status == QueueItemStatus.PENDING:
            self._pending -= 1
        elif item.status == QueueItemStatus.COMPLETED:
            self._completed -= 1

        if pos < self.current_index:
            self.current_index -= 1
        if self.current_index >= len(self.items):
            self.current_index = max(0, len(self.items) - 1)
        return True

    def next_pending(self) -> Optional[QueuedInstruction]:
        """Move the cursor forward to the first pending item and return it."""
        for index in range(self.current_index, len(self.items)):
            if self.items[index].status == QueueItemStatus.PENDING:
                self.current_index = index
                return self.items[index]
        return None

    def current(self) -> Optional[QueuedInstruction]:
        if 0 <= self.current_index < len(self.items):
            return self.items[self.current_index]
        return None

    def mark_running(self) -> bool:
        item = self.current()
        if item is None:
            return False
        if item.status == QueueItemStatus.PENDING:
            self._pending -= 1
        elif item.status == QueueItemStatus.COMPLETED:
            self._completed -= 1
        item.status = QueueItemStatus.RUNNING
        return True

    def mark_completed(self, result: Optional[str] = None) -> bool:
        item = self.current()
        if item is None:
            return False
        if item.status == QueueItemStatus.PENDING:
            self._pending -= 1
        if item.status != QueueItemStatus.COMPLETED:
            self._completed += 1
        item.status = QueueItemStatus.COMPLETED
        item.result = result
        item.error = None
        return True

    def mark_failed(self, error: str) -> bool:
        item = self.current()
        if item is None:
            return False
        if item.status == QueueItemStatus.PENDING:
            self._pending -= 1
        elif item.status == QueueItemStatus.COMPLETED:
            self._completed -= 1
        item.status = QueueItemStatus.FAILED
        item.error = error
        return True

    def advance(self) -> bool:
        if self.current_index + 1 < len(self.items):
            self.current_index += 1
            return True
        return False

    def reorder(self, ids: Sequence[str]) -> bool:
        """Reorder pending items; all other items keep their slots.

        Fails with no effect unless ``ids`` is exactly the set of pending ids.
        """
        pending_slots = [i for i, item in enumerate(self.items) if item.status == QueueItemStatus.PENDING]
        pending_by_id = {self.items[i].id: self.items[i] for i in pending_slots}
        if len(ids) != len(pending_slots) or set(ids) != set(pending_by_id):
            return False
        for slot, item_id in zip(pending_slots, ids):
            self.items[slot] = pending_by_id[item_id]
        return True

    def clear(self) -> None:
        self.items.clear()
        self.current_index = 0
        self._pending = 0
        self._completed = 0
        self.is_processing = False

    def clear_pending(self) -> int:
        """Drop every pending item, returning how many were removed."""
        current = self.current()
        before = len(self.items)
        self.items = [item for item in self.items if item.status != QueueItemStatus.PENDING]
        removed = before - len(self.items)
        self._pending = 0
        if current is not None and current in self.items:
            self.current_index = self.items.index(current)
        else:
            self.current_index = min(self.current_index, max(0, len(self.items) - 1))
        return removed

    # ------------------------------------------------------------------
    def get(self, item_id: str) -> Optional[QueuedInstruction]:
        pos = self._position(item_id)
        return self.items[pos] if pos is not None else None

    def get_all(self) -> List[QueuedInstruction]:
        return list(self.items)

    def pending_count(self) -> int:
        return self._pending

    def completed_count(self) -> int:
        return self._completed

    def total_count(self) -> int:
        return len(self.items)

    def has_pending(self) -> bool:
        return self._pending > 0

    def recount(self) -> tuple[int, int]:
        pending = sum(1 for item in self.items if item.status == QueueItemStatus.PENDING)
        completed = sum(1 for item in self.items if item.status == QueueItemStatus.COMPLETED)
        return pending, completed

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total": self.total_count(),
            "pending": self._pending,
            "completed": self._completed,
            "current_index": self.current_index,
            "is_processing": self.is_processing,
            "failure_mode": self.failure_mode.value,
        }

    def _position(self, item_id: str) -> Optional[int]:
        for index, item in enumerate(self.items):
            if item.id == item_id:
                return index
        return None


class QueueManager:
    """Async access to an :class:`InstructionQueue` behind a reader/writer lock.

    Readers receive copies so no caller holds a live reference into the queue.
    """

    def __init__(self, failure_mode: QueueFailureMode = QueueFailureMode.STOP) -> None:
        self._queue = InstructionQueue(failure_mode)
        self._lock = AsyncRWLock()

    async def add(self, instruction: str) -> str:
        async with self._lock.write():
            return self._queue.add(instruction)

    async def add_many(self, instructions: Sequence[str]) -> List[str]:
        async with self._lock.write():
            return self._queue.add_many(instructions)

    async def remove(self, item_id: str) -> bool:
        async with self._lock.write():
            return self._queue.remove(item_id)

    async def next_pending(self) -> Optional[QueuedInstruction]:
        async with self._lock.write():
            item = self._queue.next_pending()
            return copy.copy(item) if item else None

    async def mark_running(self) -> bool:
        async with self._lock.write():
            return self._queue.mark_running()

    async def mark_completed(self, result: Optional[str] = None) -> bool:
        async with self._lock.write():
            return self._queue.mark_completed(result)

    async def mark_failed(self, error: str) -> bool:
        async with self._lock.write():
            return self._queue.mark_failed(error)

    async def advance(self) -> bool:
        async with self._lock.write():
            return self._queue.advance()

    async def reorder(self, ids: Sequence[str]) -> bool:
        async with self._lock.write():
            return self._queue.reorder(ids)

    async def clear(self) -> None:
        async with self._lock.write():
            self._queue.clear()

    async def clear_pending(self) -> int:
        async with self._lock.write():
            return self._queue.clear_pending()

    async def set_processing(self, processing: bool) -> None:
        async with self._lock.write():
            self._queue.is_processing = processing

    async def set_failure_mode(self, mode: QueueFailureMode) -> None:
        async with self._lock.write():
            self._queue.failure_mode = mode

    async def is_processing(self) -> bool:
        async with self._lock.read():
            return self._queue.is_processing

    async def failure_mode(self) -> QueueFailureMode:
        async with self._lock.read():
            return self._queue.failure_mode

    async def current_index(self) -> int:
        async with self._lock.read():
            return self._queue.current_index

    async def get_all(self) -> List[QueuedInstruction]:
        async with self._lock.read():
            return [copy.copy(item) for item in self._queue.items]

    async def total_count(self) -> int:
        async with self._lock.read():
            return self._queue.total_count()

    async def pending_count(self) -> int:
        async with self._lock.read():
            return self._queue.pending_count()

    async def completed_count(self) -> int:
        async with self._lock.read():
            return self._queue.completed_count()

    async def get_stats(self) -> Dict[str, Any]:
        async with self._lock.read():
            return self._queue.get_stats()
